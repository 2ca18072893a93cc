"""Pydantic models for repository data."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

ProviderName = Literal["github", "gitlab"]
EntryKind = Literal["file", "dir"]


class FileEntry(BaseModel):
    """A file or directory in a repository listing."""

    name: str
    path: str = Field(description="Repository-relative, slash-separated, no leading slash")
    type: EntryKind
    sha: str = Field(default="", description="Opaque revision marker (blob/tree id)")
    size: int | None = None


class TreeNode(FileEntry):
    """A FileEntry placed in a hierarchy."""

    level: int = 0
    children: list[TreeNode] = Field(default_factory=list)


class ResolvedPath(BaseModel):
    """Mapping from a display owner/repo to GitLab's namespaced project path."""

    model_config = ConfigDict(frozen=True)

    owner: str
    repo: str
    canonical: str
    resolved: bool = True


class CacheKey(BaseModel):
    """Structured cache key: provider + owner + repo + path + optional ref."""

    model_config = ConfigDict(frozen=True)

    provider: str
    kind: str
    owner: str
    repo: str
    path: str = ""
    ref: str | None = None

"""Provider clients for repository access."""

from repobridge.vcs.base import ProviderCaches, VCSProvider
from repobridge.vcs.fallback import FallbackOrchestrator, triggers_fallback
from repobridge.vcs.github import GitHubIdentity, GitHubProvider
from repobridge.vcs.gitlab import GitLabAPI, GitLabIdentity, GitLabProvider
from repobridge.vcs.models import CacheKey, FileEntry, ResolvedPath, TreeNode
from repobridge.vcs.registry import ProviderRegistry, create_registry
from repobridge.vcs.resolver import GitLabPathResolver, ResolvedPathCache
from repobridge.vcs.tree import build_tree, flatten_tree, render_tree, sort_entries

__all__ = [
    "CacheKey",
    "FallbackOrchestrator",
    "FileEntry",
    "GitHubIdentity",
    "GitHubProvider",
    "GitLabAPI",
    "GitLabIdentity",
    "GitLabPathResolver",
    "GitLabProvider",
    "ProviderCaches",
    "ProviderRegistry",
    "ResolvedPath",
    "ResolvedPathCache",
    "TreeNode",
    "VCSProvider",
    "build_tree",
    "create_registry",
    "flatten_tree",
    "render_tree",
    "sort_entries",
    "triggers_fallback",
]

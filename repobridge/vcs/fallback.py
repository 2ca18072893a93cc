"""Cross-provider fallback around provider client calls."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, TypeVar

from repobridge.errors import AccessError, AuthRequiredError, NotFoundError
from repobridge.vcs.base import VCSProvider
from repobridge.vcs.models import FileEntry, TreeNode

if TYPE_CHECKING:
    from repobridge.vcs.registry import ProviderRegistry

logger = logging.getLogger(__name__)

T = TypeVar("T")


def triggers_fallback(error: AccessError) -> bool:
    """Only "not found" and "no credential at all" move to the other provider."""
    if isinstance(error, NotFoundError):
        return True
    return isinstance(error, AuthRequiredError) and error.absent


class FallbackOrchestrator:
    """Retries a failed call against the alternate provider.

    If the alternate also fails, the primary's error is raised and the
    alternate's is only logged, so the user sees a consistent message.
    """

    def __init__(self, registry: ProviderRegistry) -> None:
        self.registry = registry

    async def call(
        self, provider: str, operation: Callable[[VCSProvider], Awaitable[T]]
    ) -> T:
        primary = self.registry.get(provider)
        try:
            return await operation(primary)
        except AccessError as e:
            if not triggers_fallback(e):
                raise
            alternate_name = self.registry.alternate(provider)
            if alternate_name is None:
                raise
            primary_error = e

        logger.info(
            "%s failed on %s (%s); trying %s",
            primary_error.operation, provider, primary_error.kind, alternate_name,
        )
        try:
            result = await operation(self.registry.get(alternate_name))
        except AccessError as alt_error:
            logger.info("Fallback to %s also failed: %s", alternate_name, alt_error)
            raise primary_error from primary_error.__cause__
        logger.info("Served %s from %s after %s failed", primary_error.operation, alternate_name, provider)
        return result

    async def list_directory(
        self, provider: str, owner: str, repo: str, path: str = ""
    ) -> list[FileEntry]:
        return await self.call(provider, lambda c: c.list_directory(owner, repo, path))

    async def get_tree(self, provider: str, owner: str, repo: str) -> list[TreeNode]:
        return await self.call(provider, lambda c: c.get_tree(owner, repo))

    async def get_file_content(
        self, provider: str, owner: str, repo: str, path: str, ref: str | None = None
    ) -> bytes:
        return await self.call(provider, lambda c: c.get_file_content(owner, repo, path, ref))

    async def get_default_branch(self, provider: str, owner: str, repo: str) -> str:
        return await self.call(provider, lambda c: c.get_default_branch(owner, repo))

"""Abstract provider client with the shared read-through flow."""

from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from repobridge.auth.models import NeedsReauth, Usable
from repobridge.auth.validator import TokenValidator
from repobridge.cache import SingleFlight, TTLCache
from repobridge.errors import AuthRequiredError, InvalidCredentialError, TransientError
from repobridge.vcs.models import CacheKey, FileEntry, TreeNode
from repobridge.vcs.tree import build_tree

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _detached(value: T) -> T:
    """Give each caller its own copy of a cached listing or tree."""
    return copy.deepcopy(value) if isinstance(value, list) else value


@dataclass
class ProviderCaches:
    """Caches shared by every provider client in a registry."""

    content: TTLCache[bytes] = field(default_factory=TTLCache)
    tree: TTLCache[list[TreeNode]] = field(default_factory=TTLCache)
    listing: TTLCache[list[FileEntry]] = field(default_factory=TTLCache)
    branch: TTLCache[str] = field(default_factory=TTLCache)

    def clear(self) -> None:
        for cache in (self.content, self.tree, self.listing, self.branch):
            cache.clear()


class VCSProvider(ABC):
    """One client per provider, identical public shape.

    Each read consults the cache, then obtains a usable token, then calls
    the provider. Failures leave as ``AccessError`` subclasses only.
    """

    name: str = ""

    def __init__(
        self,
        validator: TokenValidator,
        subject: str,
        caches: ProviderCaches | None = None,
        flights: SingleFlight | None = None,
    ) -> None:
        self.validator = validator
        self.subject = subject
        self.caches = caches or ProviderCaches()
        self._flights = flights or SingleFlight()

    # -- public contract -------------------------------------------------------

    async def list_directory(self, owner: str, repo: str, path: str = "") -> list[FileEntry]:
        """List the entries directly under ``path`` (root when empty)."""
        path = path.strip("/")
        return await self._read_through(
            CacheKey(provider=self.name, kind="listing", owner=owner, repo=repo, path=path),
            self.caches.listing,
            lambda auth: self._fetch_listing(auth, owner, repo, path),
        )

    async def get_tree(self, owner: str, repo: str) -> list[TreeNode]:
        """Full recursive tree of the default branch."""

        async def fetch(auth: Usable) -> list[TreeNode]:
            return build_tree(await self._fetch_tree_entries(auth, owner, repo))

        return await self._read_through(
            CacheKey(provider=self.name, kind="tree", owner=owner, repo=repo),
            self.caches.tree,
            fetch,
        )

    async def get_file_content(
        self, owner: str, repo: str, path: str, ref: str | None = None
    ) -> bytes:
        path = path.strip("/")
        return await self._read_through(
            CacheKey(
                provider=self.name, kind="content", owner=owner, repo=repo, path=path, ref=ref
            ),
            self.caches.content,
            lambda auth: self._fetch_file(auth, owner, repo, path, ref),
        )

    async def get_default_branch(self, owner: str, repo: str) -> str:
        return await self._read_through(
            CacheKey(provider=self.name, kind="branch", owner=owner, repo=repo),
            self.caches.branch,
            lambda auth: self._fetch_default_branch(auth, owner, repo),
        )

    # -- provider hooks --------------------------------------------------------

    @abstractmethod
    async def _fetch_listing(
        self, auth: Usable, owner: str, repo: str, path: str
    ) -> list[FileEntry]: ...

    @abstractmethod
    async def _fetch_tree_entries(self, auth: Usable, owner: str, repo: str) -> list[FileEntry]:
        """Flat, possibly directory-less list of every path in the repo."""
        ...

    @abstractmethod
    async def _fetch_file(
        self, auth: Usable, owner: str, repo: str, path: str, ref: str | None
    ) -> bytes: ...

    @abstractmethod
    async def _fetch_default_branch(self, auth: Usable, owner: str, repo: str) -> str: ...

    # -- shared flow -----------------------------------------------------------

    async def _read_through(
        self,
        key: CacheKey,
        cache: TTLCache[T],
        fetch: Callable[[Usable], Awaitable[T]],
    ) -> T:
        hit = cache.get(key)
        if hit is not None:
            logger.debug("Cache hit for %s", key)
            return _detached(hit)

        async def load() -> T:
            value = await self._with_token(key.kind, fetch)
            cache.put(key, value)
            return value

        return _detached(await self._flights.do(key, load))

    async def _with_token(self, operation: str, fetch: Callable[[Usable], Awaitable[T]]) -> T:
        auth = await self._require_token(operation)
        try:
            return await fetch(auth)
        except InvalidCredentialError:
            # Validity was only a hint; re-check once, refresh if needed, retry once.
            logger.info("%s rejected a token during %s; re-validating", self.name, operation)
            await self.validator.report_rejected(self.name, self.subject)
            auth = await self._require_token(operation)
            return await fetch(auth)

    async def _require_token(self, operation: str) -> Usable:
        result = await self.validator.get_usable(self.name, self.subject)
        if isinstance(result, Usable):
            return result
        if isinstance(result, NeedsReauth):
            raise AuthRequiredError(self.name, operation, absent=result.absent)
        raise TransientError(self.name, operation, result.reason)

"""Mapping loosely specified owner/repo pairs onto GitLab project paths.

GitLab namespaces are not guaranteed to equal the owner string a user
typed (display name vs. path slug, personal vs. group namespace), so
resolution walks a fixed list of strategies, cheapest first:

1. direct lookup of ``owner/repo``
2. the caller's own projects, matched by name
3. project search by repo name (exact namespace, then fuzzy, then first hit)
4. group search by owner, then direct lookup inside that group

Successful resolutions are cached for the life of the cache; a miss on
every strategy returns ``owner/repo`` unchanged and is not cached. When a
lookup failed transiently and nothing definite was found, the
``TransientError`` is raised instead.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any
from urllib.parse import quote, unquote

from repobridge.auth.models import Usable
from repobridge.errors import AccessError, NotFoundError, TransientError
from repobridge.vcs.models import ResolvedPath

if TYPE_CHECKING:
    from repobridge.vcs.gitlab import GitLabAPI

logger = logging.getLogger(__name__)


class ResolvedPathCache:
    """Resolved paths keyed by ``owner/repo``, optionally mirrored to a JSON file."""

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path else None
        self._paths: dict[str, str] = {}
        if self.path and self.path.is_file():
            try:
                loaded = json.loads(self.path.read_text())
                if isinstance(loaded, dict):
                    self._paths = {str(k): str(v) for k, v in loaded.items()}
                    logger.debug("Loaded %d cached GitLab project paths", len(self._paths))
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("Ignoring unreadable path cache %s: %s", self.path, e)

    @staticmethod
    def _key(owner: str, repo: str) -> str:
        return f"{owner}/{repo}"

    def get(self, owner: str, repo: str) -> str | None:
        return self._paths.get(self._key(owner, repo))

    def put(self, owner: str, repo: str, canonical: str) -> None:
        self._paths[self._key(owner, repo)] = canonical
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(self._paths, indent=2, sort_keys=True))
        except OSError as e:
            logger.warning("Could not save path cache %s: %s", self.path, e)

    def __len__(self) -> int:
        return len(self._paths)


def _namespace_paths(project: dict[str, Any]) -> tuple[str, str]:
    ns = project.get("namespace") or {}
    return ns.get("path", ""), ns.get("full_path", ns.get("path", ""))


def pick_search_match(
    candidates: list[dict[str, Any]], owner: str, repo: str, exact_only: bool = False
) -> dict[str, Any] | None:
    """Choose among project search results.

    Exact namespace match beats fuzzy match beats the first result; among
    equals the earliest result wins. With ``exact_only`` nothing but an
    exact match is returned.
    """
    if not candidates:
        return None

    for project in candidates:
        full = project.get("path_with_namespace", "")
        if full.rsplit("/", 1)[-1].lower() != repo.lower():
            continue
        if owner in _namespace_paths(project):
            return project

    if exact_only:
        return None

    owner_lower = owner.lower()
    for project in candidates:
        ns_path = _namespace_paths(project)[0].lower()
        if ns_path and (owner_lower in ns_path or ns_path in owner_lower):
            return project

    return candidates[0]


class GitLabPathResolver:
    def __init__(self, api: GitLabAPI, cache: ResolvedPathCache | None = None) -> None:
        self.api = api
        self.cache = cache if cache is not None else ResolvedPathCache()

    async def resolve(self, owner: str, repo: str, auth: Usable) -> ResolvedPath:
        cached = self.cache.get(owner, repo)
        if cached:
            logger.debug("Using cached GitLab path for %s/%s: %s", owner, repo, cached)
            return ResolvedPath(owner=owner, repo=repo, canonical=cached)

        decoded_owner = unquote(owner)
        # After an outage a search guess may stand in for the real project,
        # so only an exact search match is accepted from then on.
        outage: TransientError | None = None
        strategies = (
            ("direct", self._direct),
            ("owned", self._owned),
            ("search", lambda o, r, a: self._search(o, r, a, exact_only=outage is not None)),
            ("group", self._group),
        )
        for label, strategy in strategies:
            try:
                canonical = await strategy(decoded_owner, repo, auth)
            except NotFoundError as e:
                logger.debug("GitLab %s lookup for %s/%s failed: %s", label, owner, repo, e)
                continue
            except TransientError as e:
                logger.warning("GitLab %s lookup for %s/%s failed: %s", label, owner, repo, e)
                outage = outage or e
                continue
            except AccessError as e:
                if type(e) is not AccessError:
                    raise
                logger.debug("GitLab %s lookup for %s/%s rejected: %s", label, owner, repo, e)
                continue
            if canonical:
                logger.info("Resolved GitLab %s/%s -> %s (%s)", owner, repo, canonical, label)
                self.cache.put(owner, repo, canonical)
                return ResolvedPath(owner=owner, repo=repo, canonical=canonical)

        if outage is not None:
            raise outage

        logger.info("Could not resolve GitLab %s/%s; using it as given", owner, repo)
        return ResolvedPath(
            owner=owner, repo=repo, canonical=f"{decoded_owner}/{repo}", resolved=False
        )

    async def _lookup(self, path: str, auth: Usable) -> str | None:
        data = await self.api.get_json(
            f"/projects/{quote(path, safe='')}", auth.token, "resolve", detail=f"project {path}"
        )
        return data.get("path_with_namespace") if isinstance(data, dict) else None

    async def _direct(self, owner: str, repo: str, auth: Usable) -> str | None:
        return await self._lookup(f"{owner}/{repo}", auth)

    async def _owned(self, owner: str, repo: str, auth: Usable) -> str | None:
        if not auth.username:
            return None
        projects = await self.api.get_json(
            "/projects", auth.token, "resolve", {"owned": "true", "per_page": 100}
        )
        for project in projects or []:
            if project.get("name", "").lower() == repo.lower():
                return project.get("path_with_namespace")
        return None

    async def _search(
        self, owner: str, repo: str, auth: Usable, exact_only: bool = False
    ) -> str | None:
        projects = await self.api.get_json("/projects", auth.token, "resolve", {"search": repo})
        match = pick_search_match(projects or [], owner, repo, exact_only)
        return match.get("path_with_namespace") if match else None

    async def _group(self, owner: str, repo: str, auth: Usable) -> str | None:
        groups = await self.api.get_json("/groups", auth.token, "resolve", {"search": owner})
        if not groups:
            return None
        group = next(
            (g for g in groups if owner in (g.get("path"), g.get("full_path"))), groups[0]
        )
        namespace = group.get("full_path") or group.get("path")
        return await self._lookup(f"{namespace}/{repo}", auth) if namespace else None

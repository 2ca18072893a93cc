"""GitLab provider using the REST API v4 via httpx."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import quote

import httpx

from repobridge.auth.models import Credential, RefreshGrant, Usable
from repobridge.errors import AccessError, NotFoundError, TransientError, classify_status
from repobridge.vcs.base import VCSProvider
from repobridge.vcs.models import FileEntry, ResolvedPath
from repobridge.vcs.resolver import GitLabPathResolver, ResolvedPathCache
from repobridge.vcs.tree import sort_entries

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://gitlab.com/api/v4"
DEFAULT_OAUTH_URL = "https://gitlab.com"
DEFAULT_EXPIRES_IN = 7200


def encode_path(path: str) -> str:
    """URL-encode a project or file path as a single path segment."""
    return quote(path, safe="")


class GitLabAPI:
    """Thin async JSON/bytes client over the GitLab REST API.

    Each request opens its own ``httpx.AsyncClient``; ``transport`` lets
    tests swap in ``httpx.MockTransport``.
    """

    def __init__(
        self,
        api_url: str = DEFAULT_API_URL,
        timeout: float = 30.0,
        per_page: int = 100,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.per_page = per_page
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _get(
        self,
        endpoint: str,
        token: str | None,
        operation: str,
        params: dict[str, Any] | None = None,
        detail: str = "",
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        url = f"{self.api_url}{endpoint}"
        logger.debug("GitLab GET %s params=%s", endpoint, params)
        try:
            async with self._client() as client:
                resp = await client.get(url, params=params, headers=headers)
        except httpx.HTTPError as e:
            raise TransientError("gitlab", operation, f"GitLab unreachable: {e}") from e
        if resp.is_error:
            raise classify_status(
                "gitlab", operation, resp.status_code, resp.headers,
                had_token=bool(token), detail=detail,
            )
        return resp

    async def get_json(
        self,
        endpoint: str,
        token: str | None,
        operation: str,
        params: dict[str, Any] | None = None,
        detail: str = "",
    ) -> Any:
        resp = await self._get(endpoint, token, operation, params, detail)
        try:
            return resp.json()
        except ValueError as e:
            raise AccessError(
                "gitlab", operation, f"Unexpected response format from GitLab: {e}"
            ) from e

    async def get_bytes(
        self,
        endpoint: str,
        token: str | None,
        operation: str,
        params: dict[str, Any] | None = None,
        detail: str = "",
    ) -> bytes:
        return (await self._get(endpoint, token, operation, params, detail)).content

    async def post_form(self, url: str, data: dict[str, str], operation: str) -> httpx.Response:
        """POST form-encoded ``data``; status handling is left to the caller."""
        try:
            async with self._client() as client:
                return await client.post(url, data=data)
        except httpx.HTTPError as e:
            raise TransientError("gitlab", operation, f"GitLab unreachable: {e}") from e

    async def get_paginated(
        self,
        endpoint: str,
        token: str | None,
        operation: str,
        params: dict[str, Any] | None = None,
        detail: str = "",
    ) -> list[Any]:
        """Follow ``X-Next-Page`` until exhausted."""
        items: list[Any] = []
        page = 1
        while True:
            query = {**(params or {}), "per_page": self.per_page, "page": page}
            resp = await self._get(endpoint, token, operation, query, detail)
            try:
                data = resp.json()
            except ValueError:
                data = None
            if not isinstance(data, list):
                raise AccessError("gitlab", operation, "Unexpected response format from GitLab API")
            items.extend(data)
            next_page = resp.headers.get("X-Next-Page", "").strip()
            if not next_page:
                return items
            page = int(next_page)


class GitLabIdentity:
    """Identity check via ``GET /user`` and refresh-token exchange."""

    provider = "gitlab"

    def __init__(
        self,
        api: GitLabAPI,
        oauth_url: str = DEFAULT_OAUTH_URL,
        client_id: str = "",
        client_secret: str = "",
        redirect_uri: str | None = None,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.api = api
        self.token_url = f"{oauth_url.rstrip('/')}/oauth/token"
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self._now = now

    async def whoami(self, token: str) -> str:
        data = await self.api.get_json("/user", token, "identity")
        return data.get("username", "")

    async def refresh(self, credential: Credential) -> Credential | None:
        if not credential.refresh_token:
            logger.info("No GitLab refresh token stored for %s", credential.subject)
            return None

        form = {
            "grant_type": "refresh_token",
            "refresh_token": credential.refresh_token,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        if self.redirect_uri:
            form["redirect_uri"] = self.redirect_uri
        resp = await self.api.post_form(self.token_url, form, "refresh")
        if resp.status_code >= 500:
            raise TransientError(
                "gitlab", "refresh", f"GitLab token endpoint error {resp.status_code}"
            )
        if resp.status_code != 200:
            logger.warning("GitLab refused the refresh token (HTTP %d)", resp.status_code)
            return None
        try:
            grant = RefreshGrant.model_validate(resp.json())
        except ValueError:
            logger.warning("GitLab token endpoint returned an unusable payload")
            return None

        expires_in = grant.expires_in if grant.expires_in is not None else DEFAULT_EXPIRES_IN
        return credential.with_updates(
            token=grant.access_token,
            # GitLab rotates refresh tokens; keep the old one if none came back.
            refresh_token=grant.refresh_token or credential.refresh_token,
            expires_at=self._now() + timedelta(seconds=expires_in),
        )


class GitLabProvider(VCSProvider):
    name = "gitlab"

    def __init__(
        self,
        *args,
        api: GitLabAPI | None = None,
        path_cache: ResolvedPathCache | None = None,
        **kwargs,
    ) -> None:
        super().__init__(*args, **kwargs)
        self.api = api or GitLabAPI()
        self.resolver = GitLabPathResolver(self.api, path_cache or ResolvedPathCache())

    async def resolve(self, owner: str, repo: str) -> ResolvedPath:
        """Resolve ``owner/repo`` to GitLab's namespaced project path."""
        return await self._with_token("resolve", lambda auth: self.resolver.resolve(owner, repo, auth))

    async def _project_endpoint(self, auth: Usable, owner: str, repo: str) -> tuple[str, ResolvedPath]:
        resolved = await self.resolver.resolve(owner, repo, auth)
        return f"/projects/{encode_path(resolved.canonical)}", resolved

    @staticmethod
    def _describe(resolved: ResolvedPath) -> str:
        if resolved.resolved:
            return f"project {resolved.canonical}"
        return f"project {resolved.canonical} (no matching GitLab project path was found)"

    @staticmethod
    def _to_entry(item: dict) -> FileEntry:
        return FileEntry(
            name=item.get("name") or item["path"].rsplit("/", 1)[-1],
            path=item["path"],
            type="dir" if item.get("type") == "tree" else "file",
            sha=item.get("id") or "",
        )

    async def _fetch_default_branch(self, auth: Usable, owner: str, repo: str) -> str:
        endpoint, resolved = await self._project_endpoint(auth, owner, repo)
        data = await self.api.get_json(
            endpoint, auth.token, "branch", detail=self._describe(resolved)
        )
        return data.get("default_branch") or "main"

    async def _fetch_listing(
        self, auth: Usable, owner: str, repo: str, path: str
    ) -> list[FileEntry]:
        endpoint, resolved = await self._project_endpoint(auth, owner, repo)
        branch = await self.get_default_branch(owner, repo)
        params: dict[str, Any] = {"ref": branch}
        if path:
            params["path"] = path
        items = await self.api.get_paginated(
            f"{endpoint}/repository/tree", auth.token, "listing", params,
            detail=self._describe(resolved),
        )
        return sort_entries(self._to_entry(i) for i in items)

    async def _fetch_tree_entries(self, auth: Usable, owner: str, repo: str) -> list[FileEntry]:
        endpoint, resolved = await self._project_endpoint(auth, owner, repo)
        branch = await self.get_default_branch(owner, repo)
        items = await self.api.get_paginated(
            f"{endpoint}/repository/tree",
            auth.token,
            "tree",
            {"recursive": "true", "ref": branch},
            detail=self._describe(resolved),
        )
        logger.info("GitLab returned %d tree entries for %s", len(items), resolved.canonical)
        return [self._to_entry(i) for i in items]

    async def _fetch_file(
        self, auth: Usable, owner: str, repo: str, path: str, ref: str | None
    ) -> bytes:
        endpoint, resolved = await self._project_endpoint(auth, owner, repo)
        branch = ref or await self.get_default_branch(owner, repo)
        try:
            return await self.api.get_bytes(
                f"{endpoint}/repository/files/{encode_path(path)}/raw",
                auth.token,
                "content",
                {"ref": branch},
                detail=f"file {path}",
            )
        except NotFoundError:
            logger.debug("File %s missing from %s@%s", path, resolved.canonical, branch)
            raise

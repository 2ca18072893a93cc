"""GitHub provider using PyGithub."""

from __future__ import annotations

import asyncio
import base64
import logging

from github import Auth, Github, GithubException
from github.ContentFile import ContentFile
from github.Repository import Repository
from requests import RequestException

from repobridge.auth.models import Credential, Usable
from repobridge.errors import (
    AccessError,
    InvalidCredentialError,
    TransientError,
    classify_status,
)
from repobridge.vcs.base import VCSProvider
from repobridge.vcs.models import FileEntry
from repobridge.vcs.tree import sort_entries

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"


def classify_github_error(
    exc: Exception, operation: str, had_token: bool = True, detail: str = ""
) -> AccessError:
    """Translate a PyGithub or requests exception into the access taxonomy."""
    if isinstance(exc, GithubException):
        return classify_status(
            "github", operation, exc.status, exc.headers, had_token=had_token, detail=detail
        )
    if isinstance(exc, RequestException):
        return TransientError("github", operation, f"GitHub unreachable: {exc}")
    return AccessError("github", operation, f"GitHub {operation} failed: {exc}")


class _GitHubSession:
    """Builds PyGithub clients.

    PyGithub is synchronous, so every blocking call goes through
    asyncio.to_thread() to keep the event loop free.
    """

    def __init__(self, api_url: str = DEFAULT_API_URL, timeout: float = 30.0) -> None:
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout

    def client(self, token: str) -> Github:
        # retry=None: rate limits are surfaced to the caller, never slept on.
        return Github(
            auth=Auth.Token(token),
            base_url=self.api_url,
            timeout=int(self.timeout),
            retry=None,
        )

    async def call(self, operation: str, fn, detail: str = ""):
        try:
            return await asyncio.to_thread(fn)
        except (GithubException, RequestException) as e:
            raise classify_github_error(e, operation, detail=detail) from e


class GitHubIdentity:
    """Identity check via ``GET /user``.

    GitHub OAuth tokens are long-lived and carry no refresh token, so a
    refresh is one more identity check; if that fails the token is dead.
    """

    provider = "github"

    def __init__(self, api_url: str = DEFAULT_API_URL, timeout: float = 30.0) -> None:
        self._session = _GitHubSession(api_url, timeout)

    async def whoami(self, token: str) -> str:
        return await self._session.call(
            "identity", lambda: self._session.client(token).get_user().login
        )

    async def refresh(self, credential: Credential) -> Credential | None:
        try:
            username = await self.whoami(credential.token)
        except InvalidCredentialError:
            return None
        return credential.with_updates(username=username)


class GitHubProvider(VCSProvider):
    name = "github"

    def __init__(self, *args, api_url: str = DEFAULT_API_URL, timeout: float = 30.0, **kwargs):
        super().__init__(*args, **kwargs)
        self._session = _GitHubSession(api_url, timeout)

    def _get_repo(self, token: str, owner: str, repo: str) -> Repository:
        return self._session.client(token).get_repo(f"{owner}/{repo}")

    @staticmethod
    def _to_entry(c: ContentFile) -> FileEntry:
        return FileEntry(
            name=c.name,
            path=c.path,
            type="dir" if c.type == "dir" else "file",
            sha=c.sha or "",
            size=c.size if c.type != "dir" else None,
        )

    async def _fetch_listing(
        self, auth: Usable, owner: str, repo: str, path: str
    ) -> list[FileEntry]:
        def _sync() -> list[FileEntry]:
            contents = self._get_repo(auth.token, owner, repo).get_contents(path)
            if not isinstance(contents, list):
                raise AccessError(
                    self.name, "listing", f"'{path}' in {owner}/{repo} is a file, not a directory."
                )
            return sort_entries(self._to_entry(c) for c in contents)

        target = f"{owner}/{repo}" + (f"/{path}" if path else "")
        return await self._session.call("listing", _sync, detail=f"repository {target}")

    async def _fetch_tree_entries(self, auth: Usable, owner: str, repo: str) -> list[FileEntry]:
        branch = await self.get_default_branch(owner, repo)

        def _sync() -> list[FileEntry]:
            tree = self._get_repo(auth.token, owner, repo).get_git_tree(branch, recursive=True)
            if tree.raw_data.get("truncated"):
                logger.warning("GitHub truncated the tree for %s/%s", owner, repo)
            entries = []
            for item in tree.tree:
                if item.type == "commit":
                    continue  # submodule pointer
                entries.append(
                    FileEntry(
                        name=item.path.rsplit("/", 1)[-1],
                        path=item.path,
                        type="dir" if item.type == "tree" else "file",
                        sha=item.sha,
                        size=item.size,
                    )
                )
            return entries

        return await self._session.call("tree", _sync, detail=f"repository {owner}/{repo}")

    async def _fetch_file(
        self, auth: Usable, owner: str, repo: str, path: str, ref: str | None
    ) -> bytes:
        def _sync() -> bytes:
            gh_repo = self._get_repo(auth.token, owner, repo)
            kwargs = {"ref": ref} if ref else {}
            content = gh_repo.get_contents(path, **kwargs)
            if isinstance(content, list):
                raise AccessError(self.name, "content", f"'{path}' is a directory, not a file.")
            if content.encoding == "base64":
                return content.decoded_content
            # Files over 1 MB come back without inline content.
            blob = gh_repo.get_git_blob(content.sha)
            return base64.b64decode(blob.content)

        return await self._session.call("content", _sync, detail=f"file {path}")

    async def _fetch_default_branch(self, auth: Usable, owner: str, repo: str) -> str:
        return await self._session.call(
            "branch",
            lambda: self._get_repo(auth.token, owner, repo).default_branch,
            detail=f"repository {owner}/{repo}",
        )

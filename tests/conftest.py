"""Shared test fixtures for repobridge."""

from datetime import UTC, datetime, timedelta

import httpx
import pytest

from repobridge.auth.chain import TokenSourceChain
from repobridge.auth.models import Credential
from repobridge.auth.stores import MemoryCredentialStore
from repobridge.auth.validator import TokenValidator
from repobridge.config.models import RepoBridgeConfig
from repobridge.errors import InvalidCredentialError
from repobridge.vcs.gitlab import GitLabAPI

T0 = datetime(2026, 1, 15, 12, 0, tzinfo=UTC)


class FakeClock:
    """Monotonic clock and wall clock that only move when told to."""

    def __init__(self, start: datetime = T0) -> None:
        self.seconds = 1000.0
        self.wall = start

    def __call__(self) -> float:
        return self.seconds

    def now(self) -> datetime:
        return self.wall

    def advance(self, seconds: float) -> None:
        self.seconds += seconds
        self.wall += timedelta(seconds=seconds)


class FakeIdentity:
    """In-memory identity backend.

    ``users`` maps accepted tokens to usernames; anything else is rejected.
    ``refreshed`` is what refresh() hands back (None means "cannot refresh").
    """

    def __init__(self, provider: str, users: dict[str, str] | None = None) -> None:
        self.provider = provider
        self.users = dict(users or {})
        self.refreshed: Credential | None = None
        self.whoami_calls = 0
        self.refresh_calls = 0
        self.error: Exception | None = None

    async def whoami(self, token: str) -> str:
        self.whoami_calls += 1
        if self.error is not None:
            raise self.error
        if token not in self.users:
            raise InvalidCredentialError(self.provider, "identity", status=401)
        return self.users[token]

    async def refresh(self, credential: Credential) -> Credential | None:
        self.refresh_calls += 1
        return self.refreshed


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session_store():
    return MemoryCredentialStore()


@pytest.fixture
def local_store():
    return MemoryCredentialStore()


@pytest.fixture
def remote_store():
    return MemoryCredentialStore()


@pytest.fixture
def chain(session_store, local_store, remote_store):
    return TokenSourceChain(session=session_store, local=local_store, remote=remote_store)


@pytest.fixture
def github_identity():
    return FakeIdentity("github", {"gh-good": "octocat"})


@pytest.fixture
def gitlab_identity():
    return FakeIdentity("gitlab", {"gl-good": "jdoe"})


@pytest.fixture
def validator(chain, github_identity, gitlab_identity, clock):
    return TokenValidator(
        chain,
        {"github": github_identity, "gitlab": gitlab_identity},
        clock=clock,
        now=clock.now,
    )


@pytest.fixture
def sample_config(tmp_path):
    cfg = RepoBridgeConfig()
    cfg.storage.base_dir = str(tmp_path / ".repobridge")
    return cfg


@pytest.fixture
def make_credential():
    def _make(provider: str = "gitlab", token: str = "gl-good", subject: str = "alice", **kwargs):
        return Credential(provider=provider, subject=subject, token=token, **kwargs)

    return _make


class GitLabRoutes:
    """Tiny router for httpx.MockTransport; records every request it sees.

    A route is either a callable taking the request, or the keyword arguments
    for a fresh ``httpx.Response`` built per request.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], object] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, path: str, respond=None, status: int = 200, **kwargs) -> None:
        self.routes[(method, path)] = respond or {"status_code": status, **kwargs}

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.raw_path.decode().split("?")[0]))
        if route is None:
            return httpx.Response(404, json={"message": "404 Not Found"})
        if callable(route):
            return route(request)
        return httpx.Response(**route)

    def paths(self) -> list[str]:
        return [r.url.raw_path.decode().split("?")[0] for r in self.requests]


@pytest.fixture
def gitlab_routes():
    return GitLabRoutes()


@pytest.fixture
def gitlab_api(gitlab_routes):
    return GitLabAPI(
        "https://gitlab.test/api/v4",
        timeout=5,
        per_page=2,
        transport=httpx.MockTransport(gitlab_routes.handler),
    )

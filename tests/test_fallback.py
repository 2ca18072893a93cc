"""Tests for cross-provider fallback and the provider registry."""

import os
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from repobridge.auth.stores import MemoryCredentialStore
from repobridge.errors import (
    AuthRequiredError,
    InvalidCredentialError,
    NotFoundError,
    RateLimitedError,
    TransientError,
)
from repobridge.vcs.base import ProviderCaches, VCSProvider
from repobridge.vcs.fallback import FallbackOrchestrator, triggers_fallback
from repobridge.vcs.github import GitHubProvider
from repobridge.vcs.gitlab import GitLabProvider
from repobridge.vcs.models import FileEntry
from repobridge.vcs.registry import ProviderRegistry, create_registry, session_from_env


def _client(name):
    client = MagicMock(spec=VCSProvider)
    client.name = name
    client.get_file_content = AsyncMock(return_value=f"from {name}".encode())
    client.list_directory = AsyncMock(
        return_value=[FileEntry(name="a.py", path="a.py", type="file")]
    )
    client.get_tree = AsyncMock(return_value=[])
    client.get_default_branch = AsyncMock(return_value="main")
    return client


@pytest.fixture
def clients():
    return {"github": _client("github"), "gitlab": _client("gitlab")}


@pytest.fixture
def registry(clients, validator):
    return ProviderRegistry(clients, validator, ProviderCaches())


@pytest.fixture
def orchestrator(registry):
    return FallbackOrchestrator(registry)


# ── triggers_fallback ───────────────────────────────────────────────


class TestTriggersFallback:
    def test_not_found_triggers(self):
        assert triggers_fallback(NotFoundError("github", "tree", "nope"))

    def test_absent_credential_triggers(self):
        assert triggers_fallback(AuthRequiredError("github", "tree", absent=True))

    def test_expired_credential_does_not(self):
        assert not triggers_fallback(AuthRequiredError("github", "tree", absent=False))

    @pytest.mark.parametrize(
        "error",
        [
            InvalidCredentialError("github", "tree"),
            RateLimitedError("github", "tree"),
            TransientError("github", "tree", "down"),
        ],
    )
    def test_other_failures_do_not(self, error):
        assert not triggers_fallback(error)


# ── FallbackOrchestrator ────────────────────────────────────────────


class TestFallbackOrchestrator:
    async def test_primary_success_never_touches_alternate(self, orchestrator, clients):
        assert await orchestrator.get_file_content("github", "acme", "w", "a.py") == b"from github"
        clients["gitlab"].get_file_content.assert_not_awaited()

    async def test_not_found_served_by_alternate(self, orchestrator, clients):
        clients["github"].get_file_content.side_effect = NotFoundError("github", "content", "nope")
        assert await orchestrator.get_file_content("github", "acme", "w", "a.py") == b"from gitlab"
        clients["gitlab"].get_file_content.assert_awaited_once_with("acme", "w", "a.py", None)

    async def test_absent_token_served_by_alternate(self, orchestrator, clients):
        clients["gitlab"].get_tree.side_effect = AuthRequiredError("gitlab", "tree", absent=True)
        await orchestrator.get_tree("gitlab", "acme", "w")
        clients["github"].get_tree.assert_awaited_once_with("acme", "w")

    async def test_alternate_failure_surfaces_primary_error(self, orchestrator, clients):
        primary = NotFoundError("github", "listing", "GitHub: repository acme/w not found")
        clients["github"].list_directory.side_effect = primary
        clients["gitlab"].list_directory.side_effect = AuthRequiredError(
            "gitlab", "listing", absent=True
        )
        with pytest.raises(NotFoundError) as exc_info:
            await orchestrator.list_directory("github", "acme", "w")
        assert exc_info.value is primary

    @pytest.mark.parametrize(
        "error",
        [
            InvalidCredentialError("github", "branch"),
            AuthRequiredError("github", "branch", absent=False),
            RateLimitedError("github", "branch"),
            TransientError("github", "branch", "down"),
        ],
    )
    async def test_non_fallback_errors_raise_directly(self, orchestrator, clients, error):
        clients["github"].get_default_branch.side_effect = error
        with pytest.raises(type(error)):
            await orchestrator.get_default_branch("github", "acme", "w")
        clients["gitlab"].get_default_branch.assert_not_awaited()

    async def test_no_alternate_when_disabled(self, validator):
        only = {"github": _client("github")}
        only["github"].get_tree.side_effect = NotFoundError("github", "tree", "nope")
        orchestrator = FallbackOrchestrator(ProviderRegistry(only, validator, ProviderCaches()))
        with pytest.raises(NotFoundError):
            await orchestrator.get_tree("github", "acme", "w")


# ── ProviderRegistry / create_registry ──────────────────────────────


class TestRegistry:
    def test_alternates(self, registry):
        assert registry.alternate("github") == "gitlab"
        assert registry.alternate("gitlab") == "github"
        assert registry.alternate("bitbucket") is None

    def test_unknown_provider(self, registry):
        with pytest.raises(ValueError, match="Unsupported provider"):
            registry.get("bitbucket")

    def test_create_registry_wires_both_providers(self, sample_config):
        reg = create_registry(sample_config, session=MemoryCredentialStore())
        assert isinstance(reg.get("github"), GitHubProvider)
        assert isinstance(reg.get("gitlab"), GitLabProvider)
        assert reg.get("github").caches is reg.get("gitlab").caches
        assert reg.get("github").validator is reg.validator
        assert reg.get("gitlab").subject == "local"

    def test_disabled_provider_is_absent(self, sample_config):
        sample_config.gitlab.enabled = False
        reg = create_registry(sample_config, subject="bob", session=MemoryCredentialStore())
        assert reg.names == ["github"]
        assert reg.alternate("github") is None
        assert reg.get("github").subject == "bob"

    def test_cache_ttls_from_config(self, sample_config):
        sample_config.cache.content_ttl = 42
        reg = create_registry(sample_config, session=MemoryCredentialStore())
        assert reg.caches.content.default_ttl == 42

    async def test_session_seeded_from_env(self, sample_config):
        with patch.dict(os.environ, {"GITHUB_TOKEN": "gh-env", "GITLAB_TOKEN": ""}):
            store = session_from_env(sample_config, "alice")
        assert (await store.get("alice", "github")).token == "gh-env"
        assert await store.get("alice", "gitlab") is None

"""Explicit provider registry built once at process start."""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

import httpx

from repobridge.auth.chain import TokenSourceChain
from repobridge.auth.models import Credential
from repobridge.auth.stores import (
    CredentialStore,
    JsonFileCredentialStore,
    MemoryCredentialStore,
    SQLiteCredentialStore,
)
from repobridge.auth.validator import IdentityBackend, TokenValidator
from repobridge.cache import SingleFlight, TTLCache
from repobridge.config.models import RepoBridgeConfig
from repobridge.vcs.base import ProviderCaches, VCSProvider
from repobridge.vcs.github import GitHubIdentity, GitHubProvider
from repobridge.vcs.gitlab import GitLabAPI, GitLabIdentity, GitLabProvider
from repobridge.vcs.resolver import ResolvedPathCache

logger = logging.getLogger(__name__)

_ALTERNATES = {"github": "gitlab", "gitlab": "github"}


class ProviderRegistry:
    """One client per provider plus the state they share."""

    def __init__(
        self,
        providers: dict[str, VCSProvider],
        validator: TokenValidator,
        caches: ProviderCaches,
    ) -> None:
        self._providers = providers
        self.validator = validator
        self.caches = caches

    def get(self, name: str) -> VCSProvider:
        try:
            return self._providers[name]
        except KeyError:
            raise ValueError(
                f"Unsupported provider: {name!r}. Enabled: {', '.join(self._providers) or 'none'}"
            ) from None

    def alternate(self, name: str) -> str | None:
        other = _ALTERNATES.get(name)
        return other if other in self._providers else None

    @property
    def names(self) -> list[str]:
        return list(self._providers)

    def __contains__(self, name: str) -> bool:
        return name in self._providers


def session_from_env(config: RepoBridgeConfig, subject: str) -> MemoryCredentialStore:
    """Seed the session store from the token environment variables."""
    creds = []
    for provider, env in (("github", config.github.token_env), ("gitlab", config.gitlab.token_env)):
        token = os.environ.get(env, "")
        if token:
            logger.debug("Using %s token from $%s", provider, env)
            creds.append(Credential(provider=provider, subject=subject, token=token))
    return MemoryCredentialStore(creds)


def create_registry(
    config: RepoBridgeConfig,
    subject: str | None = None,
    session: CredentialStore | None = None,
    local: CredentialStore | None = None,
    remote: CredentialStore | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    clock: Callable[[], float] = time.monotonic,
    now: Callable[[], datetime] = lambda: datetime.now(UTC),
) -> ProviderRegistry:
    """Wire stores, validator, caches and clients from config.

    Stores default to: env-seeded session, JSON file and SQLite database
    under ``storage.base_dir``.
    """
    subject = subject or config.subject
    base = Path(config.storage.base_dir)
    if session is None:
        session = session_from_env(config, subject)
    if local is None:
        local = JsonFileCredentialStore(base / config.storage.local_tokens)
    if remote is None:
        remote = SQLiteCredentialStore(base / config.storage.credential_db)
    chain = TokenSourceChain(session=session, local=local, remote=remote)

    caches = ProviderCaches(
        content=TTLCache(config.cache.content_ttl, clock),
        tree=TTLCache(config.cache.tree_ttl, clock),
        listing=TTLCache(config.cache.listing_ttl, clock),
        branch=TTLCache(config.cache.branch_ttl, clock),
    )
    flights = SingleFlight()

    backends: dict[str, IdentityBackend] = {}
    providers: dict[str, VCSProvider] = {}
    validator = TokenValidator(
        chain,
        backends,
        freshness_window=config.tokens.freshness_window,
        validation_ttl=config.tokens.validation_ttl,
        refresh_buffer=config.tokens.refresh_buffer,
        clock=clock,
        now=now,
    )

    if config.github.enabled:
        backends["github"] = GitHubIdentity(config.github.api_url, config.timeout)
        providers["github"] = GitHubProvider(
            validator, subject, caches, flights,
            api_url=config.github.api_url, timeout=config.timeout,
        )
    if config.gitlab.enabled:
        gl = config.gitlab
        api = GitLabAPI(gl.api_url, config.timeout, gl.per_page, transport=transport)
        backends["gitlab"] = GitLabIdentity(
            api,
            oauth_url=gl.oauth_url,
            client_id=os.environ.get(gl.client_id_env, ""),
            client_secret=os.environ.get(gl.client_secret_env, ""),
            redirect_uri=gl.redirect_uri,
            now=now,
        )
        path_cache = ResolvedPathCache(
            base / config.storage.path_cache if config.storage.path_cache else None
        )
        providers["gitlab"] = GitLabProvider(
            validator, subject, caches, flights, api=api, path_cache=path_cache,
        )

    logger.debug("Registry ready: providers=%s subject=%s", list(providers), subject)
    return ProviderRegistry(providers, validator, caches)

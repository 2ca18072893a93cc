"""Token validation and refresh state machine.

Per (provider, subject) the validator moves a credential through
unknown -> valid | invalid -> refreshing -> valid | expired. Callers only
ever see a ``TokenResult``: ``Usable``, ``NeedsReauth`` or ``Transient``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Protocol

from repobridge.auth.chain import TokenSourceChain
from repobridge.auth.models import (
    Credential,
    NeedsReauth,
    TokenResult,
    TokenState,
    Transient,
    Usable,
)
from repobridge.cache import TTLCache
from repobridge.errors import (
    AccessError,
    AuthRequiredError,
    InvalidCredentialError,
    sign_in_message,
)

logger = logging.getLogger(__name__)

Key = tuple[str, str]


class IdentityBackend(Protocol):
    """Provider-specific identity check and refresh."""

    provider: str

    async def whoami(self, token: str) -> str:
        """Return the username for ``token``.

        Raises InvalidCredentialError on 401/403, TransientError on network
        or server failure.
        """
        ...

    async def refresh(self, credential: Credential) -> Credential | None:
        """Return a renewed credential, or None when renewal is impossible."""
        ...


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TokenValidator:
    def __init__(
        self,
        chain: TokenSourceChain,
        backends: dict[str, IdentityBackend],
        freshness_window: float = 600.0,
        validation_ttl: float = 300.0,
        refresh_buffer: float = 900.0,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.chain = chain
        self.backends = backends
        self.freshness_window = timedelta(seconds=freshness_window)
        self.refresh_buffer = timedelta(seconds=refresh_buffer)
        self._now = now
        self._validated: TTLCache[Usable] = TTLCache(validation_ttl, clock)
        self._states: dict[Key, TokenState] = {}
        self._expired_tokens: dict[Key, str] = {}
        self._force_check: set[Key] = set()
        self._refreshes: dict[Key, asyncio.Task] = {}

    def state(self, provider: str, subject: str) -> TokenState:
        return self._states.get((provider, subject), TokenState.unknown)

    async def get_usable(self, provider: str, subject: str) -> TokenResult:
        key = (provider, subject)
        cached = self._validated.get(key)
        if cached is not None:
            return cached

        try:
            cred = await self.chain.acquire(provider, subject)
        except Exception as e:
            logger.warning("Credential lookup for %s failed: %s", provider, e)
            return Transient(reason=f"credential store unavailable: {e}")

        if cred is None:
            self._states[key] = TokenState.unknown
            return NeedsReauth(absent=True, reason=sign_in_message(provider, absent=True))
        if self._expired_tokens.get(key) == cred.token:
            return NeedsReauth(absent=False, reason=sign_in_message(provider, absent=False))

        now = self._now()
        refreshed = False
        if cred.refresh_token and cred.expires_within(self.refresh_buffer, now):
            live = cred.expires_at > now
            logger.info("%s token for %s expires soon, refreshing", provider, subject)
            result = await self._refresh(key, cred, keep_current=live)
            if result is not None:
                return result
            # Refresh failed but the access token has not expired yet.
            refreshed = True

        if key not in self._force_check and cred.validated_within(self.freshness_window, now):
            return self._accept(key, cred)

        return await self._check_identity(key, cred, may_refresh=not refreshed)

    async def _check_identity(
        self, key: Key, cred: Credential, may_refresh: bool = True
    ) -> TokenResult:
        provider, subject = key
        self._force_check.discard(key)
        try:
            username = await self.backends[provider].whoami(cred.token)
        except (InvalidCredentialError, AuthRequiredError):
            logger.info("%s token for %s failed identity check", provider, subject)
            self._enter(key, TokenState.invalid)
            if not may_refresh:
                return await self._expire(key, cred)
            result = await self._refresh(key, cred)
            if result is None:
                return Transient(reason=f"{provider} token refresh did not complete")
            return result
        except AccessError as e:
            return Transient(reason=str(e))

        validated = cred.with_updates(
            is_valid=True, last_validated_at=self._now(), username=username
        )
        await self._persist(validated)
        return self._accept(key, validated)

    async def _refresh(
        self, key: Key, cred: Credential, keep_current: bool = False
    ) -> TokenResult | None:
        """Run or join the refresh for ``key``.

        With ``keep_current`` a failed refresh returns None and leaves the
        current credential untouched.
        """
        # The refresh task belongs to the validator: a caller giving up must
        # not cancel it for everyone else waiting on the same credential.
        task = self._refreshes.get(key)
        if task is None:
            task = asyncio.ensure_future(self._do_refresh(key, cred, keep_current))
            self._refreshes[key] = task
            task.add_done_callback(lambda t, k=key: self._refresh_done(k, t))
        return await asyncio.shield(task)

    def _refresh_done(self, key: Key, task: asyncio.Task) -> None:
        if self._refreshes.get(key) is task:
            del self._refreshes[key]

    async def _do_refresh(
        self, key: Key, cred: Credential, keep_current: bool = False
    ) -> TokenResult | None:
        provider, subject = key
        previous = self.state(provider, subject)
        self._enter(key, TokenState.refreshing)
        try:
            renewed = await self.backends[provider].refresh(cred)
        except AccessError as e:
            logger.warning("%s token refresh for %s did not complete: %s", provider, subject, e)
            if keep_current:
                self._states[key] = previous
                return None
            self._enter(key, TokenState.invalid)
            return Transient(reason=str(e))

        if renewed is None:
            if keep_current:
                logger.warning(
                    "%s refused to refresh the token for %s; using it until it expires",
                    provider, subject,
                )
                self._states[key] = previous
                return None
            return await self._expire(key, cred)

        renewed = renewed.with_updates(
            provider=provider,
            subject=subject,
            is_valid=True,
            last_validated_at=self._now(),
            username=renewed.username or cred.username,
        )
        await self._persist(renewed)
        logger.info("%s token for %s refreshed", provider, subject)
        return self._accept(key, renewed)

    async def _expire(self, key: Key, cred: Credential) -> NeedsReauth:
        provider, subject = key
        self._enter(key, TokenState.expired)
        self._expired_tokens[key] = cred.token
        try:
            await self.chain.invalidate(provider, subject)
        except Exception:
            logger.exception("Could not mark %s credential invalid for %s", provider, subject)
        logger.info("%s token for %s expired; sign-in required", provider, subject)
        return NeedsReauth(absent=False, reason=sign_in_message(provider, absent=False))

    def _accept(self, key: Key, cred: Credential) -> Usable:
        self._states[key] = TokenState.valid
        self._expired_tokens.pop(key, None)
        result = Usable(token=cred.token, username=cred.username)
        self._validated.put(key, result)
        return result

    def _enter(self, key: Key, state: TokenState) -> None:
        self._states[key] = state
        if state in (TokenState.invalid, TokenState.expired):
            self._validated.invalidate(key)

    async def _persist(self, cred: Credential) -> None:
        try:
            await self.chain.store(cred)
        except Exception:
            logger.exception("Could not persist %s credential for %s", cred.provider, cred.subject)

    async def report_rejected(self, provider: str, subject: str) -> None:
        """A content call got 401/403 with a token we called usable."""
        key = (provider, subject)
        self._enter(key, TokenState.invalid)
        self._force_check.add(key)

    async def sign_in(self, credential: Credential) -> None:
        """Record a credential obtained from an external sign-in."""
        key = (credential.provider, credential.subject)
        self._expired_tokens.pop(key, None)
        self._force_check.discard(key)
        self._validated.invalidate(key)
        self._states[key] = TokenState.unknown
        await self.chain.store(credential)

    def invalidate(self, provider: str, subject: str) -> None:
        self._validated.invalidate((provider, subject))

"""Failure taxonomy for the repository access layer.

Every failure that leaves a provider client or the token validator is one of
these classes. Raw transport exceptions are chained via ``__cause__`` and
never escape on their own.
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from datetime import UTC, datetime

PROVIDER_DISPLAY_NAMES = {"github": "GitHub", "gitlab": "GitLab"}


def display_name(provider: str) -> str:
    return PROVIDER_DISPLAY_NAMES.get(provider, provider.capitalize())


class AccessError(Exception):
    """Base class; also used directly for unclassified ("Unknown") failures."""

    kind = "unknown"

    def __init__(
        self,
        provider: str,
        operation: str,
        message: str,
        status: int | None = None,
    ) -> None:
        self.provider = provider
        self.operation = operation
        self.status = status
        super().__init__(message)


class NotFoundError(AccessError):
    """Resource absent under this provider."""

    kind = "not_found"


class AuthRequiredError(AccessError):
    """No usable credential.

    ``absent`` is True when no credential exists at all; only that case is
    eligible for cross-provider fallback.
    """

    kind = "auth_required"

    def __init__(
        self,
        provider: str,
        operation: str,
        message: str | None = None,
        absent: bool = True,
        status: int | None = None,
    ) -> None:
        self.absent = absent
        if message is None:
            message = sign_in_message(provider, absent)
        super().__init__(provider, operation, message, status)


class InvalidCredentialError(AccessError):
    """Credential present but rejected by the provider."""

    kind = "invalid_credential"

    def __init__(
        self, provider: str, operation: str, message: str | None = None, status: int | None = None
    ) -> None:
        if message is None:
            message = (
                f"{display_name(provider)} rejected the stored token. "
                f"Sign in with {display_name(provider)} again."
            )
        super().__init__(provider, operation, message, status)


class RateLimitedError(AccessError):
    """Provider rate limit hit; carries the reset time when known."""

    kind = "rate_limited"

    def __init__(
        self,
        provider: str,
        operation: str,
        reset_at: datetime | None = None,
        status: int | None = None,
    ) -> None:
        self.reset_at = reset_at
        super().__init__(provider, operation, rate_limit_message(provider, reset_at), status)


class TransientError(AccessError):
    """Network failure or 5xx; safe to retry with backoff."""

    kind = "transient"


def sign_in_message(provider: str, absent: bool = True) -> str:
    name = display_name(provider)
    if absent:
        return f"No {name} token available. Sign in with {name} to continue."
    return f"Your {name} session has expired. Sign in with {name} again."


def rate_limit_message(provider: str, reset_at: datetime | None) -> str:
    name = display_name(provider)
    if reset_at is None:
        return f"{name} API rate limit exceeded. Try again later."
    minutes = max(0, int((reset_at - datetime.now(UTC)).total_seconds() + 59) // 60)
    plural = "" if minutes == 1 else "s"
    return (
        f"{name} API rate limit exceeded. Resets at {reset_at:%H:%M:%S} UTC "
        f"(in {minutes} minute{plural})."
    )


def _header(headers: Mapping[str, str] | None, name: str) -> str | None:
    if not headers:
        return None
    lowered = {k.lower(): v for k, v in headers.items()}
    return lowered.get(name.lower())


def parse_reset_time(headers: Mapping[str, str] | None) -> datetime | None:
    """Extract a rate-limit reset time from GitHub or GitLab style headers."""
    for name in ("X-RateLimit-Reset", "RateLimit-Reset"):
        value = _header(headers, name)
        if value and value.isdigit():
            return datetime.fromtimestamp(int(value), UTC)
    retry_after = _header(headers, "Retry-After")
    if retry_after and retry_after.isdigit():
        return datetime.fromtimestamp(time.time() + int(retry_after), UTC)
    return None


def _is_rate_limited(status: int, headers: Mapping[str, str] | None) -> bool:
    if status == 429:
        return True
    if status != 403:
        return False
    for name in ("X-RateLimit-Remaining", "RateLimit-Remaining"):
        if _header(headers, name) == "0":
            return True
    return _header(headers, "Retry-After") is not None


def classify_status(
    provider: str,
    operation: str,
    status: int,
    headers: Mapping[str, str] | None = None,
    had_token: bool = True,
    detail: str = "",
) -> AccessError:
    """Map an HTTP failure onto the taxonomy. Returns, does not raise."""
    if status == 404:
        what = f" {detail}" if detail else ""
        return NotFoundError(
            provider,
            operation,
            f"{display_name(provider)}:{what} not found or not accessible.",
            status,
        )
    if _is_rate_limited(status, headers):
        return RateLimitedError(provider, operation, parse_reset_time(headers), status)
    if status in (401, 403):
        if had_token:
            return InvalidCredentialError(provider, operation, status=status)
        return AuthRequiredError(provider, operation, absent=True, status=status)
    if status >= 500:
        return TransientError(
            provider,
            operation,
            f"{display_name(provider)} server error {status}; try again shortly.",
            status,
        )
    return AccessError(
        provider,
        operation,
        f"{display_name(provider)} {operation} failed with HTTP {status}.",
        status,
    )

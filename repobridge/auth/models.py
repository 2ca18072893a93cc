"""Credential and token-lifecycle models."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


class TokenState(str, Enum):
    unknown = "unknown"
    valid = "valid"
    invalid = "invalid"
    refreshing = "refreshing"
    expired = "expired"


class Credential(BaseModel):
    """A provider token bound to a subject.

    ``is_valid`` and ``expires_at`` are hints; a 401 may still arrive later.
    """

    provider: str
    subject: str
    token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    is_valid: bool = True
    last_validated_at: datetime | None = None
    username: str | None = None

    @field_validator("expires_at", "last_validated_at")
    @classmethod
    def _ensure_timezone(cls, value: datetime | None) -> datetime | None:
        if value is None or value.tzinfo is not None:
            return value
        return value.replace(tzinfo=UTC)

    def validated_within(self, window: timedelta, now: datetime) -> bool:
        if not self.is_valid or self.last_validated_at is None:
            return False
        return now - self.last_validated_at < window

    def expires_within(self, buffer: timedelta, now: datetime) -> bool:
        if self.expires_at is None:
            return False
        return now + buffer >= self.expires_at

    def with_updates(self, **changes: Any) -> Credential:
        return self.model_copy(update=changes)

    def __repr__(self) -> str:
        return (
            f"Credential(provider={self.provider!r}, subject={self.subject!r}, "
            f"token=<{len(self.token)} chars>, is_valid={self.is_valid})"
        )

    __str__ = __repr__


class Usable(BaseModel):
    kind: Literal["usable"] = "usable"
    token: str
    username: str | None = None


class NeedsReauth(BaseModel):
    """No usable credential; ``absent`` distinguishes "never signed in"."""

    kind: Literal["needs_reauth"] = "needs_reauth"
    absent: bool = False
    reason: str = ""


class Transient(BaseModel):
    """Validation could not complete; retry with backoff."""

    kind: Literal["transient"] = "transient"
    reason: str = ""


TokenResult = Usable | NeedsReauth | Transient


class RefreshGrant(BaseModel):
    """Token endpoint response for a refresh-token exchange."""

    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = Field(default=None, ge=0)

"""Credential acquisition, validation and refresh."""

from repobridge.auth.chain import TokenSourceChain
from repobridge.auth.models import (
    Credential,
    NeedsReauth,
    RefreshGrant,
    TokenResult,
    TokenState,
    Transient,
    Usable,
)
from repobridge.auth.stores import (
    CredentialStore,
    JsonFileCredentialStore,
    MemoryCredentialStore,
    SQLiteCredentialStore,
)
from repobridge.auth.validator import IdentityBackend, TokenValidator

__all__ = [
    "Credential",
    "CredentialStore",
    "IdentityBackend",
    "JsonFileCredentialStore",
    "MemoryCredentialStore",
    "NeedsReauth",
    "RefreshGrant",
    "SQLiteCredentialStore",
    "TokenResult",
    "TokenSourceChain",
    "TokenState",
    "TokenValidator",
    "Transient",
    "Usable",
]

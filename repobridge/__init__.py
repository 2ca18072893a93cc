"""repobridge - GitHub/GitLab repository access with managed tokens and fallback."""

from repobridge.auth import Credential, TokenSourceChain, TokenValidator
from repobridge.cache import SingleFlight, TTLCache
from repobridge.config import RepoBridgeConfig, load_config
from repobridge.errors import (
    AccessError,
    AuthRequiredError,
    InvalidCredentialError,
    NotFoundError,
    RateLimitedError,
    TransientError,
)
from repobridge.vcs import (
    FallbackOrchestrator,
    ProviderRegistry,
    VCSProvider,
    build_tree,
    create_registry,
)

__version__ = "0.1.0"

__all__ = [
    "AccessError",
    "AuthRequiredError",
    "Credential",
    "FallbackOrchestrator",
    "InvalidCredentialError",
    "NotFoundError",
    "ProviderRegistry",
    "RateLimitedError",
    "RepoBridgeConfig",
    "SingleFlight",
    "TTLCache",
    "TokenSourceChain",
    "TokenValidator",
    "TransientError",
    "VCSProvider",
    "build_tree",
    "create_registry",
    "load_config",
]

from .loader import load_config
from .models import (
    CacheSettings,
    GitHubSettings,
    GitLabSettings,
    RepoBridgeConfig,
    StorageSettings,
    TokenSettings,
)

__all__ = [
    "CacheSettings",
    "GitHubSettings",
    "GitLabSettings",
    "RepoBridgeConfig",
    "StorageSettings",
    "TokenSettings",
    "load_config",
]

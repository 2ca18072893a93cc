"""Locating, reading and validating repobridge.yaml."""

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .models import RepoBridgeConfig

_ENV_REF = re.compile(r"\$\{(\w+)(?::-([^}]*))?\}")


def config_search_paths() -> list[Path]:
    """Project-local file first, then the user-global one."""
    return [Path("repobridge.yaml"), Path.home() / ".repobridge" / "config.yaml"]


def _read_yaml(path: Path) -> dict[str, Any] | None:
    try:
        raw = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ValueError(f"Invalid config in {path}: expected a mapping at the top level")
    return _expand_env_vars(raw)


def load_config(cli_path: str | None = None) -> RepoBridgeConfig:
    """Load the first non-empty config file, or defaults if there is none.

    An explicit ``cli_path`` must exist; it is never silently skipped.
    """
    if cli_path:
        explicit = Path(cli_path)
        if not explicit.is_file():
            raise FileNotFoundError(f"Config file not found: {explicit}")
        candidates = [explicit]
    else:
        candidates = config_search_paths()

    for path in candidates:
        if not path.is_file():
            continue
        raw = _read_yaml(path)
        if raw is None:
            continue
        try:
            return RepoBridgeConfig.model_validate(raw)
        except ValidationError as e:
            raise ValueError(f"Invalid config in {path}: {e}") from e

    return RepoBridgeConfig()


def _expand_env_vars(obj: Any) -> Any:
    """Replace ``${VAR}`` and ``${VAR:-default}`` in every string value."""
    if isinstance(obj, str):
        return _ENV_REF.sub(lambda m: os.environ.get(m.group(1), m.group(2) or ""), obj)
    if isinstance(obj, dict):
        return {key: _expand_env_vars(value) for key, value in obj.items()}
    if isinstance(obj, list):
        return [_expand_env_vars(item) for item in obj]
    return obj


# Default YAML template for `repobridge config init`
DEFAULT_CONFIG_TEMPLATE = """\
# repobridge.yaml

# Whose tokens are used; the key into the credential stores
subject: "local"

github:
  enabled: true
  api_url: "https://api.github.com"
  token_env: "GITHUB_TOKEN"

gitlab:
  enabled: true
  api_url: "https://gitlab.com/api/v4"   # self-hosted: https://gitlab.example.com/api/v4
  oauth_url: "https://gitlab.com"
  token_env: "GITLAB_TOKEN"
  client_id_env: "GITLAB_CLIENT_ID"
  client_secret_env: "GITLAB_CLIENT_SECRET"
  # redirect_uri: "https://app.example.com/api/auth/callback/gitlab"
  per_page: 100

# Read-through cache lifetimes (seconds)
cache:
  content_ttl: 300
  tree_ttl: 300
  listing_ttl: 300
  branch_ttl: 300

# Token lifecycle (seconds)
tokens:
  freshness_window: 600     # skip identity re-check if validated this recently
  validation_ttl: 300       # in-memory "known good" cache
  refresh_buffer: 900       # refresh tokens expiring this soon

storage:
  base_dir: ".repobridge"
  local_tokens: "tokens.json"
  credential_db: "credentials.db"
  path_cache: "gitlab-paths.json"

timeout: 30
max_retries: 3
retry_delay: 1.0

# Logging
log_level: "info"              # debug | info | warn | error
log_format: "text"             # text | json
"""

from pydantic import BaseModel, Field
from typing import Literal


class GitHubSettings(BaseModel):
    enabled: bool = True
    api_url: str = "https://api.github.com"
    token_env: str = "GITHUB_TOKEN"


class GitLabSettings(BaseModel):
    enabled: bool = True
    api_url: str = "https://gitlab.com/api/v4"
    oauth_url: str = "https://gitlab.com"
    token_env: str = "GITLAB_TOKEN"
    client_id_env: str = "GITLAB_CLIENT_ID"
    client_secret_env: str = "GITLAB_CLIENT_SECRET"
    redirect_uri: str | None = None
    per_page: int = Field(default=100, gt=0, le=100)


class CacheSettings(BaseModel):
    content_ttl: float = Field(default=300.0, gt=0)
    tree_ttl: float = Field(default=300.0, gt=0)
    listing_ttl: float = Field(default=300.0, gt=0)
    branch_ttl: float = Field(default=300.0, gt=0)


class TokenSettings(BaseModel):
    freshness_window: float = Field(default=600.0, ge=0)
    validation_ttl: float = Field(default=300.0, gt=0)
    refresh_buffer: float = Field(default=900.0, ge=0)


class StorageSettings(BaseModel):
    base_dir: str = ".repobridge"
    local_tokens: str = "tokens.json"
    credential_db: str = "credentials.db"
    path_cache: str | None = "gitlab-paths.json"


class RepoBridgeConfig(BaseModel):
    github: GitHubSettings = Field(default_factory=GitHubSettings)
    gitlab: GitLabSettings = Field(default_factory=GitLabSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    tokens: TokenSettings = Field(default_factory=TokenSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    subject: str = "local"
    timeout: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=3, ge=0)
    retry_delay: float = Field(default=1.0, gt=0)
    log_level: Literal["debug", "info", "warn", "error"] = "info"
    log_format: Literal["text", "json"] = "text"

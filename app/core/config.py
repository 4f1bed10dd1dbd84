from __future__ import annotations

from datetime import timedelta

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # MongoDB
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db: str = "bookmarks"
    mongo_max_pool_size: int = 10

    # Scheduler
    update_interval: timedelta = timedelta(hours=24)
    jitter_percent: int = Field(default=20, ge=0, le=100)
    batch_size: int = Field(default=50, ge=1)
    worker_concurrency: int = Field(default=3, ge=1)
    failure_threshold: int = Field(default=3, ge=1)
    repo_not_found_threshold: int = Field(default=1, ge=1)
    shutdown_grace: float = 30.0
    scheduler_enabled: bool = True

    # Repository provider
    repo_api_token: str | None = None
    repo_api_url: str = "https://api.github.com"

    # HTTP fetcher
    fetch_timeout: float = 10.0
    http_max_retries: int = 2
    http_verify_ssl: bool = True  # set False behind corporate SSL-inspection proxies
    max_redirects: int = Field(default=10, ge=0)
    max_content_bytes: int = Field(default=5 * 1024 * 1024, ge=1)
    allow_private_hosts: bool = False
    user_agent: str = "BookmarkEnricher/1.0 (+metadata enrichment)"

    # Extraction
    probe_favicon: bool = True
    description_max_length: int = Field(default=300, ge=1)
    secondary_language_ratio: float = Field(default=0.5, ge=0.0, le=1.0)

    # Logging
    log_level: str = "INFO"


settings = Settings()

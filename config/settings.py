"""Configuration management using pydantic-settings."""
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Client settings loaded from environment variables."""

    # Backend API
    api_base_url: str = "http://localhost:3002/api/v1"

    # "storage": tokens live in the local credential store
    # "cookie": the server sets and rotates tokens as cookies
    auth_mode: Literal["storage", "cookie"] = "storage"

    # Timeouts (seconds)
    request_timeout_seconds: float = 30.0
    refresh_timeout_seconds: float = 10.0

    # Read cache
    cache_ttl_seconds: float = 60.0

    # Retry policy
    max_retries: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 10.0

    # Refresh the access token this long before it expires
    token_refresh_threshold_seconds: float = 60.0

    # Local persistence
    storage_path: Path = Path("./data/vocab_client.db")
    kv_quota_bytes: int = 5 * 1024 * 1024

    class Config:
        env_prefix = "VOCAB_"
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()

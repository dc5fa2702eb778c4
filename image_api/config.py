"""
Configuration and settings for the image API.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000)
    log_level: str = Field(default="INFO")

    # Dashboard origin, used for CORS and post-login redirects
    client_url: str = Field(default="http://localhost:5173")
    google_callback_url: str = Field(
        default="http://localhost:3000/api/auth/google/callback"
    )

    # Google Cloud
    gcp_project_id: Optional[str] = Field(default=None)
    gcs_bucket_name: Optional[str] = Field(default=None)

    # Secret fallbacks when Secret Manager is not configured
    google_client_id: Optional[str] = Field(default=None)
    google_client_secret: Optional[str] = Field(default=None)
    session_secret: Optional[str] = Field(default=None)

    # Session cookie
    session_cookie_name: str = Field(default="image_api_session")
    session_max_age_seconds: int = Field(default=14 * 24 * 3600)
    cookie_secure: bool = Field(default=False)

    # Uploads and listing
    max_upload_bytes: int = Field(default=5 * 1024 * 1024)
    signed_url_ttl_seconds: int = Field(default=15 * 60)

    # Processing handshake
    processing_notify_delay_seconds: float = Field(default=5.0)
    wait_for_thumbnail: bool = Field(default=False)
    thumbnail_poll_interval_seconds: float = Field(default=1.0)
    thumbnail_timeout_seconds: float = Field(default=60.0)

    # Database (Postgres expected, any SQLAlchemy URL works)
    database_url: Optional[str] = Field(default=None)

    # Redis pub/sub for notifications across instances
    redis_url: Optional[str] = Field(default=None)
    redis_channel: str = Field(default="image_api:notifications")

    # Development toggles
    use_in_memory_backends: bool = Field(default=False)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()

"""
Application settings using Pydantic.

Provides environment-based configuration loading with STAGECRAFT_ prefix.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="STAGECRAFT_",
        extra="ignore",
    )

    # Scheduling
    max_concurrency: int = 10
    backend_call_timeout: float = 120.0

    # Readiness polling (fixed interval, seconds)
    poll_interval_seconds: float = 5.0
    default_ready_timeout: float = 300.0
    cluster_ready_timeout: float = 1200.0
    crd_established_timeout: float = 120.0
    certificate_ready_timeout: float = 600.0

    # Deletion
    deletion_timeout: float = 300.0
    finalizer_recovery_timeout: float = 120.0

    # State
    state_path: str = "stagecraft.state.json"

    # Cloud provider bridge
    cloud_api_url: str = "http://localhost:8080"
    cloud_api_token: str | None = None

    # HTTP client settings
    http_timeout: float = 30.0
    http_max_retries: int = 3
    http_retry_backoff_factor: float = 2.0

    # Debug
    debug: bool = False


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

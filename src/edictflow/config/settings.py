"""
Application settings using Pydantic.

Provides environment-based configuration loading with EDICTFLOW_ prefix.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="EDICTFLOW_",
    )

    # Database
    database_url: str = "postgresql+psycopg://localhost/edictflow"
    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_pool_recycle: int = 1800

    # Debug
    debug: bool = False

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    # Environment
    environment: str = "development"

    # API
    api_prefix: str = "/api/v1"
    cors_origins: list[str] = []

    # Event fan-out
    event_backend: str = "memory"  # memory, redis
    redis_url: str = "redis://localhost:6379/0"
    redis_max_connections: int = 10
    event_publish_max_retries: int = 3

    # Approval quorum defaults, used when no approval config row matches
    required_approvals_organization: int = Field(default=2, ge=1)
    required_approvals_team: int = Field(default=1, ge=1)
    required_approvals_project: int = Field(default=1, ge=1)

    # Enforcement
    default_temporary_timeout_hours: int = Field(default=24, ge=1, le=168)

    # Deadline sweeper
    sweeper_enabled: bool = True
    sweeper_interval_seconds: float = Field(default=30.0, gt=0)
    sweeper_batch_size: int = Field(default=100, ge=1)

    def required_approvals_for(self, layer: str) -> int:
        """Default quorum size for a target layer."""
        return {
            "organization": self.required_approvals_organization,
            "team": self.required_approvals_team,
            "project": self.required_approvals_project,
        }[layer]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

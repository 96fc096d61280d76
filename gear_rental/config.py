"""Centralized application configuration using Pydantic settings."""
from functools import lru_cache
from typing import List, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-driven configuration shared by the rental core and services."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    database_url: str = Field(
        default="sqlite:///./gear_rental.db",
        description="SQLAlchemy database URL. Defaults to local SQLite for development.",
    )
    run_db_migrations: bool = Field(
        default=False,
        description="Whether this service should create/update database tables on startup.",
    )
    db_lock_timeout: float = Field(
        default=30.0,
        description="Seconds a SQLite connection waits for a concurrent writer before failing.",
    )
    cors_origins: List[str] = Field(default_factory=lambda: ["*"], description="Allowed CORS origins")
    default_rate_limit: str = Field(default="30/minute", description="Global rate limiting rule")
    rate_limiting_enabled: bool = Field(default=True, description="Toggle to disable SlowAPI limits (useful in tests)")

    event_sink: Literal["log", "rabbitmq", "none"] = Field(
        default="log", description="Where audit events are delivered"
    )
    rabbitmq_host: str = Field(default="rabbitmq", description="Broker host for the rabbitmq event sink")
    rabbitmq_queue: str = Field(default="rental_events", description="Durable queue receiving audit events")
    event_sink_failure_threshold: int = Field(default=5, description="Broker failures before the circuit opens")
    event_sink_recovery_timeout: int = Field(default=60, description="Seconds before a half-open broker retry")

    item_code_width: int = Field(default=3, ge=1, description="Zero padding of serialized item codes")
    log_dir: str = Field(default="logs", description="Directory for per-service access logs")
    metrics_enabled: bool = Field(default=True, description="Expose Prometheus metrics on /metrics")

    rentals_service_port: int = 8011
    equipment_service_port: int = 8012


@lru_cache
def get_settings() -> Settings:
    """Return a cached instance of the Settings object."""

    return Settings()


def reset_settings_cache() -> None:
    """Clear the cached Settings instance (useful for tests)."""

    get_settings.cache_clear()

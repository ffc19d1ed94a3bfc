"""Centralized application configuration using Pydantic settings."""
from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-driven configuration shared across the housing services."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    database_url: str = Field(
        default="sqlite:///./housing.db",
        description="SQLAlchemy database URL. Defaults to local SQLite for development.",
    )
    run_db_migrations: bool = Field(
        default=False,
        description="Whether this service should create/update database tables on startup.",
    )
    sqlite_busy_timeout: float = Field(default=15.0, description="Seconds SQLite waits on a locked database")
    jwt_secret: str = Field(default="super-secret", description="JWT signing secret")
    jwt_algorithm: str = Field(default="HS256", description="JWT signing algorithm")
    access_token_expire_minutes: int = Field(default=60 * 24, description="Token lifetime in minutes")
    cors_origins: List[str] = Field(default_factory=lambda: ["*"], description="Allowed CORS origins")
    default_rate_limit: str = Field(default="60/minute", description="Global rate limiting rule")
    rate_limiting_enabled: bool = Field(default=True, description="Toggle to disable SlowAPI limits (useful in tests)")
    room_cache_ttl: int = Field(default=60, description="TTL (s) for cached room occupancy summaries")

    notifications_enabled: bool = Field(default=True, description="Publish assignment events to RabbitMQ")
    rabbitmq_host: str = Field(default="rabbitmq", description="RabbitMQ host for housing events")
    notification_queue: str = Field(default="housing-notifications", description="Durable queue for housing events")

    log_dir: str = Field(default="logs", description="Directory for per-service audit logs")

    users_service_port: int = 8001
    rooms_service_port: int = 8002
    students_service_port: int = 8003
    applications_service_port: int = 8004
    maintenance_service_port: int = 8005
    announcements_service_port: int = 8006
    billing_service_port: int = 8007
    analytics_service_port: int = 8008


@lru_cache
def get_settings() -> Settings:
    """Return a cached instance of the Settings object."""

    return Settings()


def reset_settings_cache() -> None:
    """Clear the cached Settings instance (useful for tests)."""

    get_settings.cache_clear()

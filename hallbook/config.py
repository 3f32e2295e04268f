"""Centralized application configuration using Pydantic settings."""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-driven configuration shared across services."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    database_url: str = Field(
        default="sqlite:///./hallbook.db",
        description="SQLAlchemy database URL. Defaults to local SQLite for development.",
    )
    run_db_migrations: bool = Field(
        default=False,
        description="Whether this service should create/update database tables on startup.",
    )
    jwt_secret: str = Field(default="super-secret", description="JWT signing secret")
    jwt_algorithm: str = Field(default="HS256", description="JWT signing algorithm")
    access_token_expire_minutes: int = Field(default=60, description="Session lifetime in minutes")
    service_api_key: str = Field(default="service-key", description="API key for scheduler/service calls")
    cors_origins: List[str] = Field(default_factory=lambda: ["*"], description="Allowed CORS origins")
    default_rate_limit: str = Field(default="30/minute", description="Global rate limiting rule")
    rate_limiting_enabled: bool = Field(default=True, description="Toggle to disable SlowAPI limits (useful in tests)")
    audit_log_dir: str = Field(default="logs", description="Directory for per-service audit logs")

    timezone: str = Field(default="UTC", description="Campus time zone used for booking dates")
    opening_time: str = Field(default="06:00", description="Earliest bookable start time (HH:MM)")
    closing_time: str = Field(default="23:00", description="Latest bookable end time (HH:MM)")
    min_booking_minutes: int = Field(default=30, description="Shortest allowed booking")
    booking_buffer_minutes: int = Field(default=0, description="Gap enforced around bookings when checking overlap")
    user_bookings_limit: int = Field(default=50, description="Default size of a user's booking history page")

    hall_cache_ttl: int = Field(default=60, description="TTL (s) for cached hall status results")
    profile_lookup_attempts: int = Field(default=3, description="Attempts to load a profile row after sign-in")
    profile_lookup_backoff_seconds: float = Field(default=1.0, description="Initial backoff between profile lookups")
    read_retry_attempts: int = Field(default=3, description="Attempts for idempotent reads hitting store timeouts")
    read_retry_backoff_seconds: float = Field(default=0.2, description="Initial backoff between read retries")

    recent_notifications_limit: int = Field(default=20, description="Notifications sent in a stream snapshot")
    sse_heartbeat_seconds: float = Field(default=15.0, description="Idle interval before a heartbeat event")
    sse_poll_seconds: float = Field(default=2.0, description="How often a stream checks the database for notifications stored by other services")
    push_webhook_url: Optional[str] = Field(default=None, description="Push gateway endpoint; unset logs only")
    email_webhook_url: Optional[str] = Field(default=None, description="Email gateway endpoint; unset logs only")
    transport_timeout_seconds: float = Field(default=5.0, description="Timeout for push/email gateway calls")

    event_relay_enabled: bool = Field(default=False, description="Mirror domain events to RabbitMQ")
    rabbitmq_host: str = Field(default="rabbitmq", description="RabbitMQ host for the event relay")
    rabbitmq_queue: str = Field(default="hall_events", description="Durable queue receiving domain events")

    users_service_port: int = 8001
    halls_service_port: int = 8002
    bookings_service_port: int = 8003
    notifications_service_port: int = 8004


@lru_cache
def get_settings() -> Settings:
    """Return a cached instance of the Settings object."""

    return Settings()


def reset_settings_cache() -> None:
    """Clear the cached Settings instance (useful for tests)."""

    get_settings.cache_clear()

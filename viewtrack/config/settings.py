"""
Product View Analytics
Centralized Configuration Management

Pydantic settings for the view tracking pipeline: storage, Redis, ingest
policy (rate limits, dedup window, handle lifetime), aggregation cadence and
notifier behaviour. Every section reads its own environment prefix.
"""

from functools import lru_cache
from typing import Optional, List
from pydantic import Field, field_validator, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """PostgreSQL Database Configuration"""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_")

    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    db: str = Field(default="view_analytics", alias="database", description="Database name")
    user: str = Field(default="viewtrack", description="Database user")
    password: SecretStr = Field(default="secure_password", description="Database password")
    echo: bool = Field(default=False, description="Echo SQL queries")
    url: Optional[str] = Field(default=None, description="Full async URL (overrides host/port)")

    # Store deadlines
    read_timeout_seconds: float = Field(default=2.0, description="Hard deadline for reads")
    write_timeout_seconds: float = Field(default=5.0, description="Hard deadline for writes")

    @property
    def async_url(self) -> str:
        """Async database URL for asyncpg"""
        if self.url:
            return self.url
        return f"postgresql+asyncpg://{self.user}:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"


class RedisSettings(BaseSettings):
    """Redis Configuration (dedup map, caches, notifier relay)"""

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    host: str = Field(default="localhost", description="Redis host")
    port: int = Field(default=6379, description="Redis port")
    password: Optional[SecretStr] = Field(default=None, description="Redis password")
    db: int = Field(default=0, description="Redis database number")
    max_connections: int = Field(default=100, description="Max connections")
    socket_timeout: int = Field(default=5, description="Socket timeout in seconds")
    decode_responses: bool = Field(default=True, description="Decode responses to strings")
    url: Optional[str] = Field(default=None, alias="REDIS_URL", description="Redis URL (overrides host/port)")

    def get_url(self) -> str:
        """Redis connection URL - uses REDIS_URL if set, otherwise builds from host/port"""
        if self.url:
            return self.url
        if self.password:
            return f"redis://:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"


class TrackingSettings(BaseSettings):
    """View ingest policy"""

    model_config = SettingsConfigDict(env_prefix="TRACKING_")

    # Token bucket per viewer identity
    rate_per_minute: int = Field(default=30, description="Sustained view starts per minute")
    burst: int = Field(default=10, description="Token bucket capacity")

    handle_ttl_seconds: int = Field(default=3600, description="View handle lifetime")
    max_duration_seconds: float = Field(default=3600.0, description="Upper clamp for durations")
    dedup_window_hours: int = Field(default=24, description="Unique-view window")
    fingerprint_salt_rotation_hours: int = Field(default=24, description="Anonymous salt rotation")
    authenticated_only_uniqueness: bool = Field(
        default=False,
        description="Only authenticated viewers can produce unique views",
    )
    exclude_bots: bool = Field(default=True, description="Drop crawler traffic at ingress")

    # Backpressure and retries
    ingest_queue_shed_threshold: int = Field(default=1000, description="Queue depth before shedding")
    retry_attempts: int = Field(default=3, description="Retries for transient store errors")
    retry_base_delay_seconds: float = Field(default=1.0, description="First backoff delay")


class AggregationSettings(BaseSettings):
    """Rollup maintenance"""

    model_config = SettingsConfigDict(env_prefix="AGGREGATION_")

    reconcile_interval_seconds: int = Field(default=3600, description="Reconciliation sweep period")
    seal_after_hours: int = Field(default=48, description="Age after which a day is immutable")
    enable_background_tasks: bool = Field(default=True, description="Run workers in the API process")


class NotifierSettings(BaseSettings):
    """Topic pub/sub"""

    model_config = SettingsConfigDict(env_prefix="NOTIFIER_")

    topic_gc_seconds: float = Field(default=60.0, description="Idle topic lifetime")
    subscriber_queue_size: int = Field(default=256, description="Per-connection frame buffer")
    redis_relay_enabled: bool = Field(default=True, description="Fan out across instances via Redis")
    channel_prefix: str = Field(default="viewtrack:topic", description="Redis channel prefix")
    relay_reconnect_base_seconds: float = Field(default=1.0, description="First relay reconnect delay")
    relay_reconnect_max_seconds: float = Field(default=30.0, description="Cap on relay reconnect delay")


class SecuritySettings(BaseSettings):
    """Security and Authentication Configuration"""

    model_config = SettingsConfigDict(env_prefix="")

    secret_key: SecretStr = Field(default="change-me-in-production", description="Root of the fingerprint salt")
    jwt_secret_key: SecretStr = Field(default="jwt-secret-change-me", alias="JWT_SECRET_KEY", description="JWT secret key")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM", description="JWT algorithm")
    internal_api_token: SecretStr = Field(
        default="internal-token-change-me",
        alias="INTERNAL_API_TOKEN",
        description="Shared token for collaborator services",
    )

    # CORS
    cors_origins: List[str] = Field(
        default=["http://localhost:3000"],
        description="Allowed CORS origins"
    )


class MonitoringSettings(BaseSettings):
    """Monitoring and Observability Configuration"""

    model_config = SettingsConfigDict(env_prefix="")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL", description="Logging level")
    log_format: str = Field(default="json", description="Log format: json or text")


class Settings(BaseSettings):
    """
    Main Application Settings

    Aggregates all configuration sections and provides a single entry point
    for accessing application configuration.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="product-view-analytics", alias="APP_NAME", description="Application name")
    app_env: str = Field(default="development", alias="APP_ENV", description="Environment")
    debug: bool = Field(default=False, alias="DEBUG", description="Debug mode")

    # API Server
    api_host: str = Field(default="0.0.0.0", alias="API_HOST", description="API host")
    api_port: int = Field(default=8000, alias="API_PORT", description="API port")

    # Version
    version: str = Field(default="1.0.0", description="Application version")

    # Subsystem configurations
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    tracking: TrackingSettings = Field(default_factory=TrackingSettings)
    aggregation: AggregationSettings = Field(default_factory=AggregationSettings)
    notifier: NotifierSettings = Field(default_factory=NotifierSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        """Validate environment value"""
        allowed = ["development", "staging", "production", "testing"]
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.app_env == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development"""
        return self.app_env == "development"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Uses LRU cache to ensure settings are only loaded once.

    Returns:
        Settings: Application settings instance
    """
    return Settings()

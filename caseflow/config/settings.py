"""
Environment-aware configuration settings for the case workflow engine.

Supports dev, test, and prod environments with appropriate defaults.
"""

from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Supported deployment environments."""

    DEV = "dev"
    TEST = "test"
    PROD = "prod"


class StoreBackend(str, Enum):
    """Where instances, templates and notifications are persisted."""

    MEMORY = "memory"
    POSTGRES = "postgres"


class DeliveryBackend(str, Enum):
    """Queue used to hand notifications to the delivery consumer."""

    MEMORY = "memory"
    REDIS = "redis"


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    host: str = Field(default="localhost", description="Redis server hostname")
    port: int = Field(default=6379, description="Redis server port")
    db: int = Field(default=0, description="Redis database number")
    password: Optional[str] = Field(default=None, description="Redis password")
    max_connections: int = Field(default=20, description="Maximum connection pool size")
    socket_timeout: float = Field(default=10.0, description="Socket timeout (must be > stream_block_ms/1000 + 3)")
    socket_connect_timeout: float = Field(default=5.0, description="Connection timeout")
    stream_block_ms: int = Field(default=5000, description="XREADGROUP block time in ms (must be < socket_timeout)")
    stream_max_length: int = Field(
        default=10000,
        description="Maximum delivery stream length before trimming (approximate)"
    )

    @property
    def url(self) -> str:
        """Generate Redis connection URL."""
        auth = f":{self.password}@" if self.password else ""
        return f"redis://{auth}{self.host}:{self.port}/{self.db}"


class PostgresSettings(BaseSettings):
    """PostgreSQL connection settings."""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_")

    host: str = Field(default="localhost", description="PostgreSQL server hostname")
    port: int = Field(default=5432, description="PostgreSQL server port")
    database: str = Field(default="caseflow", description="Database name")
    user: str = Field(default="postgres", description="Database user")
    password: str = Field(default="postgres", description="Database password")
    pool_size: int = Field(default=10, description="Connection pool size (prod: 10-20)")
    max_overflow: int = Field(default=20, description="Max overflow connections (prod: 20-30)")
    pool_timeout: float = Field(default=10.0, description="Pool timeout in seconds (fail fast)")

    @property
    def url(self) -> str:
        """Generate PostgreSQL connection URL."""
        return (
            f"postgresql+asyncpg://{self.user}:{self.password}"
            f"@{self.host}:{self.port}/{self.database}"
        )


class SLASettings(BaseSettings):
    """
    SLA monitor settings.

    A task enters the warning window when the time left before its due date
    is at most max(warning_min_hours, warning_fraction * allotted time).
    """

    model_config = SettingsConfigDict(env_prefix="SLA_")

    sweep_interval: float = Field(default=60.0, ge=1.0, description="Background sweep interval (seconds)")
    warning_min_hours: float = Field(default=24.0, ge=0.0, description="Minimum warning window (hours)")
    warning_fraction: float = Field(
        default=0.2,
        ge=0.0,
        le=1.0,
        description="Fraction of the allotted time used as warning window"
    )
    notify_assignee: bool = Field(default=True, description="Notify assignees when flags are raised")
    priority_rules_enabled: bool = Field(
        default=False,
        description="Use per-priority warning and breach hours (Critical 4/8, High 24/48, Medium 72/120, Low 168/336)"
    )
    priority_hours: dict[str, tuple[float, float]] = Field(
        default_factory=dict,
        description="Overrides as {priority: [warning_hours, breach_hours]}, e.g. {\"High\": [12, 36]}"
    )
    escalation_enabled: bool = Field(default=True, description="Run escalation rules after each SLA sweep")


class OrchestratorSettings(BaseSettings):
    """Orchestrator configuration settings."""

    model_config = SettingsConfigDict(env_prefix="ORCHESTRATOR_")

    max_conflict_retries: int = Field(
        default=3,
        ge=0,
        description="Reload-and-retry attempts on optimistic version conflicts"
    )
    pending_automation_max_attempts: int = Field(
        default=50,
        ge=1,
        description="Retries before a pending AdvanceStage automation is dropped"
    )


class NotificationSettings(BaseSettings):
    """Notification delivery settings."""

    model_config = SettingsConfigDict(env_prefix="NOTIFICATION_")

    webhook_url: Optional[str] = Field(default=None, description="Outbound webhook for delivery")
    webhook_timeout: float = Field(default=10.0, description="Webhook request timeout (seconds)")
    consumer_concurrency: int = Field(default=4, ge=1, description="Concurrent deliveries")
    stream_name: str = Field(default="notifications", description="Delivery stream name")
    consumer_group: str = Field(default="dispatchers", description="Delivery consumer group")
    graceful_shutdown_timeout: float = Field(default=10.0, description="Graceful shutdown timeout")

    # Delivery retry policy
    max_retries: int = Field(default=3, ge=0, description="Maximum delivery retries")
    initial_delay: float = Field(default=0.5, ge=0.0, description="Initial retry delay (seconds)")
    max_delay: float = Field(default=30.0, ge=0.0, description="Maximum retry delay (seconds)")
    exponential_base: float = Field(default=2.0, ge=1.0, description="Exponential backoff base")
    jitter: bool = Field(default=True, description="Add jitter to retry delays")


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        case_sensitive=False,  # REDIS_HOST and redis_host both work
        extra="ignore",        # Ignore unknown environment variables
    )

    # Application
    app_name: str = Field(default="Case Workflow Engine")
    environment: Environment = Field(default=Environment.DEV)
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")
    store_backend: StoreBackend = Field(default=StoreBackend.MEMORY)
    delivery_backend: DeliveryBackend = Field(default=DeliveryBackend.MEMORY)

    # Sub-settings
    redis: RedisSettings = Field(default_factory=RedisSettings)
    postgres: PostgresSettings = Field(default_factory=PostgresSettings)
    sla: SLASettings = Field(default_factory=SLASettings)
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)

    @field_validator("environment", mode="before")
    @classmethod
    def validate_environment(cls, v: str | Environment) -> Environment:
        """Validate and convert environment string to enum."""
        if isinstance(v, Environment):
            return v
        return Environment(v.lower())

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == Environment.DEV


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()

"""Application settings and configuration.

This module defines all configuration options for the realtime channels
service. Settings are loaded from environment variables with sensible defaults.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files. The
    queue/pub-sub mode is decided once from these values at process start.
    """

    # Application metadata
    app_name: str = Field(default="Realtime Channels", alias="APP_NAME")
    app_version: str = Field(default="1.0.0", alias="APP_VERSION")
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")

    # Database configuration
    database_url: str = Field(
        default="sqlite:///./realtime_channels.db", alias="DATABASE_URL"
    )
    test_database_url: str | None = Field(default=None, alias="TEST_DATABASE_URL")
    use_testing_database: bool = Field(default=False, alias="USE_TEST_DATABASE")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # Redis: durable queue broker, pub/sub substrate and message list cache
    use_redis: bool = Field(default=False, alias="USE_REDIS")
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Persistence queue
    queue_name: str = Field(default="message-persistence", alias="QUEUE_NAME")
    job_attempts: int = Field(default=5, alias="JOB_ATTEMPTS")
    job_backoff_ms: int = Field(default=3000, alias="JOB_BACKOFF_MS")
    job_timeout_seconds: int = Field(default=60, alias="JOB_TIMEOUT_SECONDS")
    worker_concurrency: int = Field(default=5, alias="WORKER_CONCURRENCY")
    worker_rate_limit: str = Field(default="50/s", alias="WORKER_RATE_LIMIT")
    direct_inline_persistence: bool = Field(
        default=False, alias="DIRECT_INLINE_PERSISTENCE"
    )

    # Message pipeline limits
    message_cache_size: int = Field(default=200, alias="MESSAGE_CACHE_SIZE")
    history_limit: int = Field(default=50, alias="HISTORY_LIMIT")
    max_message_length: int = Field(default=10_000, alias="MAX_MESSAGE_LENGTH")
    group_min_members: int = Field(default=3, alias="GROUP_MIN_MEMBERS")

    # Abandoned account sweep
    deactivation_enabled: bool = Field(default=True, alias="DEACTIVATION_ENABLED")
    user_inactivity_years: int = Field(default=2, alias="USER_INACTIVITY_YEARS")
    deactivation_interval_seconds: float = Field(
        default=24 * 60 * 60, alias="DEACTIVATION_INTERVAL_SECONDS"
    )

    # Realtime transport
    socket_path: str = Field(default="/socket/v1", alias="SOCKET_PATH")

    # CORS configuration for web frontend access
    cors_origins: list[str] = Field(default=["*"], alias="CORS_ORIGINS")
    cors_allow_credentials: bool = Field(default=True, alias="CORS_ALLOW_CREDENTIALS")
    cors_allow_methods: list[str] = Field(
        default=["GET", "POST", "OPTIONS"],
        alias="CORS_ALLOW_METHODS",
    )
    cors_allow_headers: list[str] = Field(default=["*"], alias="CORS_ALLOW_HEADERS")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def redis_enabled(self) -> bool:
        """Return True when the broker-backed queue and pub/sub should be used."""
        return self.use_redis or self.environment == "production"

    @property
    def effective_database_url(self) -> str:
        """Return the database URL respecting testing overrides."""
        if self.use_testing_database and self.test_database_url:
            return self.test_database_url
        return self.database_url

    @property
    def database_url_sync(self) -> str:
        """Return a sync-compatible database URL for tooling such as Alembic."""
        url = self.effective_database_url
        if url.startswith("postgresql+asyncpg"):
            return url.replace("postgresql+asyncpg", "postgresql+psycopg", 1)
        return url


settings = Settings()

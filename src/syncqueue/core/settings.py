"""Application settings and configuration.

This module defines all configuration options for the syncqueue engine.
Settings are loaded from environment variables with sensible defaults and
condensed into an immutable :class:`SyncConfig` that every component takes
at construction time.
"""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

MODE_LEAF = "leaf"
MODE_HUB = "hub"

# The hub never returns more than this many updates per download call.
MAX_DOWNLOAD_LIMIT = 500


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="syncqueue", alias="APP_NAME")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    debug: bool = Field(default=False, alias="DEBUG")

    # Database configuration
    database_url: str = Field(default="sqlite:///./syncqueue.db", alias="DATABASE_URL")
    test_database_url: str | None = Field(default=None, alias="TEST_DATABASE_URL")
    use_testing_database: bool = Field(default=False, alias="USE_TEST_DATABASE")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # Node identity and role
    sync_enabled: bool = Field(default=False, alias="SYNCQUEUE_ENABLED")
    mode: str = Field(default=MODE_LEAF, alias="SYNCQUEUE_MODE")
    node_id: str | None = Field(default=None, alias="SYNCQUEUE_NODE_ID")

    # Leaf -> hub transport
    hub_url: str | None = Field(default=None, alias="SYNCQUEUE_HUB_URL")
    api_key: str | None = Field(default=None, alias="SYNCQUEUE_API_KEY")
    http_timeout_seconds: float = Field(default=30.0, alias="SYNCQUEUE_HTTP_TIMEOUT_SECONDS")
    connect_timeout_seconds: float = Field(
        default=10.0,
        alias="SYNCQUEUE_CONNECT_TIMEOUT_SECONDS",
    )

    # Outbound queue behaviour
    batch_size: int = Field(default=100, alias="SYNCQUEUE_BATCH_SIZE")
    max_retries: int = Field(default=5, alias="SYNCQUEUE_MAX_RETRIES")
    duplicate_window_seconds: int = Field(
        default=3600,
        alias="SYNCQUEUE_DUPLICATE_WINDOW_SECONDS",
    )
    processing_timeout_seconds: int = Field(
        default=900,
        alias="SYNCQUEUE_PROCESSING_TIMEOUT_SECONDS",
    )

    # Download behaviour
    download_limit: int = Field(default=100, alias="SYNCQUEUE_DOWNLOAD_LIMIT")
    download_overlap_seconds: int = Field(
        default=1,
        alias="SYNCQUEUE_DOWNLOAD_OVERLAP_SECONDS",
    )

    # Retention windows
    queue_retention_days: int = Field(default=30, alias="SYNCQUEUE_QUEUE_RETENTION_DAYS")
    log_retention_days: int = Field(default=90, alias="SYNCQUEUE_LOG_RETENTION_DAYS")
    update_retention_days: int = Field(default=30, alias="SYNCQUEUE_UPDATE_RETENTION_DAYS")

    # Hub-only settings
    allow_registration: bool = Field(default=False, alias="SYNCQUEUE_ALLOW_REGISTRATION")
    registration_secret: str | None = Field(
        default=None,
        alias="SYNCQUEUE_REGISTRATION_SECRET",
    )
    artifact_dir: str = Field(default="./artifacts", alias="SYNCQUEUE_ARTIFACT_DIR")
    overdue_threshold_seconds: int = Field(
        default=86_400,
        alias="SYNCQUEUE_OVERDUE_THRESHOLD_SECONDS",
    )

    # CORS configuration for the hub API
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
    )

    @property
    def database_url_sync(self) -> str:
        """Return a sync-compatible database URL for tooling.

        Converts asyncpg URLs to psycopg for synchronous database operations
        like Alembic migrations.
        """
        url = self.effective_database_url
        if url.startswith("postgresql+asyncpg"):
            return url.replace("postgresql+asyncpg", "postgresql+psycopg", 1)
        return url

    @property
    def effective_database_url(self) -> str:
        """Return the database URL respecting testing overrides."""
        if self.use_testing_database and self.test_database_url:
            return self.test_database_url
        return self.database_url


settings = Settings()


@dataclass(frozen=True)
class SyncConfig:
    """Immutable configuration for sync operations."""

    enabled: bool
    mode: str
    node_id: str | None
    hub_url: str | None
    api_key: str | None
    timeout_seconds: float
    connect_timeout_seconds: float
    batch_size: int
    max_retries: int
    duplicate_window_seconds: int
    processing_timeout_seconds: int
    download_limit: int
    download_overlap_seconds: int
    queue_retention_days: int
    log_retention_days: int
    update_retention_days: int
    allow_registration: bool
    registration_secret: str | None
    artifact_dir: str
    overdue_threshold_seconds: int

    @property
    def is_hub(self) -> bool:
        return self.mode == MODE_HUB

    @property
    def is_leaf(self) -> bool:
        return self.mode == MODE_LEAF


def load_sync_config(source: Settings | None = None) -> SyncConfig:
    """Build configuration object from settings."""

    source = source or settings
    return SyncConfig(
        enabled=source.sync_enabled,
        mode=source.mode,
        node_id=source.node_id,
        hub_url=source.hub_url,
        api_key=source.api_key,
        timeout_seconds=float(source.http_timeout_seconds),
        connect_timeout_seconds=float(source.connect_timeout_seconds),
        batch_size=max(1, source.batch_size),
        max_retries=max(1, source.max_retries),
        duplicate_window_seconds=max(0, source.duplicate_window_seconds),
        processing_timeout_seconds=max(0, source.processing_timeout_seconds),
        download_limit=min(max(1, source.download_limit), MAX_DOWNLOAD_LIMIT),
        download_overlap_seconds=max(0, source.download_overlap_seconds),
        queue_retention_days=source.queue_retention_days,
        log_retention_days=source.log_retention_days,
        update_retention_days=source.update_retention_days,
        allow_registration=source.allow_registration,
        registration_secret=source.registration_secret,
        artifact_dir=source.artifact_dir,
        overdue_threshold_seconds=source.overdue_threshold_seconds,
    )

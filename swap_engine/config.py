"""
Configuration management for the swap execution engine.

Uses pydantic-settings for type-safe environment variable handling.
All variables are read with the SWAP_ prefix (e.g. SWAP_QUEUE_CONCURRENCY).
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from swap_engine.domain.quote import Venue


class AppEnvironment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class StorageBackend(str, Enum):
    """Where orders and jobs are persisted."""

    MEMORY = "memory"
    FILE = "file"


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Durations are expressed in the unit named by the field suffix
    (_ms for milliseconds, _s for seconds).
    """

    model_config = SettingsConfigDict(
        env_prefix="SWAP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    env: AppEnvironment = Field(
        default=AppEnvironment.DEVELOPMENT,
        description="Application environment",
    )

    # Server configuration
    host: str = Field(default="127.0.0.1", description="Server host")
    port: int = Field(default=3000, ge=1024, le=65535, description="Server port")
    cors_origins: list[str] = Field(
        default_factory=lambda: ["*"],
        description="Allowed CORS origins",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_json: bool = Field(default=False, description="Emit JSON log lines")

    # Storage
    storage_backend: StorageBackend = Field(
        default=StorageBackend.FILE,
        description="Order/job persistence backend: memory or file",
    )
    data_dir: Path = Field(
        default=Path("./data"),
        description="Root directory for file-backed stores",
    )

    # Work queue
    queue_name: str = Field(default="orders", description="Work queue name")
    queue_concurrency: int = Field(
        default=10,
        description="Maximum jobs executed concurrently",
        ge=1,
        le=100,
    )
    queue_max_attempts: int = Field(
        default=3,
        description="Attempts per job before it is marked permanently failed",
        ge=1,
        le=20,
    )
    queue_backoff_delay_ms: int = Field(
        default=2000,
        description="Base delay for exponential retry backoff",
        ge=0,
    )
    queue_lock_duration_ms: int = Field(
        default=30000,
        description="Lease a worker holds on a job before it is considered stalled",
        gt=0,
    )
    queue_max_stalled_count: int = Field(
        default=1,
        description="Times a job may stall before it is failed permanently",
        ge=0,
    )
    queue_poll_interval_ms: int = Field(
        default=100,
        description="Upper bound on dispatcher sleep between scans",
        ge=1,
        le=5000,
    )
    queue_remove_on_complete_age_s: int | None = Field(
        default=3600,
        description="Seconds completed jobs are retained",
        ge=0,
    )
    queue_remove_on_complete_count: int | None = Field(
        default=100,
        description="Number of most recent completed jobs retained",
        ge=0,
    )
    queue_remove_on_fail_age_s: int | None = Field(
        default=86400,
        description="Seconds failed jobs are retained",
        ge=0,
    )
    shutdown_grace_s: float = Field(
        default=10.0,
        description="Time in-flight jobs get to finish on shutdown",
        ge=0,
        le=300,
    )

    # Pipeline stage delays (simulated venue latency)
    pending_delay_ms: int = Field(default=500, ge=0, description="Pause after pending")
    building_delay_ms: int = Field(default=1000, ge=0, description="Transaction build time")
    confirmation_delay_ms: int = Field(default=2000, ge=0, description="Settlement wait")
    confirmation_jitter_ms: int = Field(
        default=1000,
        ge=0,
        description="Random extra settlement wait, uniform in [0, jitter]",
    )

    # Quoting
    quote_base_price: float = Field(
        default=200.0,
        gt=0,
        description="Mock reference price per unit of the input asset",
    )
    quote_latency_ms: int = Field(default=200, ge=0, description="Mock quote latency")
    venue_a_quote_url: str | None = Field(
        default=None,
        description="HTTP quote endpoint for Venue A (mocked when unset)",
    )
    venue_b_quote_url: str | None = Field(
        default=None,
        description="HTTP quote endpoint for Venue B (mocked when unset)",
    )
    quote_request_timeout_s: float = Field(default=5.0, gt=0, le=60)
    preferred_venue: Venue = Field(
        default=Venue.RAYDIUM,
        description="Venue selected when both quotes are exactly equal",
    )

    # Broadcast
    broadcast_fallback_to_all: bool = Field(
        default=False,
        description="Fan events out to every connection when an order has no subscriber",
    )
    broadcast_queue_size: int = Field(
        default=100,
        ge=1,
        le=10000,
        description="Per-connection outbound buffer",
    )
    broadcast_send_timeout_s: float = Field(
        default=5.0,
        gt=0,
        description="Send timeout before a connection is considered dead",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper_v

    @field_validator("data_dir")
    @classmethod
    def ensure_data_dir_exists(cls, v: Path) -> Path:
        """Ensure data directory exists."""
        v.mkdir(parents=True, exist_ok=True)
        return v.resolve()

    @model_validator(mode="after")
    def validate_lease_covers_pipeline(self) -> "Settings":
        """The lease must outlast the slowest possible pipeline run."""
        if self.queue_lock_duration_ms <= self.worst_case_pipeline_ms:
            raise ValueError(
                f"queue_lock_duration_ms ({self.queue_lock_duration_ms}) must exceed "
                f"worst-case pipeline latency ({self.worst_case_pipeline_ms}ms)"
            )
        return self

    @property
    def worst_case_pipeline_ms(self) -> int:
        """Sum of every simulated wait in one pipeline attempt."""
        return (
            self.pending_delay_ms
            + 2 * self.quote_latency_ms
            + self.building_delay_ms
            + self.confirmation_delay_ms
            + self.confirmation_jitter_ms
        )

    @property
    def orders_path(self) -> Path:
        """File backing the order store."""
        return self.data_dir / "orders.json"

    @property
    def jobs_path(self) -> Path:
        """File backing the job store."""
        return self.data_dir / f"{self.queue_name}_jobs.json"

    def get_redacted_config(self) -> dict[str, str | int | bool]:
        """
        Get configuration summary safe for logging and API responses.
        """
        return {
            "env": self.env.value,
            "host": self.host,
            "port": self.port,
            "storage_backend": self.storage_backend.value,
            "data_dir": str(self.data_dir),
            "log_level": self.log_level,
            "queue_concurrency": self.queue_concurrency,
            "queue_max_attempts": self.queue_max_attempts,
            "queue_lock_duration_ms": self.queue_lock_duration_ms,
            "venue_a_remote": self.venue_a_quote_url is not None,
            "venue_b_remote": self.venue_b_quote_url is not None,
        }


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure single instance throughout application.
    """
    return Settings()


def get_settings_dep() -> Settings:
    """
    Dependency for FastAPI routes to get settings.
    Allows for easy dependency override in tests.
    """
    return get_settings()

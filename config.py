"""Driftline — Configuration Management.

Strictly-typed configuration system using pydantic-settings.
All settings are loaded from environment variables with validation.

Sections:
    - STORAGE_*  durable key-value store location
    - SYNC_*     operation queue and sync orchestrator
    - RECOVERY_* retry, circuit breaker and fallback defaults
    - ENTITY_*   entity version store
    - NETWORK_*  connectivity monitor and reachability probe
    - LOG_*      structured logging
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StorageSettings(BaseSettings):
    """Durable key-value store configuration.

    Attributes:
        path: SQLite file path (relative paths resolve against the project
            root). Use ":memory:" for an ephemeral store.
    """

    model_config = SettingsConfigDict(
        env_prefix="STORAGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    path: str = Field(default="data/driftline.db", description="SQLite key-value store path")


class SyncSettings(BaseSettings):
    """Operation queue and sync orchestrator configuration.

    Attributes:
        interval_seconds: Periodic sync interval.
        max_queue_size: Queue capacity before low-priority eviction.
        default_max_retries: Retry ceiling used when the caller omits one.
        sync_on_enqueue: Attempt a sync right after enqueue when online.
        completed_retention_days: Age after which completion markers are purged.
    """

    model_config = SettingsConfigDict(
        env_prefix="SYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    interval_seconds: float = Field(default=30.0, gt=0, description="Periodic sync interval (seconds)")
    max_queue_size: int = Field(default=1000, ge=1, le=1_000_000, description="Maximum queued operations")
    default_max_retries: int = Field(default=3, ge=0, le=100, description="Default operation retry ceiling")
    sync_on_enqueue: bool = Field(default=True, description="Sync immediately after enqueue when online")
    completed_retention_days: int = Field(default=7, ge=0, le=365, description="Completion marker retention (days)")


class RecoverySettings(BaseSettings):
    """Retry, circuit breaker and fallback defaults.

    Attributes:
        max_retries: Retries after the first attempt.
        base_delay_seconds: First backoff delay.
        max_delay_seconds: Backoff cap.
        backoff_multiplier: Exponential growth factor.
        jitter_enabled: Add up to 10% random jitter to each delay.
        circuit_breaker_threshold: Consecutive failures that open a breaker.
        circuit_breaker_timeout_seconds: Cooldown before a half-open probe.
        circuit_breaker_success_threshold: Probe successes that close a breaker.
        policy_timeout_seconds: Elapsed time after which retries stop.
        health_check_interval_seconds: Fallback provider health refresh interval.
    """

    model_config = SettingsConfigDict(
        env_prefix="RECOVERY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    max_retries: int = Field(default=3, ge=0, le=50, description="Retries after the first attempt")
    base_delay_seconds: float = Field(default=1.0, ge=0, description="Base backoff delay (seconds)")
    max_delay_seconds: float = Field(default=30.0, ge=0, description="Backoff cap (seconds)")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, description="Backoff multiplier")
    jitter_enabled: bool = Field(default=True, description="Enable 10% backoff jitter")
    circuit_breaker_threshold: int = Field(default=5, ge=1, description="Failures before opening")
    circuit_breaker_timeout_seconds: float = Field(default=60.0, ge=0, description="Open-state cooldown (seconds)")
    circuit_breaker_success_threshold: int = Field(default=3, ge=1, description="Probe successes before closing")
    policy_timeout_seconds: float = Field(default=120.0, gt=0, description="Overall policy timeout (seconds)")
    health_check_interval_seconds: float = Field(default=60.0, gt=0, description="Fallback health check interval")


class EntitySettings(BaseSettings):
    """Entity version store configuration.

    Attributes:
        remote_sync_timeout_seconds: Bounded wait for a remote sync handler.
        sync_max_retries: Retry ceiling for scheduled entity syncs.
        sync_priority: Queue priority for scheduled entity syncs.
    """

    model_config = SettingsConfigDict(
        env_prefix="ENTITY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    remote_sync_timeout_seconds: float = Field(default=10.0, gt=0, description="Remote sync timeout (seconds)")
    sync_max_retries: int = Field(default=3, ge=0, le=100, description="Entity sync retry ceiling")
    sync_priority: Literal["high", "medium", "low"] = Field(default="medium", description="Entity sync priority")


class NetworkSettings(BaseSettings):
    """Connectivity monitor configuration.

    Attributes:
        probe_url: URL probed for reachability. Probing is disabled when unset.
        probe_timeout_seconds: Probe request timeout.
        probe_interval_seconds: Interval between probes.
        degraded_latency_ms: Probe latency above which status is DEGRADED.
        initial_status: Status assumed before the first signal.
    """

    model_config = SettingsConfigDict(
        env_prefix="NETWORK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    probe_url: str | None = Field(default=None, description="Reachability probe URL")
    probe_timeout_seconds: float = Field(default=5.0, gt=0, description="Probe timeout (seconds)")
    probe_interval_seconds: float = Field(default=15.0, gt=0, description="Probe interval (seconds)")
    degraded_latency_ms: float = Field(default=2000.0, gt=0, description="Latency threshold for DEGRADED")
    initial_status: Literal["online", "degraded", "offline"] = Field(
        default="offline",
        description="Status before the first connectivity signal",
    )


class LogSettings(BaseSettings):
    """Logging configuration for observability.

    Attributes:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        format: Log output format (json for production, text for development).
    """

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    format: Literal["json", "text"] = Field(
        default="json",
        description="Log format (json for production)",
    )


class Settings(BaseSettings):
    """Root application settings aggregating all configuration sections.

    Use get_settings() to obtain a cached instance at process start, then
    pass it (or the objects built from it) explicitly.

    Example:
        >>> settings = get_settings()
        >>> settings.recovery.circuit_breaker_threshold
        5
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = Field(default="Driftline", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    debug: bool = Field(default=False, description="Debug mode (disable in production!)")

    storage: StorageSettings = Field(default_factory=StorageSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    recovery: RecoverySettings = Field(default_factory=RecoverySettings)
    entity: EntitySettings = Field(default_factory=EntitySettings)
    network: NetworkSettings = Field(default_factory=NetworkSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    @model_validator(mode="after")
    def validate_production_settings(self) -> "Settings":
        """Enforce strict settings in production."""
        if self.environment == "production":
            if self.debug:
                raise ValueError("Debug mode must be disabled in production")
            if self.log.level == "DEBUG":
                raise ValueError("DEBUG log level is not allowed in production")
            if self.storage.path == ":memory:":
                raise ValueError("An in-memory store is not durable; set STORAGE_PATH in production")
        if self.recovery.max_delay_seconds < self.recovery.base_delay_seconds:
            raise ValueError("RECOVERY_MAX_DELAY_SECONDS must be >= RECOVERY_BASE_DELAY_SECONDS")
        return self


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Raises:
        ValidationError: If settings are invalid. This causes immediate
            startup failure.
    """
    return Settings()

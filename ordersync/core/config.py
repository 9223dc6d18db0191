"""
Application Configuration Module

Centralizes all configuration using environment variables with Pydantic Settings.
Supports two modes:
    - DEVELOPMENT: Uses the in-memory mock orders API (no upstream needed)
    - PRODUCTION: Talks to the real order-management API over HTTP

The ENV_MODE variable controls which upstream client is instantiated,
enabling seamless switching between local testing and a live restaurant feed.

Usage:
    from ordersync.core.config import get_settings

    settings = get_settings()
    if settings.is_development:
        # Use mock upstream
    else:
        # Use real API

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
import sys
from enum import Enum
from typing import Optional
from functools import lru_cache

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EnvironmentMode(str, Enum):
    """
    Application environment modes.

    Attributes:
        DEVELOPMENT: Local testing with the mock orders API
        PRODUCTION: Live environment against the real orders API
        STAGING: Pre-production against a staging orders API
    """
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    STAGING = "staging"


class StorageBackend(str, Enum):
    """Where order/menu/config snapshots are persisted between restarts."""
    MEMORY = "memory"
    FILE = "file"
    REDIS = "redis"


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be overridden via environment variables or .env file.

    Attributes:
        env_mode: Current environment (development/production/staging)
        debug: Enable verbose logging

        # Upstream
        orders_api_base_url: Base URL of the order-management API
        orders_endpoint_path: Bulk/targeted orders path
        menus_endpoint_path: Menu payload path
        config_snapshot_endpoint_path: Restaurant config payload path

        # Polling
        order_polling_window_minutes: Lookback window for the bulk query
        poll_interval_ms: Delay between polling cycles
        poll_limit: Maximum records requested per bulk query
        drift_buffer_ms: Overlap subtracted from the cursor

        # Cache retention
        stale_active_retention_ms: Unseen lifetime of a not-ready order
        stale_ready_retention_ms: Unseen lifetime of a ready order

        # Targeted fetch
        targeted_fetch_concurrency: Per-GUID requests in flight
        targeted_fetch_max_retries: Attempts per GUID
        targeted_fetch_backoff_ms: Linear backoff base

        # Persistence
        storage_backend: memory / file / redis
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # ENVIRONMENT
    # ==========================================================================

    env_mode: EnvironmentMode = Field(
        default=EnvironmentMode.DEVELOPMENT,
        description="Application environment mode"
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode with verbose logging"
    )

    # ==========================================================================
    # APPLICATION
    # ==========================================================================

    app_name: str = Field(
        default="Order Sync Engine",
        description="Application display name"
    )
    app_version: str = Field(
        default="1.0.0",
        description="Application version"
    )
    api_host: str = Field(
        default="0.0.0.0",
        description="API server host"
    )
    api_port: int = Field(
        default=8001,
        description="API server port"
    )
    polling_enabled: bool = Field(
        default=True,
        description="Start the background polling loop with the API server"
    )

    # ==========================================================================
    # UPSTREAM ORDERS API
    # ==========================================================================

    orders_api_base_url: Optional[str] = Field(
        default=None,
        description="Base URL of the order-management API (https://...)"
    )
    orders_api_token: Optional[str] = Field(
        default=None,
        description="Bearer token sent to the upstream API, if it needs one"
    )
    orders_endpoint_path: str = Field(
        default="/api/orders",
        description="Bulk listing path; targeted fetches append /{guid}"
    )
    menus_endpoint_path: str = Field(
        default="/api/menus",
        description="Menu payload path"
    )
    config_snapshot_endpoint_path: str = Field(
        default="/api/config/snapshot",
        description="Restaurant configuration snapshot path"
    )
    http_timeout_seconds: float = Field(
        default=15.0,
        description="Timeout for a single upstream HTTP request"
    )

    # ==========================================================================
    # POLLING
    # ==========================================================================

    order_polling_window_minutes: int = Field(
        default=720,
        description="How far back the bulk query looks (minutes)"
    )
    poll_interval_ms: int = Field(
        default=10_000,
        description="Delay between polling cycles (ms)"
    )
    poll_limit: int = Field(
        default=200,
        description="Maximum records requested per bulk query"
    )
    drift_buffer_ms: int = Field(
        default=5_000,
        description="Overlap subtracted from the cursor to absorb clock skew (ms)"
    )

    # ==========================================================================
    # CACHE RETENTION
    # ==========================================================================

    stale_active_retention_ms: int = Field(
        default=10 * 60 * 1000,
        description="How long a not-ready order may go unseen before eviction (ms)"
    )
    stale_ready_retention_ms: int = Field(
        default=2 * 60 * 1000,
        description="How long a ready order may go unseen before eviction (ms)"
    )

    # ==========================================================================
    # TARGETED FETCH
    # ==========================================================================

    targeted_fetch_concurrency: int = Field(
        default=4,
        description="Per-GUID requests in flight at once"
    )
    targeted_fetch_max_retries: int = Field(
        default=2,
        description="Attempts per GUID before it is left unresolved"
    )
    targeted_fetch_backoff_ms: int = Field(
        default=250,
        description="Linear retry backoff base (ms)"
    )

    # ==========================================================================
    # PERSISTENCE
    # ==========================================================================

    storage_backend: StorageBackend = Field(
        default=StorageBackend.MEMORY,
        description="Snapshot store backend (memory/file/redis)"
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL"
    )
    redis_key_prefix: str = Field(
        default="ordersync:",
        description="Prefix applied to every key written to Redis"
    )
    data_directory: str = Field(
        default="data",
        description="Directory for file-backed snapshots"
    )
    storage_lock_timeout: int = Field(
        default=10,
        description="Seconds to wait for a snapshot file lock"
    )

    # ==========================================================================
    # DIAGNOSTICS
    # ==========================================================================

    diagnostics_max_events: int = Field(
        default=200,
        description="Diagnostic events kept in the in-memory timeline"
    )

    # ==========================================================================
    # VALIDATORS
    # ==========================================================================

    @field_validator("env_mode", mode="before")
    @classmethod
    def validate_env_mode(cls, v: str) -> EnvironmentMode:
        """Convert string to EnvironmentMode enum."""
        if isinstance(v, EnvironmentMode):
            return v
        try:
            return EnvironmentMode(v.lower())
        except ValueError:
            valid = [e.value for e in EnvironmentMode]
            raise ValueError(f"Invalid env_mode. Must be one of: {valid}")

    @field_validator("storage_backend", mode="before")
    @classmethod
    def validate_storage_backend(cls, v: str) -> StorageBackend:
        """Convert string to StorageBackend enum."""
        if isinstance(v, StorageBackend):
            return v
        try:
            return StorageBackend(v.lower())
        except ValueError:
            valid = [e.value for e in StorageBackend]
            raise ValueError(f"Invalid storage_backend. Must be one of: {valid}")

    @field_validator(
        "order_polling_window_minutes",
        "poll_interval_ms",
        "poll_limit",
        "stale_active_retention_ms",
        "stale_ready_retention_ms",
        "targeted_fetch_concurrency",
        "targeted_fetch_max_retries",
        "diagnostics_max_events",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Reject zero and negative sizes/intervals."""
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @field_validator("drift_buffer_ms", "targeted_fetch_backoff_ms")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @model_validator(mode="after")
    def validate_retention_order(self) -> "Settings":
        """Ready orders must leave the view sooner than active ones."""
        if self.stale_ready_retention_ms >= self.stale_active_retention_ms:
            raise ValueError(
                "stale_ready_retention_ms must be shorter than "
                "stale_active_retention_ms"
            )
        return self

    # ==========================================================================
    # COMPUTED PROPERTIES
    # ==========================================================================

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.env_mode == EnvironmentMode.DEVELOPMENT

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.env_mode == EnvironmentMode.PRODUCTION

    @property
    def is_staging(self) -> bool:
        """Check if running in staging mode."""
        return self.env_mode == EnvironmentMode.STAGING

    @property
    def use_real_services(self) -> bool:
        """Check if the real upstream API should be used."""
        return self.env_mode in (EnvironmentMode.PRODUCTION, EnvironmentMode.STAGING)

    @property
    def polling_window_ms(self) -> int:
        return self.order_polling_window_minutes * 60 * 1000

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000

    # ==========================================================================
    # VALIDATION METHODS
    # ==========================================================================

    def validate_production_config(self) -> list[str]:
        """
        Validate that all required production settings are configured.

        Returns:
            List of missing configuration keys (empty if all present)
        """
        missing = []

        if self.use_real_services:
            if not self.orders_api_base_url:
                missing.append("ORDERS_API_BASE_URL")
            if self.storage_backend == StorageBackend.REDIS and not self.redis_url:
                missing.append("REDIS_URL")

        return missing


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Uses LRU cache to ensure settings are loaded only once and stay
    consistent across the application lifecycle.

    Returns:
        Settings: Configured application settings

    Example:
        >>> settings = get_settings()
        >>> print(settings.env_mode)
        EnvironmentMode.DEVELOPMENT
    """
    return Settings()


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================

def setup_logging(level: int = logging.INFO) -> logging.Logger:
    """
    Configure application-wide logging.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)

    Returns:
        Configured package logger
    """
    settings = get_settings()

    if settings.debug:
        level = logging.DEBUG

    log_format = "%(asctime)s │ %(levelname)-8s │ %(name)-25s │ %(message)s"
    date_format = "%Y-%m-%d %H:%M:%S"

    logging.basicConfig(
        level=level,
        format=log_format,
        datefmt=date_format,
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("filelock").setLevel(logging.WARNING)

    return logging.getLogger("ordersync")


def get_logger(name: str) -> logging.Logger:
    """
    Get a named logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)

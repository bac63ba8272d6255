"""
Centralized configuration for the lookup analytics service.

This module provides a single source of truth for all configuration values.
Configuration is loaded from environment variables with sensible defaults.

Usage:
    from lookup_analytics.config import config

    batch_size = config.sync.import_batch_size
    cache_ttl = config.cache.ttl_seconds
"""

import os
from dataclasses import dataclass, field
from typing import List, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


@dataclass(frozen=True)
class DatabaseConfig:
    """DuckDB configuration."""

    path: str = field(
        default_factory=lambda: os.getenv("ANALYTICS_DB_PATH", "data/analytics.duckdb")
    )


@dataclass(frozen=True)
class CacheConfig:
    """Report cache configuration."""

    url: str = field(default_factory=lambda: os.getenv("REDIS_URL", "redis://localhost:6379/0"))
    enabled: bool = field(
        default_factory=lambda: os.getenv("CACHE_ENABLED", "true").lower() == "true"
    )
    ttl_seconds: int = field(
        default_factory=lambda: int(os.getenv("CACHE_TTL_SECONDS", "3600"))
    )
    key_prefix: str = "reports"


@dataclass(frozen=True)
class ReportsConfig:
    """Report query defaults."""

    # Canonical timezone of the lookup tables' date columns
    timezone: str = field(default_factory=lambda: os.getenv("REPORTS_TIMEZONE", "UTC"))
    per_page: int = field(default_factory=lambda: int(os.getenv("REPORTS_PER_PAGE", "25")))
    default_days_back: int = 7

    # Order statuses never counted in reports
    excluded_statuses: Tuple[str, ...] = ("pending", "failed", "cancelled")

    default_interval: str = "week"


@dataclass(frozen=True)
class SyncConfig:
    """Batch sync configuration."""

    import_batch_size: int = field(
        default_factory=lambda: int(os.getenv("SYNC_IMPORT_BATCH_SIZE", "25"))
    )
    delete_batch_size: int = field(
        default_factory=lambda: int(os.getenv("SYNC_DELETE_BATCH_SIZE", "10"))
    )

    # Every job this service enqueues carries this group tag
    queue_group: str = field(
        default_factory=lambda: os.getenv("SYNC_QUEUE_GROUP", "analytics-data")
    )
    action_prefix: str = "analytics"

    # Seconds between re-checks of an unfinished dependency
    dependent_action_delay: int = 5
    # Seconds before the first delete batch runs, lets in-flight jobs settle
    delete_delay: int = 5

    max_attempts: int = field(default_factory=lambda: int(os.getenv("SYNC_MAX_ATTEMPTS", "3")))
    retry_delay_seconds: int = field(
        default_factory=lambda: int(os.getenv("SYNC_RETRY_DELAY_SECONDS", "60"))
    )

    # User roles imported into the customer lookup
    customer_roles: Tuple[str, ...] = ("customer",)


@dataclass(frozen=True)
class StockConfig:
    """Stock count configuration."""

    statuses: Tuple[str, ...] = ("instock", "outofstock", "onbackorder")
    low_stock_option: str = "notify_low_stock_amount"
    no_stock_option: str = "notify_no_stock_amount"
    default_low_stock_amount: int = 2
    default_no_stock_amount: int = 0


@dataclass(frozen=True)
class AppConfig:
    """Main application configuration."""

    version: str = "1.0.0"
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    reports: ReportsConfig = field(default_factory=ReportsConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    stock: StockConfig = field(default_factory=StockConfig)

    @property
    def store_timezone(self) -> ZoneInfo:
        """Timezone of the lookup tables' date columns."""
        return ZoneInfo(self.reports.timezone)


# Global config instance
config = AppConfig()


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def validate_config(app_config: AppConfig = config) -> None:
    """
    Validate that configuration values are usable.

    Call this on startup to fail fast with clear error messages
    instead of cryptic runtime failures.

    Raises:
        ConfigurationError: If any value is invalid
    """
    errors: List[str] = []

    try:
        ZoneInfo(app_config.reports.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        errors.append(f"REPORTS_TIMEZONE '{app_config.reports.timezone}' is not a known timezone")

    if app_config.reports.per_page < 1:
        errors.append("REPORTS_PER_PAGE must be at least 1")

    if app_config.sync.import_batch_size < 1:
        errors.append("SYNC_IMPORT_BATCH_SIZE must be at least 1")

    if app_config.sync.delete_batch_size < 1:
        errors.append("SYNC_DELETE_BATCH_SIZE must be at least 1")

    if not app_config.sync.queue_group:
        errors.append("SYNC_QUEUE_GROUP must not be empty")

    if app_config.sync.max_attempts < 1:
        errors.append("SYNC_MAX_ATTEMPTS must be at least 1")

    if app_config.cache.ttl_seconds < 1:
        errors.append("CACHE_TTL_SECONDS must be at least 1")

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ConfigurationError(error_msg)

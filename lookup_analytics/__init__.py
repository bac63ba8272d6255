"""
Lookup analytics: denormalized lookup tables and the reports built on them.

This package contains:
- reports: report data stores (query building, caching, paging)
- sync: batch sync types that fill the lookup tables
- reports_sync: orchestrator for regenerate / delete of all lookup data
- config, exceptions, events: shared infrastructure
"""

# Import in dependency order
from lookup_analytics.exceptions import (
    ReportsError,
    QueryExecutionError,
    ImportInProgressError,
    SyncConfigurationError,
)

from lookup_analytics.query import (
    ClauseKind,
    Fragment,
    SqlQuery,
)

from lookup_analytics.config import config

__version__ = config.version

__all__ = [
    # Exceptions
    "ReportsError",
    "QueryExecutionError",
    "ImportInProgressError",
    "SyncConfigurationError",
    # Query builder
    "ClauseKind",
    "Fragment",
    "SqlQuery",
    # Config
    "config",
]

"""
Exception hierarchy for report queries and lookup table sync.

Exception Hierarchy:
    ReportsError (base)
    ├── QueryExecutionError     - Store failed to execute a report query
    ├── ImportInProgressError   - A regenerate is already running
    └── SyncConfigurationError  - Sync types declare an unusable dependency graph

Every error carries a stable ``code`` and an HTTP-like ``status`` so the
REST layer can surface it without knowing the concrete class.
"""
from typing import Optional


class ReportsError(Exception):
    """Base exception for all report and sync errors."""

    code = "reports_error"
    status = 500

    def __init__(self, message: str, details: Optional[str] = None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message

    def to_dict(self) -> dict:
        """Error payload for API responses."""
        return {
            "code": self.code,
            "message": self.message,
            "data": {"status": self.status},
        }


class QueryExecutionError(ReportsError):
    """
    The relational store returned a failure for a report query.

    An empty result is not a failure; only execution errors end up here.
    Not retried by this layer.
    """

    code = "reports_query_failed"
    status = 500

    def __init__(
        self,
        message: str = "Sorry, fetching report data failed.",
        details: Optional[str] = None,
        statement: Optional[str] = None,
    ):
        super().__init__(message, details)
        if statement and len(statement) > 200:
            statement = statement[:200] + "..."
        self.statement = statement


class ImportInProgressError(ReportsError):
    """A new regenerate was requested while an import is still running."""

    code = "import_in_progress"
    status = 409

    def __init__(
        self,
        message: str = (
            "An import is already in progress. Please allow the previous import "
            "to complete before beginning a new one."
        ),
        details: Optional[str] = None,
    ):
        super().__init__(message, details)


class SyncConfigurationError(ReportsError):
    """
    Sync types declare a dependency that cannot be satisfied.

    Raised for unknown dependency names and dependency cycles.
    """

    code = "sync_misconfigured"
    status = 500

"""
Logging setup and per-job log context for the lookup sync engine.

Every queued job runs inside ``job_context(action, group)``: records
logged while it runs carry a short correlation id plus the action and
queue group, and sync runners add ``sync_type`` on top. Both formatters
read the same context, so a JSON line and a console line for one batch
can be matched up.
"""
import asyncio
import functools
import json
import logging
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, Optional

_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
_log_context: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})

_RECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime"}

SLOW_OPERATION_MS = 1000.0

# Libraries that log every job submission or command at INFO
_CHATTY_LOGGERS = ("apscheduler", "redis", "asyncio")


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def generate_correlation_id() -> str:
    return uuid.uuid4().hex[:8]


@contextmanager
def job_context(
    action: Optional[str] = None,
    group: Optional[str] = None,
    correlation_id: Optional[str] = None,
) -> Iterator[str]:
    """
    Scope a correlation id and the job's action/group to the block.

    Context added inside the block (``add_log_context``) is dropped on
    exit, so one job's ``sync_type`` never shows up on the next job run
    from the same task.
    """
    cid = correlation_id or generate_correlation_id()
    fields = {k: v for k, v in (("action", action), ("group", group)) if v}
    cid_token = _correlation_id.set(cid)
    ctx_token = _log_context.set({**_log_context.get(), **fields})
    try:
        yield cid
    finally:
        _log_context.reset(ctx_token)
        _correlation_id.reset(cid_token)


def add_log_context(**kwargs) -> None:
    _log_context.set({**_log_context.get(), **kwargs})


def get_log_context() -> Dict[str, Any]:
    return dict(_log_context.get())


def clear_log_context() -> None:
    _log_context.set({})


def _record_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """Context fields merged with the record's ``extra``; extra wins."""
    fields = dict(_log_context.get())
    fields.update(
        (key, value)
        for key, value in record.__dict__.items()
        if key not in _RECORD_ATTRS and not key.startswith("_")
    )
    return fields


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, for log shipping from worker processes."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        cid = get_correlation_id()
        if cid:
            entry["correlation_id"] = cid
        entry.update(_record_fields(record))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """``TIMESTAMP - LEVEL - LOGGER [CID] - MESSAGE | {fields}`` for the CLI."""

    def format(self, record: logging.LogRecord) -> str:
        cid = get_correlation_id()
        stamp = datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        line = f"{stamp} - {record.levelname:8} - {record.name}"
        if cid:
            line += f" [{cid}]"
        line += f" - {record.getMessage()}"

        fields = _record_fields(record)
        if fields:
            line += f" | {fields}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(level: str = "INFO", json_format: bool = False, include_libs: bool = False) -> None:
    """
    Install a single stream handler on the root logger.

    Args:
        level: Root log level name
        json_format: Emit StructuredFormatter lines instead of console lines
        include_libs: Keep scheduler/redis/asyncio loggers at the root level
    """
    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter() if json_format else HumanReadableFormatter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper()))

    if not include_libs:
        for name in _CHATTY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def _log_duration(
    logger: logging.Logger, operation: str, elapsed_ms: float, warn_threshold_ms: float
) -> None:
    level = logging.WARNING if elapsed_ms > warn_threshold_ms else logging.DEBUG
    logger.log(level, f"{operation} completed", extra={"duration_ms": round(elapsed_ms, 2)})


class Timer:
    """
    Measure a block; log its duration when a logger is given.

    Report queries and closure rebuilds are wrapped in this so slow
    statements surface at WARNING.

        with Timer("categories_report_query", logger) as t:
            rows = await db.fetch_all(sql, params)
    """

    def __init__(
        self,
        name: str,
        logger: Optional[logging.Logger] = None,
        warn_threshold_ms: float = SLOW_OPERATION_MS,
    ):
        self.name = name
        self.logger = logger
        self.warn_threshold_ms = warn_threshold_ms
        self.elapsed_ms: float = 0.0
        self._start = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, *exc) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000
        if self.logger:
            _log_duration(self.logger, self.name, self.elapsed_ms, self.warn_threshold_ms)


def timed(name: Optional[str] = None, warn_threshold_ms: float = SLOW_OPERATION_MS):
    """Time every call of a coroutine function (orchestrator entry points)."""

    def decorator(func: Callable) -> Callable:
        if not asyncio.iscoroutinefunction(func):
            raise TypeError(f"@timed only wraps coroutine functions, got {func.__name__}")
        operation = name or func.__qualname__
        func_logger = get_logger(func.__module__)

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            with Timer(operation, func_logger, warn_threshold_ms):
                return await func(*args, **kwargs)

        return wrapper

    return decorator

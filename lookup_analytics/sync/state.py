"""
Shared import state: progress counters, status per sync type, the
importing flag and the imported-from watermark.

Everything lives in the settings store so progress survives restarts and
is visible to every process; SyncState is the only code touching these
keys.
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from lookup_analytics.observability import get_logger
from lookup_analytics.settings_store import SettingsStore

logger = get_logger(__name__)

UNBOUNDED = "unbounded"
WATERMARK_FORMAT = "%Y-%m-%d 00:00:00"

IMPORTING_KEY = "import_in_progress"
SYNC_TYPES_KEY = "import_sync_types"
WATERMARK_KEY = "imported_from_date"


@dataclass(frozen=True)
class ImportHorizon:
    """How far back an import reaches: a number of days, or everything."""

    days: Optional[int] = None

    def __post_init__(self):
        if self.days is not None and self.days < 1:
            raise ValueError(f"Import horizon must be at least one day, got {self.days}")

    @classmethod
    def unbounded(cls) -> "ImportHorizon":
        return cls(None)

    @classmethod
    def of_days(cls, days: int) -> "ImportHorizon":
        return cls(int(days))

    @property
    def is_unbounded(self) -> bool:
        return self.days is None

    def start(self, now: datetime) -> Optional[datetime]:
        """Oldest source timestamp included, None when unbounded."""
        if self.days is None:
            return None
        return now - timedelta(days=self.days)

    def to_payload(self) -> Optional[int]:
        return self.days

    @classmethod
    def from_payload(cls, value: Any) -> "ImportHorizon":
        """Only None means unbounded; 0, False and "" are rejected."""
        if value is None:
            return cls.unbounded()
        if isinstance(value, bool):
            raise ValueError(f"Import horizon must be a number of days, got {value!r}")
        return cls.of_days(int(value))

    def __str__(self) -> str:
        return "all time" if self.days is None else f"{self.days} days"


class SyncStatus(Enum):
    """Lifecycle of one sync type during regenerate or delete."""
    IDLE = "idle"
    INITIALIZING = "initializing"
    IMPORTING = "importing"
    DELETING = "deleting"
    COMPLETED = "completed"


def count_key(name: str) -> str:
    return f"import_{name}_count"


def total_key(name: str) -> str:
    return f"import_{name}_total"


def status_key(name: str) -> str:
    return f"import_{name}_status"


class SyncState:
    """
    Handle on the persisted import state.

    begin_import() is an atomic check-then-set within one process; two
    processes sharing the settings store can still race on the flag.
    """

    def __init__(self, settings: SettingsStore):
        self.settings = settings
        self._lock = asyncio.Lock()

    async def is_importing(self) -> bool:
        return bool(await self.settings.get(IMPORTING_KEY, False))

    async def begin_import(self, names: Iterable[str]) -> bool:
        """
        Set the importing flag unless it is already set.

        Returns:
            True if this caller now owns the import
        """
        names = list(names)
        async with self._lock:
            if await self.is_importing():
                return False
            await self.settings.set(IMPORTING_KEY, True)
            await self.settings.set(SYNC_TYPES_KEY, names)
            for name in names:
                await self.settings.set(status_key(name), SyncStatus.INITIALIZING.value)
        logger.info("Import started", extra={"sync_types": names})
        return True

    async def end_import(self) -> None:
        await self.settings.set(IMPORTING_KEY, False)

    async def reset_progress(self, name: str, total: int) -> None:
        await self.settings.set(count_key(name), 0)
        await self.settings.set(total_key(name), int(total))

    async def increment_imported(self, name: str, amount: int = 1) -> int:
        """Add to the imported counter; batches of one type run sequentially."""
        count = int(await self.settings.get(count_key(name), 0)) + amount
        await self.settings.set(count_key(name), count)
        return count

    async def get_status(self, name: str) -> SyncStatus:
        value = await self.settings.get(status_key(name), SyncStatus.IDLE.value)
        try:
            return SyncStatus(value)
        except ValueError:
            return SyncStatus.IDLE

    async def set_status(self, name: str, status: SyncStatus) -> None:
        await self.settings.set(status_key(name), status.value)

    async def mark_completed(self, name: str) -> bool:
        """
        Mark one sync type's import as completed.

        Returns:
            True when this was the last running type and the importing
            flag has been cleared
        """
        async with self._lock:
            await self.set_status(name, SyncStatus.COMPLETED)
            names: List[str] = await self.settings.get(SYNC_TYPES_KEY, []) or []
            for other in names:
                if await self.get_status(other) is not SyncStatus.COMPLETED:
                    return False
            if await self.is_importing():
                await self.end_import()
                logger.info("Import completed", extra={"sync_types": names})
                return True
        return False

    async def get_progress(self, name: str) -> Dict[str, Any]:
        return {
            "status": (await self.get_status(name)).value,
            "imported_count": int(await self.settings.get(count_key(name), 0)),
            "total_count": int(await self.settings.get(total_key(name), 0)),
        }

    async def get_watermark(self) -> Optional[str]:
        """Oldest imported-from date, "unbounded", or None if never imported."""
        return await self.settings.get(WATERMARK_KEY)

    async def update_watermark(self, horizon: ImportHorizon, now: datetime) -> str:
        """
        Move the imported-from watermark back to the horizon's start.

        The watermark only ever moves to an older date; an unbounded
        horizon always wins.
        """
        previous = await self.get_watermark()
        start = horizon.start(now)
        current = UNBOUNDED if start is None else start.strftime(WATERMARK_FORMAT)

        if previous is None or current == UNBOUNDED or (
            previous != UNBOUNDED and current < previous
        ):
            await self.settings.set(WATERMARK_KEY, current)
            return current
        return previous

    async def clear(self, names: Iterable[str]) -> None:
        """Remove every progress key, the watermark and the importing flag."""
        keys = [IMPORTING_KEY, SYNC_TYPES_KEY, WATERMARK_KEY]
        for name in names:
            keys.extend([count_key(name), total_key(name), status_key(name)])
        await self.settings.delete(*keys)

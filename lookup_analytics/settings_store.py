"""
Persistent key/value settings backed by the options table.

Values are stored as JSON text so ints, strings, None and small dicts
round-trip without per-key schemas.
"""
import json
from typing import Any, Optional

from lookup_analytics.database import Database
from lookup_analytics.events import EventBus, emit_option_updated
from lookup_analytics.observability import get_logger

logger = get_logger(__name__)

_MISSING = object()


class SettingsStore:
    """Read/write named settings; changes are published as OPTION_UPDATED."""

    def __init__(self, db: Database, bus: Optional[EventBus] = None):
        self.db = db
        self.bus = bus

    async def get(self, name: str, default: Any = None) -> Any:
        value = await self._load(name)
        return default if value is _MISSING else value

    async def set(self, name: str, value: Any) -> None:
        """Store a setting, emitting OPTION_UPDATED when the value changes."""
        old = await self._load(name)

        await self.db.execute(
            """
            INSERT INTO options (name, value, updated_at)
            VALUES (?, ?, now())
            ON CONFLICT (name) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            [name, json.dumps(value, default=str)],
        )

        if old is _MISSING:
            old = None
        if self.bus is not None and old != value:
            await emit_option_updated(self.bus, name, old, value)

    async def delete(self, *names: str) -> None:
        if not names:
            return
        placeholders = ", ".join("?" for _ in names)
        await self.db.execute(f"DELETE FROM options WHERE name IN ({placeholders})", list(names))
        logger.debug("Settings deleted", extra={"names": list(names)})

    async def _load(self, name: str) -> Any:
        row = await self.db.fetch_one("SELECT value FROM options WHERE name = ?", [name])
        if row is None or row["value"] is None:
            return _MISSING
        try:
            return json.loads(row["value"])
        except ValueError:
            logger.warning(f"Setting {name} holds non-JSON value, returning raw text")
            return row["value"]

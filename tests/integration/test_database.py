"""
Integration tests for lookup_analytics/database.py and settings_store.py

Runs against a real in-memory DuckDB database.
"""
import pytest

from lookup_analytics.events import AnalyticsEvent, EventBus
from lookup_analytics.exceptions import QueryExecutionError
from lookup_analytics.settings_store import SettingsStore


class TestDatabase:
    """Tests for the DuckDB wrapper."""

    @pytest.mark.asyncio
    async def test_schema_created(self, db):
        tables = await db.fetch_column(
            "SELECT table_name FROM information_schema.tables ORDER BY table_name"
        )
        for table in ("order_stats", "order_product_lookup", "customer_lookup",
                      "category_lookup", "options", "orders", "users"):
            assert table in tables

    @pytest.mark.asyncio
    async def test_fetch_helpers(self, store_db):
        rows = await store_db.fetch_all("SELECT id, name FROM categories ORDER BY id LIMIT 2")
        assert rows == [{"id": 1, "name": "Clothing"}, {"id": 2, "name": "Shirts"}]

        assert await store_db.fetch_one("SELECT * FROM categories WHERE id = ?", [999]) is None
        assert await store_db.fetch_value("SELECT COUNT(*) FROM orders") == 5
        assert await store_db.fetch_column(
            "SELECT id FROM users WHERE role = ? ORDER BY id", ["customer"]
        ) == [100, 101]

    @pytest.mark.asyncio
    async def test_insert_dataframe(self, db):
        inserted = await db.insert_dataframe("category_lookup", [
            {"category_tree_id": 1, "term_id": 1},
            {"category_tree_id": 1, "term_id": 2},
        ])

        assert inserted == 2
        assert await db.fetch_value("SELECT COUNT(*) FROM category_lookup") == 2
        assert await db.insert_dataframe("category_lookup", []) == 0

    @pytest.mark.asyncio
    async def test_errors_wrapped(self, db):
        """Driver errors surface as QueryExecutionError with the statement."""
        with pytest.raises(QueryExecutionError) as exc_info:
            await db.fetch_all("SELECT * FROM no_such_table")

        assert exc_info.value.statement == "SELECT * FROM no_such_table"
        assert exc_info.value.details


class TestSettingsStore:
    """Tests for the options-backed settings store."""

    @pytest.mark.asyncio
    async def test_get_default(self, db):
        settings = SettingsStore(db)
        assert await settings.get("missing", 42) == 42

    @pytest.mark.asyncio
    async def test_set_round_trips_json(self, db):
        settings = SettingsStore(db)
        await settings.set("types", ["customers", "orders"])
        await settings.set("flag", True)
        await settings.set("flag", False)

        assert await settings.get("types") == ["customers", "orders"]
        assert await settings.get("flag") is False

    @pytest.mark.asyncio
    async def test_overwrite_existing_key(self, db):
        """A second write to a key updates the row in place."""
        settings = SettingsStore(db)
        await settings.set("analytics_import_count_orders", 3)
        await settings.set("analytics_import_count_orders", 7)

        rows = await db.fetch_all(
            "SELECT value, updated_at FROM options WHERE name = 'analytics_import_count_orders'"
        )
        assert len(rows) == 1
        assert rows[0]["value"] == "7"
        assert rows[0]["updated_at"] is not None

    @pytest.mark.asyncio
    async def test_delete(self, db):
        settings = SettingsStore(db)
        await settings.set("a", 1)
        await settings.set("b", 2)
        await settings.delete("a", "b")

        assert await settings.get("a") is None
        assert await settings.get("b") is None

    @pytest.mark.asyncio
    async def test_emits_on_change_only(self, db):
        """OPTION_UPDATED is published when the stored value changes."""
        bus = EventBus()
        settings = SettingsStore(db, bus)

        await settings.set("notify_low_stock_amount", 2)
        await settings.set("notify_low_stock_amount", 2)
        await settings.set("notify_low_stock_amount", 5)

        history = bus.get_history(AnalyticsEvent.OPTION_UPDATED)
        assert [h["data"] for h in history] == [
            {"name": "notify_low_stock_amount", "old": None, "new": 2},
            {"name": "notify_low_stock_amount", "old": 2, "new": 5},
        ]

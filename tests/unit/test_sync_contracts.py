"""
Unit tests for sync type contracts: ImportHorizon, action naming and
dependency ordering.
"""
from datetime import datetime
from unittest.mock import MagicMock

import pytest

from lookup_analytics.exceptions import SyncConfigurationError
from lookup_analytics.sync.base import (
    BatchSyncRunner,
    BatchSyncWorker,
    ItemsPage,
    SyncAction,
    order_by_dependency,
)
from lookup_analytics.sync.state import ImportHorizon

from conftest import make_config


class StubWorker(BatchSyncWorker):
    def __init__(self, name, dependency=None):
        super().__init__(db=MagicMock())
        self.name = name
        self.dependency = dependency

    async def get_items(self, limit, page, horizon, skip_existing):
        return ItemsPage(total=0, ids=[])

    async def import_item(self, item_id):
        return True

    async def delete(self, batch_size):
        return 0

    async def get_total_imported(self):
        return 0


class TestImportHorizon:
    """Tests for ImportHorizon."""

    def test_days(self):
        horizon = ImportHorizon.of_days(30)
        assert horizon.start(datetime(2020, 3, 31, 12)) == datetime(2020, 3, 1, 12)
        assert horizon.to_payload() == 30
        assert str(horizon) == "30 days"

    def test_unbounded(self):
        horizon = ImportHorizon.unbounded()
        assert horizon.is_unbounded
        assert horizon.start(datetime(2020, 3, 31)) is None
        assert str(horizon) == "all time"

    def test_none_payload_is_unbounded(self):
        assert ImportHorizon.from_payload(None).is_unbounded

    @pytest.mark.parametrize("value", [0, False, True, "", "0", -1])
    def test_rejects_zero_and_non_numeric_payload(self, value):
        """Zero days never widens to all history."""
        with pytest.raises(ValueError):
            ImportHorizon.from_payload(value)

    def test_payload_days(self):
        assert ImportHorizon.from_payload("7") == ImportHorizon.of_days(7)

    def test_rejects_non_positive_days(self):
        with pytest.raises(ValueError):
            ImportHorizon(-3)


class TestActionNames:
    """Tests for registered action names."""

    def test_action_names(self):
        runner = BatchSyncRunner(StubWorker("orders"), MagicMock(), MagicMock(), MagicMock(), make_config())

        assert runner.action(SyncAction.IMPORT_BATCH_INIT) == "analytics_import_batch_init_orders"
        assert runner.action(SyncAction.DELETE_BATCH) == "analytics_delete_batch_orders"
        assert runner.import_actions() == [
            "analytics_import_batch_init_orders",
            "analytics_import_batch_orders",
        ]

    def test_descriptor(self):
        runner = BatchSyncRunner(
            StubWorker("orders", "customers"), MagicMock(), MagicMock(), MagicMock(), make_config()
        )
        descriptor = runner.descriptor

        assert descriptor.name == "orders"
        assert descriptor.dependency == "customers"
        assert set(descriptor.actions) == set(SyncAction)

    def test_register_with_queue(self):
        queue = MagicMock()
        runner = BatchSyncRunner(StubWorker("orders"), queue, MagicMock(), MagicMock(), make_config())
        runner.register()

        registered = [call.args[0] for call in queue.register.call_args_list]
        assert "analytics_import_orders" in registered
        assert len(registered) == len(SyncAction)


class TestOrderByDependency:
    """Tests for dependency ordering of sync types."""

    def test_dependency_first(self):
        orders = StubWorker("orders", "customers")
        customers = StubWorker("customers")

        ordered = order_by_dependency([orders, customers])

        assert [w.name for w in ordered] == ["customers", "orders"]

    def test_chain(self):
        workers = [StubWorker("c", "b"), StubWorker("b", "a"), StubWorker("a")]
        assert [w.name for w in order_by_dependency(workers)] == ["a", "b", "c"]

    def test_independent_keep_order(self):
        workers = [StubWorker("x"), StubWorker("y")]
        assert [w.name for w in order_by_dependency(workers)] == ["x", "y"]

    def test_unknown_dependency(self):
        with pytest.raises(SyncConfigurationError):
            order_by_dependency([StubWorker("orders", "missing")])

    def test_cycle(self):
        with pytest.raises(SyncConfigurationError):
            order_by_dependency([StubWorker("a", "b"), StubWorker("b", "a")])

    def test_duplicate_name(self):
        with pytest.raises(SyncConfigurationError):
            order_by_dependency([StubWorker("a"), StubWorker("a")])


class TestSchedulingDedup:
    """Tests for single-record import scheduling."""

    def test_schedule_import_deduplicates(self):
        queue = MagicMock()
        runner = BatchSyncRunner(StubWorker("orders"), queue, MagicMock(), MagicMock(), make_config())

        assert runner.schedule_import(5) is True
        assert runner.schedule_import("5") is False
        assert runner.schedule_import(6) is True
        assert queue.schedule_now.call_count == 2
        queue.schedule_now.assert_any_call("analytics_import_orders", {"id": 5}, "analytics-data")

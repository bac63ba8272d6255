"""
Reports sync orchestrator.

Coordinates regeneration and deletion of every lookup table:
- regenerate(): guarded by the shared importing flag, resets progress,
  moves the imported-from watermark and enqueues each sync type's init
  action, dependents gated behind their dependency
- delete_all(): cancels this service's queued jobs and deletes lookup
  rows, dependents first
- listens to catalog, customer, order and category events to keep the
  lookup tables and stock counts current between full regenerations

Usage:
    reports_sync = await get_reports_sync()
    message = await reports_sync.regenerate(ImportHorizon.of_days(30), skip_existing=True)
"""
import asyncio
from typing import Any, Dict, List, Optional, Sequence, Union

from lookup_analytics.cache import RedisCache, ReportCache, register_cache_invalidation_handlers
from lookup_analytics.config import AppConfig, config
from lookup_analytics.database import Database, close_database, get_database
from lookup_analytics.events import AnalyticsEvent, EventBus, events
from lookup_analytics.exceptions import ImportInProgressError
from lookup_analytics.job_queue import JobQueue, SchedulerJobQueue
from lookup_analytics.observability import get_logger, timed
from lookup_analytics.reports.stock import stock_count_keys
from lookup_analytics.settings_store import SettingsStore
from lookup_analytics.sync.base import (
    BatchSyncRunner,
    BatchSyncWorker,
    SyncAction,
    order_by_dependency,
)
from lookup_analytics.sync.category_lookup import CategoryLookup
from lookup_analytics.sync.customers import CustomersSync
from lookup_analytics.sync.orders import OrdersSync
from lookup_analytics.sync.state import ImportHorizon, SyncState
from lookup_analytics.time_interval import store_now

logger = get_logger(__name__)

REGENERATE_MESSAGE = (
    "Report table data is being rebuilt. Please allow some time for data to fully populate."
)
DELETE_MESSAGE = "Report table data is being deleted."


class ReportsSync:
    """
    Orchestrates the batch sync types of the lookup tables.

    Sync types are kept in dependency order: every dependency comes before
    the types that depend on it.
    """

    def __init__(
        self,
        db: Database,
        queue: JobQueue,
        state: SyncState,
        report_cache: ReportCache,
        cache: RedisCache,
        bus: EventBus,
        app_config: AppConfig = config,
        workers: Optional[Sequence[BatchSyncWorker]] = None,
    ):
        self.db = db
        self.queue = queue
        self.state = state
        self.report_cache = report_cache
        self.cache = cache
        self.bus = bus
        self.config = app_config
        self.category_lookup = CategoryLookup(db, bus)

        if workers is None:
            workers = [CustomersSync(db, app_config), OrdersSync(db, app_config)]
        self.runners: List[BatchSyncRunner] = [
            BatchSyncRunner(worker, queue, state, bus, app_config)
            for worker in order_by_dependency(workers)
        ]
        self._by_name: Dict[str, BatchSyncRunner] = {r.name: r for r in self.runners}
        self._regenerate_lock = asyncio.Lock()

    @property
    def group(self) -> str:
        return self.config.sync.queue_group

    def get_runner(self, name: str) -> Optional[BatchSyncRunner]:
        return self._by_name.get(name)

    def register(self) -> None:
        """Register every sync action with the queue and subscribe to store events."""
        for runner in self.runners:
            runner.register()

        self.bus.subscribe(AnalyticsEvent.PRODUCT_CREATED, self._on_product_changed)
        self.bus.subscribe(AnalyticsEvent.PRODUCT_UPDATED, self._on_product_changed)
        self.bus.subscribe(AnalyticsEvent.OPTION_UPDATED, self._on_option_updated)
        self.bus.subscribe(AnalyticsEvent.CUSTOMER_CREATED, self._on_customer_changed)
        self.bus.subscribe(AnalyticsEvent.CUSTOMER_UPDATED, self._on_customer_changed)
        self.bus.subscribe(AnalyticsEvent.ORDER_CREATED, self._on_order_changed)
        self.bus.subscribe(AnalyticsEvent.ORDER_UPDATED, self._on_order_changed)
        self.bus.subscribe(AnalyticsEvent.CATEGORY_UPDATED, self._on_category_updated)

        logger.info(
            "Reports sync registered",
            extra={"sync_types": [r.name for r in self.runners], "group": self.group},
        )

    def _import_jobs_pending(self) -> bool:
        actions = [self.queue.gate_action]
        for runner in self.runners:
            actions.extend(runner.import_actions())
        return any(self.queue.is_pending(action, self.group) for action in actions)

    async def is_importing(self) -> bool:
        """
        True while the importing flag is set and an import job is still
        queued or running. A flag left behind by a job that exhausted its
        retries, or by a restart that lost the queue, does not count.
        """
        return await self.state.is_importing() and self._import_jobs_pending()

    # ═══════════════════════════════════════════════════════════════════════
    # REGENERATE
    # ═══════════════════════════════════════════════════════════════════════

    @timed("reports_sync_regenerate")
    async def regenerate(
        self, days: Union[ImportHorizon, int, None] = None, skip_existing: bool = False
    ) -> str:
        """
        Rebuild every lookup table in the background.

        Args:
            days: Import horizon, a number of days, or None for all time
            skip_existing: Only import records missing from the lookup tables

        Returns:
            Status message

        Raises:
            ImportInProgressError: If an import is already running
            ValueError: If days is not a positive number of days
        """
        horizon = days if isinstance(days, ImportHorizon) else ImportHorizon.from_payload(days)

        # Held until the init actions are queued so the flag is never set
        # with nothing pending while another regenerate looks at it
        async with self._regenerate_lock:
            if await self.state.is_importing() and not self._import_jobs_pending():
                logger.warning("Clearing importing flag left without any queued import job")
                await self.state.end_import()

            if not await self.state.begin_import(r.name for r in self.runners):
                logger.warning("Regenerate rejected, import already in progress")
                raise ImportInProgressError()

            try:
                await self.category_lookup.regenerate()
                await self.reset_import_stats(horizon, skip_existing)
            except Exception:
                await self.state.end_import()
                raise

            payload = {"days": horizon.to_payload(), "skip_existing": skip_existing}
            for runner in self.runners:
                init_action = runner.action(SyncAction.IMPORT_BATCH_INIT)
                dependency = (
                    self.get_runner(runner.worker.dependency) if runner.worker.dependency else None
                )
                if dependency is not None:
                    self.queue.schedule_after(
                        dependency.import_actions(), init_action, payload, self.group
                    )
                else:
                    self.queue.schedule_now(init_action, payload, self.group)

        logger.info(
            f"Regenerate started ({horizon})",
            extra={"skip_existing": skip_existing, "sync_types": [r.name for r in self.runners]},
        )
        await self.bus.emit(
            AnalyticsEvent.IMPORT_STARTED,
            {"days": horizon.to_payload(), "skip_existing": skip_existing},
        )
        return REGENERATE_MESSAGE

    async def reset_import_stats(self, horizon: ImportHorizon, skip_existing: bool) -> None:
        """Reset progress counters to the new totals and move the watermark."""
        totals = await self.get_import_totals(horizon, skip_existing)
        for name, total in totals.items():
            await self.state.reset_progress(name, total)
        await self.state.update_watermark(horizon, store_now(self.config.store_timezone))

    async def get_import_totals(
        self, days: Union[ImportHorizon, int, None] = None, skip_existing: bool = False
    ) -> Dict[str, int]:
        horizon = days if isinstance(days, ImportHorizon) else ImportHorizon.from_payload(days)
        totals = {}
        for runner in self.runners:
            items = await runner.worker.get_items(1, 1, horizon, skip_existing)
            totals[runner.name] = items.total
        return totals

    async def get_import_status(self) -> Dict[str, Any]:
        """Progress of every sync type plus the watermark and importing flag."""
        sync_types = {}
        for runner in self.runners:
            progress = await self.state.get_progress(runner.name)
            progress["total_imported"] = await runner.worker.get_total_imported()
            sync_types[runner.name] = progress
        return {
            "is_importing": await self.is_importing(),
            "imported_from": await self.state.get_watermark(),
            "sync_types": sync_types,
        }

    # ═══════════════════════════════════════════════════════════════════════
    # DELETE / CANCEL
    # ═══════════════════════════════════════════════════════════════════════

    async def delete_all(self) -> str:
        """
        Delete every lookup row in the background.

        Dependents are deleted first; a dependency's delete is gated until
        every dependent's delete actions have finished.
        """
        cancelled = self.queue.cancel_by_group(self.group)
        for runner in self.runners:
            runner.forget_pending_imports()

        for runner in reversed(self.runners):
            init_action = runner.action(SyncAction.DELETE_BATCH_INIT)
            dependent_actions = [
                action
                for other in self.runners
                if other.worker.dependency == runner.name
                for action in other.delete_actions()
            ]
            if dependent_actions:
                self.queue.schedule_after(dependent_actions, init_action, {}, self.group)
            else:
                self.queue.schedule_delayed(
                    self.config.sync.delete_delay, init_action, {}, self.group
                )

        await self.state.clear(r.name for r in self.runners)
        logger.info("Lookup data delete started", extra={"cancelled_jobs": cancelled})
        await self.bus.emit(AnalyticsEvent.DATA_DELETED, {"cancelled_jobs": cancelled})
        return DELETE_MESSAGE

    def queued_actions(self) -> List[str]:
        """Every action name this service enqueues."""
        actions = [self.queue.gate_action]
        for runner in self.runners:
            actions.extend(runner.descriptor.actions.values())
        return actions

    def clear_queued_actions(self) -> int:
        """Cancel this service's waiting jobs; other groups are left alone."""
        cancelled = self.queue.cancel_by_action_set(self.queued_actions(), self.group)
        for runner in self.runners:
            runner.forget_pending_imports()
        logger.info(f"Cleared {cancelled} queued sync actions")
        return cancelled

    # ═══════════════════════════════════════════════════════════════════════
    # STORE EVENT LISTENERS
    # ═══════════════════════════════════════════════════════════════════════

    async def clear_stock_count_cache(self) -> int:
        removed = await self.cache.delete(*stock_count_keys(self.config))
        logger.debug("Stock count cache cleared", extra={"removed": removed})
        return removed

    async def _on_product_changed(self, data: Dict[str, Any]) -> None:
        await self.clear_stock_count_cache()

    async def _on_option_updated(self, data: Dict[str, Any]) -> None:
        stock = self.config.stock
        if data.get("name") in (stock.low_stock_option, stock.no_stock_option):
            await self.clear_stock_count_cache()

    async def _schedule_single(self, name: str, data: Dict[str, Any]) -> None:
        runner = self.get_runner(name)
        if runner is not None and data.get("id"):
            runner.schedule_import(data["id"])

    async def _on_customer_changed(self, data: Dict[str, Any]) -> None:
        await self._schedule_single("customers", data)

    async def _on_order_changed(self, data: Dict[str, Any]) -> None:
        await self._schedule_single("orders", data)

    async def _on_category_updated(self, data: Dict[str, Any]) -> None:
        await self.category_lookup.regenerate()


# ═══════════════════════════════════════════════════════════════════════════════
# SINGLETON ACCESS
# ═══════════════════════════════════════════════════════════════════════════════

_reports_sync: Optional[ReportsSync] = None
_queue: Optional[SchedulerJobQueue] = None
_cache: Optional[RedisCache] = None


async def get_reports_sync() -> ReportsSync:
    """
    Get the shared ReportsSync, wiring database, cache, settings and a
    started job queue on first use.
    """
    global _reports_sync, _queue, _cache
    if _reports_sync is None:
        db = await get_database()
        _cache = RedisCache(
            url=config.cache.url,
            enabled=config.cache.enabled,
            default_ttl=config.cache.ttl_seconds,
        )
        await _cache.connect()

        report_cache = ReportCache(_cache, events, ttl=config.cache.ttl_seconds)
        register_cache_invalidation_handlers(events, report_cache)

        state = SyncState(SettingsStore(db, events))
        _queue = SchedulerJobQueue(config.sync)
        _reports_sync = ReportsSync(db, _queue, state, report_cache, _cache, events)
        _reports_sync.register()
        _queue.start()
    return _reports_sync


async def close_reports_sync() -> None:
    """Stop the job queue and release the cache and database."""
    global _reports_sync, _queue, _cache
    if _queue is not None:
        _queue.shutdown()
        _queue = None
    if _cache is not None:
        await _cache.disconnect()
        _cache = None
    _reports_sync = None
    await close_database()

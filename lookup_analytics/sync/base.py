"""
Batch sync contract and the engine that drives it through the job queue.

A sync type (BatchSyncWorker) only knows how to page its source ids,
import one record, delete a batch of lookup rows and count what it
holds.  BatchSyncRunner turns that into queued actions:

    import_batch_init -> import_batch (page 1) -> import_batch (page 2) -> ...
    delete_batch_init -> delete_batch -> delete_batch -> ...

Each batch action enqueues its successor before it returns, so within
one sync type batches run strictly one after another.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from lookup_analytics.config import AppConfig, config
from lookup_analytics.database import Database
from lookup_analytics.events import AnalyticsEvent, EventBus, emit_lookup_updated
from lookup_analytics.exceptions import SyncConfigurationError
from lookup_analytics.job_queue import JobQueue
from lookup_analytics.observability import add_log_context, get_logger
from lookup_analytics.sync.state import ImportHorizon, SyncState, SyncStatus

logger = get_logger(__name__)


class SyncAction(Enum):
    """Background actions every sync type registers."""
    IMPORT_BATCH_INIT = "import_batch_init"
    IMPORT_BATCH = "import_batch"
    DELETE_BATCH_INIT = "delete_batch_init"
    DELETE_BATCH = "delete_batch"
    IMPORT = "import"


@dataclass(frozen=True)
class SyncDescriptor:
    """Name, dependency and registered action names of one sync type."""
    name: str
    dependency: Optional[str]
    actions: Dict[SyncAction, str] = field(default_factory=dict)


@dataclass
class ItemsPage:
    """One page of source ids plus the total matching the same filters."""
    total: int
    ids: List[int]


class BatchSyncWorker(ABC):
    """
    Contract of one sync type.

    Attributes:
        name: sync type identifier, part of every action name
        dependency: name of the sync type that must finish first
        contexts: report contexts whose cached results this type's
            lookup rows feed
    """

    name: str = ""
    dependency: Optional[str] = None
    contexts: Tuple[str, ...] = ()

    def __init__(self, db: Database, app_config: AppConfig = config):
        self.db = db
        self.config = app_config

    @abstractmethod
    async def get_items(
        self, limit: int, page: int, horizon: ImportHorizon, skip_existing: bool
    ) -> ItemsPage:
        """Page of source ids to import, oldest first."""

    @abstractmethod
    async def import_item(self, item_id: int) -> bool:
        """Idempotently upsert one source record; False if it no longer exists."""

    @abstractmethod
    async def delete(self, batch_size: int) -> int:
        """Delete up to batch_size lookup rows by ascending id; returns how many."""

    @abstractmethod
    async def get_total_imported(self) -> int:
        """Rows currently held in the lookup table."""


class BatchSyncRunner:
    """Registers and runs the queued actions of one BatchSyncWorker."""

    def __init__(
        self,
        worker: BatchSyncWorker,
        queue: JobQueue,
        state: SyncState,
        bus: EventBus,
        app_config: AppConfig = config,
    ):
        self.worker = worker
        self.queue = queue
        self.state = state
        self.bus = bus
        self.config = app_config
        self._pending_single: Set[int] = set()

    @property
    def name(self) -> str:
        return self.worker.name

    @property
    def group(self) -> str:
        return self.config.sync.queue_group

    def action(self, kind: SyncAction) -> str:
        return f"{self.config.sync.action_prefix}_{kind.value}_{self.worker.name}"

    @property
    def descriptor(self) -> SyncDescriptor:
        return SyncDescriptor(
            name=self.worker.name,
            dependency=self.worker.dependency,
            actions={kind: self.action(kind) for kind in SyncAction},
        )

    def import_actions(self) -> List[str]:
        return [self.action(SyncAction.IMPORT_BATCH_INIT), self.action(SyncAction.IMPORT_BATCH)]

    def delete_actions(self) -> List[str]:
        return [self.action(SyncAction.DELETE_BATCH_INIT), self.action(SyncAction.DELETE_BATCH)]

    def register(self) -> None:
        handlers = {
            SyncAction.IMPORT_BATCH_INIT: self.import_batch_init,
            SyncAction.IMPORT_BATCH: self.import_batch,
            SyncAction.DELETE_BATCH_INIT: self.delete_batch_init,
            SyncAction.DELETE_BATCH: self.delete_batch,
            SyncAction.IMPORT: self.import_single,
        }
        for kind, handler in handlers.items():
            self.queue.register(self.action(kind), handler)

    # ═══════════════════════════════════════════════════════════════════════
    # IMPORT
    # ═══════════════════════════════════════════════════════════════════════

    async def import_batch_init(self, payload: Dict[str, Any]) -> None:
        """Start the paged import, or finish at once when nothing matches."""
        add_log_context(sync_type=self.name)
        horizon = ImportHorizon.from_payload(payload.get("days"))
        skip_existing = bool(payload.get("skip_existing", False))

        items = await self.worker.get_items(1, 1, horizon, skip_existing)
        if items.total == 0:
            logger.info(f"Nothing to import for {self.name}")
            await self._complete_import()
            return

        await self.state.set_status(self.name, SyncStatus.IMPORTING)
        logger.info(
            f"Importing {items.total} {self.name} records ({horizon})",
            extra={"total": items.total, "skip_existing": skip_existing},
        )
        self.queue.schedule_now(
            self.action(SyncAction.IMPORT_BATCH),
            {"page": 1, "days": horizon.to_payload(), "skip_existing": skip_existing},
            self.group,
        )

    async def import_batch(self, payload: Dict[str, Any]) -> None:
        """
        Import one page, then enqueue the next page while pages come back full.

        With skip_existing the page number stays 1: imported ids drop out
        of the source query.
        """
        add_log_context(sync_type=self.name)
        page = int(payload.get("page", 1))
        horizon = ImportHorizon.from_payload(payload.get("days"))
        skip_existing = bool(payload.get("skip_existing", False))
        batch_size = self.config.sync.import_batch_size

        items = await self.worker.get_items(batch_size, page, horizon, skip_existing)
        imported = 0
        for item_id in items.ids:
            if await self.worker.import_item(item_id):
                imported += 1

        if imported:
            await self.state.increment_imported(self.name, imported)
            await emit_lookup_updated(self.bus, self.worker.contexts, self.name, count=imported)

        logger.debug(
            f"Imported {self.name} batch",
            extra={"page": page, "imported": imported, "fetched": len(items.ids)},
        )

        # A full page of ids that all failed would repeat forever on page 1
        stalled = skip_existing and imported == 0
        if len(items.ids) == batch_size and not stalled:
            self.queue.schedule_now(
                self.action(SyncAction.IMPORT_BATCH),
                {
                    "page": 1 if skip_existing else page + 1,
                    "days": horizon.to_payload(),
                    "skip_existing": skip_existing,
                },
                self.group,
            )
            return

        await self._complete_import()

    async def _complete_import(self) -> None:
        total = await self.worker.get_total_imported()
        logger.info(f"{self.name} import completed", extra={"rows": total})
        if await self.state.mark_completed(self.name):
            await self.bus.emit(AnalyticsEvent.IMPORT_COMPLETED, {"sync_type": self.name})

    # ═══════════════════════════════════════════════════════════════════════
    # DELETE
    # ═══════════════════════════════════════════════════════════════════════

    async def delete_batch_init(self, payload: Dict[str, Any]) -> None:
        add_log_context(sync_type=self.name)
        await self.state.set_status(self.name, SyncStatus.DELETING)
        logger.info(f"Deleting {self.name} lookup data")
        self.queue.schedule_now(self.action(SyncAction.DELETE_BATCH), {}, self.group)

    async def delete_batch(self, payload: Dict[str, Any]) -> None:
        """Delete one batch; reschedule while a full batch was removed."""
        add_log_context(sync_type=self.name)
        batch_size = self.config.sync.delete_batch_size
        removed = await self.worker.delete(batch_size)

        if removed:
            await emit_lookup_updated(self.bus, self.worker.contexts, self.name, removed=removed)

        if removed == batch_size:
            self.queue.schedule_now(self.action(SyncAction.DELETE_BATCH), {}, self.group)
            return

        await self.state.set_status(self.name, SyncStatus.COMPLETED)
        logger.info(f"{self.name} lookup data deleted")

    # ═══════════════════════════════════════════════════════════════════════
    # SINGLE RECORDS
    # ═══════════════════════════════════════════════════════════════════════

    def schedule_import(self, item_id: int) -> bool:
        """
        Queue a single-record import unless one is already waiting for the id.

        Returns:
            True if a job was enqueued
        """
        item_id = int(item_id)
        action = self.action(SyncAction.IMPORT)
        if self._pending_single and not self.queue.is_pending(action, self.group):
            # Jobs were cancelled or lost; nothing is waiting for these ids
            self._pending_single.clear()
        if item_id in self._pending_single:
            return False
        self._pending_single.add(item_id)
        self.queue.schedule_now(action, {"id": item_id}, self.group)
        return True

    def forget_pending_imports(self) -> None:
        """Drop the dedupe ids after the queued single imports were cancelled."""
        self._pending_single.clear()

    async def import_single(self, payload: Dict[str, Any]) -> None:
        item_id = int(payload["id"])
        self._pending_single.discard(item_id)
        if await self.worker.import_item(item_id):
            await emit_lookup_updated(self.bus, self.worker.contexts, self.name, count=1)


def order_by_dependency(workers: Sequence[BatchSyncWorker]) -> List[BatchSyncWorker]:
    """
    Order sync types so every dependency comes before its dependents.

    Raises:
        SyncConfigurationError: On duplicate names, unknown dependencies or cycles
    """
    by_name: Dict[str, BatchSyncWorker] = {}
    for worker in workers:
        if worker.name in by_name:
            raise SyncConfigurationError("Duplicate sync type", details=worker.name)
        by_name[worker.name] = worker

    for worker in workers:
        if worker.dependency and worker.dependency not in by_name:
            raise SyncConfigurationError(
                f"Sync type {worker.name} depends on unknown sync type",
                details=worker.dependency,
            )

    ordered: List[BatchSyncWorker] = []
    visiting: Set[str] = set()
    done: Set[str] = set()

    def visit(worker: BatchSyncWorker) -> None:
        if worker.name in done:
            return
        if worker.name in visiting:
            raise SyncConfigurationError("Sync type dependency cycle", details=worker.name)
        visiting.add(worker.name)
        if worker.dependency:
            visit(by_name[worker.dependency])
        visiting.discard(worker.name)
        done.add(worker.name)
        ordered.append(worker)

    for worker in workers:
        visit(worker)
    return ordered

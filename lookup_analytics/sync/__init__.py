"""
Batch synchronization of lookup tables.

- BatchSyncWorker / BatchSyncRunner: sync type contract and its queued actions
- CustomersSync, OrdersSync: concrete sync types
- CategoryLookup: category closure rebuild
- SyncState, ImportHorizon: persisted progress and import range
"""
from lookup_analytics.sync.base import (
    BatchSyncRunner,
    BatchSyncWorker,
    ItemsPage,
    SyncAction,
    SyncDescriptor,
    order_by_dependency,
)
from lookup_analytics.sync.category_lookup import CategoryLookup
from lookup_analytics.sync.customers import CustomerLookup, CustomersSync
from lookup_analytics.sync.orders import OrdersSync
from lookup_analytics.sync.state import ImportHorizon, SyncState, SyncStatus

__all__ = [
    "BatchSyncRunner",
    "BatchSyncWorker",
    "ItemsPage",
    "SyncAction",
    "SyncDescriptor",
    "order_by_dependency",
    "CategoryLookup",
    "CustomerLookup",
    "CustomersSync",
    "OrdersSync",
    "ImportHorizon",
    "SyncState",
    "SyncStatus",
]

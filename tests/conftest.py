"""
Pytest configuration and shared fixtures.
"""
import random
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest
import pytest_asyncio

from lookup_analytics.cache import RedisCache, ReportCache, register_cache_invalidation_handlers
from lookup_analytics.config import AppConfig, ReportsConfig, SyncConfig
from lookup_analytics.database import Database
from lookup_analytics.events import EventBus
from lookup_analytics.job_queue import JobQueue
from lookup_analytics.reports_sync import ReportsSync
from lookup_analytics.settings_store import SettingsStore
from lookup_analytics.sync.category_lookup import CategoryLookup
from lookup_analytics.sync.orders import OrdersSync
from lookup_analytics.sync.state import SyncState


# ═══════════════════════════════════════════════════════════════════════════════
# TEST DOUBLES
# ═══════════════════════════════════════════════════════════════════════════════


class FakeRedis:
    """Dict-backed stand-in for the redis.asyncio client (string values)."""

    def __init__(self):
        self.store: Dict[str, str] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> Optional[str]:
        return self.store.get(key)

    async def setex(self, key: str, ttl: int, value: str) -> bool:
        self.store[key] = value
        return True

    async def delete(self, *keys: str) -> int:
        return sum(1 for key in keys if self.store.pop(key, None) is not None)

    async def incr(self, key: str) -> int:
        value = int(self.store.get(key, 0)) + 1
        self.store[key] = str(value)
        return value

    async def close(self) -> None:
        pass


class SimulatedJobQueue(JobQueue):
    """
    Deterministic in-memory queue.

    run_until_idle() executes one waiting job at a time, picked at random
    from everything waiting (delays are ignored), and records the start
    and end of every job in `log`.
    """

    def __init__(self, sync_config: SyncConfig, seed: int = 0):
        super().__init__(sync_config)
        self.rng = random.Random(seed)
        self.waiting: List[Dict[str, Any]] = []
        self.log: List[Tuple[str, str]] = []

    def _enqueue(self, action, payload, group, delay, attempt) -> None:
        self.waiting.append({
            "action": action,
            "payload": payload,
            "group": group,
            "delay": delay,
            "attempt": attempt,
        })

    def _has_scheduled(self, action, group) -> bool:
        return any(
            job["group"] == group and (action is None or job["action"] == action)
            for job in self.waiting
        )

    def cancel_by_group(self, group: str) -> int:
        before = len(self.waiting)
        self.waiting = [job for job in self.waiting if job["group"] != group]
        return before - len(self.waiting)

    def cancel_by_action_set(self, actions: Sequence[str], group: str) -> int:
        wanted = set(actions)
        before = len(self.waiting)
        self.waiting = [
            job for job in self.waiting
            if not (job["group"] == group and job["action"] in wanted)
        ]
        return before - len(self.waiting)

    def waiting_actions(self, group: Optional[str] = None) -> List[str]:
        return [job["action"] for job in self.waiting if group is None or job["group"] == group]

    async def run_next(self) -> None:
        job = self.waiting.pop(self.rng.randrange(len(self.waiting)))
        self.log.append(("start", job["action"]))
        await self.execute(job["action"], job["payload"], job["group"], job["attempt"])
        self.log.append(("end", job["action"]))

    async def run_until_idle(self, max_jobs: int = 5000) -> int:
        executed = 0
        while self.waiting:
            if executed >= max_jobs:
                raise RuntimeError(f"Queue still busy after {max_jobs} jobs")
            await self.run_next()
            executed += 1
        return executed


# ═══════════════════════════════════════════════════════════════════════════════
# SAMPLE STORE DATA
# ═══════════════════════════════════════════════════════════════════════════════

# Clothing > Shirts, Clothing > Hats, Books > Fiction, Empty
CATEGORIES = [
    {"id": 1, "name": "Clothing", "parent_id": 0},
    {"id": 2, "name": "Shirts", "parent_id": 1},
    {"id": 3, "name": "Hats", "parent_id": 1},
    {"id": 4, "name": "Books", "parent_id": 0},
    {"id": 5, "name": "Fiction", "parent_id": 4},
    {"id": 6, "name": "Empty", "parent_id": 0},
]

PRODUCTS = [
    {"id": 10, "name": "T-Shirt", "stock_status": "instock", "manage_stock": True,
     "stock_quantity": 50},
    {"id": 11, "name": "Cap", "stock_status": "instock", "manage_stock": True,
     "stock_quantity": 2},
    {"id": 12, "name": "Novel", "stock_status": "outofstock", "manage_stock": True,
     "stock_quantity": 0},
    {"id": 13, "name": "Cookbook", "stock_status": "onbackorder", "manage_stock": False,
     "stock_quantity": 0},
    {"id": 14, "name": "Scarf", "stock_status": "instock", "manage_stock": True,
     "stock_quantity": 4},
]

PRODUCT_CATEGORIES = [
    {"product_id": 10, "term_id": 2},
    {"product_id": 11, "term_id": 3},
    {"product_id": 12, "term_id": 5},
    {"product_id": 13, "term_id": 4},
    {"product_id": 14, "term_id": 6},
]

USERS = [
    {"id": 100, "username": "alice", "email": "alice@example.com", "first_name": "Alice",
     "last_name": "Smith", "role": "customer", "registered_at": datetime(2019, 12, 1),
     "country": "US", "city": "Austin", "postcode": "73301"},
    {"id": 101, "username": "bob", "email": "bob@example.com", "first_name": "Bob",
     "last_name": "Jones", "role": "customer", "registered_at": datetime(2020, 1, 2),
     "country": "GB", "city": "Leeds", "postcode": "LS1"},
    {"id": 102, "username": "admin", "email": "admin@example.com", "first_name": "Ad",
     "last_name": "Min", "role": "administrator", "registered_at": datetime(2019, 1, 1),
     "country": "", "city": "", "postcode": ""},
]


def _order(order_id, user_id, status, created_at, total, tax, email=None, shipping=0):
    return {
        "id": order_id,
        "parent_id": 0,
        "customer_user_id": user_id,
        "status": status,
        "created_at": created_at,
        "total": total,
        "tax_total": tax,
        "shipping_total": shipping,
        "billing_email": email,
        "billing_first_name": "Carol" if email else None,
        "billing_last_name": "Guest" if email else None,
        "billing_country": "DE" if email else None,
        "billing_city": "Berlin" if email else None,
        "billing_postcode": "10115" if email else None,
    }


ORDERS = [
    _order(1000, 100, "completed", datetime(2020, 1, 5, 10, 0), 55, 5),
    _order(1001, 101, "processing", datetime(2020, 1, 10, 12, 0), 33, 3),
    _order(1002, None, "completed", datetime(2020, 1, 15, 9, 30), 22, 2, email="Carol@Example.com"),
    _order(1003, 100, "completed", datetime(2020, 1, 20, 16, 45), 11, 1),
    _order(1004, None, "failed", datetime(2020, 1, 21, 8, 0), 110, 10, email="carol@example.com"),
]

ORDER_ITEMS = [
    {"id": 5000, "order_id": 1000, "product_id": 10, "variation_id": 0, "quantity": 2,
     "line_total": 40, "line_tax": 4},
    {"id": 5001, "order_id": 1000, "product_id": 11, "variation_id": 0, "quantity": 1,
     "line_total": 10, "line_tax": 1},
    {"id": 5002, "order_id": 1001, "product_id": 12, "variation_id": 0, "quantity": 1,
     "line_total": 30, "line_tax": 3},
    {"id": 5003, "order_id": 1002, "product_id": 13, "variation_id": 0, "quantity": 2,
     "line_total": 20, "line_tax": 2},
    {"id": 5004, "order_id": 1003, "product_id": 10, "variation_id": 0, "quantity": 1,
     "line_total": 10, "line_tax": 1},
    {"id": 5005, "order_id": 1004, "product_id": 13, "variation_id": 0, "quantity": 5,
     "line_total": 100, "line_tax": 10},
]


async def insert(db: Database, table: str, rows: List[Dict[str, Any]]) -> None:
    """Insert dict rows with a plain parameterized INSERT."""
    for row in rows:
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        await db.execute(
            f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", list(row.values())
        )


async def seed_store(db: Database) -> None:
    await insert(db, "categories", CATEGORIES)
    await insert(db, "products", PRODUCTS)
    await insert(db, "product_categories", PRODUCT_CATEGORIES)
    await insert(db, "users", USERS)
    await insert(db, "orders", ORDERS)
    await insert(db, "order_items", ORDER_ITEMS)


def make_config(**sync_overrides) -> AppConfig:
    sync = {
        "import_batch_size": 2,
        "delete_batch_size": 2,
        "queue_group": "analytics-data",
        "max_attempts": 3,
        "retry_delay_seconds": 60,
    }
    sync.update(sync_overrides)
    return AppConfig(
        reports=ReportsConfig(timezone="UTC", per_page=10),
        sync=SyncConfig(**sync),
    )


def build_reports_sync(
    db: Database, app_config: AppConfig, seed: int = 0
) -> Tuple[ReportsSync, SimulatedJobQueue, RedisCache, EventBus]:
    """Wire a ReportsSync over the given database with fakes for Redis and the queue."""
    bus = EventBus()
    cache = RedisCache(enabled=True)
    cache._client = FakeRedis()
    cache._connected = True
    report_cache = ReportCache(cache, bus, prefix=app_config.cache.key_prefix)
    register_cache_invalidation_handlers(bus, report_cache)

    queue = SimulatedJobQueue(app_config.sync, seed=seed)
    state = SyncState(SettingsStore(db, bus))
    reports_sync = ReportsSync(db, queue, state, report_cache, cache, bus, app_config)
    reports_sync.register()
    return reports_sync, queue, cache, bus


# ═══════════════════════════════════════════════════════════════════════════════
# FIXTURES
# ═══════════════════════════════════════════════════════════════════════════════


@pytest.fixture
def app_config() -> AppConfig:
    """Small batches and UTC store time."""
    return make_config()


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory DuckDB database with the full schema."""
    database = Database(":memory:")
    await database.connect()
    yield database
    await database.close()


@pytest_asyncio.fixture
async def store_db(db):
    """Database holding the sample store data, lookup tables empty."""
    await seed_store(db)
    return db


@pytest_asyncio.fixture
async def synced_db(store_db, app_config):
    """Sample store data with every lookup table populated."""
    await CategoryLookup(store_db, EventBus()).regenerate()
    orders = OrdersSync(store_db, app_config)
    for order in ORDERS:
        await orders.import_item(order["id"])
    return store_db


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def redis_cache(fake_redis) -> RedisCache:
    """Connected RedisCache backed by FakeRedis."""
    cache = RedisCache(enabled=True)
    cache._client = fake_redis
    cache._connected = True
    return cache


@pytest.fixture
def sync_config() -> SyncConfig:
    return make_config().sync

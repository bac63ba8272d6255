"""
Stock count figures for the stock report summary.

Counts are cheap to read but scan the whole catalog, so each is cached
under a fixed key until a product or a stock threshold changes
(see ReportsSync.clear_stock_count_cache).
"""
from typing import Dict, List, Optional

from lookup_analytics.cache import RedisCache
from lookup_analytics.config import AppConfig, config
from lookup_analytics.database import Database
from lookup_analytics.observability import get_logger
from lookup_analytics.settings_store import SettingsStore

logger = get_logger(__name__)


def stock_count_key(name: str, prefix: str = config.cache.key_prefix) -> str:
    return f"{prefix}:stock_count:{name}"


def product_count_key(prefix: str = config.cache.key_prefix) -> str:
    return f"{prefix}:product_count"


def stock_count_keys(app_config: AppConfig = config) -> List[str]:
    """Every cache key holding a stock figure: one per status, low stock, product total."""
    prefix = app_config.cache.key_prefix
    keys = [stock_count_key(status, prefix) for status in app_config.stock.statuses]
    keys.append(stock_count_key("lowstock", prefix))
    keys.append(product_count_key(prefix))
    return keys


class StockDataStore:
    """Cached product counts per stock status."""

    def __init__(
        self,
        db: Database,
        cache: RedisCache,
        settings: SettingsStore,
        app_config: AppConfig = config,
    ):
        self.db = db
        self.cache = cache
        self.settings = settings
        self.config = app_config

    async def _cached_count(self, key: str, sql: str, params: Optional[list] = None) -> int:
        cached = await self.cache.get(key)
        if cached is not None:
            return int(cached)
        count = int(await self.db.fetch_value(sql, params) or 0)
        await self.cache.set(key, count)
        return count

    async def get_stock_count(self, status: str) -> int:
        prefix = self.config.cache.key_prefix
        return await self._cached_count(
            stock_count_key(status, prefix),
            "SELECT COUNT(*) FROM products WHERE status = 'publish' AND stock_status = ?",
            [status],
        )

    async def get_low_stock_count(self) -> int:
        """
        Products with managed stock at or below their low stock threshold
        but still above the out-of-stock threshold.
        """
        stock = self.config.stock
        low_stock = int(await self.settings.get(stock.low_stock_option, stock.default_low_stock_amount))
        no_stock = int(await self.settings.get(stock.no_stock_option, stock.default_no_stock_amount))
        return await self._cached_count(
            stock_count_key("lowstock", self.config.cache.key_prefix),
            """
            SELECT COUNT(*) FROM products
            WHERE status = 'publish'
              AND manage_stock
              AND stock_status = 'instock'
              AND stock_quantity <= COALESCE(low_stock_amount, ?)
              AND stock_quantity > ?
            """,
            [low_stock, no_stock],
        )

    async def get_product_count(self) -> int:
        return await self._cached_count(
            product_count_key(self.config.cache.key_prefix),
            "SELECT COUNT(*) FROM products WHERE status = 'publish'",
        )

    async def get_counts(self) -> Dict[str, int]:
        counts = {status: await self.get_stock_count(status) for status in self.config.stock.statuses}
        counts["lowstock"] = await self.get_low_stock_count()
        counts["products"] = await self.get_product_count()
        return counts

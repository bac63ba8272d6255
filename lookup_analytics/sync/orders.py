"""
Order lookup sync: order_stats (one row per order) and
order_product_lookup (one row per line item).

Depends on the customer sync so every order can be linked to its
customer_lookup row.
"""
from typing import Any, Dict, List, Optional

from lookup_analytics.config import AppConfig, config
from lookup_analytics.observability import get_logger
from lookup_analytics.query import ClauseKind, SqlQuery
from lookup_analytics.sync.base import BatchSyncWorker, ItemsPage
from lookup_analytics.sync.customers import CustomerLookup
from lookup_analytics.sync.state import ImportHorizon
from lookup_analytics.time_interval import start_of_day, store_now

logger = get_logger(__name__)


class OrdersSync(BatchSyncWorker):
    """Orders into order_stats and order_product_lookup."""

    name = "orders"
    dependency = "customers"
    contexts = ("categories", "revenue", "orders")

    def __init__(self, db, app_config: AppConfig = config):
        super().__init__(db, app_config)
        self.customers = CustomerLookup(db)

    def _source_query(self, horizon: ImportHorizon, skip_existing: bool) -> SqlQuery:
        query = SqlQuery("orders_sync")
        query.add_clause(ClauseKind.FROM, "orders")

        start = horizon.start(store_now(self.config.store_timezone))
        if start is not None:
            query.add_clause(
                ClauseKind.WHERE, "orders.created_at >= ?", [start_of_day(start.date())]
            )

        if skip_existing:
            query.add_clause(
                ClauseKind.WHERE,
                "NOT EXISTS (SELECT 1 FROM order_stats WHERE order_stats.order_id = orders.id)",
            )
        return query

    async def get_items(
        self, limit: int, page: int, horizon: ImportHorizon, skip_existing: bool
    ) -> ItemsPage:
        count_query = self._source_query(horizon, skip_existing)
        count_query.add_clause(ClauseKind.SELECT, "COUNT(*)")
        sql, params = count_query.to_sql()
        total = int(await self.db.fetch_value(sql, params) or 0)

        ids_query = self._source_query(horizon, skip_existing)
        ids_query.add_clause(ClauseKind.SELECT, "orders.id")
        ids_query.add_clause(ClauseKind.ORDER_BY, "orders.id ASC")
        ids_query.add_clause(ClauseKind.LIMIT, "? OFFSET ?", [limit, (page - 1) * limit])
        sql, params = ids_query.to_sql()
        ids = await self.db.fetch_column(sql, params)

        return ItemsPage(total=total, ids=[int(i) for i in ids])

    async def _resolve_customer(self, order: Dict[str, Any]) -> Optional[int]:
        user_id = order.get("customer_user_id")
        if user_id:
            customer_id = await self.customers.get_customer_id_by_user_id(user_id)
            if customer_id is None:
                customer_id = await self.customers.update_registered_customer(user_id)
            if customer_id is not None:
                return customer_id
        return await self.customers.get_or_create_guest_customer(order)

    async def _is_returning_customer(
        self, order: Dict[str, Any], customer_id: Optional[int]
    ) -> Optional[bool]:
        if customer_id is None:
            return None
        earlier = await self.db.fetch_value(
            """
            SELECT COUNT(*) FROM order_stats
            WHERE customer_id = ? AND parent_id = 0 AND order_id != ? AND date_created < ?
            """,
            [customer_id, order["id"], order["created_at"]],
        )
        return bool(earlier)

    async def import_item(self, item_id: int) -> bool:
        """
        Upsert the stats and product lookup rows of one order.

        An order that no longer exists has its lookup rows removed.
        """
        order = await self.db.fetch_one("SELECT * FROM orders WHERE id = ?", [item_id])
        if order is None:
            await self._delete_orders([item_id])
            logger.debug(f"Order {item_id} not found, lookup rows removed")
            return False

        items = await self.db.fetch_all(
            "SELECT * FROM order_items WHERE order_id = ? ORDER BY id", [item_id]
        )
        customer_id = await self._resolve_customer(order)

        total = float(order["total"] or 0)
        tax = float(order["tax_total"] or 0)
        shipping = float(order["shipping_total"] or 0)

        await self.db.execute(
            """
            INSERT INTO order_stats (
                order_id, parent_id, date_created, num_items_sold, total_sales,
                tax_total, shipping_total, net_total, returning_customer, status, customer_id
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (order_id) DO UPDATE SET
                parent_id = excluded.parent_id,
                date_created = excluded.date_created,
                num_items_sold = excluded.num_items_sold,
                total_sales = excluded.total_sales,
                tax_total = excluded.tax_total,
                shipping_total = excluded.shipping_total,
                net_total = excluded.net_total,
                returning_customer = excluded.returning_customer,
                status = excluded.status,
                customer_id = excluded.customer_id
            """,
            [
                order["id"],
                order["parent_id"] or 0,
                order["created_at"],
                sum(int(item["quantity"]) for item in items),
                total,
                tax,
                shipping,
                total - tax - shipping,
                await self._is_returning_customer(order, customer_id),
                order["status"],
                customer_id,
            ],
        )

        await self.db.execute("DELETE FROM order_product_lookup WHERE order_id = ?", [item_id])
        await self.db.insert_dataframe("order_product_lookup", self._product_rows(order, items, customer_id))
        return True

    @staticmethod
    def _product_rows(
        order: Dict[str, Any], items: List[Dict[str, Any]], customer_id: Optional[int]
    ) -> List[Dict[str, Any]]:
        rows = []
        for item in items:
            net = float(item["line_total"] or 0)
            rows.append({
                "order_item_id": item["id"],
                "order_id": order["id"],
                "product_id": item["product_id"],
                "variation_id": item["variation_id"] or 0,
                "customer_id": customer_id,
                "date_created": order["created_at"],
                "product_qty": int(item["quantity"]),
                "product_net_revenue": net,
                "product_gross_revenue": net + float(item["line_tax"] or 0),
            })
        return rows

    async def _delete_orders(self, order_ids: List[int]) -> None:
        placeholders = ", ".join("?" for _ in order_ids)
        await self.db.execute(
            f"DELETE FROM order_product_lookup WHERE order_id IN ({placeholders})", order_ids
        )
        await self.db.execute(
            f"DELETE FROM order_stats WHERE order_id IN ({placeholders})", order_ids
        )

    async def delete(self, batch_size: int) -> int:
        order_ids = await self.db.fetch_column(
            "SELECT order_id FROM order_stats ORDER BY order_id ASC LIMIT ?", [batch_size]
        )
        if not order_ids:
            return 0
        await self._delete_orders(order_ids)
        return len(order_ids)

    async def get_total_imported(self) -> int:
        return int(await self.db.fetch_value("SELECT COUNT(*) FROM order_stats") or 0)

"""
Customer lookup sync.

Registered customers come from users with a customer role; guests are
created on demand from an order's billing details, keyed by email.
"""
from datetime import datetime
from typing import Any, Dict, Optional

from lookup_analytics.config import AppConfig, config
from lookup_analytics.observability import get_logger
from lookup_analytics.query import ClauseKind, SqlQuery
from lookup_analytics.sync.base import BatchSyncWorker, ItemsPage
from lookup_analytics.sync.state import ImportHorizon
from lookup_analytics.time_interval import start_of_day, store_now

logger = get_logger(__name__)


class CustomerLookup:
    """Reads and writes rows of customer_lookup."""

    def __init__(self, db):
        self.db = db

    async def get_customer_id_by_user_id(self, user_id: int) -> Optional[int]:
        return await self.db.fetch_value(
            "SELECT customer_id FROM customer_lookup WHERE user_id = ?", [user_id]
        )

    async def _last_active(self, user_id: int) -> Optional[datetime]:
        return await self.db.fetch_value(
            "SELECT MAX(created_at) FROM orders WHERE customer_user_id = ?", [user_id]
        )

    async def update_registered_customer(self, user_id: int) -> Optional[int]:
        """
        Insert or refresh the lookup row of a registered user.

        Returns:
            customer_id, or None when the user does not exist
        """
        user = await self.db.fetch_one("SELECT * FROM users WHERE id = ?", [user_id])
        if user is None:
            logger.debug(f"User {user_id} not found, skipping customer import")
            return None

        values = [
            user["username"],
            user["first_name"],
            user["last_name"],
            user["email"],
            await self._last_active(user_id),
            user["registered_at"],
            user["country"] or "",
            user["city"] or "",
            user["postcode"] or "",
        ]

        customer_id = await self.get_customer_id_by_user_id(user_id)
        if customer_id is not None:
            await self.db.execute(
                """
                UPDATE customer_lookup SET
                    username = ?, first_name = ?, last_name = ?, email = ?,
                    date_last_active = ?, date_registered = ?,
                    country = ?, city = ?, postcode = ?
                WHERE customer_id = ?
                """,
                values + [customer_id],
            )
            return customer_id

        return await self.db.fetch_value(
            """
            INSERT INTO customer_lookup (
                user_id, username, first_name, last_name, email,
                date_last_active, date_registered, country, city, postcode
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING customer_id
            """,
            [user_id] + values,
        )

    async def get_or_create_guest_customer(self, order: Dict[str, Any]) -> Optional[int]:
        """Resolve the guest customer of an order by billing email, creating it if needed."""
        email = (order.get("billing_email") or "").strip().lower()
        if not email:
            return None

        existing = await self.db.fetch_one(
            """
            SELECT customer_id, date_last_active FROM customer_lookup
            WHERE user_id IS NULL AND lower(email) = ?
            ORDER BY customer_id ASC
            LIMIT 1
            """,
            [email],
        )
        if existing is not None:
            last_active = existing["date_last_active"]
            if last_active is None or order["created_at"] > last_active:
                await self.db.execute(
                    "UPDATE customer_lookup SET date_last_active = ? WHERE customer_id = ?",
                    [order["created_at"], existing["customer_id"]],
                )
            return existing["customer_id"]

        return await self.db.fetch_value(
            """
            INSERT INTO customer_lookup (
                user_id, username, first_name, last_name, email,
                date_last_active, date_registered, country, city, postcode
            ) VALUES (NULL, '', ?, ?, ?, ?, NULL, ?, ?, ?)
            RETURNING customer_id
            """,
            [
                order.get("billing_first_name"),
                order.get("billing_last_name"),
                email,
                order["created_at"],
                order.get("billing_country") or "",
                order.get("billing_city") or "",
                order.get("billing_postcode") or "",
            ],
        )


class CustomersSync(BatchSyncWorker):
    """Registered customers into customer_lookup."""

    name = "customers"
    dependency = None
    contexts = ("customers",)

    def __init__(self, db, app_config: AppConfig = config):
        super().__init__(db, app_config)
        self.lookup = CustomerLookup(db)

    def _source_query(self, horizon: ImportHorizon, skip_existing: bool) -> SqlQuery:
        query = SqlQuery("customers_sync")
        query.add_clause(ClauseKind.FROM, "users")

        roles = list(self.config.sync.customer_roles)
        placeholders = ", ".join("?" for _ in roles)
        query.add_clause(ClauseKind.WHERE, f"users.role IN ({placeholders})", roles)

        start = horizon.start(store_now(self.config.store_timezone))
        if start is not None:
            query.add_clause(
                ClauseKind.WHERE, "users.registered_at >= ?", [start_of_day(start.date())]
            )

        if skip_existing:
            query.add_clause(
                ClauseKind.WHERE,
                "NOT EXISTS (SELECT 1 FROM customer_lookup "
                "WHERE customer_lookup.user_id = users.id)",
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
        ids_query.add_clause(ClauseKind.SELECT, "users.id")
        ids_query.add_clause(ClauseKind.ORDER_BY, "users.id ASC")
        ids_query.add_clause(ClauseKind.LIMIT, "? OFFSET ?", [limit, (page - 1) * limit])
        sql, params = ids_query.to_sql()
        ids = await self.db.fetch_column(sql, params)

        return ItemsPage(total=total, ids=[int(i) for i in ids])

    async def import_item(self, item_id: int) -> bool:
        return await self.lookup.update_registered_customer(item_id) is not None

    async def delete(self, batch_size: int) -> int:
        customer_ids = await self.db.fetch_column(
            "SELECT customer_id FROM customer_lookup ORDER BY customer_id ASC LIMIT ?",
            [batch_size],
        )
        if not customer_ids:
            return 0
        placeholders = ", ".join("?" for _ in customer_ids)
        await self.db.execute(
            f"DELETE FROM customer_lookup WHERE customer_id IN ({placeholders})", customer_ids
        )
        return len(customer_ids)

    async def get_total_imported(self) -> int:
        return int(await self.db.fetch_value("SELECT COUNT(*) FROM customer_lookup") or 0)

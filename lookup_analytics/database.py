"""
DuckDB connection management and schema for source and lookup tables.

The source tables (users, orders, order_items, products, categories,
product_categories) hold the transactional data the store writes.  The
lookup tables (order_stats, order_product_lookup, customer_lookup,
category_lookup) are the denormalized copies that reports aggregate
over.  All timestamps are naive values in the store timezone.

Usage:
    db = Database(":memory:")
    await db.connect()
    rows = await db.fetch_all("SELECT * FROM order_stats WHERE status = ?", ["completed"])
"""
import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import duckdb
import pandas as pd

from lookup_analytics.config import config
from lookup_analytics.exceptions import QueryExecutionError
from lookup_analytics.observability import get_logger

logger = get_logger(__name__)

IN_MEMORY = ":memory:"


class Database:
    """
    DuckDB connection with lazy connect and schema initialization.

    Every statement goes through execute/fetch_* so store failures surface
    as QueryExecutionError instead of raw driver errors.
    """

    def __init__(self, db_path: str = config.database.path):
        self.db_path = str(db_path)
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = asyncio.Lock()
        self._schema_initialized = False

    async def connect(self) -> None:
        """Initialize database connection and schema."""
        if self.db_path != IN_MEMORY:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        async with self._lock:
            if self._connection is None:
                self._connection = duckdb.connect(self.db_path)
                if not self._schema_initialized:
                    self._init_schema()
                    self._schema_initialized = True
                logger.info(f"DuckDB connected: {self.db_path}")

    async def close(self) -> None:
        """Close database connection."""
        async with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
                self._schema_initialized = False
                logger.info("DuckDB connection closed")

    @asynccontextmanager
    async def connection(self):
        """Get database connection with automatic reconnection."""
        if self._connection is None:
            await self.connect()
        yield self._connection

    async def execute(self, sql: str, params: Optional[Sequence[Any]] = None) -> None:
        """Execute a statement that returns no rows."""
        async with self.connection() as conn:
            self._run(conn, sql, params)

    async def execute_many(self, sql: str, rows: Sequence[Sequence[Any]]) -> None:
        if not rows:
            return
        async with self.connection() as conn:
            try:
                conn.executemany(sql, [list(row) for row in rows])
            except duckdb.Error as e:
                raise QueryExecutionError(details=str(e), statement=sql) from e

    async def fetch_all(
        self, sql: str, params: Optional[Sequence[Any]] = None
    ) -> List[Dict[str, Any]]:
        """Execute query and return every row as a column-name dict."""
        async with self.connection() as conn:
            result = self._run(conn, sql, params)
            columns = [col[0] for col in result.description]
            return [dict(zip(columns, row)) for row in result.fetchall()]

    async def fetch_one(
        self, sql: str, params: Optional[Sequence[Any]] = None
    ) -> Optional[Dict[str, Any]]:
        rows = await self.fetch_all(sql, params)
        return rows[0] if rows else None

    async def fetch_value(self, sql: str, params: Optional[Sequence[Any]] = None) -> Any:
        """Execute query and return the first column of the first row."""
        async with self.connection() as conn:
            row = self._run(conn, sql, params).fetchone()
            return row[0] if row else None

    async def fetch_column(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[Any]:
        async with self.connection() as conn:
            return [row[0] for row in self._run(conn, sql, params).fetchall()]

    async def insert_dataframe(self, table: str, rows: List[Dict[str, Any]]) -> int:
        """
        Bulk insert dict rows through a registered pandas DataFrame.

        Returns:
            Number of rows inserted
        """
        if not rows:
            return 0

        df = pd.DataFrame(rows)
        # Object columns keep None as NULL instead of NaN in integer columns
        df = df.astype(object).where(df.notna(), None)
        columns = ", ".join(df.columns)
        view = f"{table}_batch"

        async with self.connection() as conn:
            conn.register(view, df)
            try:
                self._run(conn, f"INSERT INTO {table} ({columns}) SELECT {columns} FROM {view}")
            finally:
                conn.unregister(view)

        return len(rows)

    @staticmethod
    def _run(conn: duckdb.DuckDBPyConnection, sql: str, params: Optional[Sequence[Any]] = None):
        try:
            if params:
                return conn.execute(sql, list(params))
            return conn.execute(sql)
        except duckdb.Error as e:
            logger.error("Query failed", extra={"error": str(e), "sql": sql[:200]})
            raise QueryExecutionError(details=str(e), statement=sql) from e

    def _init_schema(self) -> None:
        """Create database schema if not exists."""
        schema_sql = """
        -- Store users (registered customers and staff)
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY,
            username VARCHAR NOT NULL,
            email VARCHAR,
            first_name VARCHAR,
            last_name VARCHAR,
            role VARCHAR NOT NULL DEFAULT 'customer',
            registered_at TIMESTAMP,
            country VARCHAR,
            city VARCHAR,
            postcode VARCHAR
        );

        -- Orders (refunds are child orders with parent_id set)
        CREATE TABLE IF NOT EXISTS orders (
            id INTEGER PRIMARY KEY,
            parent_id INTEGER DEFAULT 0,
            customer_user_id INTEGER,
            status VARCHAR NOT NULL,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP,
            total DECIMAL(12, 2) DEFAULT 0,
            shipping_total DECIMAL(12, 2) DEFAULT 0,
            tax_total DECIMAL(12, 2) DEFAULT 0,
            billing_email VARCHAR,
            billing_first_name VARCHAR,
            billing_last_name VARCHAR,
            billing_country VARCHAR,
            billing_city VARCHAR,
            billing_postcode VARCHAR
        );

        -- Order line items
        CREATE TABLE IF NOT EXISTS order_items (
            id INTEGER PRIMARY KEY,
            order_id INTEGER NOT NULL,
            product_id INTEGER NOT NULL,
            variation_id INTEGER DEFAULT 0,
            quantity INTEGER NOT NULL,
            line_total DECIMAL(12, 2) DEFAULT 0,
            line_tax DECIMAL(12, 2) DEFAULT 0
        );

        -- Products catalog
        CREATE TABLE IF NOT EXISTS products (
            id INTEGER PRIMARY KEY,
            name VARCHAR NOT NULL,
            sku VARCHAR,
            status VARCHAR DEFAULT 'publish',
            stock_status VARCHAR DEFAULT 'instock',
            manage_stock BOOLEAN DEFAULT FALSE,
            stock_quantity INTEGER,
            low_stock_amount INTEGER,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );

        -- Product categories (tree via parent_id)
        CREATE TABLE IF NOT EXISTS categories (
            id INTEGER PRIMARY KEY,
            name VARCHAR NOT NULL,
            parent_id INTEGER DEFAULT 0
        );

        -- Product to category assignments
        CREATE TABLE IF NOT EXISTS product_categories (
            product_id INTEGER NOT NULL,
            term_id INTEGER NOT NULL,
            PRIMARY KEY (product_id, term_id)
        );

        -- Lookup: one row per order
        CREATE TABLE IF NOT EXISTS order_stats (
            order_id INTEGER PRIMARY KEY,
            parent_id INTEGER DEFAULT 0,
            date_created TIMESTAMP NOT NULL,
            num_items_sold INTEGER DEFAULT 0,
            total_sales DECIMAL(12, 2) DEFAULT 0,
            tax_total DECIMAL(12, 2) DEFAULT 0,
            shipping_total DECIMAL(12, 2) DEFAULT 0,
            net_total DECIMAL(12, 2) DEFAULT 0,
            returning_customer BOOLEAN,
            status VARCHAR NOT NULL,
            customer_id BIGINT
        );

        -- Lookup: one row per order line item
        CREATE TABLE IF NOT EXISTS order_product_lookup (
            order_item_id INTEGER PRIMARY KEY,
            order_id INTEGER NOT NULL,
            product_id INTEGER NOT NULL,
            variation_id INTEGER DEFAULT 0,
            customer_id BIGINT,
            date_created TIMESTAMP NOT NULL,
            product_qty INTEGER NOT NULL,
            product_net_revenue DECIMAL(12, 2) DEFAULT 0,
            product_gross_revenue DECIMAL(12, 2) DEFAULT 0
        );

        CREATE SEQUENCE IF NOT EXISTS customer_lookup_seq START 1;

        -- Lookup: registered and guest customers
        CREATE TABLE IF NOT EXISTS customer_lookup (
            customer_id BIGINT PRIMARY KEY DEFAULT nextval('customer_lookup_seq'),
            user_id INTEGER UNIQUE,
            username VARCHAR DEFAULT '',
            first_name VARCHAR,
            last_name VARCHAR,
            email VARCHAR,
            date_last_active TIMESTAMP,
            date_registered TIMESTAMP,
            country VARCHAR DEFAULT '',
            city VARCHAR DEFAULT '',
            postcode VARCHAR DEFAULT ''
        );

        -- Lookup: category closure, each term maps to itself and every ancestor
        CREATE TABLE IF NOT EXISTS category_lookup (
            category_tree_id INTEGER NOT NULL,
            term_id INTEGER NOT NULL,
            PRIMARY KEY (category_tree_id, term_id)
        );

        -- Key/value settings (import progress, stock thresholds)
        CREATE TABLE IF NOT EXISTS options (
            name VARCHAR PRIMARY KEY,
            value VARCHAR,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );

        """
        self._connection.execute(schema_sql)
        logger.info("Database schema initialized")


# ═══════════════════════════════════════════════════════════════════════════════
# SINGLETON ACCESS
# ═══════════════════════════════════════════════════════════════════════════════

_database_instance: Optional[Database] = None
_database_lock = asyncio.Lock()


async def get_database() -> Database:
    """Get or create the shared Database instance."""
    global _database_instance
    async with _database_lock:
        if _database_instance is None:
            _database_instance = Database()
            await _database_instance.connect()
    return _database_instance


async def close_database() -> None:
    """Close the shared Database instance."""
    global _database_instance
    if _database_instance:
        await _database_instance.close()
        _database_instance = None

"""
Revenue report: order totals bucketed by time interval.

Every interval in the requested range gets a row; intervals without
orders are filled with zeros so charts see a continuous series.
"""
from typing import Any, Dict, List

from lookup_analytics.query import ClauseKind
from lookup_analytics.reports.data_store import ReportDataStore
from lookup_analytics.time_interval import interval_sql, iterate, normalize_interval

LOOKUP = "order_stats"


class RevenueDataStore(ReportDataStore):
    """Revenue stats per hour/day/week/month/quarter/year."""

    table_name = LOOKUP
    context = "revenue"
    column_types = {
        "orders_count": int,
        "num_items_sold": int,
        "total_sales": float,
        "net_revenue": float,
        "taxes": float,
        "shipping": float,
    }

    def assign_report_columns(self) -> Dict[str, str]:
        table = self.table_name
        return {
            "orders_count": f"SUM(CASE WHEN {table}.parent_id = 0 THEN 1 ELSE 0 END) AS orders_count",
            "num_items_sold": "SUM(num_items_sold) AS num_items_sold",
            "total_sales": "SUM(total_sales) AS total_sales",
            "net_revenue": "SUM(net_total) AS net_revenue",
            "taxes": "SUM(tax_total) AS taxes",
            "shipping": "SUM(shipping_total) AS shipping",
        }

    def get_default_query_args(self) -> Dict[str, Any]:
        defaults = super().get_default_query_args()
        defaults["interval"] = self.config.reports.default_interval
        return defaults

    def normalize_query_args(self, query_args):
        args = super().normalize_query_args(query_args)
        args["interval"] = normalize_interval(
            args.get("interval"), self.config.reports.default_interval
        )
        return args

    async def fetch_rows(self, query_args: Dict[str, Any]) -> List[Dict[str, Any]]:
        table = self.table_name
        query = self.new_query()
        query.add_clause(
            ClauseKind.SELECT,
            f"{interval_sql(query_args['interval'], f'{table}.date_created')} AS time_interval",
        )
        for expression in self.selected_columns(query_args):
            query.add_clause(ClauseKind.SELECT, expression)
        query.add_clause(ClauseKind.FROM, table)
        self.add_time_period_params(query, query_args, f"{table}.date_created")
        self.add_order_status_clause(query, query_args, table, status_column=f"{table}.status")
        query.add_clause(ClauseKind.GROUP_BY, "time_interval")

        statement, params = query.to_sql()
        return await self.db.fetch_all(statement, params)

    def prepare_rows(
        self, rows: List[Dict[str, Any]], query_args: Dict[str, Any]
    ) -> List[Dict[str, Any]]:
        """Zero-fill missing intervals, add interval bounds and sort."""
        by_interval = {row["time_interval"]: row for row in rows}
        fields = self.get_fields(query_args)

        filled = []
        for key, start, end in iterate(query_args["after"], query_args["before"], query_args["interval"]):
            row = dict(by_interval.get(key) or {name: 0 for name in fields})
            row["time_interval"] = key
            row["date_start"] = self.format_datetime(start)
            row["date_end"] = self.format_datetime(end)
            filled.append(row)

        reverse = query_args["order"] == "DESC"
        sort_key = self.get_order_by_column(query_args)
        if sort_key not in fields:
            filled.sort(key=lambda row: row["time_interval"], reverse=reverse)
            return filled

        # Stable sort: ties stay in chronological order
        filled.sort(key=lambda row: row.get(sort_key) or 0, reverse=reverse)
        return filled

"""
Categories report: sales aggregated per product category.

Line items in order_product_lookup are joined to their product's
categories and through category_lookup to every ancestor, so a sale in a
sub-category also counts toward its parents.
"""
from typing import Any, Dict, List

from lookup_analytics.query import ClauseKind, SqlQuery
from lookup_analytics.reports.data_store import ReportDataStore, parse_id_list

LOOKUP = "order_product_lookup"
SUBQUERY_ALIAS = "category_stats"


class CategoriesDataStore(ReportDataStore):
    """Category report specialization."""

    table_name = LOOKUP
    context = "categories"
    column_types = {
        "category_id": int,
        "items_sold": int,
        "net_revenue": float,
        "orders_count": int,
        "products_count": int,
    }

    def assign_report_columns(self) -> Dict[str, str]:
        table = self.table_name
        return {
            "items_sold": "SUM(product_qty) AS items_sold",
            "net_revenue": "SUM(product_net_revenue) AS net_revenue",
            "orders_count": f"COUNT(DISTINCT {table}.order_id) AS orders_count",
            "products_count": f"COUNT(DISTINCT {table}.product_id) AS products_count",
        }

    def get_default_query_args(self) -> Dict[str, Any]:
        defaults = super().get_default_query_args()
        defaults.update({"orderby": "category_id", "categories": [], "products": []})
        return defaults

    def normalize_query_args(self, query_args):
        args = super().normalize_query_args(query_args)
        args["categories"] = parse_id_list(args.get("categories"))
        args["products"] = parse_id_list(args.get("products"))
        return args

    def normalize_order_by(self, order_by: str) -> str:
        if order_by == "date":
            # No time dimension in this report
            return "category_id"
        if order_by == "category":
            return "_terms.name"
        return order_by

    def initialize_subquery(self, query_args: Dict[str, Any]) -> SqlQuery:
        subquery = self.new_query("_subquery", alias=SUBQUERY_ALIAS)
        subquery.add_clause(ClauseKind.SELECT, "category_lookup.category_tree_id AS category_id")
        for expression in self.selected_columns(query_args):
            subquery.add_clause(ClauseKind.SELECT, expression)
        subquery.add_clause(ClauseKind.FROM, self.table_name)
        subquery.add_clause(ClauseKind.GROUP_BY, "category_lookup.category_tree_id")
        return subquery

    def add_query_params(
        self, query_args: Dict[str, Any], subquery: SqlQuery, outer: SqlQuery
    ) -> None:
        """Filters, joins and ordering; ordering lands on outer when an include list is given."""
        table = self.table_name
        self.add_time_period_params(subquery, query_args, f"{table}.date_created")

        subquery.add_clause(
            ClauseKind.LEFT_JOIN,
            f"LEFT JOIN product_categories ON {table}.product_id = product_categories.product_id",
        )
        subquery.add_clause(
            ClauseKind.LEFT_JOIN,
            "LEFT JOIN category_lookup ON product_categories.term_id = category_lookup.term_id",
        )

        included_categories = query_args["categories"]
        if included_categories:
            self.add_id_filter(subquery, "category_lookup.category_tree_id", included_categories)
            self.add_order_by_params(query_args, outer, "default_results.category_id", outer_path=True)
        else:
            self.add_order_by_params(
                query_args, subquery, "category_lookup.category_tree_id", outer_path=False
            )

        self.add_id_filter(subquery, f"{table}.product_id", query_args["products"])
        self.add_order_status_clause(subquery, query_args, table)
        subquery.add_clause(ClauseKind.WHERE, "category_lookup.category_tree_id IS NOT NULL")

    def add_order_by_params(
        self, query_args: Dict[str, Any], target: SqlQuery, id_cell: str, outer_path: bool
    ) -> None:
        column = self.get_order_by_column(query_args)
        if column == "category_id":
            column = id_cell

        if column.startswith("_terms."):
            target.add_clause(
                ClauseKind.LEFT_JOIN,
                f"LEFT JOIN categories AS _terms ON {id_cell} = _terms.id",
            )
            if not outer_path:
                # The name is one per category; grouping by it keeps it selectable
                target.add_clause(ClauseKind.GROUP_BY, "_terms.name")

        target.add_clause(ClauseKind.ORDER_BY, f"{column} {query_args['order']}")
        if column != id_cell:
            target.add_clause(ClauseKind.ORDER_BY, f"{id_cell} ASC")

    async def fetch_rows(self, query_args: Dict[str, Any]) -> List[Dict[str, Any]]:
        subquery = self.initialize_subquery(query_args)
        outer = self.new_query()
        self.add_query_params(query_args, subquery, outer)

        included_categories = query_args["categories"]
        if included_categories:
            fields = ["category_id"] + self.get_fields(query_args)
            for selection in self.format_join_selections(fields, ["category_id"], SUBQUERY_ALIAS):
                outer.add_clause(ClauseKind.SELECT, selection)
            outer.add_clause(ClauseKind.FROM, subquery)

            ids_table = self.get_ids_table(included_categories, "category_id")
            outer.add_clause(
                ClauseKind.RIGHT_JOIN,
                f"RIGHT JOIN {ids_table.sql} "
                f"ON default_results.category_id = {SUBQUERY_ALIAS}.category_id",
                ids_table.params,
            )
            statement, params = outer.to_sql()
        else:
            statement, params = subquery.to_sql()

        return await self.db.fetch_all(statement, params)

    async def include_extended_info(
        self, rows: List[Dict[str, Any]], query_args: Dict[str, Any]
    ) -> None:
        names: Dict[int, str] = {}
        if query_args["extended_info"] and rows:
            ids = [row["category_id"] for row in rows]
            placeholders = ", ".join("?" for _ in ids)
            for record in await self.db.fetch_all(
                f"SELECT id, name FROM categories WHERE id IN ({placeholders})", ids
            ):
                names[record["id"]] = record["name"]

        for row in rows:
            row["extended_info"] = {}
            if query_args["extended_info"]:
                row["extended_info"]["name"] = names.get(row["category_id"], "")

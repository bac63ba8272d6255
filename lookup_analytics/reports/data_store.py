"""
Base report data store.

A report type declares its lookup table, cache context, aggregate columns
and column types; the base class normalizes query args, checks the report
cache, runs the report query, pages the grouped rows in memory and coerces
column types.

Grouping has to see every matching lookup row before a page can be cut,
so the full grouped set is fetched and sliced here rather than with a SQL
LIMIT.
"""
import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from lookup_analytics.cache import ReportCache
from lookup_analytics.config import AppConfig, config
from lookup_analytics.database import Database
from lookup_analytics.exceptions import QueryExecutionError
from lookup_analytics.observability import Timer, get_logger
from lookup_analytics.query import (
    ClauseFilterRegistry,
    ClauseKind,
    Fragment,
    QueryArgFilterRegistry,
    SqlQuery,
    clause_filters,
    query_arg_filters,
)
from lookup_analytics.time_interval import (
    default_after,
    default_before,
    normalize_boundary,
)

logger = get_logger(__name__)

# Sort keys are interpolated into ORDER BY, so only plain identifiers pass
_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")


@dataclass
class ReportResult:
    """One page of report rows plus paging totals."""

    data: List[Dict[str, Any]] = field(default_factory=list)
    total: int = 0
    pages: int = 0
    page_no: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data": self.data,
            "total": self.total,
            "pages": self.pages,
            "page_no": self.page_no,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ReportResult":
        return cls(
            data=list(payload.get("data") or []),
            total=int(payload.get("total", 0)),
            pages=int(payload.get("pages", 0)),
            page_no=int(payload.get("page_no", 0)),
        )


def parse_id_list(value: Any) -> List[int]:
    """
    Read an id list from a list or comma-separated string.

    Non-numeric and non-positive entries are dropped; order is kept and
    duplicates removed.
    """
    if value is None or value == "":
        return []
    if isinstance(value, str):
        value = value.split(",")
    elif isinstance(value, int):
        value = [value]

    ids: List[int] = []
    for item in value:
        try:
            item_id = int(str(item).strip())
        except ValueError:
            continue
        if item_id > 0 and item_id not in ids:
            ids.append(item_id)
    return ids


def parse_str_list(value: Any) -> List[str]:
    if value is None or value == "":
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [str(item).strip() for item in value if str(item).strip()]


class ReportDataStore:
    """
    Contract every report type implements.

    Subclasses set table_name, context and column_types, implement
    assign_report_columns() and fetch_rows(), and may override
    normalize_order_by(), prepare_rows() and include_extended_info().
    """

    table_name: str = ""
    context: str = ""
    column_types: Dict[str, Callable[[Any], Any]] = {}

    def __init__(
        self,
        db: Database,
        report_cache: Optional[ReportCache] = None,
        app_config: AppConfig = config,
        arg_filters: QueryArgFilterRegistry = query_arg_filters,
        sql_filters: ClauseFilterRegistry = clause_filters,
    ):
        self.db = db
        self.report_cache = report_cache
        self.config = app_config
        self.arg_filters = arg_filters
        self.sql_filters = sql_filters
        self.report_columns = self.assign_report_columns()

    def assign_report_columns(self) -> Dict[str, str]:
        """Map output column name to its aggregate SQL expression."""
        raise NotImplementedError

    async def fetch_rows(self, query_args: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Build and run the report query, returning the full grouped set."""
        raise NotImplementedError

    def new_query(self, suffix: str = "", alias: Optional[str] = None) -> SqlQuery:
        return SqlQuery(self.context + suffix, alias=alias, filters=self.sql_filters)

    # ═══════════════════════════════════════════════════════════════════════
    # QUERY ARGS
    # ═══════════════════════════════════════════════════════════════════════

    def get_default_query_args(self) -> Dict[str, Any]:
        tz = self.config.store_timezone
        return {
            "per_page": self.config.reports.per_page,
            "page": 1,
            "order": "DESC",
            "orderby": "date",
            "before": default_before(tz),
            "after": default_after(tz, self.config.reports.default_days_back),
            "fields": "*",
            "status_is": [],
            "status_is_not": [],
            "extended_info": False,
        }

    def normalize_query_args(self, query_args: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Merge defaults, run registered arg filters and coerce every value.

        Never raises: malformed values fall back to their defaults.
        """
        defaults = self.get_default_query_args()
        raw = self.arg_filters.apply(self.context, dict(query_args or {}))
        args = {**defaults, **{k: v for k, v in raw.items() if v is not None}}

        args["per_page"] = self._to_int(args["per_page"], defaults["per_page"])
        if args["per_page"] < 1:
            args["per_page"] = defaults["per_page"]
        args["page"] = self._to_int(args["page"], 1)

        order = str(args["order"]).upper()
        args["order"] = order if order in ("ASC", "DESC") else "DESC"

        args["status_is"] = parse_str_list(args["status_is"])
        args["status_is_not"] = parse_str_list(args["status_is_not"])
        if args["fields"] != "*":
            args["fields"] = parse_str_list(args["fields"]) or "*"
        args["extended_info"] = args["extended_info"] in (True, 1, "1", "true", "True")

        self.normalize_timezones(args, defaults)
        return args

    def normalize_timezones(self, query_args: Dict[str, Any], defaults: Dict[str, Any]) -> None:
        """Convert after/before to naive datetimes in the store timezone."""
        tz = self.config.store_timezone
        for key in ("after", "before"):
            query_args[key] = normalize_boundary(query_args.get(key), key, tz, defaults[key])

    @staticmethod
    def _to_int(value: Any, default: int) -> int:
        try:
            return int(value)
        except (TypeError, ValueError):
            return default

    # ═══════════════════════════════════════════════════════════════════════
    # CLAUSE HELPERS
    # ═══════════════════════════════════════════════════════════════════════

    def normalize_order_by(self, order_by: str) -> str:
        """Map a user-facing sort key to a backing column; unknown keys pass through."""
        if order_by == "date":
            return "time_interval"
        return order_by

    def get_order_by_column(self, query_args: Dict[str, Any]) -> str:
        column = self.normalize_order_by(str(query_args.get("orderby") or "date"))
        if not _IDENTIFIER.match(column):
            logger.debug(f"Ignoring malformed sort key {column!r}")
            column = self.normalize_order_by(self.get_default_query_args()["orderby"])
        return column

    def selected_columns(self, query_args: Dict[str, Any]) -> List[str]:
        """Aggregate expressions for the requested fields (all when '*')."""
        fields = query_args.get("fields", "*")
        if fields == "*":
            return list(self.report_columns.values())
        return [expr for name, expr in self.report_columns.items() if name in fields]

    def get_fields(self, query_args: Dict[str, Any]) -> List[str]:
        fields = query_args.get("fields", "*")
        if fields == "*":
            return list(self.report_columns.keys())
        return [name for name in self.report_columns if name in fields]

    def add_time_period_params(
        self, query: SqlQuery, query_args: Dict[str, Any], column: str
    ) -> None:
        query.add_clause(ClauseKind.WHERE, f"{column} >= ?", [query_args["after"]])
        query.add_clause(ClauseKind.WHERE, f"{column} <= ?", [query_args["before"]])

    def add_order_status_clause(
        self,
        query: SqlQuery,
        query_args: Dict[str, Any],
        table: str,
        status_column: Optional[str] = None,
    ) -> None:
        """
        Restrict to orders by status.

        Without status_column the table is matched through order_stats by
        order_id.  Excluded statuses are always filtered out.
        """
        conditions = (
            ("IN", query_args.get("status_is") or []),
            ("NOT IN", query_args.get("status_is_not") or []),
            ("NOT IN", list(self.config.reports.excluded_statuses)),
        )
        for operator, statuses in conditions:
            if not statuses:
                continue
            placeholders = ", ".join("?" for _ in statuses)
            if status_column:
                sql = f"{status_column} {operator} ({placeholders})"
            else:
                sql = (
                    f"{table}.order_id {operator} "
                    f"(SELECT order_id FROM order_stats WHERE status IN ({placeholders}))"
                )
            query.add_clause(ClauseKind.WHERE, sql, statuses)

    def add_id_filter(self, query: SqlQuery, column: str, ids: Sequence[int]) -> None:
        if ids:
            placeholders = ", ".join("?" for _ in ids)
            query.add_clause(ClauseKind.WHERE, f"{column} IN ({placeholders})", list(ids))

    @staticmethod
    def get_ids_table(ids: Sequence[int], field_name: str) -> Fragment:
        """Derived table listing requested ids, aliased default_results(field_name)."""
        values = ", ".join("(CAST(? AS INTEGER))" for _ in ids)
        return Fragment(
            f"(VALUES {values}) AS default_results({field_name})",
            tuple(ids),
        )

    @staticmethod
    def format_join_selections(
        fields: Iterable[str], id_fields: Iterable[str], outer_alias: str
    ) -> List[str]:
        """Select id columns from default_results and the rest from the joined data."""
        id_fields = set(id_fields)
        return [
            f"default_results.{name} AS {name}" if name in id_fields
            else f"{outer_alias}.{name} AS {name}"
            for name in fields
        ]

    # ═══════════════════════════════════════════════════════════════════════
    # RESULT SHAPING
    # ═══════════════════════════════════════════════════════════════════════

    def prepare_rows(
        self, rows: List[Dict[str, Any]], query_args: Dict[str, Any]
    ) -> List[Dict[str, Any]]:
        """Hook for report types that reshape the full grouped set before paging."""
        return rows

    @staticmethod
    def page_records(
        rows: List[Dict[str, Any]], page_no: int, per_page: int
    ) -> List[Dict[str, Any]]:
        offset = (page_no - 1) * per_page
        return rows[offset:offset + per_page]

    async def include_extended_info(
        self, rows: List[Dict[str, Any]], query_args: Dict[str, Any]
    ) -> None:
        """Attach an extended_info mapping to every row (empty unless requested)."""
        for row in rows:
            row["extended_info"] = {}

    def cast_numbers(self, row: Dict[str, Any]) -> Dict[str, Any]:
        """Coerce declared columns; NULL aggregates become 0."""
        for column, caster in self.column_types.items():
            if column in row:
                value = row[column]
                row[column] = caster(value if value is not None else 0)
        return row

    # ═══════════════════════════════════════════════════════════════════════
    # ENTRY POINT
    # ═══════════════════════════════════════════════════════════════════════

    async def get_data(self, query_args: Optional[Dict[str, Any]] = None) -> ReportResult:
        """
        Return one page of the report for the given query args.

        Raises:
            QueryExecutionError: If the report query fails to execute
        """
        args = self.normalize_query_args(query_args)

        cache_key = None
        if self.report_cache is not None:
            cache_key = await self.report_cache.build_key(self.context, args)
            cached = await self.report_cache.get(cache_key)
            if cached is not None:
                logger.debug("Report cache hit", extra={"context": self.context})
                return ReportResult.from_dict(cached)

        try:
            with Timer(f"{self.context}_report_query", logger):
                rows = await self.fetch_rows(args)
        except QueryExecutionError as e:
            raise QueryExecutionError(
                f"Sorry, fetching {self.context} data failed.",
                details=e.details,
                statement=e.statement,
            ) from e

        rows = self.prepare_rows(rows, args)

        per_page = args["per_page"]
        total = len(rows)
        pages = math.ceil(total / per_page)
        page_no = args["page"]

        # An empty report is a well-formed page 1
        if page_no < 1 or page_no > max(pages, 1):
            return ReportResult(data=[], total=total, pages=pages, page_no=page_no)

        rows = self.page_records(rows, page_no, per_page)
        await self.include_extended_info(rows, args)
        rows = [self.cast_numbers(row) for row in rows]

        result = ReportResult(data=rows, total=total, pages=pages, page_no=page_no)
        if cache_key is not None:
            await self.report_cache.set(cache_key, result.to_dict())
        return result

    @staticmethod
    def format_datetime(value: datetime) -> str:
        return value.strftime("%Y-%m-%d %H:%M:%S")

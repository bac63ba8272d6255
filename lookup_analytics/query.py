"""
SQL query builder for report queries.

A SqlQuery accumulates raw fragments per clause kind and renders them in a
fixed order.  Fragments carry their own parameter values so the rendered
statement and its parameter list always line up; values are never
interpolated into the SQL text.

Usage:
    inner = SqlQuery("categories", alias="category_data")
    inner.add_clause(ClauseKind.SELECT, "category_id")
    inner.add_clause(ClauseKind.FROM, "order_product_lookup")
    inner.add_clause(ClauseKind.WHERE, "date_created >= ?", [after])

    outer = SqlQuery("categories")
    outer.add_clause(ClauseKind.SELECT, "*")
    outer.add_clause(ClauseKind.FROM, inner)
    sql, params = outer.to_sql()
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Sequence, Tuple, Union

from lookup_analytics.observability import get_logger

logger = get_logger(__name__)


class ClauseKind(str, Enum):
    """Clause kinds, declared in render order."""

    SELECT = "select"
    FROM = "from"
    RIGHT_JOIN = "right_join"
    LEFT_JOIN = "left_join"
    JOIN = "join"
    WHERE = "where"
    GROUP_BY = "group_by"
    HAVING = "having"
    ORDER_BY = "order_by"
    LIMIT = "limit"


# (keyword prefix, separator between fragments)
_RENDER_RULES: Dict[ClauseKind, Tuple[str, str]] = {
    ClauseKind.SELECT: ("SELECT ", ",\n  "),
    ClauseKind.FROM: ("FROM ", ", "),
    ClauseKind.RIGHT_JOIN: ("", "\n"),
    ClauseKind.LEFT_JOIN: ("", "\n"),
    ClauseKind.JOIN: ("", "\n"),
    ClauseKind.WHERE: ("WHERE ", "\n  AND "),
    ClauseKind.GROUP_BY: ("GROUP BY ", ", "),
    ClauseKind.HAVING: ("HAVING ", "\n  AND "),
    ClauseKind.ORDER_BY: ("ORDER BY ", ", "),
    ClauseKind.LIMIT: ("LIMIT ", " "),
}


@dataclass(frozen=True)
class Fragment:
    """Raw SQL text plus the values for its ? placeholders."""

    sql: str
    params: Tuple[Any, ...] = ()


ClauseFilter = Callable[[List[Fragment], "SqlQuery"], List[Fragment]]
QueryArgFilter = Callable[[Dict[str, Any]], Dict[str, Any]]


class ClauseFilterRegistry:
    """
    Per (clause kind, report context) hooks that rewrite a clause's
    fragments right before rendering.
    """

    def __init__(self):
        self._filters: Dict[Tuple[ClauseKind, str], List[ClauseFilter]] = {}

    def register(self, kind: ClauseKind, context: str, func: ClauseFilter) -> None:
        self._filters.setdefault((kind, context), []).append(func)

    def apply(
        self, kind: ClauseKind, query: "SqlQuery", fragments: List[Fragment]
    ) -> List[Fragment]:
        for func in self._filters.get((kind, query.context), []):
            fragments = list(func(list(fragments), query))
        return fragments

    def clear(self) -> None:
        self._filters.clear()


class QueryArgFilterRegistry:
    """Per report context hooks that rewrite raw query args before normalization."""

    def __init__(self):
        self._filters: Dict[str, List[QueryArgFilter]] = {}

    def register(self, context: str, func: QueryArgFilter) -> None:
        self._filters.setdefault(context, []).append(func)

    def apply(self, context: str, query_args: Dict[str, Any]) -> Dict[str, Any]:
        for func in self._filters.get(context, []):
            query_args = func(dict(query_args))
        return query_args

    def clear(self) -> None:
        self._filters.clear()


# Global registries
clause_filters = ClauseFilterRegistry()
query_arg_filters = QueryArgFilterRegistry()


class SqlQuery:
    """
    Ordered clause-kind to fragment-list multimap rendering one statement.

    A query used as a derived table (added to another query's FROM clause)
    must have an alias.
    """

    def __init__(
        self,
        context: str = "",
        alias: str = None,
        filters: ClauseFilterRegistry = clause_filters,
    ):
        self.context = context
        self.alias = alias
        self.filters = filters
        self._clauses: Dict[ClauseKind, List[Union[Fragment, "SqlQuery"]]] = {
            kind: [] for kind in ClauseKind
        }

    def add_clause(
        self,
        kind: ClauseKind,
        fragment: Union[str, Fragment, "SqlQuery"],
        params: Sequence[Any] = (),
    ) -> "SqlQuery":
        """Append a fragment (or a nested query, FROM only) to a clause."""
        kind = ClauseKind(kind)
        if isinstance(fragment, SqlQuery):
            if kind is not ClauseKind.FROM:
                raise ValueError("Nested queries can only be added to the FROM clause")
            if not fragment.alias:
                raise ValueError("A nested query needs an alias")
            self._clauses[kind].append(fragment)
            return self

        if isinstance(fragment, str):
            fragment = Fragment(fragment, tuple(params))
        self._clauses[kind].append(fragment)
        return self

    def get_clause(self, kind: ClauseKind) -> List[Union[Fragment, "SqlQuery"]]:
        return list(self._clauses[ClauseKind(kind)])

    def clear_clause(self, kind: ClauseKind) -> "SqlQuery":
        self._clauses[ClauseKind(kind)] = []
        return self

    def _resolved(self) -> List[Tuple[ClauseKind, List[Fragment]]]:
        """Flatten nested queries and apply clause filters, in render order."""
        resolved = []
        for kind in ClauseKind:
            fragments: List[Fragment] = []
            for item in self._clauses[kind]:
                if isinstance(item, SqlQuery):
                    inner_sql, inner_params = item.to_sql()
                    fragments.append(
                        Fragment(f"(\n{inner_sql}\n) AS {item.alias}", tuple(inner_params))
                    )
                else:
                    fragments.append(item)
            fragments = self.filters.apply(kind, self, fragments)
            if fragments:
                resolved.append((kind, fragments))
        return resolved

    def to_sql(self) -> Tuple[str, List[Any]]:
        """Render the statement and its parameter list."""
        resolved = self._resolved()
        if not any(kind is ClauseKind.SELECT for kind, _ in resolved):
            raise ValueError(f"Query '{self.context}' has an empty select list")

        lines = []
        params: List[Any] = []
        for kind, fragments in resolved:
            prefix, separator = _RENDER_RULES[kind]
            lines.append(prefix + separator.join(f.sql for f in fragments))
            for fragment in fragments:
                params.extend(fragment.params)

        return "\n".join(lines), params

    def render(self) -> str:
        return self.to_sql()[0]

    def get_params(self) -> List[Any]:
        return self.to_sql()[1]

    def __repr__(self) -> str:
        return f"SqlQuery(context={self.context!r}, alias={self.alias!r})"

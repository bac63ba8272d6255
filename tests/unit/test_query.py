"""
Unit tests for lookup_analytics/query.py

Tests clause accumulation, render order, nested derived tables and
clause filters.
"""
import pytest

from lookup_analytics.query import (
    ClauseFilterRegistry,
    ClauseKind,
    Fragment,
    QueryArgFilterRegistry,
    SqlQuery,
)


@pytest.fixture
def registry():
    return ClauseFilterRegistry()


class TestSqlQueryRender:
    """Tests for statement rendering."""

    def test_simple_select(self, registry):
        """Renders select and from."""
        query = SqlQuery("test", filters=registry)
        query.add_clause(ClauseKind.SELECT, "id")
        query.add_clause(ClauseKind.FROM, "orders")

        sql, params = query.to_sql()

        assert sql == "SELECT id\nFROM orders"
        assert params == []

    def test_render_order_is_fixed(self, registry):
        """Clauses render in kind order regardless of insertion order."""
        query = SqlQuery("test", filters=registry)
        query.add_clause(ClauseKind.ORDER_BY, "id DESC")
        query.add_clause(ClauseKind.WHERE, "status = ?", ["completed"])
        query.add_clause(ClauseKind.GROUP_BY, "id")
        query.add_clause(ClauseKind.FROM, "orders")
        query.add_clause(ClauseKind.SELECT, "id")
        query.add_clause(ClauseKind.LEFT_JOIN, "LEFT JOIN users ON users.id = orders.customer_user_id")

        sql = query.render()
        positions = [
            sql.index(token)
            for token in ("SELECT", "FROM", "LEFT JOIN", "WHERE", "GROUP BY", "ORDER BY")
        ]
        assert positions == sorted(positions)

    def test_multiple_fragments_joined(self, registry):
        """Select fragments are comma separated, where fragments ANDed."""
        query = SqlQuery("test", filters=registry)
        query.add_clause(ClauseKind.SELECT, "id")
        query.add_clause(ClauseKind.SELECT, "total")
        query.add_clause(ClauseKind.FROM, "orders")
        query.add_clause(ClauseKind.WHERE, "total > ?", [10])
        query.add_clause(ClauseKind.WHERE, "status = ?", ["completed"])

        sql, params = query.to_sql()

        assert "SELECT id,\n  total" in sql
        assert "WHERE total > ?\n  AND status = ?" in sql
        assert params == [10, "completed"]

    def test_params_follow_render_order(self, registry):
        """Params line up with placeholders even when added out of order."""
        query = SqlQuery("test", filters=registry)
        query.add_clause(ClauseKind.WHERE, "status = ?", ["completed"])
        query.add_clause(ClauseKind.SELECT, "COUNT(*)")
        query.add_clause(ClauseKind.FROM, "orders")
        query.add_clause(ClauseKind.LIMIT, "? OFFSET ?", [5, 10])
        query.add_clause(ClauseKind.JOIN, Fragment("JOIN users ON users.id = ?", (7,)))

        assert query.get_params() == [7, "completed", 5, 10]

    def test_empty_select_raises(self, registry):
        """A query without select fragments cannot render."""
        query = SqlQuery("test", filters=registry)
        query.add_clause(ClauseKind.FROM, "orders")

        with pytest.raises(ValueError):
            query.to_sql()

    def test_clear_clause(self, registry):
        """clear_clause drops every fragment of one kind."""
        query = SqlQuery("test", filters=registry)
        query.add_clause(ClauseKind.SELECT, "id")
        query.add_clause(ClauseKind.FROM, "orders")
        query.add_clause(ClauseKind.WHERE, "id > ?", [1])
        query.clear_clause(ClauseKind.WHERE)

        assert "WHERE" not in query.render()
        assert query.get_clause(ClauseKind.WHERE) == []

    def test_accepts_string_kind(self, registry):
        """Clause kinds can be given by value."""
        query = SqlQuery("test", filters=registry)
        query.add_clause("select", "id")
        query.add_clause("from", "orders")

        assert query.render() == "SELECT id\nFROM orders"


class TestNestedQuery:
    """Tests for derived tables."""

    def test_nested_from(self, registry):
        """A nested query renders as an aliased derived table with its params first."""
        inner = SqlQuery("inner", alias="stats", filters=registry)
        inner.add_clause(ClauseKind.SELECT, "customer_id")
        inner.add_clause(ClauseKind.FROM, "order_stats")
        inner.add_clause(ClauseKind.WHERE, "total_sales > ?", [100])

        outer = SqlQuery("outer", filters=registry)
        outer.add_clause(ClauseKind.SELECT, "stats.customer_id")
        outer.add_clause(ClauseKind.FROM, inner)
        outer.add_clause(ClauseKind.WHERE, "stats.customer_id != ?", [0])

        sql, params = outer.to_sql()

        assert "FROM (\nSELECT customer_id\nFROM order_stats\nWHERE total_sales > ?\n) AS stats" in sql
        assert params == [100, 0]

    def test_nested_requires_alias(self, registry):
        """Derived tables need an alias."""
        inner = SqlQuery("inner", filters=registry)
        outer = SqlQuery("outer", filters=registry)

        with pytest.raises(ValueError):
            outer.add_clause(ClauseKind.FROM, inner)

    def test_nested_only_in_from(self, registry):
        """Nested queries are rejected outside FROM."""
        inner = SqlQuery("inner", alias="x", filters=registry)
        outer = SqlQuery("outer", filters=registry)

        with pytest.raises(ValueError):
            outer.add_clause(ClauseKind.WHERE, inner)


class TestClauseFilters:
    """Tests for per-context clause filters."""

    def test_filter_rewrites_fragments(self, registry):
        """A registered filter can append fragments for its context."""

        def add_currency(fragments, query):
            return fragments + [Fragment("currency = ?", ("USD",))]

        registry.register(ClauseKind.WHERE, "revenue", add_currency)

        query = SqlQuery("revenue", filters=registry)
        query.add_clause(ClauseKind.SELECT, "id")
        query.add_clause(ClauseKind.FROM, "order_stats")
        sql, params = query.to_sql()

        assert "WHERE currency = ?" in sql
        assert params == ["USD"]

    def test_filter_ignores_other_contexts(self, registry):
        """Filters only apply to queries of their context."""
        registry.register(
            ClauseKind.WHERE, "revenue", lambda fragments, query: fragments + [Fragment("1 = 0")]
        )

        query = SqlQuery("categories", filters=registry)
        query.add_clause(ClauseKind.SELECT, "id")
        query.add_clause(ClauseKind.FROM, "order_stats")

        assert "WHERE" not in query.render()


class TestQueryArgFilters:
    """Tests for query argument filters."""

    def test_apply_rewrites_args(self):
        """Registered filters see and modify the raw args."""
        registry = QueryArgFilterRegistry()
        registry.register("categories", lambda args: {**args, "currency": "EUR"})

        args = registry.apply("categories", {"page": 2})

        assert args == {"page": 2, "currency": "EUR"}
        assert registry.apply("revenue", {"page": 2}) == {"page": 2}

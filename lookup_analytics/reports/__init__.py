"""
Report data stores.

- ReportDataStore: base contract (args, cache, paging, coercion)
- CategoriesDataStore: sales per category
- RevenueDataStore: order totals per time interval
- StockDataStore: cached stock counts
"""
from lookup_analytics.reports.data_store import ReportDataStore, ReportResult
from lookup_analytics.reports.categories import CategoriesDataStore
from lookup_analytics.reports.revenue import RevenueDataStore
from lookup_analytics.reports.stock import StockDataStore, stock_count_keys

__all__ = [
    "ReportDataStore",
    "ReportResult",
    "CategoriesDataStore",
    "RevenueDataStore",
    "StockDataStore",
    "stock_count_keys",
]

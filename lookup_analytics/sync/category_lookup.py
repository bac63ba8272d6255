"""
Category closure table.

category_lookup holds one (category_tree_id, term_id) row for every
category and each of its ancestors, itself included, so reports can
count a sale in a sub-category toward every parent with a single join.
"""
from typing import Dict, List

from lookup_analytics.database import Database
from lookup_analytics.events import EventBus, emit_lookup_updated
from lookup_analytics.observability import Timer, get_logger

logger = get_logger(__name__)


def build_closure(parents: Dict[int, int]) -> List[Dict[str, int]]:
    """
    Rows of the closure for a term -> parent mapping (0 or None is root).

    A parent chain that loops back on itself stops at the repeat.
    """
    rows = []
    for term_id in sorted(parents):
        seen = set()
        node = term_id
        while node and node not in seen:
            seen.add(node)
            rows.append({"category_tree_id": node, "term_id": term_id})
            node = parents.get(node)
    return rows


class CategoryLookup:
    """Rebuilds category_lookup from the categories table."""

    contexts = ("categories",)

    def __init__(self, db: Database, bus: EventBus):
        self.db = db
        self.bus = bus

    async def regenerate(self) -> int:
        """
        Replace the closure table with one built from current categories.

        Returns:
            Number of closure rows written
        """
        with Timer("category_lookup_regenerate", logger):
            categories = await self.db.fetch_all("SELECT id, parent_id FROM categories")
            parents = {row["id"]: row["parent_id"] or 0 for row in categories}
            rows = build_closure(parents)

            await self.db.execute("DELETE FROM category_lookup")
            await self.db.insert_dataframe("category_lookup", rows)

        logger.info(f"Category lookup rebuilt with {len(rows)} rows")
        await emit_lookup_updated(self.bus, self.contexts, "category_lookup", count=len(rows))
        return len(rows)

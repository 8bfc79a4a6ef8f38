"""Hierarchy Graph Store - all Cypher for categories, filters and product links.

Graph layout:
    (Category)-[:CHILD_OF]->(Category)          single parent, per hierarchy
    (CustomFilter)-[:CHILD_OF]->(CustomFilter)  zero or more parents, acyclic
    (Product)-[:HAS_CATEGORY]->(Category)       leaf categories only
    (Product)-[:TAGGED_WITH]->(CustomFilter)    any filter

The store returns plain dicts and ints; invariants are enforced by the
managers. Writes that race with a concurrent change carry their own guard
in Cypher (leafness, acyclicity) so a stale read cannot slip through on a
backend without multi-statement transactions.
"""

import logging
import time
from contextlib import contextmanager
from typing import Optional

from ..db_result_helpers import rows_value

logger = logging.getLogger(__name__)

CATEGORY = "Category"
CUSTOM_FILTER = "CustomFilter"
HIERARCHY_LABELS = (CATEGORY, CUSTOM_FILTER)

_CATEGORY_FIELDS = """
    c.id AS id, c.name AS name, c.slug AS slug, c.hierarchy AS hierarchy,
    c.level AS level, c.parent_id AS parent_id, c.is_active AS is_active,
    c.is_featured AS is_featured, c.created_at AS created_at, c.updated_at AS updated_at
"""

_FILTER_FIELDS = """
    f.id AS id, f.name AS name, f.slug AS slug, f.level AS level,
    f.is_active AS is_active, f.is_featured AS is_featured,
    f.created_at AS created_at, f.updated_at AS updated_at
"""


def now_millis() -> int:
    return int(time.time() * 1000)


def _label(label: str) -> str:
    if label not in HIERARCHY_LABELS:
        raise ValueError(f"Unknown hierarchy label: {label}")
    return label


def _group_pairs(rows: list[dict], key: str, value: str, ids) -> dict[str, list[str]]:
    grouped = {i: [] for i in ids}
    for row in rows:
        if row.get(value) is not None:
            grouped.setdefault(row[key], []).append(row[value])
    return grouped


class HierarchyGraphStore:
    """Query layer over a GraphConnection (or one of its open transactions)."""

    def __init__(self, connection, runner=None):
        self.connection = connection
        self._runner = runner

    @property
    def in_transaction(self) -> bool:
        return self._runner is not None

    @property
    def atomic(self) -> bool:
        """True when ``transaction()`` groups several queries into one commit."""
        return bool(getattr(self.connection, "supports_transactions", False))

    @contextmanager
    def transaction(self):
        """Yield a store whose queries all run in one adapter transaction.

        Nested calls reuse the already open transaction.
        """
        if self.in_transaction:
            yield self
            return
        with self.connection.transaction() as tx:
            yield HierarchyGraphStore(self.connection, runner=tx)

    def _run(self, cypher: str, params: dict = None) -> list[dict]:
        runner = self._runner or self.connection
        return runner.run(cypher, params or {})

    # =========================================================================
    # PRODUCTS
    # =========================================================================

    def get_existing_product_ids(self, product_ids: list[str]) -> set[str]:
        rows = self._run("""
            MATCH (p:Product) WHERE p.id IN $product_ids
            RETURN p.id AS id
        """, {"product_ids": list(product_ids)})
        return {r["id"] for r in rows}

    def delete_product(self, product_id: str) -> bool:
        """DETACH DELETE the product; its categories and filters stay."""
        rows = self._run("""
            MATCH (p:Product {id: $product_id})
            DETACH DELETE p
            RETURN count(*) AS deleted
        """, {"product_id": product_id})
        return rows_value(rows, "deleted", 0) > 0

    # =========================================================================
    # CATEGORIES
    # =========================================================================

    def _category_rows(self, where: str = "", params: dict = None) -> list[dict]:
        return self._run(f"""
            MATCH (c:Category)
            {where}
            OPTIONAL MATCH (c)<-[:CHILD_OF]-(child:Category)
            WITH c, count(DISTINCT child) AS child_count
            OPTIONAL MATCH (c)<-[:HAS_CATEGORY]-(p:Product)
            WITH c, child_count, count(DISTINCT p) AS product_count
            RETURN {_CATEGORY_FIELDS}, child_count, product_count
            ORDER BY c.hierarchy, c.level, c.name
        """, params or {})

    def get_category(self, category_id: str) -> Optional[dict]:
        rows = self._category_rows("WHERE c.id = $id", {"id": category_id})
        return rows[0] if rows else None

    def get_categories(self, category_ids: list[str]) -> list[dict]:
        return self._category_rows("WHERE c.id IN $ids", {"ids": list(category_ids)})

    def get_all_categories(self, hierarchy: Optional[str] = None) -> list[dict]:
        if hierarchy is None:
            return self._category_rows()
        return self._category_rows("WHERE c.hierarchy = $hierarchy", {"hierarchy": hierarchy})

    def get_child_categories(self, parent_id: str) -> list[dict]:
        return self._category_rows(
            "WHERE (c)-[:CHILD_OF]->(:Category {id: $parent_id})", {"parent_id": parent_id}
        )

    def get_category_child_map(self, category_ids) -> dict[str, list[str]]:
        ids = list(category_ids)
        rows = self._run("""
            MATCH (child:Category)-[:CHILD_OF]->(parent:Category)
            WHERE parent.id IN $ids
            RETURN parent.id AS parent_id, child.id AS child_id
        """, {"ids": ids})
        return _group_pairs(rows, "parent_id", "child_id", ids)

    def get_category_parent_map(self, category_ids) -> dict[str, list[str]]:
        ids = list(category_ids)
        rows = self._run("""
            MATCH (child:Category)-[:CHILD_OF]->(parent:Category)
            WHERE child.id IN $ids
            RETURN child.id AS child_id, parent.id AS parent_id
        """, {"ids": ids})
        return _group_pairs(rows, "child_id", "parent_id", ids)

    def get_category_product_map(self, category_ids: Optional[list[str]] = None) -> dict[str, list[str]]:
        """Direct HAS_CATEGORY links per category (all categories when ids is None)."""
        where = "" if category_ids is None else "WHERE c.id IN $ids"
        rows = self._run(f"""
            MATCH (p:Product)-[:HAS_CATEGORY]->(c:Category)
            {where}
            RETURN c.id AS category_id, p.id AS product_id
        """, {"ids": list(category_ids or [])})
        return _group_pairs(rows, "category_id", "product_id", category_ids or [])

    def create_category(self, props: dict) -> Optional[dict]:
        """CREATE the node and its CHILD_OF edge.

        Returns None when the parent vanished or gained products since it
        was validated; nothing is written in that case.
        """
        if props.get("parent_id"):
            cypher = f"""
                MATCH (parent:Category {{id: $parent_id}})
                WHERE NOT (parent)<-[:HAS_CATEGORY]-(:Product)
                CREATE (c:Category {{
                    id: $id, name: $name, slug: $slug, hierarchy: $hierarchy,
                    parent_id: $parent_id, level: $level, is_active: true,
                    is_featured: $is_featured, created_at: $now, updated_at: $now
                }})
                CREATE (c)-[:CHILD_OF]->(parent)
                RETURN {_CATEGORY_FIELDS}, 0 AS child_count, 0 AS product_count
            """
        else:
            cypher = f"""
                CREATE (c:Category {{
                    id: $id, name: $name, slug: $slug, hierarchy: $hierarchy,
                    parent_id: null, level: 0, is_active: true,
                    is_featured: $is_featured, created_at: $now, updated_at: $now
                }})
                RETURN {_CATEGORY_FIELDS}, 0 AS child_count, 0 AS product_count
            """
        rows = self._run(cypher, props)
        return rows[0] if rows else None

    def move_category(self, category_id: str, new_parent_id: Optional[str], level: int, now: int) -> bool:
        """Swap the CHILD_OF edge. False when the new parent is gone or holds products."""
        params = {"id": category_id, "parent_id": new_parent_id, "level": level, "now": now}
        if new_parent_id:
            rows = self._run("""
                MATCH (c:Category {id: $id})
                MATCH (parent:Category {id: $parent_id})
                WHERE NOT (parent)<-[:HAS_CATEGORY]-(:Product)
                  AND NOT (parent)-[:CHILD_OF*0..]->(c)
                OPTIONAL MATCH (c)-[old:CHILD_OF]->(:Category)
                DELETE old
                WITH DISTINCT c, parent
                CREATE (c)-[:CHILD_OF]->(parent)
                SET c.parent_id = $parent_id, c.level = $level, c.updated_at = $now
                RETURN c.id AS id
            """, params)
        else:
            rows = self._run("""
                MATCH (c:Category {id: $id})
                OPTIONAL MATCH (c)-[old:CHILD_OF]->(:Category)
                DELETE old
                WITH DISTINCT c
                SET c.parent_id = null, c.level = 0, c.updated_at = $now
                RETURN c.id AS id
            """, params)
        return bool(rows)

    def set_category_levels(self, levels: dict[str, int], now: int) -> int:
        if not levels:
            return 0
        rows = self._run("""
            UNWIND $rows AS row
            MATCH (c:Category {id: row.id})
            SET c.level = row.level, c.updated_at = $now
            RETURN count(c) AS updated
        """, {"rows": [{"id": k, "level": v} for k, v in levels.items()], "now": now})
        return rows_value(rows, "updated", 0)

    def set_category_hierarchy(self, category_ids: list[str], hierarchy: str, now: int) -> int:
        if not category_ids:
            return 0
        rows = self._run("""
            MATCH (c:Category) WHERE c.id IN $ids
            SET c.hierarchy = $hierarchy, c.updated_at = $now
            RETURN count(c) AS updated
        """, {"ids": list(category_ids), "hierarchy": hierarchy, "now": now})
        return rows_value(rows, "updated", 0)

    def update_category(self, category_id: str, fields: dict, now: int) -> Optional[dict]:
        rows = self._run("""
            MATCH (c:Category {id: $id})
            SET c += $fields, c.updated_at = $now
            RETURN c.id AS id
        """, {"id": category_id, "fields": fields, "now": now})
        return self.get_category(category_id) if rows else None

    def delete_category(self, category_id: str) -> bool:
        rows = self._run("""
            MATCH (c:Category {id: $id})
            DETACH DELETE c
            RETURN count(*) AS deleted
        """, {"id": category_id})
        return rows_value(rows, "deleted", 0) > 0

    def link_product_to_leaf_categories(self, product_id: str, category_ids: list[str]) -> list[str]:
        """MERGE HAS_CATEGORY edges, skipping any category that has children right now."""
        if not category_ids:
            return []
        rows = self._run("""
            MATCH (p:Product {id: $product_id})
            UNWIND $category_ids AS category_id
            MATCH (c:Category {id: category_id})
            WHERE NOT (c)<-[:CHILD_OF]-(:Category)
            MERGE (p)-[:HAS_CATEGORY]->(c)
            RETURN c.id AS id
        """, {"product_id": product_id, "category_ids": list(category_ids)})
        return [r["id"] for r in rows]

    def replace_product_categories(self, product_id: str, category_ids: list[str]) -> bool:
        """Swap the product's whole HAS_CATEGORY set in one statement.

        Old links are deleted only after every target is matched and is a
        leaf right now. Returns False (and writes nothing) otherwise.
        """
        rows = self._run("""
            MATCH (p:Product {id: $product_id})
            OPTIONAL MATCH (c:Category)
            WHERE c.id IN $category_ids AND NOT (c)<-[:CHILD_OF]-(:Category)
            WITH p, collect(DISTINCT c) AS targets
            WHERE size(targets) = size($category_ids)
            OPTIONAL MATCH (p)-[old:HAS_CATEGORY]->(:Category)
            DELETE old
            WITH DISTINCT p, targets
            FOREACH (c IN targets | MERGE (p)-[:HAS_CATEGORY]->(c))
            RETURN p.id AS id
        """, {"product_id": product_id, "category_ids": list(category_ids)})
        return bool(rows)

    def unlink_product_categories(self, product_id: str, category_ids: Optional[list[str]] = None) -> int:
        """Remove HAS_CATEGORY edges (all of them when ``category_ids`` is None)."""
        rows = self._run("""
            MATCH (p:Product {id: $product_id})-[r:HAS_CATEGORY]->(c:Category)
            WHERE $category_ids IS NULL OR c.id IN $category_ids
            DELETE r
            RETURN count(r) AS removed
        """, {"product_id": product_id,
              "category_ids": list(category_ids) if category_ids is not None else None})
        return rows_value(rows, "removed", 0)

    def get_product_category_ids(self, product_id: str) -> list[str]:
        rows = self._run("""
            MATCH (:Product {id: $product_id})-[:HAS_CATEGORY]->(c:Category)
            RETURN c.id AS id
            ORDER BY c.hierarchy, c.level, c.name
        """, {"product_id": product_id})
        return [r["id"] for r in rows]

    def move_category_products(self, from_id: str, to_id: str, product_ids: Optional[list[str]] = None) -> int:
        """Re-point direct product links from one category to a leaf."""
        rows = self._run("""
            MATCH (target:Category {id: $to_id})
            WHERE NOT (target)<-[:CHILD_OF]-(:Category)
            MATCH (p:Product)-[r:HAS_CATEGORY]->(:Category {id: $from_id})
            WHERE $product_ids IS NULL OR p.id IN $product_ids
            DELETE r
            MERGE (p)-[:HAS_CATEGORY]->(target)
            RETURN count(DISTINCT p) AS moved
        """, {"from_id": from_id, "to_id": to_id,
              "product_ids": list(product_ids) if product_ids is not None else None})
        return rows_value(rows, "moved", 0)

    # =========================================================================
    # CUSTOM FILTERS
    # =========================================================================

    def _filter_rows(self, where: str = "", params: dict = None) -> list[dict]:
        return self._run(f"""
            MATCH (f:CustomFilter)
            {where}
            OPTIONAL MATCH (f)-[:CHILD_OF]->(p:CustomFilter)
            WITH f, collect(DISTINCT p.id) AS parent_ids
            RETURN {_FILTER_FIELDS}, parent_ids
            ORDER BY f.level, f.name
        """, params or {})

    def get_filter(self, filter_id: str) -> Optional[dict]:
        rows = self._filter_rows("WHERE f.id = $id", {"id": filter_id})
        return rows[0] if rows else None

    def get_filters(self, filter_ids) -> list[dict]:
        return self._filter_rows("WHERE f.id IN $ids", {"ids": list(filter_ids)})

    def get_all_filters(self) -> list[dict]:
        return self._filter_rows()

    def get_filter_parent_map(self, filter_ids) -> dict[str, list[str]]:
        ids = list(filter_ids)
        rows = self._run("""
            MATCH (child:CustomFilter)-[:CHILD_OF]->(parent:CustomFilter)
            WHERE child.id IN $ids
            RETURN child.id AS child_id, parent.id AS parent_id
        """, {"ids": ids})
        return _group_pairs(rows, "child_id", "parent_id", ids)

    def get_filter_child_map(self, filter_ids) -> dict[str, list[str]]:
        ids = list(filter_ids)
        rows = self._run("""
            MATCH (child:CustomFilter)-[:CHILD_OF]->(parent:CustomFilter)
            WHERE parent.id IN $ids
            RETURN parent.id AS parent_id, child.id AS child_id
        """, {"ids": ids})
        return _group_pairs(rows, "parent_id", "child_id", ids)

    def get_filter_levels(self, filter_ids) -> dict[str, int]:
        rows = self._run("""
            MATCH (f:CustomFilter) WHERE f.id IN $ids
            RETURN f.id AS id, f.level AS level
        """, {"ids": list(filter_ids)})
        return {r["id"]: r["level"] for r in rows}

    def create_filter(self, props: dict) -> dict:
        rows = self._run(f"""
            CREATE (f:CustomFilter {{
                id: $id, name: $name, slug: $slug, level: $level,
                is_active: true, is_featured: $is_featured,
                created_at: $now, updated_at: $now
            }})
            RETURN {_FILTER_FIELDS}
        """, props)
        return rows[0]

    def replace_filter_parents(self, filter_id: str, parent_ids: list[str], now: int) -> bool:
        """Swap the whole CHILD_OF set of ``filter_id`` in one statement.

        At write time every parent must exist and none may be the filter
        itself or one of its descendants; only then are the old edges
        deleted and the new ones merged. Returns False (and writes nothing)
        when a guard fails or the filter is gone. ``parent_ids`` must be
        distinct.
        """
        rows = self._run("""
            MATCH (f:CustomFilter {id: $filter_id})
            WHERE NOT f.id IN $parent_ids
            OPTIONAL MATCH (f)<-[:CHILD_OF*1..]-(d:CustomFilter)
            WHERE d.id IN $parent_ids
            WITH f, count(d) AS conflicts
            WHERE conflicts = 0
            OPTIONAL MATCH (p:CustomFilter)
            WHERE p.id IN $parent_ids
            WITH f, collect(DISTINCT p) AS parents
            WHERE size(parents) = size($parent_ids)
            OPTIONAL MATCH (f)-[old:CHILD_OF]->(:CustomFilter)
            DELETE old
            WITH DISTINCT f, parents
            FOREACH (p IN parents | MERGE (f)-[:CHILD_OF]->(p))
            SET f.updated_at = $now
            RETURN f.id AS id
        """, {"filter_id": filter_id, "parent_ids": list(parent_ids), "now": now})
        return bool(rows)

    def link_filter_parents(self, filter_id: str, parent_ids: list[str]) -> int:
        if not parent_ids:
            return 0
        rows = self._run("""
            MATCH (f:CustomFilter {id: $filter_id})
            UNWIND $parent_ids AS parent_id
            MATCH (p:CustomFilter {id: parent_id})
            MERGE (f)-[:CHILD_OF]->(p)
            RETURN count(DISTINCT p) AS linked
        """, {"filter_id": filter_id, "parent_ids": list(parent_ids)})
        return rows_value(rows, "linked", 0)

    def set_filter_levels(self, levels: dict[str, int], now: int) -> int:
        if not levels:
            return 0
        rows = self._run("""
            UNWIND $rows AS row
            MATCH (f:CustomFilter {id: row.id})
            SET f.level = row.level, f.updated_at = $now
            RETURN count(f) AS updated
        """, {"rows": [{"id": k, "level": v} for k, v in levels.items()], "now": now})
        return rows_value(rows, "updated", 0)

    def update_filter(self, filter_id: str, fields: dict, now: int) -> Optional[dict]:
        rows = self._run("""
            MATCH (f:CustomFilter {id: $id})
            SET f += $fields, f.updated_at = $now
            RETURN f.id AS id
        """, {"id": filter_id, "fields": fields, "now": now})
        return self.get_filter(filter_id) if rows else None

    def delete_filter(self, filter_id: str) -> bool:
        rows = self._run("""
            MATCH (f:CustomFilter {id: $id})
            DETACH DELETE f
            RETURN count(*) AS deleted
        """, {"id": filter_id})
        return rows_value(rows, "deleted", 0) > 0

    def get_tagged_product_map(self, filter_ids) -> dict[str, list[str]]:
        ids = list(filter_ids)
        rows = self._run("""
            MATCH (p:Product)-[:TAGGED_WITH]->(f:CustomFilter)
            WHERE f.id IN $ids
            RETURN f.id AS filter_id, p.id AS product_id
        """, {"ids": ids})
        return _group_pairs(rows, "filter_id", "product_id", ids)

    def tag_product(self, product_id: str, filter_ids: list[str]) -> int:
        """Add TAGGED_WITH edges, all or none: 0 when any filter is missing."""
        if not filter_ids:
            return 0
        rows = self._run("""
            MATCH (p:Product {id: $product_id})
            OPTIONAL MATCH (f:CustomFilter)
            WHERE f.id IN $filter_ids
            WITH p, collect(DISTINCT f) AS filters
            WHERE size(filters) = size($filter_ids)
            FOREACH (f IN filters | MERGE (p)-[:TAGGED_WITH]->(f))
            RETURN size(filters) AS tagged
        """, {"product_id": product_id, "filter_ids": list(filter_ids)})
        return rows_value(rows, "tagged", 0)

    def replace_product_tags(self, product_id: str, filter_ids: list[str]) -> bool:
        """Swap the product's whole TAGGED_WITH set in one statement.

        Old tags are deleted only after every filter in ``filter_ids`` is
        matched. Returns False (and writes nothing) otherwise.
        """
        rows = self._run("""
            MATCH (p:Product {id: $product_id})
            OPTIONAL MATCH (f:CustomFilter)
            WHERE f.id IN $filter_ids
            WITH p, collect(DISTINCT f) AS filters
            WHERE size(filters) = size($filter_ids)
            OPTIONAL MATCH (p)-[old:TAGGED_WITH]->(:CustomFilter)
            DELETE old
            WITH DISTINCT p, filters
            FOREACH (f IN filters | MERGE (p)-[:TAGGED_WITH]->(f))
            RETURN p.id AS id
        """, {"product_id": product_id, "filter_ids": list(filter_ids)})
        return bool(rows)

    def untag_product(self, product_id: str, filter_ids: Optional[list[str]] = None) -> int:
        """Remove TAGGED_WITH edges (all of them when ``filter_ids`` is None)."""
        rows = self._run("""
            MATCH (p:Product {id: $product_id})-[r:TAGGED_WITH]->(f:CustomFilter)
            WHERE $filter_ids IS NULL OR f.id IN $filter_ids
            DELETE r
            RETURN count(r) AS removed
        """, {"product_id": product_id,
              "filter_ids": list(filter_ids) if filter_ids is not None else None})
        return rows_value(rows, "removed", 0)

    def get_product_filter_ids(self, product_id: str) -> list[str]:
        rows = self._run("""
            MATCH (:Product {id: $product_id})-[:TAGGED_WITH]->(f:CustomFilter)
            RETURN f.id AS id
        """, {"product_id": product_id})
        return [r["id"] for r in rows]

    # =========================================================================
    # LEVEL MAINTENANCE (both labels)
    # =========================================================================

    def count_nodes(self, label: str) -> int:
        rows = self._run(f"MATCH (n:{_label(label)}) RETURN count(n) AS count")
        return rows_value(rows, "count", 0)

    def reset_root_levels(self, label: str, now: int) -> int:
        """Set level 0 on every parentless node that does not already have it."""
        rows = self._run(f"""
            MATCH (n:{_label(label)})
            WHERE NOT (n)-[:CHILD_OF]->(:{label}) AND coalesce(n.level, -1) <> 0
            SET n.level = 0, n.updated_at = $now
            RETURN count(n) AS updated
        """, {"now": now})
        return rows_value(rows, "updated", 0)

    def update_child_levels(self, label: str, now: int) -> int:
        """One repair pass: child.level := max(parent.level) + 1 where it differs."""
        rows = self._run(f"""
            MATCH (child:{_label(label)})-[:CHILD_OF]->(parent:{label})
            WITH child, max(parent.level) AS max_parent_level
            WHERE max_parent_level IS NOT NULL
              AND coalesce(child.level, -1) <> max_parent_level + 1
            SET child.level = max_parent_level + 1, child.updated_at = $now
            RETURN count(child) AS updated
        """, {"now": now})
        return rows_value(rows, "updated", 0)

    def count_level_inconsistencies(self, label: str) -> int:
        """Edges where the parent is not strictly shallower than the child."""
        rows = self._run(f"""
            MATCH (child:{_label(label)})-[:CHILD_OF]->(parent:{label})
            WHERE parent.level >= child.level
            RETURN count(*) AS count
        """)
        return rows_value(rows, "count", 0)

    def get_level_distribution(self, label: str) -> dict[int, int]:
        rows = self._run(f"""
            MATCH (n:{_label(label)})
            RETURN n.level AS level, count(n) AS count
            ORDER BY level
        """)
        return {r["level"]: r["count"] for r in rows if r["level"] is not None}

    def get_hierarchy_edges(self, label: str) -> list[tuple[str, str]]:
        """All (child_id, parent_id) CHILD_OF pairs, for offline analysis."""
        rows = self._run(f"""
            MATCH (child:{_label(label)})-[:CHILD_OF]->(parent:{label})
            RETURN child.id AS child_id, parent.id AS parent_id
        """)
        return [(r["child_id"], r["parent_id"]) for r in rows]

"""Shared fixtures for the catalog hierarchy test suite.

Behavioural tests run the managers against InMemoryGraphStore, a dict-backed
implementation of the HierarchyGraphStore primitives. Its ``transaction()``
snapshots the whole graph and restores it on any exception, the way a real
Neo4j transaction rolls back. Cypher contract tests use ``mock_driver``.
"""

import copy
import sys
from contextlib import contextmanager
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Ensure the project root is importable
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from catalog.config_loader import HierarchyConfig
from catalog.engine import HierarchyEngine
from catalog.logic.category_tree import CategoryTreeManager
from catalog.logic.filter_dag import FilterDagManager
from catalog.logic.graph_store import CATEGORY, CUSTOM_FILTER
from catalog.logic.hierarchy_auditor import HierarchyAuditor
from catalog.logic.level_maintainer import LevelConsistencyMaintainer
from catalog.logic.product_tagging import ProductTaggingLayer


# =============================================================================
# IN-MEMORY STORE
# =============================================================================

class InMemoryGraphStore:
    """Dict-backed stand-in for HierarchyGraphStore.

    State:
        nodes[label][id]   -> property dict
        edges[label]       -> {(child_id, parent_id)}
        products           -> {product_id}
        placements         -> {(product_id, category_id)}   HAS_CATEGORY
        tags               -> {(product_id, filter_id)}     TAGGED_WITH
    """

    def __init__(self, atomic: bool = True):
        self.atomic = atomic
        self.nodes = {CATEGORY: {}, CUSTOM_FILTER: {}}
        self.edges = {CATEGORY: set(), CUSTOM_FILTER: set()}
        self.products = set()
        self.placements = set()
        self.tags = set()
        self.queries = []
        self._depth = 0

    # ---- test helpers -------------------------------------------------------

    def add_product(self, *product_ids):
        self.products.update(product_ids)

    def add_filter(self, filter_id, name=None, level=0, parents=(), is_active=True, is_featured=False):
        self.nodes[CUSTOM_FILTER][filter_id] = {
            "id": filter_id, "name": name or filter_id, "slug": (name or filter_id).lower(),
            "level": level, "is_active": is_active, "is_featured": is_featured,
            "created_at": 0, "updated_at": 0,
        }
        for pid in parents:
            self.edges[CUSTOM_FILTER].add((filter_id, pid))

    def add_category(self, category_id, name=None, hierarchy="ladies", level=0, parent_id=None):
        self.nodes[CATEGORY][category_id] = {
            "id": category_id, "name": name or category_id, "slug": (name or category_id).lower(),
            "hierarchy": hierarchy, "level": level, "parent_id": parent_id,
            "is_active": True, "is_featured": False, "created_at": 0, "updated_at": 0,
        }
        if parent_id:
            self.edges[CATEGORY].add((category_id, parent_id))

    def place(self, product_id, category_id):
        self.products.add(product_id)
        self.placements.add((product_id, category_id))

    def tag(self, product_id, filter_id):
        self.products.add(product_id)
        self.tags.add((product_id, filter_id))

    def level_of(self, node_id, label=CUSTOM_FILTER):
        return self.nodes[label][node_id]["level"]

    # ---- transactions -------------------------------------------------------

    @property
    def in_transaction(self):
        return self._depth > 0

    @contextmanager
    def transaction(self):
        if self._depth:
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
            return
        snapshot = copy.deepcopy(
            (self.nodes, self.edges, self.products, self.placements, self.tags)
        )
        self._depth = 1
        try:
            yield self
        except Exception:
            if self.atomic:
                self.nodes, self.edges, self.products, self.placements, self.tags = snapshot
            raise
        finally:
            self._depth = 0

    # ---- generic graph helpers ----------------------------------------------

    def _parents(self, label, node_id):
        return [p for c, p in self.edges[label] if c == node_id]

    def _children(self, label, node_id):
        return [c for c, p in self.edges[label] if p == node_id]

    def _descendants_or_self(self, label, node_id):
        seen, stack = {node_id}, [node_id]
        while stack:
            for child in self._children(label, stack.pop()):
                if child not in seen:
                    seen.add(child)
                    stack.append(child)
        return seen

    def _child_map(self, label, ids):
        ids = list(ids)
        return {i: self._children(label, i) for i in ids}

    def _parent_map(self, label, ids):
        ids = list(ids)
        return {i: self._parents(label, i) for i in ids}

    def _detach(self, label, node_id):
        self.edges[label] = {e for e in self.edges[label] if node_id not in e}
        del self.nodes[label][node_id]

    # ---- products -----------------------------------------------------------

    def get_existing_product_ids(self, product_ids):
        return {p for p in product_ids if p in self.products}

    def delete_product(self, product_id):
        if product_id not in self.products:
            return False
        self.products.discard(product_id)
        self.placements = {e for e in self.placements if e[0] != product_id}
        self.tags = {e for e in self.tags if e[0] != product_id}
        return True

    # ---- categories ---------------------------------------------------------

    def _category_row(self, category_id):
        row = dict(self.nodes[CATEGORY][category_id])
        row["child_count"] = len(self._children(CATEGORY, category_id))
        row["product_count"] = sum(1 for _, c in self.placements if c == category_id)
        return row

    def _category_rows(self, ids):
        rows = [self._category_row(i) for i in ids if i in self.nodes[CATEGORY]]
        return sorted(rows, key=lambda r: (r["hierarchy"], r["level"], r["name"]))

    def get_category(self, category_id):
        return self._category_row(category_id) if category_id in self.nodes[CATEGORY] else None

    def get_categories(self, category_ids):
        return self._category_rows(set(category_ids))

    def get_all_categories(self, hierarchy=None):
        return [r for r in self._category_rows(self.nodes[CATEGORY])
                if hierarchy is None or r["hierarchy"] == hierarchy]

    def get_child_categories(self, parent_id):
        return self._category_rows(self._children(CATEGORY, parent_id))

    def get_category_child_map(self, category_ids):
        return self._child_map(CATEGORY, category_ids)

    def get_category_parent_map(self, category_ids):
        return self._parent_map(CATEGORY, category_ids)

    def get_category_product_map(self, category_ids=None):
        grouped = {i: [] for i in (category_ids or [])}
        for product_id, category_id in self.placements:
            if category_ids is None or category_id in category_ids:
                grouped.setdefault(category_id, []).append(product_id)
        return grouped

    def create_category(self, props):
        self.queries.append("create_category")
        parent_id = props.get("parent_id")
        if parent_id:
            if parent_id not in self.nodes[CATEGORY]:
                return None
            if any(c == parent_id for _, c in self.placements):
                return None
        self.add_category(props["id"], props["name"], props["hierarchy"],
                          props["level"] if parent_id else 0, parent_id)
        node = self.nodes[CATEGORY][props["id"]]
        node.update(slug=props["slug"], is_featured=props["is_featured"],
                    created_at=props["now"], updated_at=props["now"])
        return self._category_row(props["id"])

    def move_category(self, category_id, new_parent_id, level, now):
        if category_id not in self.nodes[CATEGORY]:
            return False
        if new_parent_id:
            if new_parent_id not in self.nodes[CATEGORY]:
                return False
            if any(c == new_parent_id for _, c in self.placements):
                return False
            if new_parent_id in self._descendants_or_self(CATEGORY, category_id):
                return False
        self.edges[CATEGORY] = {e for e in self.edges[CATEGORY] if e[0] != category_id}
        if new_parent_id:
            self.edges[CATEGORY].add((category_id, new_parent_id))
        self.nodes[CATEGORY][category_id].update(
            parent_id=new_parent_id or None, level=level if new_parent_id else 0, updated_at=now
        )
        return True

    def set_category_levels(self, levels, now):
        for cid, level in levels.items():
            self.nodes[CATEGORY][cid].update(level=level, updated_at=now)
        return len(levels)

    def set_category_hierarchy(self, category_ids, hierarchy, now):
        for cid in category_ids:
            self.nodes[CATEGORY][cid].update(hierarchy=hierarchy, updated_at=now)
        return len(category_ids)

    def update_category(self, category_id, fields, now):
        if category_id not in self.nodes[CATEGORY]:
            return None
        self.nodes[CATEGORY][category_id].update(fields, updated_at=now)
        return self.get_category(category_id)

    def delete_category(self, category_id):
        if category_id not in self.nodes[CATEGORY]:
            return False
        self.placements = {e for e in self.placements if e[1] != category_id}
        self._detach(CATEGORY, category_id)
        return True

    def link_product_to_leaf_categories(self, product_id, category_ids):
        if product_id not in self.products:
            return []
        linked = []
        for cid in category_ids:
            if cid in self.nodes[CATEGORY] and not self._children(CATEGORY, cid):
                self.placements.add((product_id, cid))
                linked.append(cid)
        return linked

    def replace_product_categories(self, product_id, category_ids):
        if product_id not in self.products:
            return False
        if any(cid not in self.nodes[CATEGORY] or self._children(CATEGORY, cid) for cid in category_ids):
            return False
        self.placements = {e for e in self.placements if e[0] != product_id}
        self.placements |= {(product_id, cid) for cid in category_ids}
        return True

    def unlink_product_categories(self, product_id, category_ids=None):
        doomed = {e for e in self.placements
                  if e[0] == product_id and (category_ids is None or e[1] in category_ids)}
        self.placements -= doomed
        return len(doomed)

    def get_product_category_ids(self, product_id):
        return [r["id"] for r in self._category_rows({c for p, c in self.placements if p == product_id})]

    def move_category_products(self, from_id, to_id, product_ids=None):
        if to_id not in self.nodes[CATEGORY] or self._children(CATEGORY, to_id):
            return 0
        moving = {p for p, c in self.placements
                  if c == from_id and (product_ids is None or p in product_ids)}
        self.placements = {e for e in self.placements if not (e[1] == from_id and e[0] in moving)}
        self.placements |= {(p, to_id) for p in moving}
        return len(moving)

    # ---- filters ------------------------------------------------------------

    def _filter_row(self, filter_id):
        row = dict(self.nodes[CUSTOM_FILTER][filter_id])
        row["parent_ids"] = sorted(self._parents(CUSTOM_FILTER, filter_id))
        return row

    def _filter_rows(self, ids):
        rows = [self._filter_row(i) for i in ids if i in self.nodes[CUSTOM_FILTER]]
        return sorted(rows, key=lambda r: (r["level"] if r["level"] is not None else -1, r["name"]))

    def get_filter(self, filter_id):
        return self._filter_row(filter_id) if filter_id in self.nodes[CUSTOM_FILTER] else None

    def get_filters(self, filter_ids):
        return self._filter_rows(set(filter_ids))

    def get_all_filters(self):
        return self._filter_rows(self.nodes[CUSTOM_FILTER])

    def get_filter_parent_map(self, filter_ids):
        self.queries.append("get_filter_parent_map")
        return self._parent_map(CUSTOM_FILTER, filter_ids)

    def get_filter_child_map(self, filter_ids):
        self.queries.append("get_filter_child_map")
        return self._child_map(CUSTOM_FILTER, filter_ids)

    def get_filter_levels(self, filter_ids):
        return {i: self.nodes[CUSTOM_FILTER][i]["level"]
                for i in filter_ids if i in self.nodes[CUSTOM_FILTER]}

    def create_filter(self, props):
        self.queries.append("create_filter")
        self.add_filter(props["id"], props["name"], props["level"], is_featured=props["is_featured"])
        self.nodes[CUSTOM_FILTER][props["id"]].update(
            slug=props["slug"], created_at=props["now"], updated_at=props["now"]
        )
        return dict(self.nodes[CUSTOM_FILTER][props["id"]])

    def replace_filter_parents(self, filter_id, parent_ids, now):
        self.queries.append("replace_filter_parents")
        if filter_id not in self.nodes[CUSTOM_FILTER]:
            return False
        if set(parent_ids) & self._descendants_or_self(CUSTOM_FILTER, filter_id):
            return False
        if any(pid not in self.nodes[CUSTOM_FILTER] for pid in parent_ids):
            return False
        self.edges[CUSTOM_FILTER] = {e for e in self.edges[CUSTOM_FILTER] if e[0] != filter_id}
        self.edges[CUSTOM_FILTER] |= {(filter_id, pid) for pid in parent_ids}
        self.nodes[CUSTOM_FILTER][filter_id]["updated_at"] = now
        return True

    def link_filter_parents(self, filter_id, parent_ids):
        self.queries.append("link_filter_parents")
        if filter_id not in self.nodes[CUSTOM_FILTER]:
            return 0
        linked = 0
        for pid in parent_ids:
            if pid in self.nodes[CUSTOM_FILTER]:
                self.edges[CUSTOM_FILTER].add((filter_id, pid))
                linked += 1
        return linked

    def set_filter_levels(self, levels, now):
        for fid, level in levels.items():
            self.nodes[CUSTOM_FILTER][fid].update(level=level, updated_at=now)
        return len(levels)

    def update_filter(self, filter_id, fields, now):
        if filter_id not in self.nodes[CUSTOM_FILTER]:
            return None
        self.nodes[CUSTOM_FILTER][filter_id].update(fields, updated_at=now)
        return self.get_filter(filter_id)

    def delete_filter(self, filter_id):
        if filter_id not in self.nodes[CUSTOM_FILTER]:
            return False
        self.tags = {e for e in self.tags if e[1] != filter_id}
        self._detach(CUSTOM_FILTER, filter_id)
        return True

    def get_tagged_product_map(self, filter_ids):
        self.queries.append("get_tagged_product_map")
        ids = list(filter_ids)
        grouped = {i: [] for i in ids}
        for product_id, filter_id in self.tags:
            if filter_id in grouped:
                grouped[filter_id].append(product_id)
        return grouped

    def tag_product(self, product_id, filter_ids):
        if product_id not in self.products:
            return 0
        if any(fid not in self.nodes[CUSTOM_FILTER] for fid in filter_ids):
            return 0
        self.tags |= {(product_id, fid) for fid in filter_ids}
        return len(filter_ids)

    def replace_product_tags(self, product_id, filter_ids):
        if product_id not in self.products:
            return False
        if any(fid not in self.nodes[CUSTOM_FILTER] for fid in filter_ids):
            return False
        self.tags = {e for e in self.tags if e[0] != product_id}
        self.tags |= {(product_id, fid) for fid in filter_ids}
        return True

    def untag_product(self, product_id, filter_ids=None):
        doomed = {e for e in self.tags
                  if e[0] == product_id and (filter_ids is None or e[1] in filter_ids)}
        self.tags -= doomed
        return len(doomed)

    def get_product_filter_ids(self, product_id):
        return [f for p, f in self.tags if p == product_id]

    # ---- level maintenance --------------------------------------------------

    def count_nodes(self, label):
        return len(self.nodes[label])

    def reset_root_levels(self, label, now):
        updated = 0
        for node_id, node in self.nodes[label].items():
            if not self._parents(label, node_id) and node.get("level") != 0:
                node.update(level=0, updated_at=now)
                updated += 1
        return updated

    def update_child_levels(self, label, now):
        # aggregate over a snapshot, then write, like MATCH ... WITH max() ... SET
        snapshot = {nid: n.get("level") for nid, n in self.nodes[label].items()}
        targets = {}
        for node_id in self.nodes[label]:
            parent_levels = [snapshot[p] for p in self._parents(label, node_id) if snapshot.get(p) is not None]
            if not parent_levels:
                continue
            expected = max(parent_levels) + 1
            current = snapshot[node_id] if snapshot[node_id] is not None else -1
            if current != expected:
                targets[node_id] = expected
        for node_id, level in targets.items():
            self.nodes[label][node_id].update(level=level, updated_at=now)
        return len(targets)

    def count_level_inconsistencies(self, label):
        levels = {nid: n.get("level") for nid, n in self.nodes[label].items()}
        return sum(
            1 for child, parent in self.edges[label]
            if levels.get(child) is not None and levels.get(parent) is not None
            and levels[parent] >= levels[child]
        )

    def get_level_distribution(self, label):
        distribution = {}
        for node in self.nodes[label].values():
            if node.get("level") is not None:
                distribution[node["level"]] = distribution.get(node["level"], 0) + 1
        return dict(sorted(distribution.items()))

    def get_hierarchy_edges(self, label):
        return sorted(self.edges[label])


# =============================================================================
# MANAGER FIXTURES
# =============================================================================

@pytest.fixture
def config():
    """Default engine configuration (no YAML file involved)."""
    return HierarchyConfig()


@pytest.fixture
def store():
    return InMemoryGraphStore()


@pytest.fixture
def categories(store, config):
    return CategoryTreeManager(store, config)


@pytest.fixture
def filters(store, config):
    return FilterDagManager(store, config)


@pytest.fixture
def tagging(store):
    return ProductTaggingLayer(store)


@pytest.fixture
def maintainer(store, config):
    return LevelConsistencyMaintainer(store, config)


@pytest.fixture
def auditor(store, config):
    return HierarchyAuditor(store, config)


@pytest.fixture
def engine(store, config):
    return HierarchyEngine(store, config)


@pytest.fixture
def diamond(store):
    """Filter diamond:  A -> B, A -> C, B -> D, C -> D  (parent -> child)."""
    store.add_filter("A", "Apparel", level=0)
    store.add_filter("B", "Bottoms", level=1, parents=["A"])
    store.add_filter("C", "Casual", level=1, parents=["A"])
    store.add_filter("D", "Denim", level=2, parents=["B", "C"])
    return store


# =============================================================================
# DRIVER MOCKS
# =============================================================================

@pytest.fixture
def mock_driver():
    """Mock Neo4j driver with session and explicit-transaction context managers."""
    driver = MagicMock()
    session = MagicMock()
    tx = MagicMock()
    driver.session.return_value.__enter__ = MagicMock(return_value=session)
    driver.session.return_value.__exit__ = MagicMock(return_value=False)
    session.begin_transaction.return_value = tx
    session.run.return_value = []
    tx.run.return_value = []
    return driver, session, tx

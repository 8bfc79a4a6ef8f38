"""Filter DAG Manager - multi-parent custom filters.

A filter may sit under any number of parents as long as the CHILD_OF graph
stays acyclic. ``level`` is 0 for a filter without parents and otherwise one
more than its deepest parent, so a parent change has to ripple down through
every descendant.

All closures are computed per call from the current graph, one store round
trip per BFS frontier.
"""

import logging
import uuid
from typing import Optional

from ..config_loader import HierarchyConfig, get_config
from ..errors import CycleError, NotFoundError, ValidationError
from ..models import CycleCheck, FilterNode, FilterTreeNode, make_slug
from .graph_store import now_millis
from .traversal import (
    EdgePolicy,
    assemble_forest,
    build_breadcrumb,
    closure,
    explore,
    find_cycle_conflict,
    level_from_parents,
    propagate_levels,
    reachable,
)

logger = logging.getLogger(__name__)


def new_filter_id() -> str:
    return f"filter-{now_millis()}-{uuid.uuid4().hex[:9]}"


class FilterDagManager:
    """CRUD, acyclicity and aggregation over the custom filter DAG."""

    policy = EdgePolicy.MULTI_PARENT

    def __init__(self, store, config: Optional[HierarchyConfig] = None):
        self.store = store
        self.settings = (config or get_config()).hierarchy

    # =========================================================================
    # READS
    # =========================================================================

    def get_filter(self, filter_id: str) -> Optional[FilterNode]:
        row = self.store.get_filter(filter_id)
        return FilterNode(**row) if row else None

    def get_all_filters(self) -> list[FilterNode]:
        return [FilterNode(**row) for row in self.store.get_all_filters()]

    def get_root_filters(self) -> list[FilterNode]:
        return [f for f in self.get_all_filters() if not f.parent_ids]

    def get_featured_filters(self) -> list[FilterNode]:
        return [f for f in self.get_all_filters() if f.is_featured and f.is_active]

    def get_filter_tree(self) -> list[FilterTreeNode]:
        """The DAG unrolled into a forest; a multi-parent filter appears under each parent."""
        return assemble_forest(self.get_all_filters(), lambda f: f.parent_ids, FilterTreeNode)

    def get_direct_parent_filter_ids(self, filter_id: str) -> list[str]:
        return sorted(self.store.get_filter_parent_map([filter_id]).get(filter_id, []))

    def get_direct_child_filter_ids(self, filter_id: str) -> list[str]:
        return sorted(self.store.get_filter_child_map([filter_id]).get(filter_id, []))

    def get_all_parent_filter_ids(self, filter_id: str) -> list[str]:
        """Every ancestor of ``filter_id``, nearest first, each once."""
        return closure(filter_id, self.store.get_filter_parent_map)

    def get_all_ancestor_filter_ids(self, filter_id: str) -> list[str]:
        return self.get_all_parent_filter_ids(filter_id)

    def get_all_child_filter_ids(self, filter_id: str) -> list[str]:
        """Every descendant of ``filter_id``, nearest first, each once."""
        return closure(filter_id, self.store.get_filter_child_map)

    def get_filters_breadcrumbs(self, filter_ids: list[str]) -> dict[str, list[FilterNode]]:
        """One root-to-filter path per requested id.

        Where a filter has several parents the path follows the configured
        tie-break (``lowest_level_then_id`` or ``lowest_id``). Unknown ids map
        to an empty list.
        """
        ids = list(dict.fromkeys(filter_ids))
        if not ids:
            return {}
        parent_map = explore(set(ids), self.store.get_filter_parent_map)
        nodes = {row["id"]: FilterNode(**row) for row in self.store.get_filters(list(parent_map))}
        levels = {k: v.level for k, v in nodes.items()}

        crumbs = {}
        for fid in ids:
            if fid not in nodes:
                crumbs[fid] = []
                continue
            path = build_breadcrumb(fid, parent_map, levels, self.settings.breadcrumb_tie_break)
            crumbs[fid] = [nodes[i] for i in path if i in nodes]
        return crumbs

    def get_filter_breadcrumb(self, filter_id: str) -> list[FilterNode]:
        return self.get_filters_breadcrumbs([filter_id]).get(filter_id, [])

    def get_products_by_filter(self, filter_id: str, include_children: bool = True) -> list[str]:
        ids = [filter_id]
        if include_children:
            ids += self.get_all_child_filter_ids(filter_id)
        tagged = self.store.get_tagged_product_map(ids)
        return sorted({pid for fid in ids for pid in tagged.get(fid, [])})

    def get_product_count_by_filter(self, filter_id: str, include_children: bool = True) -> int:
        """Distinct products tagged on the filter (and its descendants)."""
        return self.get_product_counts_for_filters([filter_id], include_children)[filter_id]

    def get_product_counts_for_filters(self, filter_ids: list[str],
                                       include_children: bool = True) -> dict[str, int]:
        """Batched product counts.

        The descendant closures of all requested filters are fetched in one
        shared frontier expansion and the tags in one query, so shared
        subtrees are read once. Unknown ids count 0.
        """
        ids = list(dict.fromkeys(filter_ids))
        if not ids:
            return {}
        if include_children:
            child_map = explore(set(ids), self.store.get_filter_child_map)
        else:
            child_map = {fid: [] for fid in ids}
        tagged = self.store.get_tagged_product_map(list(child_map))

        counts = {}
        for fid in ids:
            products = set()
            for node in reachable(fid, child_map, include_start=True):
                products.update(tagged.get(node, []))
            counts[fid] = len(products)
        return counts

    # =========================================================================
    # CYCLE CHECK
    # =========================================================================

    def validate_no_cycles(self, filter_id: str, candidate_parent_ids: list[str]) -> CycleCheck:
        """Would making ``candidate_parent_ids`` the parents of ``filter_id`` close a cycle?"""
        return self._check_cycles(self.store, filter_id, self.policy.normalize_parents(candidate_parent_ids))

    def _check_cycles(self, store, filter_id: str, parent_ids: list[str]) -> CycleCheck:
        known = store.get_filter_levels([filter_id, *parent_ids])
        for fid in [filter_id, *parent_ids]:
            if fid not in known:
                return CycleCheck(filter_id=filter_id, valid=False, missing_id=fid,
                                  reason=f"Filter not found: {fid}")

        conflict = find_cycle_conflict(filter_id, parent_ids, store.get_filter_child_map)
        if conflict is None:
            return CycleCheck(filter_id=filter_id, valid=True)

        if conflict == filter_id:
            return CycleCheck(filter_id=filter_id, valid=False, conflicting_id=conflict,
                              reason="A filter cannot be its own parent")
        row = store.get_filter(conflict)
        name = row["name"] if row else conflict
        return CycleCheck(
            filter_id=filter_id, valid=False, conflicting_id=conflict, conflicting_name=name,
            reason=f'Cannot add "{name}" as a parent: it is already a descendant of this filter',
        )

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    def create_custom_filter(self, name: str, parent_ids: Optional[list[str]] = None,
                             is_featured: bool = False) -> FilterNode:
        """Create a filter under zero or more existing parents."""
        name = (name or "").strip()
        if not name:
            raise ValidationError("Filter name is required")
        parents = self.policy.normalize_parents(parent_ids)
        filter_id = new_filter_id()

        with self.store.transaction() as tx:
            levels = tx.get_filter_levels(parents)
            for pid in parents:
                if pid not in levels:
                    raise NotFoundError("CustomFilter", pid)

            created = tx.create_filter({
                "id": filter_id,
                "name": name,
                "slug": make_slug(name),
                "level": level_from_parents(levels.values()),
                "is_featured": is_featured,
                "now": now_millis(),
            })
            linked = tx.link_filter_parents(filter_id, parents)
            if linked != len(parents):
                if not tx.atomic:
                    tx.delete_filter(filter_id)
                raise ValidationError(f"Parent filters of '{name}' changed before it could be created")

        logger.info(f"Created filter '{name}' ({filter_id}) at level {created['level']} under {parents}")
        return FilterNode(**created, parent_ids=parents)

    def update_filter_parents(self, filter_id: str, new_parent_ids: Optional[list[str]]) -> FilterNode:
        """Replace the parent set of a filter.

        The cycle check and the edge replacement share one store transaction;
        the replacement is a single statement that re-checks acyclicity and
        parent existence, so a concurrent change on a non-transactional
        backend leaves the old parents in place. Levels of the filter and
        all of its descendants are recomputed once the edges are swapped.
        """
        parents = self.policy.normalize_parents(new_parent_ids)

        with self.store.transaction() as tx:
            check = self._check_cycles(tx, filter_id, parents)
            if not check.valid:
                if check.missing_id:
                    raise NotFoundError("CustomFilter", check.missing_id)
                logger.warning(f"Rejected parent update for {filter_id}: {check.reason}")
                raise CycleError(filter_id, check.conflicting_id, check.reason)

            now = now_millis()
            if not tx.replace_filter_parents(filter_id, parents, now):
                logger.warning(f"Parent update for {filter_id} lost a race with a concurrent change")
                if tx.get_filter(filter_id) is None:
                    raise NotFoundError("CustomFilter", filter_id)
                missing = set(parents) - set(tx.get_filter_levels(parents))
                if missing:
                    raise NotFoundError("CustomFilter", min(missing))
                conflict = find_cycle_conflict(filter_id, parents, tx.get_filter_child_map)
                raise CycleError(
                    filter_id, conflict or filter_id,
                    f"Parent update for {filter_id} rejected: the hierarchy changed concurrently",
                )

            changed = self._recompute_levels_below(tx, filter_id, now)
            updated = tx.get_filter(filter_id)

        logger.info(
            f"Filter {filter_id} now has parents {parents}; {len(changed)} level(s) recomputed"
        )
        return FilterNode(**updated)

    def _recompute_levels_below(self, tx, filter_id: str, now: int) -> dict[str, int]:
        """Recompute levels for ``filter_id`` and its descendants; write only the changed ones."""
        own_parents = tx.get_filter_parent_map([filter_id]).get(filter_id, [])
        root_level = level_from_parents(tx.get_filter_levels(own_parents).values())

        child_map = explore({filter_id}, tx.get_filter_child_map)
        parent_map = tx.get_filter_parent_map(list(child_map))
        outside = {p for ps in parent_map.values() for p in ps if p not in child_map}
        known = tx.get_filter_levels(outside)

        levels = propagate_levels(filter_id, root_level, child_map, parent_map, known)
        current = tx.get_filter_levels(list(levels))
        changed = {fid: lvl for fid, lvl in levels.items() if current.get(fid) != lvl}
        tx.set_filter_levels(changed, now)
        return changed

    def update_custom_filter(self, filter_id: str, name: Optional[str] = None,
                             is_active: Optional[bool] = None) -> FilterNode:
        fields = {}
        if name is not None:
            name = name.strip()
            if not name:
                raise ValidationError("Filter name is required")
            fields.update(name=name, slug=make_slug(name))
        if is_active is not None:
            fields["is_active"] = is_active

        row = self.store.update_filter(filter_id, fields, now_millis())
        if row is None:
            raise NotFoundError("CustomFilter", filter_id)
        return FilterNode(**row)

    def set_filter_featured(self, filter_id: str, is_featured: bool) -> FilterNode:
        row = self.store.update_filter(filter_id, {"is_featured": is_featured}, now_millis())
        if row is None:
            raise NotFoundError("CustomFilter", filter_id)
        return FilterNode(**row)

    def delete_custom_filter(self, filter_id: str) -> bool:
        """Delete a filter that has no child filters and no tagged products."""
        with self.store.transaction() as tx:
            row = tx.get_filter(filter_id)
            if row is None:
                raise NotFoundError("CustomFilter", filter_id)
            children = tx.get_filter_child_map([filter_id]).get(filter_id, [])
            if children:
                raise ValidationError(
                    f'Cannot delete "{row["name"]}": it has {len(children)} child filter(s)'
                )
            tagged = tx.get_tagged_product_map([filter_id]).get(filter_id, [])
            if tagged:
                raise ValidationError(
                    f'Cannot delete "{row["name"]}": {len(tagged)} product(s) are tagged with it'
                )
            deleted = tx.delete_filter(filter_id)
        logger.info(f"Deleted filter {filter_id}")
        return deleted

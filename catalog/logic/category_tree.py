"""Category Tree Manager - single-parent merchandising trees.

Every category belongs to exactly one hierarchy (ladies, gents, kids, ...)
and has at most one parent. ``level`` is the number of CHILD_OF edges up to
the hierarchy root. Products hang off leaves only: a category that has
children never carries direct HAS_CATEGORY links.
"""

import logging
import uuid
from typing import Optional

from ..config_loader import HierarchyConfig, get_config
from ..errors import CycleError, LeafViolationError, NotFoundError, ValidationError
from ..models import (
    AssignmentOutcome,
    AssignmentReport,
    CategoryNode,
    CategoryTreeNode,
    LeafCheck,
    make_slug,
)
from .graph_store import now_millis
from .traversal import (
    assemble_forest,
    build_breadcrumb,
    closure,
    explore,
    propagate_levels,
    reachable,
)

logger = logging.getLogger(__name__)


class CategoryTreeManager:
    """CRUD and placement rules over the category trees."""

    def __init__(self, store, config: Optional[HierarchyConfig] = None):
        self.store = store
        self.settings = (config or get_config()).hierarchy

    # =========================================================================
    # READS
    # =========================================================================

    def get_category(self, category_id: str) -> Optional[CategoryNode]:
        row = self.store.get_category(category_id)
        return CategoryNode(**row) if row else None

    def get_child_categories(self, parent_id: str) -> list[CategoryNode]:
        return [CategoryNode(**row) for row in self.store.get_child_categories(parent_id)]

    def get_leaf_categories(self, hierarchy: Optional[str] = None) -> list[CategoryNode]:
        """Categories without children, each with its direct product count."""
        rows = self.store.get_all_categories(hierarchy)
        return [CategoryNode(**row) for row in rows if not row.get("child_count")]

    def get_category_path(self, category_id: str) -> list[CategoryNode]:
        """Root-to-node path; empty when the category does not exist."""
        parents = explore({category_id}, self.store.get_category_parent_map)
        by_id = {row["id"]: CategoryNode(**row) for row in self.store.get_categories(list(parents))}
        if category_id not in by_id:
            return []
        path = build_breadcrumb(category_id, parents, {k: v.level for k, v in by_id.items()})
        return [by_id[i] for i in path if i in by_id]

    def get_category_tree(self) -> dict[str, list[CategoryTreeNode]]:
        """All hierarchies as nested trees.

        ``product_count`` on a tree node is the number of distinct products in
        its whole subtree, not just its direct links.
        """
        nodes = [CategoryNode(**row) for row in self.store.get_all_categories()]
        product_map = self.store.get_category_product_map()

        children: dict[str, list[str]] = {n.id: [] for n in nodes}
        for node in nodes:
            if node.parent_id in children:
                children[node.parent_id].append(node.id)

        for node in nodes:
            products = set()
            for cid in reachable(node.id, children, include_start=True):
                products.update(product_map.get(cid, []))
            node.product_count = len(products)

        by_hierarchy: dict[str, list[CategoryNode]] = {}
        for node in nodes:
            by_hierarchy.setdefault(node.hierarchy, []).append(node)

        known = [h for h in self.settings.hierarchies if h in by_hierarchy]
        ordered = known + sorted(h for h in by_hierarchy if h not in known)
        return {
            h: assemble_forest(
                by_hierarchy[h],
                lambda n: [n.parent_id] if n.parent_id else [],
                CategoryTreeNode,
            )
            for h in ordered
        }

    def validate_leaf_category_for_product(self, category_id: str) -> LeafCheck:
        row = self.store.get_category(category_id)
        if row is None:
            return LeafCheck(category_id=category_id, valid=False, reason=f"Category not found: {category_id}")
        child_count = row.get("child_count") or 0
        if child_count:
            error = LeafViolationError(category_id, child_count, row["name"])
            return LeafCheck(
                category_id=category_id, valid=False, reason=str(error),
                category_name=row["name"], child_count=child_count,
            )
        return LeafCheck(category_id=category_id, valid=True, category_name=row["name"])

    def find_parent_categories_with_products(self) -> list[CategoryNode]:
        """Non-leaf categories that still hold direct product links."""
        return [
            CategoryNode(**row) for row in self.store.get_all_categories()
            if row.get("child_count") and row.get("product_count")
        ]

    def get_category_statistics(self) -> dict:
        nodes = [CategoryNode(**row) for row in self.store.get_all_categories()]
        by_hierarchy: dict[str, int] = {}
        by_level: dict[int, int] = {}
        for node in nodes:
            by_hierarchy[node.hierarchy] = by_hierarchy.get(node.hierarchy, 0) + 1
            by_level[node.level] = by_level.get(node.level, 0) + 1
        return {
            "total": len(nodes),
            "by_hierarchy": by_hierarchy,
            "by_level": dict(sorted(by_level.items())),
            "leaves": sum(1 for n in nodes if n.is_leaf),
            "active": sum(1 for n in nodes if n.is_active),
            "featured": sum(1 for n in nodes if n.is_featured),
            "with_products": sum(1 for n in nodes if n.product_count),
            "parents_with_products": sum(1 for n in nodes if not n.is_leaf and n.product_count),
        }

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    def _check_hierarchy_name(self, hierarchy: Optional[str]) -> str:
        hierarchy = (hierarchy or "").strip()
        if not hierarchy:
            raise ValidationError("Hierarchy is required for a root category")
        if self.settings.restrict_to_known_hierarchies and hierarchy not in self.settings.hierarchies:
            raise ValidationError(
                f"Unknown hierarchy '{hierarchy}'. Expected one of: {', '.join(self.settings.hierarchies)}"
            )
        return hierarchy

    def create_category(self, name: str, hierarchy: Optional[str] = None,
                        parent_id: Optional[str] = None, is_featured: bool = False) -> CategoryNode:
        """Create a category as a root or under an existing parent.

        A child takes its parent's hierarchy and sits one level below it.
        A parent that already holds products cannot gain children.
        """
        name = (name or "").strip()
        if not name:
            raise ValidationError("Category name is required")

        with self.store.transaction() as tx:
            level = 0
            if parent_id:
                parent = tx.get_category(parent_id)
                if parent is None:
                    raise ValidationError(f"Parent category not found: {parent_id}")
                if hierarchy and hierarchy != parent["hierarchy"]:
                    raise ValidationError(
                        f"Category must stay in its parent's hierarchy '{parent['hierarchy']}', got '{hierarchy}'"
                    )
                if parent.get("product_count"):
                    raise ValidationError(
                        f'Parent category "{parent["name"]}" has {parent["product_count"]} product(s). '
                        f"Move them to a leaf category before adding children."
                    )
                hierarchy = parent["hierarchy"]
                level = parent["level"] + 1
            else:
                hierarchy = self._check_hierarchy_name(hierarchy)

            created = tx.create_category({
                "id": str(uuid.uuid4()),
                "name": name,
                "slug": make_slug(name),
                "hierarchy": hierarchy,
                "parent_id": parent_id or None,
                "level": level,
                "is_featured": is_featured,
                "now": now_millis(),
            })
            if created is None:
                raise ValidationError(f"Parent category {parent_id} changed before the category could be created")

        logger.info(f"Created category '{name}' ({created['id']}) in {hierarchy} at level {level}")
        return CategoryNode(**created)

    def assign_product_to_categories(self, product_id: str, category_ids: list[str]) -> AssignmentReport:
        """Link a product to each leaf in ``category_ids``.

        Ids that are missing or have children are rejected individually; the
        rest are linked in one transaction. Existing links are kept.
        """
        ids = list(dict.fromkeys(cid or "" for cid in category_ids or []))
        report = AssignmentReport(product_id=product_id)

        with self.store.transaction() as tx:
            if product_id not in tx.get_existing_product_ids([product_id]):
                raise NotFoundError("Product", product_id)

            rows = {row["id"]: row for row in tx.get_categories([cid for cid in ids if cid])}
            accepted = []
            for cid in ids:
                row = rows.get(cid)
                if not cid:
                    report.outcomes.append(self._rejected(ValidationError("Category id must not be blank"), cid))
                elif row is None:
                    report.outcomes.append(self._rejected(NotFoundError("Category", cid), cid))
                elif row.get("child_count"):
                    error = LeafViolationError(cid, row["child_count"], row["name"])
                    report.outcomes.append(self._rejected(error, cid))
                else:
                    accepted.append(cid)

            linked = set(tx.link_product_to_leaf_categories(product_id, accepted))
            stale = [cid for cid in accepted if cid not in linked]
            if stale:
                fresh = {row["id"]: row for row in tx.get_categories(stale)}
                for cid in stale:
                    row = fresh.get(cid)
                    if row is None:
                        error = NotFoundError("Category", cid)
                    else:
                        error = LeafViolationError(cid, row.get("child_count") or 1, row["name"])
                    report.outcomes.append(self._rejected(error, cid))

        for cid in accepted:
            if cid in linked:
                report.outcomes.append(AssignmentOutcome(category_id=cid, assigned=True))
        order = {cid: i for i, cid in enumerate(ids)}
        report.outcomes.sort(key=lambda o: order[o.category_id])

        if report.rejected_ids:
            logger.warning(f"Product {product_id}: rejected categories {report.rejected_ids}")
        logger.info(f"Product {product_id} assigned to {len(report.assigned_ids)} category(ies)")
        return report

    @staticmethod
    def _rejected(error, category_id: str) -> AssignmentOutcome:
        return AssignmentOutcome(category_id=category_id, assigned=False, reason=str(error), error=error)

    def update_category(self, category_id: str, name: Optional[str] = None,
                        is_active: Optional[bool] = None, is_featured: Optional[bool] = None) -> CategoryNode:
        fields = {}
        if name is not None:
            name = name.strip()
            if not name:
                raise ValidationError("Category name is required")
            fields.update(name=name, slug=make_slug(name))
        if is_active is not None:
            fields["is_active"] = is_active
        if is_featured is not None:
            fields["is_featured"] = is_featured

        row = self.store.update_category(category_id, fields, now_millis())
        if row is None:
            raise NotFoundError("Category", category_id)
        return CategoryNode(**row)

    def move_category(self, category_id: str, new_parent_id: Optional[str]) -> CategoryNode:
        """Re-parent a category (None makes it a root).

        The whole subtree follows: levels are recomputed below the moved node
        and every descendant takes the new parent's hierarchy.
        """
        with self.store.transaction() as tx:
            node = tx.get_category(category_id)
            if node is None:
                raise NotFoundError("Category", category_id)

            hierarchy = node["hierarchy"]
            level = 0
            if new_parent_id:
                if new_parent_id == category_id:
                    raise CycleError(category_id, new_parent_id, "A category cannot be its own parent")
                parent = tx.get_category(new_parent_id)
                if parent is None:
                    raise NotFoundError("Category", new_parent_id)
                if new_parent_id in closure(category_id, tx.get_category_child_map):
                    raise CycleError(
                        category_id, new_parent_id,
                        f'Cannot move "{node["name"]}" under its own descendant "{parent["name"]}"',
                    )
                if parent.get("product_count"):
                    raise ValidationError(
                        f'Parent category "{parent["name"]}" has products and cannot gain children'
                    )
                hierarchy = parent["hierarchy"]
                level = parent["level"] + 1

            now = now_millis()
            if not tx.move_category(category_id, new_parent_id, level, now):
                raise ValidationError(f"Category {new_parent_id} changed before {category_id} could be moved")

            child_map = explore({category_id}, tx.get_category_child_map)
            parent_map = {c: [p] for p, kids in child_map.items() for c in kids}
            levels = propagate_levels(category_id, level, child_map, parent_map, {})
            levels.pop(category_id, None)
            tx.set_category_levels(levels, now)
            if hierarchy != node["hierarchy"]:
                tx.set_category_hierarchy(list(child_map), hierarchy, now)

            moved = tx.get_category(category_id)

        logger.info(
            f"Moved category {category_id} under {new_parent_id or '<root>'} "
            f"({len(levels)} descendant level(s) recomputed)"
        )
        return CategoryNode(**moved)

    def delete_category(self, category_id: str) -> bool:
        """Delete a category that has neither children nor products."""
        with self.store.transaction() as tx:
            row = tx.get_category(category_id)
            if row is None:
                raise NotFoundError("Category", category_id)
            if row.get("child_count"):
                raise ValidationError(
                    f'Cannot delete "{row["name"]}": it has {row["child_count"]} subcategory(ies)'
                )
            if row.get("product_count"):
                raise ValidationError(
                    f'Cannot delete "{row["name"]}": it has {row["product_count"]} product(s)'
                )
            deleted = tx.delete_category(category_id)
        logger.info(f"Deleted category {category_id}")
        return deleted

    def migrate_products_to_leaf(self, category_id: str, target_leaf_id: str) -> int:
        """Move direct product links off a non-leaf onto one of its leaf descendants."""
        with self.store.transaction() as tx:
            if tx.get_category(category_id) is None:
                raise NotFoundError("Category", category_id)
            target = tx.get_category(target_leaf_id)
            if target is None:
                raise NotFoundError("Category", target_leaf_id)
            if target.get("child_count"):
                raise LeafViolationError(target_leaf_id, target["child_count"], target["name"])
            if target_leaf_id not in closure(category_id, tx.get_category_child_map):
                raise ValidationError(f"{target_leaf_id} is not a descendant of {category_id}")
            moved = tx.move_category_products(category_id, target_leaf_id)

        logger.info(f"Migrated {moved} product(s) from {category_id} to leaf {target_leaf_id}")
        return moved

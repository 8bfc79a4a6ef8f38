"""Product Tagging Layer - product links to leaf categories and custom filters."""

import logging
from typing import Optional

from ..errors import LeafViolationError, NotFoundError, ValidationError
from ..models import CategoryNode, FilterNode
from .traversal import explore, reachable

logger = logging.getLogger(__name__)


def distinct_ids(ids: Optional[list[str]], kind: str) -> list[str]:
    """Input order kept, duplicates dropped; a blank id is an error."""
    result = list(dict.fromkeys(ids or []))
    if any(not i for i in result):
        raise ValidationError(f"{kind} id must not be blank")
    return result


class ProductTaggingLayer:
    """Many-to-many links between products and categories / filters.

    Additive category assignment with per-id outcomes lives in
    CategoryTreeManager.assign_product_to_categories; this layer covers
    filter tags, category replacement and product-centric reads.
    """

    def __init__(self, store):
        self.store = store

    def _require_product(self, store, product_id: str):
        if product_id not in store.get_existing_product_ids([product_id]):
            raise NotFoundError("Product", product_id)

    # =========================================================================
    # FILTERS
    # =========================================================================

    def _require_filters(self, store, filter_ids: list[str]):
        known = store.get_filter_levels(filter_ids)
        for fid in filter_ids:
            if fid not in known:
                raise NotFoundError("CustomFilter", fid)

    def tag_product_with_filters(self, product_id: str, filter_ids: list[str], replace: bool = True) -> list[str]:
        """Tag a product with filters; by default its previous tags are dropped.

        Every id is checked before anything is written, and the write itself
        is all-or-nothing, so a filter deleted in between leaves the
        product's tags as they were.
        """
        ids = distinct_ids(filter_ids, "Filter")
        with self.store.transaction() as tx:
            self._require_product(tx, product_id)
            self._require_filters(tx, ids)
            if replace:
                written = tx.replace_product_tags(product_id, ids)
            else:
                written = tx.tag_product(product_id, ids) == len(ids)
            if not written:
                self._require_product(tx, product_id)
                self._require_filters(tx, ids)
                raise ValidationError(f"Filters changed concurrently; product {product_id} unchanged")

        logger.info(f"Tagged product {product_id} with {len(ids)} filter(s) (replace={replace})")
        return ids

    def untag_product_from_filters(self, product_id: str, filter_ids: Optional[list[str]] = None) -> int:
        removed = self.store.untag_product(product_id, filter_ids)
        logger.info(f"Removed {removed} filter tag(s) from product {product_id}")
        return removed

    def get_product_filters(self, product_id: str) -> list[FilterNode]:
        """Filters the product is tagged with, ordered by level then name."""
        ids = self.store.get_product_filter_ids(product_id)
        if not ids:
            return []
        nodes = [FilterNode(**row) for row in self.store.get_filters(ids)]
        return sorted(nodes, key=lambda f: (f.level, f.name, f.id))

    # =========================================================================
    # CATEGORIES
    # =========================================================================

    def get_product_categories(self, product_id: str) -> list[CategoryNode]:
        ids = self.store.get_product_category_ids(product_id)
        if not ids:
            return []
        order = {cid: i for i, cid in enumerate(ids)}
        rows = self.store.get_categories(ids)
        return [CategoryNode(**row) for row in sorted(rows, key=lambda r: order[r["id"]])]

    def _require_leaves(self, store, category_ids: list[str]):
        rows = {row["id"]: row for row in store.get_categories(category_ids)}
        for cid in category_ids:
            row = rows.get(cid)
            if row is None:
                raise NotFoundError("Category", cid)
            if row.get("child_count"):
                raise LeafViolationError(cid, row["child_count"], row["name"])

    def set_product_categories(self, product_id: str, category_ids: list[str]) -> list[str]:
        """Replace the product's categories. All ids must be leaves or nothing changes.

        The swap is one guarded write: if a target gains a child or
        disappears after the check, the old links stay and the error names
        the offending category.
        """
        ids = distinct_ids(category_ids, "Category")
        with self.store.transaction() as tx:
            self._require_product(tx, product_id)
            self._require_leaves(tx, ids)
            if not tx.replace_product_categories(product_id, ids):
                self._require_product(tx, product_id)
                self._require_leaves(tx, ids)
                raise ValidationError(f"Categories changed concurrently; product {product_id} unchanged")

        logger.info(f"Product {product_id} now in categories {ids}")
        return ids

    def unassign_product_from_categories(self, product_id: str, category_ids: Optional[list[str]] = None) -> int:
        removed = self.store.unlink_product_categories(product_id, category_ids)
        logger.info(f"Removed {removed} category link(s) from product {product_id}")
        return removed

    def get_products_by_categories(self, category_ids: list[str], include_descendants: bool = True) -> list[str]:
        """Distinct product ids placed in the given categories (or anywhere below them)."""
        ids = list(dict.fromkeys(category_ids))
        if not ids:
            return []
        if include_descendants:
            child_map = explore(set(ids), self.store.get_category_child_map)
            scope = {n for cid in ids for n in reachable(cid, child_map, include_start=True)}
        else:
            scope = set(ids)
        product_map = self.store.get_category_product_map(sorted(scope))
        return sorted({pid for cid in scope for pid in product_map.get(cid, [])})

    def remove_product(self, product_id: str) -> bool:
        """Delete a product and every link it has; categories and filters stay."""
        deleted = self.store.delete_product(product_id)
        if deleted:
            logger.info(f"Removed product {product_id} and its category/filter links")
        else:
            logger.warning(f"Product {product_id} not found; nothing removed")
        return deleted

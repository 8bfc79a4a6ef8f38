"""Hierarchy Engine - the operation set exposed to the application layer.

Thin facade over the managers; each manager stays usable on its own.

    engine = build_engine()
    shoes = engine.create_category("Shoes", hierarchy="ladies")
    engine.assign_product_to_categories("p-1", [shoes.id])
    summary = engine.recalculate_levels("filters")
"""

import logging
from typing import Optional

from .config_loader import HierarchyConfig, get_config
from .database import get_connection
from .logic.category_tree import CategoryTreeManager
from .logic.filter_dag import FilterDagManager
from .logic.graph_store import HierarchyGraphStore
from .logic.hierarchy_auditor import HierarchyAuditor
from .logic.level_maintainer import LevelConsistencyMaintainer
from .logic.product_tagging import ProductTaggingLayer

logger = logging.getLogger(__name__)


class HierarchyEngine:

    def __init__(self, store, config: Optional[HierarchyConfig] = None):
        config = config or get_config()
        self.store = store
        self.categories = CategoryTreeManager(store, config)
        self.filters = FilterDagManager(store, config)
        self.tagging = ProductTaggingLayer(store)
        self.maintainer = LevelConsistencyMaintainer(store, config)
        self.auditor = HierarchyAuditor(store, config)

    # Categories
    def create_category(self, name, hierarchy=None, parent_id=None, is_featured=False):
        return self.categories.create_category(name, hierarchy, parent_id, is_featured)

    def assign_product_to_categories(self, product_id, category_ids):
        return self.categories.assign_product_to_categories(product_id, category_ids)

    def get_leaf_categories(self, hierarchy=None):
        return self.categories.get_leaf_categories(hierarchy)

    def get_category_tree(self):
        return self.categories.get_category_tree()

    def validate_leaf_category_for_product(self, category_id):
        return self.categories.validate_leaf_category_for_product(category_id)

    def move_category(self, category_id, new_parent_id):
        return self.categories.move_category(category_id, new_parent_id)

    def delete_category(self, category_id):
        return self.categories.delete_category(category_id)

    # Filters
    def create_custom_filter(self, name, parent_ids=None, is_featured=False):
        return self.filters.create_custom_filter(name, parent_ids, is_featured)

    def update_filter_parents(self, filter_id, new_parent_ids):
        return self.filters.update_filter_parents(filter_id, new_parent_ids)

    def validate_no_cycles(self, filter_id, candidate_parent_ids):
        return self.filters.validate_no_cycles(filter_id, candidate_parent_ids)

    def get_all_parent_filter_ids(self, filter_id):
        return self.filters.get_all_parent_filter_ids(filter_id)

    def get_all_ancestor_filter_ids(self, filter_id):
        return self.filters.get_all_ancestor_filter_ids(filter_id)

    def get_all_child_filter_ids(self, filter_id):
        return self.filters.get_all_child_filter_ids(filter_id)

    def get_filters_breadcrumbs(self, filter_ids):
        return self.filters.get_filters_breadcrumbs(filter_ids)

    def get_product_count_by_filter(self, filter_id, include_children=True):
        return self.filters.get_product_count_by_filter(filter_id, include_children)

    def get_product_counts_for_filters(self, filter_ids, include_children=True):
        return self.filters.get_product_counts_for_filters(filter_ids, include_children)

    def delete_custom_filter(self, filter_id):
        return self.filters.delete_custom_filter(filter_id)

    # Products
    def tag_product_with_filters(self, product_id, filter_ids, replace=True):
        return self.tagging.tag_product_with_filters(product_id, filter_ids, replace)

    def get_product_filters(self, product_id):
        return self.tagging.get_product_filters(product_id)

    def remove_product(self, product_id):
        return self.tagging.remove_product(product_id)

    # Maintenance
    def recalculate_levels(self, structure="filters"):
        return self.maintainer.recalculate_levels(structure)

    def audit(self, structure="filters"):
        return self.auditor.audit(structure)


def build_engine(config: Optional[HierarchyConfig] = None, connection=None) -> HierarchyEngine:
    """Wire an engine to the configured graph backend."""
    config = config or get_config()
    connection = connection or get_connection(config)
    logger.info(f"Hierarchy engine using {config.graph.backend} backend")
    return HierarchyEngine(HierarchyGraphStore(connection), config)

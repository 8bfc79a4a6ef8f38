"""Logic module for the category tree and filter DAG."""

from .category_tree import CategoryTreeManager
from .filter_dag import FilterDagManager
from .graph_store import HierarchyGraphStore
from .hierarchy_auditor import HierarchyAuditor
from .level_maintainer import LevelConsistencyMaintainer
from .product_tagging import ProductTaggingLayer
from .traversal import EdgePolicy

__all__ = [
    'CategoryTreeManager',
    'FilterDagManager',
    'HierarchyGraphStore',
    'HierarchyAuditor',
    'LevelConsistencyMaintainer',
    'ProductTaggingLayer',
    'EdgePolicy',
]

"""Exceptions raised by the hierarchy engine.

Validation and cycle errors are raised before any write reaches the graph,
so catching one means the store is unchanged.
"""

from typing import Optional


class HierarchyError(Exception):
    """Base exception for hierarchy operations."""
    pass


class NotFoundError(HierarchyError):
    """Raised when a referenced category, filter or product is not in the graph."""
    def __init__(self, kind: str, node_id: str):
        self.kind = kind
        self.node_id = node_id
        super().__init__(f"{kind} not found: {node_id}")


class ValidationError(HierarchyError):
    """Raised for malformed input or a mutation that would break a placement rule."""
    pass


class LeafViolationError(ValidationError):
    """Raised when a product is placed on a category that has children."""
    def __init__(self, category_id: str, child_count: int, category_name: Optional[str] = None):
        self.category_id = category_id
        self.child_count = child_count
        self.category_name = category_name
        label = f'"{category_name}"' if category_name else category_id
        noun = "category" if child_count == 1 else "categories"
        super().__init__(
            f"Cannot assign products to parent category {label}: "
            f"it has {child_count} child {noun}. Assign to a leaf category instead."
        )


class CycleError(HierarchyError):
    """Raised when a parent-set change would make a node its own ancestor.

    ``conflicting_id`` is the proposed parent that is already a descendant
    of (or equal to) ``node_id``.
    """
    def __init__(self, node_id: str, conflicting_id: str, message: Optional[str] = None):
        self.node_id = node_id
        self.conflicting_id = conflicting_id
        super().__init__(
            message or f"Adding {conflicting_id} as parent of {node_id} would create a cycle"
        )


class ConsistencyWarning(UserWarning):
    """Non-fatal: levels still inconsistent after a repair pass."""
    def __init__(self, message: str, count: int = 0):
        self.count = count
        super().__init__(message)

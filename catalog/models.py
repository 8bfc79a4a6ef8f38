"""Pydantic schemas for the catalog hierarchy engine."""

import re
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import ConsistencyWarning, HierarchyError


def make_slug(name: str) -> str:
    """Lowercase, non-alphanumeric runs collapsed to '-', no leading/trailing dash."""
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


class Structure(str, Enum):
    FILTERS = "filters"
    CATEGORIES = "categories"


# ========================================
# Hierarchy nodes
# ========================================

class CategoryNode(BaseModel):
    """A node of a single-parent merchandising tree."""
    id: str
    name: str
    slug: str = ""
    hierarchy: str
    level: int = 0
    parent_id: Optional[str] = None
    is_active: bool = True
    is_featured: bool = False
    created_at: Optional[int] = None
    updated_at: Optional[int] = None
    child_count: Optional[int] = None
    product_count: Optional[int] = None

    @property
    def is_leaf(self) -> bool:
        return not self.child_count


class CategoryTreeNode(CategoryNode):
    """Category with its direct children materialized."""
    children: list["CategoryTreeNode"] = Field(default_factory=list)


class FilterNode(BaseModel):
    """A facet in the multi-parent filter DAG."""
    id: str
    name: str
    slug: str = ""
    level: int = 0
    parent_ids: list[str] = Field(default_factory=list)
    is_active: bool = True
    is_featured: bool = False
    created_at: Optional[int] = None
    updated_at: Optional[int] = None
    product_count: Optional[int] = None


class FilterTreeNode(FilterNode):
    """Filter with its direct children materialized (DAG unrolled into a forest)."""
    children: list["FilterTreeNode"] = Field(default_factory=list)


# ========================================
# Validation results
# ========================================

class LeafCheck(BaseModel):
    """Outcome of checking whether a category may hold products."""
    category_id: str
    valid: bool
    reason: Optional[str] = None
    category_name: Optional[str] = None
    child_count: int = 0


class CycleCheck(BaseModel):
    """Outcome of a cycle check on a proposed parent set.

    ``valid`` is False either because a cycle was found (``conflicting_id``
    is set) or because a referenced node does not exist (``missing_id``).
    """
    filter_id: str
    valid: bool
    conflicting_id: Optional[str] = None
    conflicting_name: Optional[str] = None
    missing_id: Optional[str] = None
    reason: Optional[str] = None

    @property
    def has_cycle(self) -> bool:
        return self.conflicting_id is not None


class AssignmentOutcome(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    category_id: str
    assigned: bool
    reason: Optional[str] = None
    error: Optional[HierarchyError] = Field(default=None, exclude=True)


class AssignmentReport(BaseModel):
    """Per-category outcome of a multi-category product assignment."""
    product_id: str
    outcomes: list[AssignmentOutcome] = Field(default_factory=list)

    @property
    def assigned_ids(self) -> list[str]:
        return [o.category_id for o in self.outcomes if o.assigned]

    @property
    def rejected_ids(self) -> list[str]:
        return [o.category_id for o in self.outcomes if not o.assigned]

    @property
    def ok(self) -> bool:
        return not self.rejected_ids

    def raise_for_rejections(self) -> None:
        """Raise the first rejection's error, for all-or-nothing callers."""
        for outcome in self.outcomes:
            if not outcome.assigned and outcome.error is not None:
                raise outcome.error


# ========================================
# Maintenance / audit reports
# ========================================

class LevelRecalculationSummary(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    structure: Structure
    total_nodes: int = 0
    roots_reset: int = 0
    iterations: int = 0
    updates_per_iteration: list[int] = Field(default_factory=list)
    converged: bool = True
    level_distribution: dict[int, int] = Field(default_factory=dict)
    inconsistent_edges: int = 0
    warning: Optional[ConsistencyWarning] = Field(default=None, exclude=True)

    @property
    def total_updates(self) -> int:
        return sum(self.updates_per_iteration)


class AuditIssue(BaseModel):
    severity: str  # error, warning
    kind: str      # cycle, level, orphaned-filter, duplicate-name, inactive-tag, parent-with-products
    message: str
    details: dict = Field(default_factory=dict)


class AuditReport(BaseModel):
    structure: Structure
    issues: list[AuditIssue] = Field(default_factory=list)

    @property
    def errors(self) -> list[AuditIssue]:
        return [i for i in self.issues if i.severity == "error"]

    @property
    def warnings(self) -> list[AuditIssue]:
        return [i for i in self.issues if i.severity == "warning"]

    @property
    def ok(self) -> bool:
        return not self.errors

    def by_kind(self, kind: str) -> list[AuditIssue]:
        return [i for i in self.issues if i.kind == kind]

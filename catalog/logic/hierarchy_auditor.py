"""Hierarchy Auditor - read-only diagnostics over either structure.

Reads the whole structure once and checks it in memory:

    cycle                 node reachable from itself via CHILD_OF (bounded depth)
    level                 edge with parent.level >= child.level, or stored level
                          different from the one its parents imply
    orphaned              level > 0 but no parents
    duplicate-name        same name twice among filters / among siblings
    inactive-tag          products still tagged with an inactive filter
    parent-with-products  category with both children and direct products

Nothing is written; ``recalculate_levels`` and ``migrate_products_to_leaf``
are the repair paths.
"""

import logging
from collections import deque
from typing import Optional, Union

from ..config_loader import HierarchyConfig, get_config
from ..models import AuditIssue, AuditReport, Structure
from .graph_store import CATEGORY, CUSTOM_FILTER
from .traversal import level_from_parents

logger = logging.getLogger(__name__)


def find_cycle_members(parent_map: dict[str, list[str]], max_depth: int) -> list[str]:
    """Ids that can reach themselves within ``max_depth`` parent hops."""
    members = []
    for start in sorted(parent_map):
        seen = set()
        queue = deque((p, 1) for p in parent_map.get(start, []))
        while queue:
            node, depth = queue.popleft()
            if node == start:
                members.append(start)
                break
            if node in seen or depth >= max_depth:
                continue
            seen.add(node)
            queue.extend((p, depth + 1) for p in parent_map.get(node, []))
    return members


class HierarchyAuditor:

    def __init__(self, store, config: Optional[HierarchyConfig] = None):
        self.store = store
        self.max_depth = (config or get_config()).hierarchy.cycle_scan_max_depth

    def audit(self, structure: Union[Structure, str] = Structure.FILTERS) -> AuditReport:
        structure = Structure(structure)
        report = AuditReport(structure=structure)
        if structure is Structure.FILTERS:
            nodes = {row["id"]: row for row in self.store.get_all_filters()}
            label = CUSTOM_FILTER
        else:
            nodes = {row["id"]: row for row in self.store.get_all_categories()}
            label = CATEGORY

        parent_map: dict[str, list[str]] = {nid: [] for nid in nodes}
        for child_id, parent_id in self.store.get_hierarchy_edges(label):
            parent_map.setdefault(child_id, []).append(parent_id)

        cycle_members = set(self._check_cycles(report, nodes, parent_map))
        self._check_levels(report, nodes, parent_map, cycle_members)
        self._check_orphans(report, nodes, parent_map)
        self._check_duplicate_names(report, nodes, structure)
        if structure is Structure.FILTERS:
            self._check_inactive_tags(report, nodes)
        else:
            self._check_parents_with_products(report, nodes)

        logger.info(
            f"Audit of {structure.value}: {len(nodes)} nodes, "
            f"{len(report.errors)} error(s), {len(report.warnings)} warning(s)"
        )
        return report

    def _check_cycles(self, report, nodes, parent_map) -> list[str]:
        members = find_cycle_members(parent_map, self.max_depth)
        for nid in members:
            name = nodes.get(nid, {}).get("name", nid)
            report.issues.append(AuditIssue(
                severity="error", kind="cycle",
                message=f'"{name}" is its own ancestor',
                details={"id": nid, "name": name},
            ))
        return members

    def _check_levels(self, report, nodes, parent_map, cycle_members):
        for child_id, parents in parent_map.items():
            child = nodes.get(child_id)
            if child is None:
                continue
            for parent_id in parents:
                parent = nodes.get(parent_id)
                if parent is None or parent.get("level") is None or child.get("level") is None:
                    continue
                if parent["level"] >= child["level"]:
                    report.issues.append(AuditIssue(
                        severity="error", kind="level",
                        message=(f'Parent "{parent["name"]}" (level {parent["level"]}) is not above '
                                 f'child "{child["name"]}" (level {child["level"]})'),
                        details={"parent_id": parent_id, "child_id": child_id,
                                 "parent_level": parent["level"], "child_level": child["level"]},
                    ))

        for nid, node in nodes.items():
            if nid in cycle_members:
                continue
            expected = level_from_parents(nodes.get(p, {}).get("level") for p in parent_map.get(nid, []))
            if node.get("level") != expected:
                report.issues.append(AuditIssue(
                    severity="error", kind="level",
                    message=f'"{node["name"]}" has level {node.get("level")}, expected {expected}',
                    details={"id": nid, "level": node.get("level"), "expected": expected},
                ))

    def _check_orphans(self, report, nodes, parent_map):
        for nid, node in nodes.items():
            if (node.get("level") or 0) > 0 and not parent_map.get(nid):
                report.issues.append(AuditIssue(
                    severity="warning", kind="orphaned",
                    message=f'"{node["name"]}" is at level {node["level"]} but has no parent',
                    details={"id": nid, "level": node["level"]},
                ))

    def _check_duplicate_names(self, report, nodes, structure):
        groups: dict[tuple, list[str]] = {}
        for nid, node in nodes.items():
            name = (node.get("name") or "").strip().lower()
            if structure is Structure.CATEGORIES:
                key = (node.get("hierarchy"), node.get("parent_id"), name)
            else:
                key = (name,)
            groups.setdefault(key, []).append(nid)
        for key, ids in groups.items():
            if len(ids) > 1:
                report.issues.append(AuditIssue(
                    severity="warning", kind="duplicate-name",
                    message=f'Name "{key[-1]}" is used by {len(ids)} nodes',
                    details={"name": key[-1], "ids": sorted(ids)},
                ))

    def _check_inactive_tags(self, report, nodes):
        inactive = [nid for nid, node in nodes.items() if node.get("is_active") is False]
        if not inactive:
            return
        for fid, products in self.store.get_tagged_product_map(inactive).items():
            if products:
                name = nodes[fid]["name"]
                report.issues.append(AuditIssue(
                    severity="warning", kind="inactive-tag",
                    message=f'{len(products)} product(s) tagged with inactive filter "{name}"',
                    details={"id": fid, "product_count": len(products)},
                ))

    def _check_parents_with_products(self, report, nodes):
        for nid, node in nodes.items():
            if node.get("child_count") and node.get("product_count"):
                report.issues.append(AuditIssue(
                    severity="error", kind="parent-with-products",
                    message=(f'"{node["name"]}" has {node["child_count"]} child(ren) and '
                             f'{node["product_count"]} direct product(s)'),
                    details={"id": nid, "child_count": node["child_count"],
                             "product_count": node["product_count"]},
                ))

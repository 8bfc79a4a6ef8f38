"""Graph traversal core shared by the category tree and the filter DAG.

Nothing here talks to the store directly. Callers pass an ``expand``
function that maps a frontier of ids to their neighbours in one round trip:

    expand({"a", "b"}) -> {"a": ["c"], "b": ["c", "d"]}

so a closure over a graph of depth d costs d + 1 queries no matter how many
paths lead to the same node. Results are recomputed on every call; edges
change concurrently and nothing is cached.
"""

from collections import deque
from enum import Enum
from typing import Callable, Iterable, Optional

from ..errors import ValidationError

Expander = Callable[[set], dict]


class EdgePolicy(str, Enum):
    """How many parents a node may have."""
    SINGLE_PARENT = "single_parent"
    MULTI_PARENT = "multi_parent"

    def normalize_parents(self, parent_ids: Optional[Iterable[str]]) -> list[str]:
        """Drop empties and duplicates (order kept); enforce the cardinality."""
        seen = []
        for pid in parent_ids or ():
            if pid and pid not in seen:
                seen.append(pid)
        if self is EdgePolicy.SINGLE_PARENT and len(seen) > 1:
            raise ValidationError(f"A category can have only one parent, got {len(seen)}")
        return seen


def explore(start_ids: Iterable[str], expand: Expander) -> dict[str, list[str]]:
    """Breadth-first frontier expansion from ``start_ids``.

    Returns the adjacency of every node reached (start nodes included),
    each neighbour list sorted. Nodes on a cycle are visited once.
    """
    adjacency: dict[str, list[str]] = {}
    frontier = set(start_ids)
    while frontier:
        neighbours = expand(frontier)
        next_frontier = set()
        for node_id in frontier:
            targets = sorted(set(neighbours.get(node_id, [])))
            adjacency[node_id] = targets
            next_frontier.update(t for t in targets if t not in adjacency)
        frontier = next_frontier - adjacency.keys()
    return adjacency


def reachable(start_id: str, adjacency: dict[str, list[str]], include_start: bool = False) -> list[str]:
    """Local BFS over an already fetched adjacency. Deduplicated, BFS order."""
    seen = {start_id}
    order = [start_id] if include_start else []
    queue = deque([start_id])
    while queue:
        current = queue.popleft()
        for nxt in adjacency.get(current, []):
            if nxt not in seen:
                seen.add(nxt)
                order.append(nxt)
                queue.append(nxt)
    return order


def closure(start_id: str, expand: Expander) -> list[str]:
    """Transitive closure of ``start_id`` (excluding itself)."""
    return [n for n in reachable(start_id, explore({start_id}, expand)) if n != start_id]


def find_cycle_conflict(node_id: str, candidate_parent_ids: Iterable[str],
                        expand_children: Expander) -> Optional[str]:
    """Return the candidate parent that would close a cycle, or None.

    Adding ``candidate -> node_id`` creates a cycle exactly when the candidate
    is ``node_id`` itself or already reachable from it through child edges.
    The search walks down from ``node_id`` and stops at the first layer that
    contains a candidate; ties inside a layer resolve to the smallest id.
    """
    candidates = set(candidate_parent_ids)
    if not candidates:
        return None
    if node_id in candidates:
        return node_id

    visited = {node_id}
    frontier = {node_id}
    while frontier:
        neighbours = expand_children(frontier)
        layer = set()
        for current in frontier:
            layer.update(neighbours.get(current, []))
        layer -= visited
        hits = layer & candidates
        if hits:
            return min(hits)
        visited |= layer
        frontier = layer
    return None


def level_from_parents(parent_levels: Iterable[Optional[int]]) -> int:
    """max(parent levels) + 1, or 0 for a node without parents."""
    levels = [lvl for lvl in parent_levels if lvl is not None]
    return max(levels) + 1 if levels else 0


def propagate_levels(root_id: str, root_level: int, child_map: dict[str, list[str]],
                     parent_map: dict[str, list[str]], known_levels: dict[str, int]) -> dict[str, int]:
    """Recompute levels below ``root_id`` after its level changed.

    Processes the descendant subgraph in topological order (Kahn): a child is
    settled only once every parent inside the subgraph is settled, so a
    diamond never leaves a stale level behind. Parents outside the subgraph
    contribute their ``known_levels`` value. Nodes stuck on a cycle are not
    returned.
    """
    subgraph = set(reachable(root_id, child_map, include_start=True))
    pending = {
        node: sum(1 for p in parent_map.get(node, []) if p in subgraph)
        for node in subgraph if node != root_id
    }
    levels = {root_id: root_level}
    queue = deque([root_id])
    while queue:
        current = queue.popleft()
        for child in child_map.get(current, []):
            if child not in pending:
                continue
            pending[child] -= 1
            if pending[child] == 0:
                levels[child] = level_from_parents(
                    levels.get(p, known_levels.get(p)) for p in parent_map.get(child, [])
                )
                queue.append(child)
    return levels


TIE_BREAKS = ("lowest_level_then_id", "lowest_id")


def pick_parent(parent_ids: Iterable[str], levels: dict[str, int], tie_break: str) -> str:
    """Deterministically choose the parent a breadcrumb follows."""
    if tie_break == "lowest_id":
        return min(parent_ids)
    return min(parent_ids, key=lambda pid: (levels.get(pid, float("inf")), pid))


def build_breadcrumb(node_id: str, parent_map: dict[str, list[str]], levels: dict[str, int],
                     tie_break: str = "lowest_level_then_id") -> list[str]:
    """One root-to-node path of ids, following ``pick_parent`` at every step."""
    path = [node_id]
    visited = {node_id}
    current = node_id
    while parent_map.get(current):
        parent = pick_parent(parent_map[current], levels, tie_break)
        if parent in visited:
            break
        path.append(parent)
        visited.add(parent)
        current = parent
    path.reverse()
    return path


def assemble_forest(nodes: list, parents_of: Callable, tree_cls) -> list:
    """Materialize flat nodes into trees of ``tree_cls``.

    A node whose parents are all absent from ``nodes`` becomes a root. A
    multi-parent node is rendered under every parent. Children are ordered by
    (level, name, id).
    """
    by_id = {n.id: n for n in nodes}
    children: dict[str, list] = {n.id: [] for n in nodes}
    roots = []
    for node in nodes:
        present = [p for p in parents_of(node) if p in by_id]
        if not present:
            roots.append(node)
        for pid in present:
            children[pid].append(node)

    def _key(n):
        return (n.level, n.name, n.id)

    def _build(node, path: frozenset):
        kids = [
            _build(child, path | {child.id})
            for child in sorted(children[node.id], key=_key)
            if child.id not in path
        ]
        return tree_cls(**node.model_dump(), children=kids)

    return [_build(root, frozenset({root.id})) for root in sorted(roots, key=_key)]

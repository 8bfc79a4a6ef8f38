"""Level Consistency Maintainer - offline repair of the stored ``level`` field.

``level`` is derived data and can drift after bulk imports, partial
failures or manual edits. The repair is a fixed-point iteration run entirely
in the store:

    1. every parentless node gets level 0
    2. every node whose level differs from max(parent.level) + 1 is updated,
       repeated until a pass changes nothing or the ceiling is hit
    3. edges with parent.level >= child.level are counted

Each pass is one bounded, idempotent batch, so running it against live
traffic is safe. Only ``level`` (and ``updated_at``) is written; edges are
never touched. On an acyclic graph the loop converges in at most depth + 1
passes; a cycle keeps bumping levels until the ceiling, which is reported as
a ConsistencyWarning instead of raised.
"""

import logging
from typing import Optional, Union

from ..config_loader import HierarchyConfig, get_config
from ..errors import ConsistencyWarning
from ..models import LevelRecalculationSummary, Structure
from .graph_store import CATEGORY, CUSTOM_FILTER, now_millis

logger = logging.getLogger(__name__)

STRUCTURE_LABELS = {
    Structure.FILTERS: CUSTOM_FILTER,
    Structure.CATEGORIES: CATEGORY,
}


class LevelConsistencyMaintainer:

    def __init__(self, store, config: Optional[HierarchyConfig] = None):
        self.store = store
        self.max_iterations = (config or get_config()).hierarchy.level_recalculation_max_iterations

    def recalculate_levels(self, structure: Union[Structure, str] = Structure.FILTERS) -> LevelRecalculationSummary:
        structure = Structure(structure)
        label = STRUCTURE_LABELS[structure]
        summary = LevelRecalculationSummary(structure=structure)

        summary.total_nodes = self.store.count_nodes(label)
        summary.roots_reset = self.store.reset_root_levels(label, now_millis())
        logger.info(
            f"Recalculating {structure.value} levels: {summary.total_nodes} nodes, "
            f"{summary.roots_reset} root(s) reset to 0"
        )

        converged = False
        while summary.iterations < self.max_iterations:
            updated = self.store.update_child_levels(label, now_millis())
            summary.iterations += 1
            summary.updates_per_iteration.append(updated)
            logger.info(f"  iteration {summary.iterations}: {updated} node(s) updated")
            if updated == 0:
                converged = True
                break
        summary.converged = converged

        summary.inconsistent_edges = self.store.count_level_inconsistencies(label)
        summary.level_distribution = self.store.get_level_distribution(label)

        if not converged or summary.inconsistent_edges:
            summary.warning = ConsistencyWarning(
                f"{structure.value} levels still inconsistent after {summary.iterations} iteration(s): "
                f"{summary.inconsistent_edges} edge(s) with parent.level >= child.level"
                + ("" if converged else "; iteration ceiling reached, a cycle is likely"),
                count=summary.inconsistent_edges,
            )
            logger.warning(str(summary.warning))
        else:
            logger.info(f"{structure.value} levels consistent after {summary.iterations} iteration(s)")
        return summary

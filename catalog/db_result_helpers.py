"""FalkorDB result conversion helpers.

FalkorDB returns a QueryResult with a positional ``result_set`` and a
``header`` of (type, column) pairs. The hierarchy store works with
list[dict] rows (the shape Neo4j's ``record.data()`` gives), so the FalkorDB
connection runs every result through these helpers.

Usage:
    rows = result_to_dicts(graph.query(cypher, params=params))
    linked = rows_value(rows, "linked", 0)
"""

from __future__ import annotations


def _unwrap_value(val):
    """Convert FalkorDB Node/Edge objects to plain dicts.

    Queries that ``RETURN f`` instead of ``RETURN f.name`` hand back driver
    objects. Duck-typed on ``.properties`` so falkordb is not imported here.
    """
    if val is None:
        return None
    # Node: has .labels + .properties
    if hasattr(val, 'properties') and hasattr(val, 'labels'):
        return {"_id": val.id, "_labels": val.labels, **val.properties}
    # Edge: has .relation + .properties
    if hasattr(val, 'properties') and hasattr(val, 'relation'):
        return {"_id": val.id, "_type": val.relation, **val.properties}
    if isinstance(val, list):
        return [_unwrap_value(v) for v in val]
    return val


def result_to_dicts(result) -> list[dict]:
    """Convert a FalkorDB QueryResult to list[dict], one dict per row."""
    if not hasattr(result, 'result_set') or not result.result_set:
        return []
    headers = [h[1] for h in result.header]
    rows = []
    for row in result.result_set:
        rows.append({h: _unwrap_value(row[i]) for i, h in enumerate(headers)})
    return rows


def rows_value(rows: list[dict], key: str, default=None):
    """Single column from the first row; ``default`` when absent or null."""
    if not rows:
        return default
    value = rows[0].get(key, default)
    return default if value is None else value

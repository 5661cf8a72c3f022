from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional


def creates_cycle(category_id: int, new_parent_id: Optional[int], parents: Mapping[int, Optional[int]]) -> bool:
    """True when making ``new_parent_id`` the parent of ``category_id`` closes a loop.

    ``parents`` maps each known category id to its current parent id.
    """
    visited = {category_id}
    current = new_parent_id
    while current is not None:
        if current in visited:
            return True
        visited.add(current)
        current = parents.get(current)
    return False


def build_hierarchy(rows: List[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    nodes: Dict[int, Dict[str, Any]] = {}
    for row in rows:
        node = dict(row)
        node["subcategories"] = []
        nodes[row["id"]] = node

    roots: List[Dict[str, Any]] = []
    for row in rows:
        node = nodes[row["id"]]
        parent = nodes.get(row["parent_id"]) if row["parent_id"] is not None else None
        if parent is not None:
            parent["subcategories"].append(node)
        else:
            roots.append(node)
    return roots

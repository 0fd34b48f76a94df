"""
ScenarioTreeBuilder — derived parent/child view over flat scenario records.

The hierarchy is stored flat (``parent_scenario_id`` on each row).  The tree
is rebuilt on demand and never kept as a live object graph, so the stored
data stays the single source of truth.

Usage:
    from planner.services.scenario_tree import build_tree
    roots = build_tree([s.to_dict() for s in scenarios])
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field

from planner.core.exceptions import ConsistencyError

logger = logging.getLogger(__name__)


@dataclass
class ScenarioNode:
    """One scenario in the derived tree."""
    id: int
    parent_id: int | None
    record: dict
    children: list[ScenarioNode] = field(default_factory=list)

    def to_dict(self) -> dict:
        # Iterative post-order so deep branch chains never hit the recursion limit
        out: dict[int, dict] = {}
        for node, _depth in walk([self], order="post"):
            out[node.id] = {
                **node.record,
                "children": [out.pop(c.id) for c in node.children],
            }
        return out[self.id]


def _field(record, name):
    if isinstance(record, Mapping):
        return record.get(name)
    return getattr(record, name, None)


def build_tree(scenarios) -> list[ScenarioNode]:
    """
    Build a forest from flat scenario records (dicts or model instances).

    Pass 1 builds an id → node map; pass 2 attaches every node to its
    parent's children list in input order.  A node whose parent id is not
    in the map becomes a root (so a half-deleted hierarchy still renders).

    Raises ConsistencyError if the records contain a cycle.
    """
    nodes: dict[int, ScenarioNode] = {}
    order: list[ScenarioNode] = []
    for rec in scenarios:
        sid = _field(rec, "id")
        if sid in nodes:
            raise ConsistencyError(f"Duplicate scenario id={sid} in tree input")
        record = dict(rec) if isinstance(rec, Mapping) else rec.to_dict()
        node = ScenarioNode(id=sid, parent_id=_field(rec, "parent_scenario_id"), record=record)
        nodes[sid] = node
        order.append(node)

    roots: list[ScenarioNode] = []
    for node in order:
        parent = nodes.get(node.parent_id) if node.parent_id is not None else None
        if parent is None:
            if node.parent_id is not None:
                logger.warning(
                    "Scenario id=%s references missing parent id=%s; rendering as root",
                    node.id, node.parent_id,
                )
            roots.append(node)
        else:
            parent.children.append(node)

    # Nodes on a cycle are attached to each other but never reachable from a root
    reachable = sum(1 for _ in walk(roots))
    if reachable != len(order):
        seen = {n.id for n, _ in walk(roots)}
        stuck = sorted(n.id for n in order if n.id not in seen)
        raise ConsistencyError(
            "Scenario hierarchy contains a cycle",
            details={"scenario_ids": stuck},
        )
    return roots


def walk(roots: list[ScenarioNode], order: str = "pre") -> Iterator[tuple[ScenarioNode, int]]:
    """
    Iterative depth-first traversal yielding ``(node, depth)``.

    ``order="pre"`` yields parents before children (siblings in insertion
    order); ``order="post"`` yields children first.  Meeting a node twice
    means the structure is not a forest → ConsistencyError.
    """
    visited: set[int] = set()
    if order == "pre":
        stack = [(n, 0) for n in reversed(roots)]
        while stack:
            node, depth = stack.pop()
            if node.id in visited:
                raise ConsistencyError(f"Scenario id={node.id} reached twice while walking the tree")
            visited.add(node.id)
            yield node, depth
            stack.extend((c, depth + 1) for c in reversed(node.children))
        return

    stack = [(n, 0, False) for n in reversed(roots)]
    while stack:
        node, depth, expanded = stack.pop()
        if expanded:
            yield node, depth
            continue
        if node.id in visited:
            raise ConsistencyError(f"Scenario id={node.id} reached twice while walking the tree")
        visited.add(node.id)
        stack.append((node, depth, True))
        stack.extend((c, depth + 1, False) for c in reversed(node.children))


def assert_acyclic_chain(scenario_id: int, parent_of: Mapping[int, int | None]) -> list[int]:
    """
    Walk the parent chain upwards from ``scenario_id``.

    Returns the chain ``[scenario_id, parent, ..., root]``.  Raises
    ConsistencyError on a cycle (an id seen twice) or an orphaned reference
    (a parent id that does not exist).
    """
    chain: list[int] = []
    seen: set[int] = set()
    current: int | None = scenario_id
    while current is not None:
        if current in seen:
            raise ConsistencyError(
                f"Cycle detected in scenario hierarchy at id={current}",
                details={"chain": chain + [current]},
            )
        if current not in parent_of:
            raise ConsistencyError(
                f"Scenario id={current} referenced in hierarchy does not exist",
                details={"chain": chain},
            )
        seen.add(current)
        chain.append(current)
        current = parent_of[current]
    return chain


def max_depth(roots: list[ScenarioNode]) -> int:
    """Depth of the longest branch chain (a lone baseline has depth 0)."""
    return max((d for _, d in walk(roots)), default=0)

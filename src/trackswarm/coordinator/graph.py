"""Dependency graph of work units.

Nodes are unit ids; an edge ``dep -> dependent`` means *dependent* may only
start once *dep* has completed.  The graph keeps both directions of every
edge so that dependents and dependencies can be walked without rescanning.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Iterable, Iterator

from trackswarm.errors import CyclicDependencyError, ValidationError
from trackswarm.protocol.models import WorkUnit

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class GraphNode:
    """Adjacency entry for one unit."""

    unit_id: str
    dependencies: list[str] = field(default_factory=list)
    dependents: list[str] = field(default_factory=list)


class DependencyGraph:
    """Directed graph of unit ids with cycle detection.

    Usage::

        g = DependencyGraph()
        g.add_node("a")
        g.add_node("b")
        g.add_edge("a", "b")      # b depends on a
        g.check_acyclic()
        order = g.topological_order()
    """

    def __init__(self) -> None:
        self._nodes: dict[str, GraphNode] = {}

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def add_node(self, unit_id: str) -> None:
        if unit_id not in self._nodes:
            self._nodes[unit_id] = GraphNode(unit_id=unit_id)

    def add_edge(self, dependency: str, dependent: str) -> None:
        """Add ``dependency -> dependent``.  Both nodes must exist."""
        dep = self._nodes[dependency]
        node = self._nodes[dependent]
        if dependent not in dep.dependents:
            dep.dependents.append(dependent)
        if dependency not in node.dependencies:
            node.dependencies.append(dependency)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_node(self, unit_id: str) -> bool:
        return unit_id in self._nodes

    def dependencies_of(self, unit_id: str) -> list[str]:
        return list(self._nodes[unit_id].dependencies)

    def dependents_of(self, unit_id: str) -> list[str]:
        return list(self._nodes[unit_id].dependents)

    def edges(self) -> Iterator[tuple[str, str]]:
        for node in self._nodes.values():
            for child in node.dependents:
                yield (node.unit_id, child)

    def transitive_dependents(self, unit_id: str) -> list[str]:
        """All units reachable from *unit_id* along dependent edges (BFS order)."""
        seen: set[str] = set()
        order: list[str] = []
        queue: deque[str] = deque(self._nodes[unit_id].dependents)
        while queue:
            child = queue.popleft()
            if child in seen:
                continue
            seen.add(child)
            order.append(child)
            queue.extend(self._nodes[child].dependents)
        return order

    @property
    def nodes(self) -> list[str]:
        return list(self._nodes)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, unit_id: object) -> bool:
        return unit_id in self._nodes

    # ------------------------------------------------------------------
    # Ordering and cycles
    # ------------------------------------------------------------------

    def topological_order(self) -> list[str]:
        """Kahn's algorithm.  Raises ``CyclicDependencyError`` on leftover in-degree."""
        in_degree = {uid: len(n.dependencies) for uid, n in self._nodes.items()}
        queue: deque[str] = deque(uid for uid, deg in in_degree.items() if deg == 0)
        order: list[str] = []
        while queue:
            uid = queue.popleft()
            order.append(uid)
            for child in self._nodes[uid].dependents:
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    queue.append(child)

        if len(order) != len(self._nodes):
            leftover = [uid for uid, deg in in_degree.items() if deg > 0]
            raise CyclicDependencyError(self.find_cycle() or leftover)
        return order

    def check_acyclic(self) -> None:
        self.topological_order()

    def find_cycle(self) -> list[str]:
        """Return one cycle as ``[a, b, ..., a]``, or an empty list.

        Iterative DFS with white/grey/black colouring; a back edge to a grey
        node closes a cycle.
        """
        white, grey, black = 0, 1, 2
        color = {uid: white for uid in self._nodes}
        parent: dict[str, str] = {}

        for root in self._nodes:
            if color[root] != white:
                continue
            stack: list[tuple[str, Iterator[str]]] = [(root, iter(self._nodes[root].dependents))]
            color[root] = grey
            while stack:
                uid, children = stack[-1]
                advanced = False
                for child in children:
                    if color[child] == white:
                        parent[child] = uid
                        color[child] = grey
                        stack.append((child, iter(self._nodes[child].dependents)))
                        advanced = True
                        break
                    if color[child] == grey:
                        cycle = [child]
                        cur = uid
                        while cur != child:
                            cycle.append(cur)
                            cur = parent[cur]
                        cycle.append(child)
                        cycle.reverse()
                        return cycle
                if not advanced:
                    color[uid] = black
                    stack.pop()
        return []


# ---------------------------------------------------------------------------
# Building from units
# ---------------------------------------------------------------------------


def resolve_reference(ref: str, units: Iterable[WorkUnit], owner: str) -> str | None:
    """Resolve a dependency reference to a unit id.

    Exact id match first, then a case-insensitive substring match against
    unit names.  A unit never resolves to itself.
    """
    candidates = [u for u in units if u.id != owner]
    for u in candidates:
        if u.id == ref:
            return u.id
    needle = ref.strip().lower()
    if not needle:
        return None
    for u in candidates:
        if needle in u.name.lower():
            return u.id
    return None


def build_dependency_graph(units: list[WorkUnit]) -> tuple[DependencyGraph, list[str]]:
    """Build the graph for *units*, resolving their dependency references in place.

    Unresolved references stay in ``unit.dependencies`` (so the scheduler can
    never satisfy them) but get no edge; each produces a warning.

    Raises ``ValidationError`` for empty or duplicate ids and
    ``CyclicDependencyError`` if the resolved graph has a cycle.
    """
    seen: set[str] = set()
    for u in units:
        if not u.id or not u.id.strip():
            raise ValidationError(f"Work unit {u.name!r} has an empty id")
        if u.id in seen:
            raise ValidationError(f"Duplicate work unit id: {u.id}")
        seen.add(u.id)

    graph = DependencyGraph()
    for u in units:
        graph.add_node(u.id)

    warnings: list[str] = []
    for u in units:
        resolved: list[str] = []
        for ref in u.dependencies:
            if ref == u.id:
                raise CyclicDependencyError([u.id, u.id])
            target = resolve_reference(ref, units, owner=u.id)
            if target is None:
                msg = f"Dependency {ref!r} for unit {u.id} not found"
                logger.warning(msg)
                warnings.append(msg)
                resolved.append(ref)
                continue
            if target in resolved:
                continue
            graph.add_edge(target, u.id)
            resolved.append(target)
        u.dependencies = resolved

    graph.check_acyclic()
    return graph, warnings

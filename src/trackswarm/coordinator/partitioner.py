"""Greedy layering of the dependency graph into parallel groups.

Within a group no two units depend on each other or touch the same file;
every dependency of a unit sits in a strictly earlier group.  Overlapping
footprints are serialized rather than negotiated.
"""

from __future__ import annotations

import logging

from trackswarm.coordinator.graph import DependencyGraph
from trackswarm.errors import PartitionError, ValidationError
from trackswarm.protocol.models import WorkUnit

logger = logging.getLogger(__name__)


def _conflicts(footprint: set[str], taken: set[str]) -> bool:
    return not footprint.isdisjoint(taken)


def partition_parallel_groups(units: list[WorkUnit], graph: DependencyGraph) -> list[list[str]]:
    """Return ordered groups of unit ids that may run side by side.

    Candidates are ordered by ``(complexity, id)`` so the output is
    deterministic.  When every candidate conflicts with another one the
    remaining candidates become singleton groups, which guarantees progress.
    """
    by_id = {u.id: u for u in units}
    footprints = {u.id: set(u.files) for u in units}
    completed: set[str] = set()
    available: set[str] = set(by_id)
    groups: list[list[str]] = []

    while available:
        candidates = [
            uid for uid in available
            if all(dep in completed for dep in graph.dependencies_of(uid))
        ]
        if not candidates:
            raise PartitionError(
                "No schedulable units left but "
                f"{len(available)} remain: {', '.join(sorted(available))}"
            )
        candidates.sort(key=lambda uid: (by_id[uid].complexity, uid))

        group: list[str] = []
        taken: set[str] = set()
        for uid in candidates:
            if _conflicts(footprints[uid], taken):
                continue
            group.append(uid)
            taken |= footprints[uid]

        if group:
            groups.append(group)
            completed.update(group)
            available.difference_update(group)
            continue

        # Every candidate conflicted: one unit per group.  Unreachable while
        # the first candidate is always admitted into an empty group; it only
        # matters if admission ever rejects a unit on its own.
        logger.debug("All %d candidates conflict; emitting singleton groups", len(candidates))
        for uid in candidates:
            groups.append([uid])
            completed.add(uid)
            available.discard(uid)

    return groups


def validate_groups(units: list[WorkUnit], graph: DependencyGraph, groups: list[list[str]]) -> None:
    """Check topological soundness, resource safety and coverage."""
    position: dict[str, int] = {}
    for gi, group in enumerate(groups):
        for uid in group:
            if uid in position:
                raise ValidationError(f"Unit {uid} appears in more than one group")
            position[uid] = gi

    missing = [u.id for u in units if u.id not in position]
    if missing:
        raise ValidationError(f"Units missing from parallel groups: {', '.join(missing)}")
    unknown = [uid for uid in position if uid not in graph]
    if unknown:
        raise ValidationError(f"Unknown units in parallel groups: {', '.join(unknown)}")

    for uid, gi in position.items():
        for dep in graph.dependencies_of(uid):
            if position[dep] >= gi:
                raise ValidationError(
                    f"Dependency {dep} of unit {uid} is not in an earlier group"
                )

    footprints = {u.id: set(u.files) for u in units}
    for group in groups:
        for i, a in enumerate(group):
            for b in group[i + 1:]:
                shared = footprints[a] & footprints[b]
                if shared:
                    raise ValidationError(
                        f"Units {a} and {b} share files in one group: {', '.join(sorted(shared))}"
                    )

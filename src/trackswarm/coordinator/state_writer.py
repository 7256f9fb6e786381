"""Run state snapshot persistence."""

from __future__ import annotations

from collections import Counter
from pathlib import Path

from trackswarm.protocol.io import write_json_atomic
from trackswarm.protocol.models import ProgressSnapshot, WorkPlan, utc_now_iso


def write_state(
    state_path: Path,
    plan: WorkPlan,
    phase: str,
    snapshot: ProgressSnapshot | None = None,
    state_seq: int = 0,
    errors: list[dict] | None = None,
) -> None:
    counts = Counter(u.status for u in plan.units)
    payload = {
        "plan_id": plan.id,
        "phase": phase,
        "updated_at": utc_now_iso(),
        "state_seq": state_seq,
        "units": {
            status: counts.get(status, 0)
            for status in ("pending", "in-progress", "completed", "failed", "blocked", "merged")
        },
        "progress": snapshot.to_dict() if snapshot is not None else None,
        "dag": {
            "nodes": [
                {
                    "id": u.id,
                    "name": u.name,
                    "status": u.status,
                    "message": u.status_message,
                    "branch": u.branch,
                }
                for u in plan.units
            ],
            "edges": [[a, b] for a, b in plan.graph.edges()],
        },
        "groups": [list(g) for g in plan.groups],
        "warnings": list(plan.warnings),
        "errors": list(errors or []),
    }
    write_json_atomic(Path(state_path), payload)

"""Plan and progress types for trackswarm."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from trackswarm.coordinator.graph import DependencyGraph

UnitStatus = Literal["pending", "in-progress", "completed", "failed", "blocked", "merged"]


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


class TerminalReason(StrEnum):
    """Why a unit reached its terminal state."""

    COMPLETED = "completed"
    ERROR = "error"
    STALLED = "stalled"
    CIRCUIT_OPEN = "circuit_open"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class WorkUnit:
    """A track: one independently executable unit of work."""

    id: str
    name: str
    description: str = ""
    dependencies: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    complexity: float = 5.0
    duration: float = 60.0  # minutes
    tasks: list[str] = field(default_factory=list)
    status: UnitStatus = "pending"
    status_message: str = ""
    branch: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class WorkPlan:
    id: str
    prompt: str
    units: list[WorkUnit]
    graph: "DependencyGraph"
    groups: list[list[str]]
    warnings: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now_iso)

    def unit(self, unit_id: str) -> WorkUnit | None:
        for u in self.units:
            if u.id == unit_id:
                return u
        return None

    def group_index(self) -> dict[str, tuple[int, int]]:
        """Map unit id -> (group index, position within group)."""
        index: dict[str, tuple[int, int]] = {}
        for gi, group in enumerate(self.groups):
            for pos, uid in enumerate(group):
                index[uid] = (gi, pos)
        return index

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "prompt": self.prompt,
            "created_at": self.created_at,
            "units": [u.to_dict() for u in self.units],
            "edges": [list(e) for e in self.graph.edges()],
            "groups": [list(g) for g in self.groups],
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True, slots=True)
class ProgressSnapshot:
    """Immutable view of execution progress after one state transition."""

    total: int
    completed: int
    failed: int
    running: int
    current_unit: str | None = None
    percent: int | None = None

    @property
    def finished(self) -> bool:
        return self.completed + self.failed >= self.total

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class UnitResult:
    unit_id: str
    success: bool
    reason: TerminalReason
    message: str = ""
    retry_count: int = 0
    duration_s: float = 0.0


@dataclass(slots=True)
class ExecutionReport:
    results: dict[str, UnitResult] = field(default_factory=dict)
    stalled: list[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def completed(self) -> list[str]:
        return [uid for uid, r in self.results.items() if r.success]

    @property
    def failed(self) -> list[str]:
        return [uid for uid, r in self.results.items() if not r.success]

    def summary(self) -> str:
        text = f"{len(self.completed)} completed, {len(self.failed)} failed"
        if self.stalled:
            text += f" ({len(self.stalled)} stalled: {', '.join(self.stalled)})"
        if self.cancelled:
            text += " [cancelled]"
        return text


def default_run_layout(run_dir: Path) -> dict[str, Path]:
    return {
        "root": run_dir,
        "worktrees": run_dir / "worktrees",
        "plan": run_dir / "plan.json",
        "state": run_dir / "state.json",
        "events": run_dir / "events.jsonl",
    }

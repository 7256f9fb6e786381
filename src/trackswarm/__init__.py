"""Trackswarm: dependency-aware parallel execution of work units."""

from trackswarm.coordinator.orchestrator import RunResult, TrackOrchestrator
from trackswarm.coordinator.planner import build_plan, load_task_file
from trackswarm.coordinator.scheduler import TrackScheduler
from trackswarm.errors import TrackSwarmError, ValidationError
from trackswarm.protocol.models import ExecutionReport, ProgressSnapshot, WorkPlan, WorkUnit

__version__ = "0.1.0"

__all__ = [
    "ExecutionReport",
    "ProgressSnapshot",
    "RunResult",
    "TrackOrchestrator",
    "TrackScheduler",
    "TrackSwarmError",
    "ValidationError",
    "WorkPlan",
    "WorkUnit",
    "build_plan",
    "load_task_file",
]

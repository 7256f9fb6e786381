"""TrackOrchestrator: plan, execute and (optionally) merge one run.

Hierarchy:
    Level 0: CLI entry (cli.py)
    Level 1: TrackOrchestrator, owns the plan, event bus and state file
    Level 2: TrackScheduler, bounded waves with retry and circuit breaking
    Level 3: UnitPipeline, workspace + executor + tool channel per attempt
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from trackswarm.adapters.base import (
    ConflictResolver,
    ExecutorProvider,
    SecurityProfile,
    ToolChannelFactory,
    WorkspaceProvider,
)
from trackswarm.config.loader import default_concurrency
from trackswarm.config.schema import TrackSwarmConfig
from trackswarm.coordinator.event_bus import EventBus
from trackswarm.coordinator.pipeline import UnitPipeline
from trackswarm.coordinator.planner import build_plan
from trackswarm.coordinator.scheduler import TrackScheduler
from trackswarm.coordinator.state_writer import write_state
from trackswarm.integration.merge_flow import MergeFlow, MergeReport
from trackswarm.protocol.io import write_json_atomic
from trackswarm.protocol.models import (
    ExecutionReport,
    ProgressSnapshot,
    WorkPlan,
    WorkUnit,
    default_run_layout,
)
from trackswarm.resilience.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from trackswarm.resilience.retry import RetryPolicy
from trackswarm.sandbox.docker import DockerExecutorProvider
from trackswarm.tools.channel import HttpToolChannelFactory
from trackswarm.workspace.worktree import GitWorktreeProvider

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunResult:
    plan: WorkPlan
    report: ExecutionReport
    merge: MergeReport | None = None

    @property
    def ok(self) -> bool:
        return not self.report.failed


class TrackOrchestrator:
    """Wires configuration, providers, scheduler, events and persistence."""

    def __init__(
        self,
        config: TrackSwarmConfig,
        *,
        workspaces: WorkspaceProvider | None = None,
        executors: ExecutorProvider | None = None,
        channels: ToolChannelFactory | None = None,
        resolver: ConflictResolver | None = None,
        concurrency: int | None = None,
        merge: bool | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._root_dir = Path(config.run.working_dir).resolve()
        self._run_dir = Path(config.run.run_dir)
        if not self._run_dir.is_absolute():
            self._run_dir = self._root_dir / self._run_dir
        self._layout = default_run_layout(self._run_dir)
        self._merge_enabled = config.workspace.merge if merge is None else merge

        self._event_bus = EventBus(persist_path=self._layout["events"])
        self._workspaces = workspaces or self._default_workspaces()
        executors = executors or DockerExecutorProvider(
            start_grace=config.executor.start_grace_seconds,
        )
        channels = channels or HttpToolChannelFactory(
            config.tools.host_command,
            host=config.tools.host,
            port_range=(config.tools.port_range_start, config.tools.port_range_end),
            call_timeout=config.tools.call_timeout_seconds,
            startup_timeout=config.tools.startup_timeout_seconds,
        )

        ex = config.executor
        pipeline = UnitPipeline(
            self._workspaces,
            executors,
            channels,
            image=ex.image,
            name_prefix=ex.name_prefix,
            profile=SecurityProfile(memory=ex.memory, cpus=ex.cpus, pids_limit=ex.pids_limit, user=ex.user),
            branch_prefix=config.workspace.branch_prefix,
            retain_workspace=config.workspace.retain,
        )
        r = config.retries
        b = config.breaker
        self._scheduler = TrackScheduler(
            pipeline,
            concurrency=concurrency or config.run.concurrency or default_concurrency(),
            poll_interval=config.run.poll_interval_ms / 1000.0,
            retry_policy=RetryPolicy(
                max_retries=r.max_retries,
                initial_delay=r.initial_delay,
                backoff_factor=r.backoff_factor,
                max_delay=r.max_delay,
                jitter=r.jitter,
                sleep=sleep,
            ),
            breakers=CircuitBreakerRegistry(CircuitBreakerConfig(
                failure_threshold=b.failure_threshold,
                monitoring_period=b.monitoring_period,
                reset_timeout=b.reset_timeout,
            )),
            events=self._event_bus,
            sleep=sleep,
        )
        self._merge_flow = MergeFlow(
            self._workspaces,
            integration_branch=config.workspace.integration_branch,
            resolver=resolver,
            events=self._event_bus,
        )

        self._plan: WorkPlan | None = None
        self._phase = "init"
        self._state_seq = 0
        self._errors: list[dict[str, str]] = []
        self._scheduler.progress.subscribe(self._on_progress)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def scheduler(self) -> TrackScheduler:
        return self._scheduler

    @property
    def layout(self) -> dict[str, Path]:
        return dict(self._layout)

    @property
    def phase(self) -> str:
        return self._phase

    @property
    def plan(self) -> WorkPlan | None:
        return self._plan

    def prepare(self, tasks: Iterable[WorkUnit | dict[str, Any]], prompt: str = "") -> WorkPlan:
        """Build the plan and write ``plan.json``.  Raises ``ValidationError``."""
        plan = build_plan(tasks, prompt)
        self._plan = plan
        self._errors = []
        self._layout["root"].mkdir(parents=True, exist_ok=True)
        write_json_atomic(self._layout["plan"], plan.to_dict())
        self._event_bus.publish(
            "plan", message=f"{len(plan.units)} units in {len(plan.groups)} groups",
            groups=plan.groups, warnings=plan.warnings,
        )
        for warning in plan.warnings:
            logger.warning(warning)
        self._phase = "planned"
        self._persist_state()
        return plan

    async def run(self, tasks: Iterable[WorkUnit | dict[str, Any]], prompt: str = "") -> RunResult:
        plan = self.prepare(tasks, prompt)

        self._phase = "executing"
        report = await self._scheduler.execute(plan)
        self._phase = "cancelled" if report.cancelled else "executed"
        self._errors = [
            {"unit": r.unit_id, "reason": str(r.reason), "message": r.message}
            for r in report.results.values()
            if not r.success
        ]
        self._persist_state()

        merge_report: MergeReport | None = None
        if self._merge_enabled and not report.cancelled and report.completed:
            self._phase = "merging"
            merge_report = await self._merge_flow.merge_completed(plan)
            self._phase = "merged"
            self._errors.extend(
                {"unit": uid, "reason": "blocked", "message": message}
                for uid, message in merge_report.blocked.items()
            )
            self._persist_state()

        logger.info("Run %s finished: %s", plan.id, report.summary())
        return RunResult(plan=plan, report=report, merge=merge_report)

    def cancel(self) -> None:
        self._scheduler.cancel()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _default_workspaces(self) -> GitWorktreeProvider:
        worktrees = (
            Path(self._config.workspace.worktrees_dir)
            if self._config.workspace.worktrees_dir
            else self._layout["worktrees"]
        )
        return GitWorktreeProvider(self._root_dir, worktrees)

    def _on_progress(self, snapshot: ProgressSnapshot) -> None:
        self._persist_state(snapshot)

    def _persist_state(self, snapshot: ProgressSnapshot | None = None) -> None:
        if self._plan is None:
            return
        self._state_seq += 1
        try:
            write_state(
                self._layout["state"],
                self._plan,
                self._phase,
                snapshot or self._scheduler.progress.latest,
                state_seq=self._state_seq,
                errors=self._errors,
            )
        except OSError as exc:
            logger.warning("Failed to persist state: %s", exc)

"""Resource-bounded scheduler.

Admits eligible units in waves of at most ``concurrency``, joins each wave
with gather-all semantics, and repeats until every unit is terminal.  When
nothing is eligible and nothing is running the remaining units are failed as
stalled.  The control loop is the only writer of the running, completed and
failed sets and of the active-context map.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from trackswarm.coordinator.event_bus import EventBus
from trackswarm.coordinator.pipeline import ExecutionContext, UnitPipeline
from trackswarm.coordinator.progress import ProgressBus
from trackswarm.errors import CircuitOpenError, ExecutionCancelledError, StalledExecutionError
from trackswarm.protocol.models import (
    ExecutionReport,
    ProgressSnapshot,
    TerminalReason,
    UnitResult,
    WorkPlan,
    WorkUnit,
)
from trackswarm.resilience.circuit_breaker import CircuitBreakerRegistry
from trackswarm.resilience.retry import RetryPolicy

logger = logging.getLogger(__name__)


def compute_eligible(
    plan: WorkPlan,
    completed: set[str],
    failed: set[str],
    running: set[str],
) -> list[str]:
    """Units whose declared dependencies are all completed, in group order."""
    index = plan.group_index()
    eligible = [
        u.id for u in plan.units
        if u.id not in running and u.id not in completed and u.id not in failed
        and all(dep in completed for dep in u.dependencies)
    ]
    eligible.sort(key=lambda uid: index.get(uid, (len(plan.groups), 0)))
    return eligible


class TrackScheduler:
    """Drives a WorkPlan through a UnitPipeline.

    Usage::

        scheduler = TrackScheduler(pipeline, concurrency=2)
        scheduler.progress.subscribe(print)
        report = await scheduler.execute(plan)
    """

    def __init__(
        self,
        pipeline: UnitPipeline,
        *,
        concurrency: int = 3,
        poll_interval: float = 1.0,
        retry_policy: RetryPolicy | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        progress: ProgressBus | None = None,
        events: EventBus | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.pipeline = pipeline
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.retry_policy = retry_policy or RetryPolicy()
        self.breakers = breakers or CircuitBreakerRegistry()
        self.progress = progress or ProgressBus()
        self.events = events or EventBus()
        self._sleep = sleep

        self._total = 0
        self._running: set[str] = set()
        self._completed: set[str] = set()
        self._failed: set[str] = set()
        self._active: dict[str, ExecutionContext] = {}
        self._tasks: dict[str, asyncio.Task[UnitResult]] = {}
        self._cancelled = False
        self.max_observed_running = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def running(self) -> set[str]:
        return set(self._running)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Stop admitting and cancel every running unit.  Idempotent."""
        if self._cancelled:
            return
        self._cancelled = True
        logger.warning("Cancellation requested; %d unit(s) running", len(self._running))
        self.events.publish("cancel", message="Execution cancelled", running=sorted(self._running))
        for task in self._tasks.values():
            if not task.done():
                task.cancel()

    async def execute(self, plan: WorkPlan) -> ExecutionReport:
        self._reset(plan)
        report = ExecutionReport()
        units = {u.id: u for u in plan.units}
        self._publish()

        try:
            while not self._cancelled and not self._all_terminal():
                eligible = compute_eligible(plan, self._completed, self._failed, self._running)
                if not eligible and not self._running:
                    self._stall(units, report)
                    break

                wave = eligible[: self.concurrency - len(self._running)]
                await self._run_wave([units[uid] for uid in wave], report)

                if not self._cancelled and not self._all_terminal():
                    await self._sleep(self.poll_interval)
        except asyncio.CancelledError:
            self.cancel()
            await self._sweep(list(self._active))
            raise
        finally:
            if self._cancelled:
                self._fail_unstarted(units, report)
                report.cancelled = True
            self._publish()
            self.progress.close()

        logger.info("Execution finished: %s", report.summary())
        return report

    # ------------------------------------------------------------------
    # Control loop internals
    # ------------------------------------------------------------------

    def _reset(self, plan: WorkPlan) -> None:
        self._total = len(plan.units)
        self._running.clear()
        self._completed.clear()
        self._failed.clear()
        self._active.clear()
        self._tasks.clear()
        self._cancelled = False
        self.max_observed_running = 0
        self.progress.reopen()

    def _all_terminal(self) -> bool:
        return len(self._completed) + len(self._failed) >= self._total

    def _snapshot(self, current_unit: str | None = None, percent: int | None = None) -> ProgressSnapshot:
        return ProgressSnapshot(
            total=self._total,
            completed=len(self._completed),
            failed=len(self._failed),
            running=len(self._running),
            current_unit=current_unit,
            percent=percent,
        )

    def _publish(self, current_unit: str | None = None, percent: int | None = None) -> None:
        self.progress.publish(self._snapshot(current_unit, percent))

    def _on_progress(self, unit_id: str, percent: int) -> None:
        self._publish(current_unit=unit_id, percent=percent)

    async def _run_wave(self, wave: list[WorkUnit], report: ExecutionReport) -> None:
        for unit in wave:
            self._running.add(unit.id)
            unit.status = "in-progress"
            unit.status_message = "Starting"
            ctx = ExecutionContext(unit_id=unit.id)
            self._active[unit.id] = ctx
            self._tasks[unit.id] = asyncio.create_task(self._run_unit(unit, ctx), name=f"unit-{unit.id}")
            self.events.publish("spawn", unit.id, f"Started {unit.name}")
            self._publish(current_unit=unit.id, percent=0)
        self.max_observed_running = max(self.max_observed_running, len(self._running))

        ids = [u.id for u in wave]
        contexts = {uid: self._active[uid] for uid in ids}
        outcomes = await asyncio.gather(*(self._tasks[uid] for uid in ids), return_exceptions=True)
        await self._sweep(ids)

        for unit, outcome in zip(wave, outcomes):
            ctx = contexts[unit.id]
            if isinstance(outcome, UnitResult):
                result = outcome
            elif isinstance(outcome, asyncio.CancelledError):
                result = UnitResult(
                    unit.id, False, TerminalReason.CANCELLED, str(ExecutionCancelledError()),
                    retry_count=ctx.retry_count, duration_s=ctx.elapsed,
                )
            else:
                logger.error("Unit %s raised unexpectedly", unit.id, exc_info=outcome)
                result = UnitResult(
                    unit.id, False, TerminalReason.ERROR, str(outcome),
                    retry_count=ctx.retry_count, duration_s=ctx.elapsed,
                )
            self._finish(unit, result, report)

    async def _run_unit(self, unit: WorkUnit, ctx: ExecutionContext) -> UnitResult:
        breaker = self.breakers.get(unit.id)

        async def attempt(index: int) -> None:
            ctx.retry_count = index
            await breaker.call(self.pipeline.run_attempt, unit, ctx, self._on_progress)

        def on_retry(attempt_number: int, exc: BaseException, delay: float) -> None:
            unit.status_message = f"Retrying after: {exc}"
            self.events.publish(
                "retry", unit.id, str(exc), attempt=attempt_number, delay=round(delay, 3),
            )

        try:
            await self.retry_policy.run(attempt, on_retry=on_retry)
        except CircuitOpenError as exc:
            return UnitResult(
                unit.id, False, TerminalReason.CIRCUIT_OPEN, str(exc),
                retry_count=ctx.retry_count, duration_s=ctx.elapsed,
            )
        except Exception as exc:
            return UnitResult(
                unit.id, False, TerminalReason.ERROR, str(exc) or type(exc).__name__,
                retry_count=ctx.retry_count, duration_s=ctx.elapsed,
            )
        return UnitResult(
            unit.id, True, TerminalReason.COMPLETED, "Completed",
            retry_count=ctx.retry_count, duration_s=ctx.elapsed,
        )

    async def _sweep(self, unit_ids: list[str]) -> None:
        """Tear down whatever the given units still hold, then forget them."""
        for uid in unit_ids:
            ctx = self._active.pop(uid, None)
            if ctx is not None and ctx.holds_resources:
                await self.pipeline.teardown(ctx)
            self._tasks.pop(uid, None)

    def _finish(self, unit: WorkUnit, result: UnitResult, report: ExecutionReport) -> None:
        self._running.discard(unit.id)
        report.results[unit.id] = result
        unit.status_message = result.message
        if result.success:
            unit.status = "completed"
            self._completed.add(unit.id)
            logger.info("Unit %s completed (retries: %d)", unit.id, result.retry_count)
            self.events.publish("complete", unit.id, result.message, retries=result.retry_count)
        else:
            unit.status = "failed"
            self._failed.add(unit.id)
            logger.error("Unit %s failed (%s): %s", unit.id, result.reason, result.message)
            self.events.publish(
                "fail", unit.id, result.message, reason=str(result.reason), retries=result.retry_count,
            )
        self._publish(current_unit=unit.id)

    def _stall(self, units: dict[str, WorkUnit], report: ExecutionReport) -> None:
        remaining = [
            uid for uid in units
            if uid not in self._completed and uid not in self._failed
        ]
        err = StalledExecutionError(remaining)
        logger.error(str(err))
        self.events.publish("stall", message=str(err), remaining=remaining)
        report.stalled = list(remaining)
        for uid in remaining:
            self._finish(units[uid], UnitResult(uid, False, TerminalReason.STALLED, str(err)), report)

    def _fail_unstarted(self, units: dict[str, WorkUnit], report: ExecutionReport) -> None:
        message = str(ExecutionCancelledError())
        for uid, unit in units.items():
            if uid in self._completed or uid in self._failed:
                continue
            self._finish(unit, UnitResult(uid, False, TerminalReason.CANCELLED, message), report)

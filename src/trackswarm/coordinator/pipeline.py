"""Per-unit execution pipeline.

One attempt acquires a workspace, an executor and a tool channel (in that
order), runs the fixed tool sequence, commits, and always releases the
handles in reverse order.  A released handle is cleared from its context
before the release is awaited, so a second teardown never touches it again.
A handle whose acquisition is interrupted by cancellation is still recorded
for teardown.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from trackswarm.adapters.base import (
    ExecutorProvider,
    SecurityProfile,
    ToolChannel,
    ToolChannelFactory,
    WorkspaceHandle,
    WorkspaceProvider,
    sanitize_container_name,
)
from trackswarm.protocol.models import WorkUnit

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int], None]

TOOL_SEQUENCE: tuple[tuple[str, dict[str, Any]], ...] = (
    ("build.project", {}),
    ("test.run", {}),
    ("lint.fix", {}),
)


@dataclass(slots=True)
class ExecutionContext:
    """Handles held by one running unit."""

    unit_id: str
    started_at: float = field(default_factory=time.monotonic)
    retry_count: int = 0
    workspace: WorkspaceHandle | None = None
    executor_id: str | None = None
    channel: ToolChannel | None = None

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at

    @property
    def holds_resources(self) -> bool:
        return self.workspace is not None or self.executor_id is not None or self.channel is not None


def commit_message(unit: WorkUnit) -> str:
    return f"feat({unit.id}): Implement {unit.name}"


class UnitPipeline:
    def __init__(
        self,
        workspaces: WorkspaceProvider,
        executors: ExecutorProvider,
        channels: ToolChannelFactory,
        *,
        image: str,
        name_prefix: str = "trackswarm",
        profile: SecurityProfile | None = None,
        branch_prefix: str = "work/",
        retain_workspace: bool = False,
        tool_sequence: tuple[tuple[str, dict[str, Any]], ...] = TOOL_SEQUENCE,
    ) -> None:
        self.workspaces = workspaces
        self.executors = executors
        self.channels = channels
        self.image = image
        self.name_prefix = name_prefix
        self.profile = profile or SecurityProfile()
        self.branch_prefix = branch_prefix
        self.retain_workspace = retain_workspace
        self.tool_sequence = tool_sequence
        self._retained: dict[str, WorkspaceHandle] = {}

    def branch_for(self, unit: WorkUnit) -> str:
        return f"{self.branch_prefix}{unit.id}"

    def executor_name(self, unit: WorkUnit, attempt: int) -> str:
        return sanitize_container_name(f"{self.name_prefix}-{unit.id}-a{attempt}")

    async def run_attempt(
        self,
        unit: WorkUnit,
        ctx: ExecutionContext,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        """Run one attempt.  Raises on failure; handles are released either way."""
        try:
            branch = self.branch_for(unit)
            await self._drop_retained(unit.id)
            workspace = await self._acquire(ctx, "workspace", self.workspaces.create(branch))
            unit.branch = branch

            executor_id = await self._acquire(
                ctx,
                "executor_id",
                self.executors.start(
                    self.image, self.executor_name(unit, ctx.retry_count), self.profile, workspace,
                ),
            )
            channel = await self._acquire(ctx, "channel", self.channels.open(workspace, executor_id))

            steps = len(self.tool_sequence)
            for index, (tool, args) in enumerate(self.tool_sequence, start=1):
                unit.status_message = f"Running {tool}"
                await channel.invoke(tool, dict(args))
                if on_progress is not None:
                    on_progress(unit.id, int(index * 100 / steps))

            unit.status_message = "Committing changes"
            await self.workspaces.commit_all(workspace, commit_message(unit))
            logger.info("Unit %s committed on %s", unit.id, branch)
        finally:
            await self.teardown(ctx)

    async def _acquire(self, ctx: ExecutionContext, slot: str, acquisition: Awaitable[Any]) -> Any:
        """Await *acquisition* and store its handle on ``ctx.<slot>``.

        A cancellation arriving mid-acquisition does not abandon the work in
        flight: the acquisition is allowed to finish, its handle is recorded
        so teardown releases it, and the cancellation is then re-raised.
        """
        task = asyncio.ensure_future(acquisition)
        try:
            handle = await asyncio.shield(task)
        except asyncio.CancelledError:
            while not task.done():
                try:
                    await asyncio.wait([task])
                except asyncio.CancelledError:
                    continue
            if not task.cancelled():
                if task.exception() is None:
                    setattr(ctx, slot, task.result())
                else:
                    logger.debug("Acquiring %s for %s failed after cancel: %s", slot, ctx.unit_id, task.exception())
            raise
        setattr(ctx, slot, handle)
        return handle

    async def _drop_retained(self, unit_id: str) -> None:
        # A retained worktree from an earlier attempt still occupies the path.
        stale = self._retained.pop(unit_id, None)
        if stale is None:
            return
        logger.info("Removing retained workspace %s before re-attempting %s", stale.path, unit_id)
        try:
            await self.workspaces.remove(stale)
        except Exception as exc:
            logger.warning("Removing workspace %s for %s failed: %s", stale.path, unit_id, exc)

    async def teardown(self, ctx: ExecutionContext) -> None:
        """Release channel, executor and workspace.  Never raises ``Exception``."""
        channel, ctx.channel = ctx.channel, None
        if channel is not None:
            try:
                await channel.close()
            except Exception as exc:
                logger.warning("Closing tool channel for %s failed: %s", ctx.unit_id, exc)

        executor_id, ctx.executor_id = ctx.executor_id, None
        if executor_id is not None:
            try:
                await self.executors.stop(executor_id)
            except Exception as exc:
                logger.warning("Stopping executor %s for %s failed: %s", executor_id, ctx.unit_id, exc)

        workspace, ctx.workspace = ctx.workspace, None
        if workspace is not None:
            if self.retain_workspace:
                logger.info("Retaining workspace %s for %s", workspace.path, ctx.unit_id)
                self._retained[ctx.unit_id] = workspace
                return
            try:
                await self.workspaces.remove(workspace)
            except Exception as exc:
                logger.warning("Removing workspace %s for %s failed: %s", workspace.path, ctx.unit_id, exc)

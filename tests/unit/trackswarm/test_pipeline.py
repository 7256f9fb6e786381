"""Tests for the per-unit execution pipeline."""

from __future__ import annotations

import pytest

from tests.helpers.fakes import (
    FakeExecutorProvider,
    FakeToolChannelFactory,
    FakeWorkspaceProvider,
    make_pipeline,
)
from trackswarm.adapters.base import SecurityProfile, WorkspaceHandle
from trackswarm.coordinator.pipeline import ExecutionContext, commit_message
from trackswarm.protocol.models import WorkUnit


class _FailingExecutors(FakeExecutorProvider):
    async def start(self, image, name, profile, workspace) -> str:
        raise RuntimeError("image pull failed")


class _BrokenStop(FakeExecutorProvider):
    async def stop(self, executor_id: str) -> None:
        await super().stop(executor_id)
        raise RuntimeError("docker daemon gone")


def test_commit_message() -> None:
    unit = WorkUnit(id="t7", name="User models")
    assert commit_message(unit) == "feat(t7): Implement User models"


def test_executor_name_is_sanitized() -> None:
    pipeline = make_pipeline(name_prefix="Track Swarm")
    unit = WorkUnit(id="api/v1", name="API")
    assert pipeline.executor_name(unit, 2) == "track-swarm-api-v1-a2"


@pytest.mark.asyncio
async def test_successful_attempt(make_unit) -> None:
    workspaces = FakeWorkspaceProvider()
    executors = FakeExecutorProvider()
    channels = FakeToolChannelFactory()
    profile = SecurityProfile(memory="1g")
    pipeline = make_pipeline(workspaces, executors, channels, profile=profile)
    unit = make_unit("a", name="Models")
    ctx = ExecutionContext(unit_id="a")
    progress: list[tuple[str, int]] = []

    await pipeline.run_attempt(unit, ctx, lambda uid, pct: progress.append((uid, pct)))

    assert unit.branch == "work/a"
    assert [tool for _, tool in channels.invocations] == ["build.project", "test.run", "lint.fix"]
    assert progress == [("a", 33), ("a", 66), ("a", 100)]
    assert workspaces.commits == [("work/a", "feat(a): Implement Models")]
    assert unit.status_message == "Committing changes"
    assert executors.profiles == [profile]
    assert not ctx.holds_resources
    assert channels.closed == ["a"]
    assert executors.stopped == ["trackswarm-a-a0"]
    assert workspaces.removed == ["work/a"]


@pytest.mark.asyncio
async def test_tool_failure_skips_commit_and_releases(make_unit) -> None:
    workspaces = FakeWorkspaceProvider()
    executors = FakeExecutorProvider()
    channels = FakeToolChannelFactory()
    channels.failures["a"] = [RuntimeError("build broke")]
    pipeline = make_pipeline(workspaces, executors, channels)
    ctx = ExecutionContext(unit_id="a")

    with pytest.raises(RuntimeError, match="build broke"):
        await pipeline.run_attempt(make_unit("a"), ctx)

    assert workspaces.commits == []
    assert channels.closed == ["a"]
    assert executors.stopped == ["trackswarm-a-a0"]
    assert workspaces.removed == ["work/a"]


@pytest.mark.asyncio
async def test_executor_failure_releases_workspace_only(make_unit) -> None:
    workspaces = FakeWorkspaceProvider()
    channels = FakeToolChannelFactory()
    pipeline = make_pipeline(workspaces, _FailingExecutors(), channels)

    with pytest.raises(RuntimeError, match="image pull failed"):
        await pipeline.run_attempt(make_unit("a"), ExecutionContext(unit_id="a"))

    assert channels.opened == []
    assert workspaces.removed == ["work/a"]


@pytest.mark.asyncio
async def test_attempt_index_selects_executor_name(make_unit) -> None:
    executors = FakeExecutorProvider()
    pipeline = make_pipeline(executors=executors)
    ctx = ExecutionContext(unit_id="a", retry_count=3)

    await pipeline.run_attempt(make_unit("a"), ctx)

    assert executors.started == ["trackswarm-a-a3"]


@pytest.mark.asyncio
async def test_teardown_is_idempotent() -> None:
    workspaces = FakeWorkspaceProvider()
    executors = FakeExecutorProvider()
    pipeline = make_pipeline(workspaces, executors)
    ctx = ExecutionContext(
        unit_id="a",
        workspace=WorkspaceHandle(path=workspaces.root / "a", branch="work/a"),
        executor_id="exec-a",
    )

    await pipeline.teardown(ctx)
    await pipeline.teardown(ctx)

    assert executors.stopped == ["exec-a"]
    assert workspaces.removed == ["work/a"]


@pytest.mark.asyncio
async def test_teardown_continues_after_release_error() -> None:
    workspaces = FakeWorkspaceProvider()
    pipeline = make_pipeline(workspaces, _BrokenStop())
    ctx = ExecutionContext(
        unit_id="a",
        workspace=WorkspaceHandle(path=workspaces.root / "a", branch="work/a"),
        executor_id="exec-a",
    )

    await pipeline.teardown(ctx)

    assert workspaces.removed == ["work/a"]
    assert ctx.executor_id is None


@pytest.mark.asyncio
async def test_retained_workspace_is_not_removed(make_unit) -> None:
    workspaces = FakeWorkspaceProvider()
    pipeline = make_pipeline(workspaces, retain_workspace=True)

    await pipeline.run_attempt(make_unit("a"), ExecutionContext(unit_id="a"))

    assert workspaces.removed == []
    assert len(workspaces.commits) == 1


@pytest.mark.asyncio
async def test_retained_workspace_is_dropped_before_next_attempt(make_unit) -> None:
    workspaces = FakeWorkspaceProvider()
    channels = FakeToolChannelFactory()
    channels.failures["a"] = [ConnectionRefusedError("connection refused")]
    pipeline = make_pipeline(workspaces, channels=channels, retain_workspace=True)
    unit = make_unit("a")

    with pytest.raises(ConnectionRefusedError):
        await pipeline.run_attempt(unit, ExecutionContext(unit_id="a"))
    assert workspaces.removed == []

    await pipeline.run_attempt(unit, ExecutionContext(unit_id="a", retry_count=1))

    assert workspaces.created == ["work/a", "work/a"]
    assert workspaces.removed == ["work/a"]
    assert workspaces.live == {workspaces.root / "work-a"}
    assert len(workspaces.commits) == 1

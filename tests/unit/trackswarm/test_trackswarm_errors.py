"""Tests for the trackswarm error hierarchy."""

from __future__ import annotations

from trackswarm.errors import (
    CircuitOpenError,
    CyclicDependencyError,
    ErrorCategory,
    ExecutionCancelledError,
    PartitionError,
    StalledExecutionError,
    ToolTimeoutError,
    TrackSwarmError,
    ValidationError,
    WorkspaceError,
)


def test_validation_family() -> None:
    err = CyclicDependencyError(["a", "b", "a"])
    assert isinstance(err, ValidationError)
    assert isinstance(err, TrackSwarmError)
    assert err.category == ErrorCategory.VALIDATION
    assert not err.retryable
    assert err.details == {"cycle": ["a", "b", "a"]}
    assert str(err) == "Circular dependency detected: a -> b -> a"
    assert issubclass(PartitionError, ValidationError)


def test_tool_timeout_is_retryable() -> None:
    err = ToolTimeoutError("test.run", 30)
    assert err.retryable
    assert err.tool_name == "test.run"
    assert err.category == ErrorCategory.TOOL


def test_stalled_lists_remaining_units() -> None:
    err = StalledExecutionError(["b", "c"])
    assert err.remaining == ["b", "c"]
    assert "b, c" in str(err)
    assert err.category == ErrorCategory.SCHEDULING


def test_circuit_open_message() -> None:
    err = CircuitOpenError("unit-a", 12.34)
    assert str(err) == "Circuit breaker 'unit-a' is open. Retry after 12.3s"
    assert err.retry_after == 12.34


def test_repr_and_defaults() -> None:
    assert str(ExecutionCancelledError()) == "Execution cancelled"
    err = WorkspaceError("no repo", branch="work/a")
    assert err.branch == "work/a"
    assert repr(err) == "WorkspaceError('no repo', category=<ErrorCategory.WORKSPACE: 'workspace'>)"

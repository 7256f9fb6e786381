"""Trackswarm error hierarchy."""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCategory(StrEnum):
    """Category of error for classification and handling."""

    VALIDATION = "validation"
    WORKSPACE = "workspace"
    EXECUTOR = "executor"
    TOOL = "tool"
    COMMIT = "commit"
    SCHEDULING = "scheduling"
    CIRCUIT = "circuit"
    CANCELLATION = "cancellation"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"


class TrackSwarmError(Exception):
    """Base error for all trackswarm exceptions."""

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.category = category
        self.retryable = retryable
        self.details: dict[str, Any] = details or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self)!r}, category={self.category!r})"


class ValidationError(TrackSwarmError):
    """Malformed plan input (bad unit, cycle, broken grouping)."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(message, category=ErrorCategory.VALIDATION, retryable=False, **kwargs)


class CyclicDependencyError(ValidationError):
    """The dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        super().__init__(
            f"Circular dependency detected: {' -> '.join(cycle)}",
            details={"cycle": list(cycle)},
        )
        self.cycle = list(cycle)


class PartitionError(ValidationError):
    """Grouping could not make progress over a graph that passed validation."""


class WorkspaceError(TrackSwarmError):
    """Isolated workspace could not be created or managed."""

    def __init__(self, message: str, *, branch: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, category=ErrorCategory.WORKSPACE, **kwargs)
        self.branch = branch


class ExecutorError(TrackSwarmError):
    """Sandboxed executor failed to start or stop."""

    def __init__(self, message: str, *, executor: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, category=ErrorCategory.EXECUTOR, **kwargs)
        self.executor = executor


class ToolError(TrackSwarmError):
    """Tool invocation through the tool channel failed."""

    def __init__(self, message: str, *, tool_name: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, category=ErrorCategory.TOOL, **kwargs)
        self.tool_name = tool_name


class ToolTimeoutError(ToolError):
    """Tool invocation exceeded its time budget."""

    def __init__(self, tool_name: str, timeout: float) -> None:
        super().__init__(
            f"Tool '{tool_name}' timed out after {timeout}s",
            tool_name=tool_name,
            retryable=True,
        )
        self.timeout = timeout


class CommitError(TrackSwarmError):
    """Committing workspace changes failed."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(message, category=ErrorCategory.COMMIT, **kwargs)


class StalledExecutionError(TrackSwarmError):
    """No unit is eligible and nothing is running, but work remains."""

    def __init__(self, remaining: list[str]) -> None:
        super().__init__(
            "Execution stalled: no eligible units and nothing running "
            f"(unresolved or failed dependencies) for {', '.join(remaining)}",
            category=ErrorCategory.SCHEDULING,
            details={"remaining": list(remaining)},
        )
        self.remaining = list(remaining)


class CircuitOpenError(TrackSwarmError):
    """Raised when a circuit breaker is open."""

    def __init__(self, name: str, retry_after: float) -> None:
        super().__init__(
            f"Circuit breaker '{name}' is open. Retry after {retry_after:.1f}s",
            category=ErrorCategory.CIRCUIT,
            retryable=False,
        )
        self.name = name
        self.retry_after = retry_after


class ExecutionCancelledError(TrackSwarmError):
    """Execution was cancelled by the caller."""

    def __init__(self, message: str = "Execution cancelled") -> None:
        super().__init__(message, category=ErrorCategory.CANCELLATION, retryable=False)


class ConfigurationError(TrackSwarmError):
    """Invalid or missing configuration."""

    def __init__(self, message: str) -> None:
        super().__init__(message, category=ErrorCategory.CONFIGURATION, retryable=False)

"""Collaborator interfaces."""

from trackswarm.adapters.base import (
    ConflictResolver,
    ExecutorProvider,
    MergeOutcome,
    SecurityProfile,
    ToolChannel,
    ToolChannelFactory,
    WorkspaceHandle,
    WorkspaceProvider,
    sanitize_container_name,
)

__all__ = [
    "ConflictResolver",
    "ExecutorProvider",
    "MergeOutcome",
    "SecurityProfile",
    "ToolChannel",
    "ToolChannelFactory",
    "WorkspaceHandle",
    "WorkspaceProvider",
    "sanitize_container_name",
]

"""Collaborator interfaces consumed by the execution pipeline and merge flow."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol


@dataclass(slots=True)
class WorkspaceHandle:
    path: Path
    branch: str


@dataclass(slots=True)
class MergeOutcome:
    success: bool
    conflict: bool = False
    conflicts: list[str] = field(default_factory=list)
    message: str = ""


def sanitize_container_name(raw: str) -> str:
    """Map an arbitrary label onto the container name alphabet."""
    name = re.sub(r"[^a-zA-Z0-9_.-]+", "-", raw).strip("-.")
    return name.lower() or "unit"


@dataclass(frozen=True, slots=True)
class SecurityProfile:
    """Hardening applied to every executor container.

    The flags are fixed; only the values may be tuned through configuration.
    """

    memory: str = "4g"
    cpus: str = "2"
    pids_limit: int = 512
    user: str = "1000:1000"

    def docker_flags(self) -> list[str]:
        return [
            "--read-only",
            "--cap-drop=ALL",
            "--security-opt=no-new-privileges",
            f"--pids-limit={self.pids_limit}",
            f"--memory={self.memory}",
            f"--cpus={self.cpus}",
            "--user", self.user,
            "--network", "none",
        ]


class WorkspaceProvider(Protocol):
    async def create(self, branch: str, path: Path | None = None) -> WorkspaceHandle: ...

    async def commit_all(self, handle: WorkspaceHandle, message: str) -> None: ...

    async def remove(self, handle: WorkspaceHandle) -> None: ...

    async def merge(self, branch: str, into: str) -> MergeOutcome: ...

    async def finish_merge(self, into: str, *, accept: bool) -> None: ...


class ExecutorProvider(Protocol):
    async def start(
        self, image: str, name: str, profile: SecurityProfile, workspace: WorkspaceHandle,
    ) -> str: ...

    async def stop(self, executor_id: str) -> None: ...


class ToolChannel(Protocol):
    async def invoke(self, tool: str, args: dict[str, Any]) -> Any: ...

    async def close(self) -> None: ...


class ToolChannelFactory(Protocol):
    async def open(self, workspace: WorkspaceHandle, executor_id: str) -> ToolChannel: ...


class ConflictResolver(Protocol):
    """External resolver for merge conflicts; returns pass/fail only."""

    async def resolve(self, branch: str, into: str, conflicts: list[str]) -> bool: ...

"""Configuration schema for trackswarm YAML files."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class RunConfig:
    working_dir: str = "."
    run_dir: str = ".trackswarm/run"
    concurrency: int | None = None  # None = min(3, max(1, cpu_count // 2))
    poll_interval_ms: int = 1000
    debug: bool = False


@dataclass(slots=True)
class RetriesConfig:
    max_retries: int = 3  # re-attempts after the first attempt
    initial_delay: float = 1.0
    backoff_factor: float = 2.0
    max_delay: float = 30.0
    jitter: float = 0.2


@dataclass(slots=True)
class BreakerConfig:
    failure_threshold: int = 5
    monitoring_period: float = 60.0
    reset_timeout: float = 60.0


@dataclass(slots=True)
class ExecutorConfig:
    image: str = "trackswarm/tool-image:latest"
    name_prefix: str = "trackswarm"
    memory: str = "4g"
    cpus: str = "2"
    pids_limit: int = 512
    user: str = "1000:1000"
    start_grace_seconds: float = 1.0


@dataclass(slots=True)
class ToolsConfig:
    host_command: list[str] = field(default_factory=list)
    host: str = "127.0.0.1"
    port_range_start: int = 8000
    port_range_end: int = 9000
    call_timeout_seconds: float = 60.0
    startup_timeout_seconds: float = 30.0


@dataclass(slots=True)
class WorkspaceConfig:
    worktrees_dir: str = ""  # empty = <run_dir>/worktrees
    branch_prefix: str = "work/"
    retain: bool = False
    integration_branch: str = "work/integration"
    merge: bool = False


@dataclass(slots=True)
class TrackSwarmConfig:
    version: int = 1
    run: RunConfig = field(default_factory=RunConfig)
    retries: RetriesConfig = field(default_factory=RetriesConfig)
    breaker: BreakerConfig = field(default_factory=BreakerConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)

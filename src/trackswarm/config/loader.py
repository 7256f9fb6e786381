"""YAML config loader for trackswarm."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml

from trackswarm.config.schema import (
    BreakerConfig,
    ExecutorConfig,
    RetriesConfig,
    RunConfig,
    ToolsConfig,
    TrackSwarmConfig,
    WorkspaceConfig,
)
from trackswarm.errors import ConfigurationError

DEFAULT_CONFIG_NAME = "trackswarm.yaml"


def default_concurrency() -> int:
    return min(3, max(1, (os.cpu_count() or 2) // 2))


def load_config(path: str | Path | None = None) -> TrackSwarmConfig:
    """Load configuration from *path*; a missing file yields the defaults.

    Unknown keys are ignored.  Values that cannot be used raise
    ``ConfigurationError``.
    """
    p = Path(path) if path is not None else Path(DEFAULT_CONFIG_NAME)
    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) if p.exists() else {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {p}: {exc}") from exc
    if not isinstance(raw, dict):
        raw = {}

    try:
        config = TrackSwarmConfig(
            version=int(raw.get("version", 1)),
            run=RunConfig(**_pick(_section(raw, "run"), RunConfig)),
            retries=RetriesConfig(**_pick(_section(raw, "retries"), RetriesConfig)),
            breaker=BreakerConfig(**_pick(_section(raw, "breaker"), BreakerConfig)),
            executor=ExecutorConfig(**_pick(_section(raw, "executor"), ExecutorConfig)),
            tools=ToolsConfig(**_pick(_section(raw, "tools"), ToolsConfig)),
            workspace=WorkspaceConfig(**_pick(_section(raw, "workspace"), WorkspaceConfig)),
        )
        validate_config(config)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid configuration in {p}: {exc}") from exc
    return config


def validate_config(config: TrackSwarmConfig) -> None:
    if config.run.concurrency is not None and config.run.concurrency < 1:
        raise ConfigurationError("run.concurrency must be at least 1")
    if config.run.poll_interval_ms < 0:
        raise ConfigurationError("run.poll_interval_ms must not be negative")
    if config.retries.max_retries < 0:
        raise ConfigurationError("retries.max_retries must not be negative")
    if not 0 <= config.retries.jitter < 1:
        raise ConfigurationError("retries.jitter must be in [0, 1)")
    if config.breaker.failure_threshold < 1:
        raise ConfigurationError("breaker.failure_threshold must be at least 1")
    if config.tools.port_range_start > config.tools.port_range_end:
        raise ConfigurationError("tools.port_range_start must not exceed tools.port_range_end")
    if not config.executor.image.strip():
        raise ConfigurationError("executor.image is required")


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name, {})
    return value if isinstance(value, dict) else {}


def _pick(raw: dict[str, Any], model_type: type[Any]) -> dict[str, Any]:
    allowed = set(model_type.__dataclass_fields__.keys())
    return {k: v for k, v in raw.items() if k in allowed}

"""On-disk artifacts: atomic JSON state, JSONL event logs, tool endpoint sidecar."""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

# Relative to the workspace root; read by the tool host, not by the scheduler.
ENDPOINT_SIDECAR = Path(".config") / "local-tool-endpoint.json"


@dataclass(frozen=True, slots=True)
class ToolEndpoint:
    host: str
    port: int
    executor: str = ""

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


def write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with tmp.open("w", encoding="utf-8") as handle:
        handle.write(json.dumps(data, indent=2) + "\n")
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp, path)


def append_jsonl(path: Path, item: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(item) + "\n")


def write_endpoint(workspace: Path, endpoint: ToolEndpoint) -> Path:
    """Record where the workspace's tool host listens."""
    target = workspace / ENDPOINT_SIDECAR
    write_json_atomic(target, asdict(endpoint))
    return target


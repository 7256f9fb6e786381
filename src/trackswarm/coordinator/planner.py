"""Turn task records into a validated WorkPlan."""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Iterable

import yaml

from trackswarm.coordinator.graph import build_dependency_graph
from trackswarm.coordinator.partitioner import partition_parallel_groups, validate_groups
from trackswarm.errors import ValidationError
from trackswarm.protocol.models import WorkPlan, WorkUnit

logger = logging.getLogger(__name__)

_DEFAULT_COMPLEXITY = 5.0
_DEFAULT_DURATION = 60.0


def _as_str_list(value: Any, field_name: str, unit_id: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    raise ValidationError(f"Unit {unit_id}: '{field_name}' must be a list of strings")


def unit_from_record(record: dict[str, Any]) -> WorkUnit:
    """Build a WorkUnit from a loosely-typed record.

    Accepts ``id``/``task_id``, ``deps``/``dependencies`` and
    ``files``/``file_overlaps`` aliases.
    """
    if not isinstance(record, dict):
        raise ValidationError(f"Task record must be a mapping, got {type(record).__name__}")
    unit_id = str(record.get("id") or record.get("task_id") or "").strip()
    if not unit_id:
        raise ValidationError(f"Task record without an id: {record!r}")

    deps = record.get("dependencies", record.get("deps"))
    files = record.get("files", record.get("file_overlaps"))
    try:
        complexity = float(record.get("complexity", _DEFAULT_COMPLEXITY))
        duration = float(record.get("duration", _DEFAULT_DURATION))
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Unit {unit_id}: invalid cost estimate ({exc})") from exc

    return WorkUnit(
        id=unit_id,
        name=str(record.get("name") or record.get("title") or unit_id),
        description=str(record.get("description", "")),
        dependencies=_as_str_list(deps, "dependencies", unit_id),
        files=_as_str_list(files, "files", unit_id),
        complexity=complexity,
        duration=duration,
        tasks=_as_str_list(record.get("tasks"), "tasks", unit_id),
    )


def load_task_file(path: str | Path) -> tuple[str, list[WorkUnit]]:
    """Load ``(prompt, units)`` from a JSON or YAML task file.

    The file is either a list of records or a mapping with ``tasks`` (and
    optionally ``prompt``).
    """
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as exc:
        raise ValidationError(f"Cannot read task file {p}: {exc}") from exc

    try:
        raw = json.loads(text) if p.suffix == ".json" else yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ValidationError(f"Cannot parse task file {p}: {exc}") from exc

    prompt = ""
    if isinstance(raw, dict):
        prompt = str(raw.get("prompt", ""))
        raw = raw.get("tasks", [])
    if not isinstance(raw, list):
        raise ValidationError(f"Task file {p} must contain a list of tasks")
    return prompt, [unit_from_record(r) for r in raw]


def build_plan(
    tasks: Iterable[WorkUnit | dict[str, Any]],
    prompt: str = "",
    *,
    plan_id: str | None = None,
) -> WorkPlan:
    """Build, partition and validate a WorkPlan.

    Raises ``ValidationError`` (including ``CyclicDependencyError``); no
    partial plan is ever returned.
    """
    units = [t if isinstance(t, WorkUnit) else unit_from_record(t) for t in tasks]
    if not units:
        raise ValidationError("Cannot build a plan without work units")

    graph, warnings = build_dependency_graph(units)
    groups = partition_parallel_groups(units, graph)
    validate_groups(units, graph, groups)

    plan = WorkPlan(
        id=plan_id or f"workplan-{int(time.time() * 1000)}",
        prompt=prompt,
        units=units,
        graph=graph,
        groups=groups,
        warnings=warnings,
    )
    logger.info(
        "Built work plan %s with %d units in %d parallel groups",
        plan.id, len(units), len(groups),
    )
    return plan

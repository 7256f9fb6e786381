"""Tests for plan construction and task file loading."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from trackswarm.coordinator.planner import build_plan, load_task_file, unit_from_record
from trackswarm.errors import CyclicDependencyError, ValidationError


class TestUnitFromRecord:
    def test_aliases(self) -> None:
        unit = unit_from_record({
            "task_id": "t1",
            "title": "Models",
            "deps": "t0",
            "file_overlaps": ["models.py"],
            "complexity": "3",
        })
        assert unit.id == "t1"
        assert unit.name == "Models"
        assert unit.dependencies == ["t0"]
        assert unit.files == ["models.py"]
        assert unit.complexity == 3.0

    def test_name_defaults_to_id(self) -> None:
        assert unit_from_record({"id": "x"}).name == "x"

    def test_missing_id(self) -> None:
        with pytest.raises(ValidationError, match="without an id"):
            unit_from_record({"name": "nameless"})

    def test_bad_cost(self) -> None:
        with pytest.raises(ValidationError, match="cost estimate"):
            unit_from_record({"id": "x", "duration": "soon"})

    def test_non_mapping(self) -> None:
        with pytest.raises(ValidationError):
            unit_from_record(["x"])  # type: ignore[arg-type]


class TestBuildPlan:
    def test_builds_groups_and_edges(self) -> None:
        plan = build_plan(
            [
                {"id": "a", "name": "Schema"},
                {"id": "b", "dependencies": ["schema"]},
                {"id": "c"},
            ],
            prompt="build an app",
            plan_id="p1",
        )
        assert plan.id == "p1"
        assert plan.prompt == "build an app"
        assert plan.groups == [["a", "c"], ["b"]]
        assert plan.to_dict()["edges"] == [["a", "b"]]
        assert plan.group_index()["b"] == (1, 0)

    def test_cycle_raises_validation_error(self) -> None:
        tasks = [
            {"id": "A", "dependencies": ["C"]},
            {"id": "B", "dependencies": ["A"]},
            {"id": "C", "dependencies": ["B"]},
        ]
        with pytest.raises(ValidationError) as info:
            build_plan(tasks)
        assert isinstance(info.value, CyclicDependencyError)

    def test_empty_input(self) -> None:
        with pytest.raises(ValidationError, match="without work units"):
            build_plan([])

    def test_warnings_surface_unresolved_references(self) -> None:
        plan = build_plan([{"id": "a", "dependencies": ["nowhere"]}])
        assert plan.warnings == ["Dependency 'nowhere' for unit a not found"]
        assert plan.unit("a").dependencies == ["nowhere"]

    def test_default_plan_id(self) -> None:
        assert build_plan([{"id": "a"}]).id.startswith("workplan-")


class TestLoadTaskFile:
    def test_yaml_mapping_with_prompt(self, tmp_path: Path) -> None:
        path = tmp_path / "tasks.yaml"
        path.write_text(
            """prompt: Add login
tasks:
  - id: t1
    name: Models
    files: [models.py]
  - id: t2
    name: Views
    dependencies: [t1]
""",
            encoding="utf-8",
        )
        prompt, units = load_task_file(path)
        assert prompt == "Add login"
        assert [u.id for u in units] == ["t1", "t2"]
        assert units[1].dependencies == ["t1"]

    def test_json_list(self, tmp_path: Path) -> None:
        path = tmp_path / "tasks.json"
        path.write_text(json.dumps([{"id": "a"}, {"id": "b", "deps": ["a"]}]), encoding="utf-8")
        prompt, units = load_task_file(path)
        assert prompt == ""
        assert units[1].dependencies == ["a"]

    def test_invalid_json(self, tmp_path: Path) -> None:
        path = tmp_path / "tasks.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ValidationError, match="Cannot parse"):
            load_task_file(path)

    def test_scalar_document(self, tmp_path: Path) -> None:
        path = tmp_path / "tasks.yaml"
        path.write_text("just text\n", encoding="utf-8")
        with pytest.raises(ValidationError, match="list of tasks"):
            load_task_file(path)

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ValidationError, match="Cannot read"):
            load_task_file(tmp_path / "absent.yaml")

"""Tests for run state persistence."""

from __future__ import annotations

import json
from pathlib import Path

from trackswarm.coordinator.planner import build_plan
from trackswarm.coordinator.state_writer import write_state
from trackswarm.protocol.models import ProgressSnapshot


def test_state_file_contents(tmp_path: Path) -> None:
    plan = build_plan(
        [{"id": "a"}, {"id": "b", "dependencies": ["a"]}, {"id": "c", "dependencies": ["ghost"]}],
        plan_id="p1",
    )
    plan.unit("a").status = "completed"
    plan.unit("a").branch = "work/a"
    plan.unit("b").status = "in-progress"
    snap = ProgressSnapshot(total=3, completed=1, failed=0, running=1, current_unit="b", percent=33)
    path = tmp_path / "run" / "state.json"

    write_state(path, plan, "executing", snap, state_seq=4, errors=[{"unit": "x"}])

    state = json.loads(path.read_text())
    assert state["plan_id"] == "p1"
    assert state["phase"] == "executing"
    assert state["state_seq"] == 4
    assert state["units"] == {
        "pending": 1, "in-progress": 1, "completed": 1, "failed": 0, "blocked": 0, "merged": 0,
    }
    assert state["progress"]["current_unit"] == "b"
    assert state["dag"]["edges"] == [["a", "b"]]
    assert state["dag"]["nodes"][0] == {
        "id": "a", "name": "a", "status": "completed", "message": "", "branch": "work/a",
    }
    assert state["groups"] == plan.groups
    assert len(state["warnings"]) == 1
    assert state["errors"] == [{"unit": "x"}]
    assert not (tmp_path / "run" / "state.json.tmp").exists()


def test_state_without_snapshot(tmp_path: Path) -> None:
    plan = build_plan([{"id": "a"}])
    path = tmp_path / "state.json"
    write_state(path, plan, "planned")
    state = json.loads(path.read_text())
    assert state["progress"] is None
    assert state["errors"] == []

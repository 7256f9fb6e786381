"""CLI entrypoint for trackswarm."""

from __future__ import annotations

import asyncio
import json
import logging
import shutil
import subprocess
from pathlib import Path
from typing import Any

import click

from trackswarm.config.loader import DEFAULT_CONFIG_NAME, load_config
from trackswarm.coordinator.orchestrator import RunResult, TrackOrchestrator
from trackswarm.coordinator.planner import build_plan, load_task_file
from trackswarm.errors import TrackSwarmError
from trackswarm.logger import setup_logging
from trackswarm.protocol.models import WorkPlan

logger = logging.getLogger(__name__)

_DOCTOR_BINARIES = ("git", "docker")


@click.group()
def main() -> None:
    """Trackswarm: run dependent work units in isolated, parallel tracks."""


def _print_plan(plan: WorkPlan) -> None:
    click.echo(f"Plan {plan.id}: {len(plan.units)} units in {len(plan.groups)} groups")
    for gi, group in enumerate(plan.groups, start=1):
        click.echo(f"  Group {gi}:")
        for uid in group:
            unit = plan.unit(uid)
            deps = ", ".join(unit.dependencies) if unit and unit.dependencies else "-"
            name = unit.name if unit else uid
            click.echo(f"    {uid}  {name}  (deps: {deps})")
    for warning in plan.warnings:
        click.echo(f"  warning: {warning}")


@main.command("plan")
@click.argument("tasks_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--json", "as_json", is_flag=True, help="Print the plan as JSON")
def plan_command(tasks_path: Path, as_json: bool) -> None:
    """Build and print the parallel groups for a task file."""
    try:
        prompt, units = load_task_file(tasks_path)
        plan = build_plan(units, prompt)
    except TrackSwarmError as exc:
        raise click.ClickException(str(exc)) from exc

    if as_json:
        click.echo(json.dumps(plan.to_dict(), indent=2))
    else:
        _print_plan(plan)


def _print_result(result: RunResult) -> None:
    click.echo(f"Run {result.plan.id}: {result.report.summary()}")
    for unit in result.plan.units:
        res = result.report.results.get(unit.id)
        reason = res.reason if res else "-"
        retries = res.retry_count if res else 0
        click.echo(f"  [{unit.status}] {unit.id} ({reason}, retries={retries}) {unit.status_message}")
    if result.merge is not None:
        click.echo(f"Merged: {len(result.merge.merged)}, blocked: {len(result.merge.blocked)}")


@main.command("run")
@click.argument("tasks_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--config", "config_path", type=click.Path(dir_okay=False, path_type=Path), default=None,
    help=f"Config file (default: ./{DEFAULT_CONFIG_NAME} when present)",
)
@click.option("--concurrency", "-c", type=click.IntRange(min=1), default=None, help="Maximum concurrent units")
@click.option("--run-dir", default=None, help="Override run directory from config")
@click.option("--merge/--no-merge", "merge_flag", default=None, help="Merge completed units into the integration branch")
@click.option("--retain-workspaces", is_flag=True, help="Keep worktrees after each attempt")
@click.option("--debug", "debug_flag", is_flag=True, help="Enable debug logging")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON lines")
def run_command(
    tasks_path: Path,
    config_path: Path | None,
    concurrency: int | None,
    run_dir: str | None,
    merge_flag: bool | None,
    retain_workspaces: bool,
    debug_flag: bool,
    json_logs: bool,
) -> None:
    """Execute a task file with git worktrees, docker executors and local tool hosts."""
    try:
        cfg = load_config(config_path)
        setup_logging(debug=debug_flag or cfg.run.debug, json_output=json_logs)
        if run_dir:
            cfg.run.run_dir = run_dir
        if retain_workspaces:
            cfg.workspace.retain = True
        prompt, units = load_task_file(tasks_path)
        orchestrator = TrackOrchestrator(cfg, concurrency=concurrency, merge=merge_flag)
    except TrackSwarmError as exc:
        raise click.ClickException(str(exc)) from exc

    try:
        result = asyncio.run(orchestrator.run(units, prompt))
    except TrackSwarmError as exc:
        raise click.ClickException(str(exc)) from exc
    except KeyboardInterrupt:
        click.echo("Interrupted; running units were cancelled.", err=True)
        raise SystemExit(130)

    _print_result(result)
    raise SystemExit(0 if result.ok else 1)


def _doctor_rows() -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for binary in _DOCTOR_BINARIES:
        found = shutil.which(binary) is not None
        details = "ok" if found else f"missing binary `{binary}`"
        if found:
            try:
                version_check = subprocess.run(
                    [binary, "--version"],
                    capture_output=True,
                    text=True,
                    timeout=10,
                    check=False,
                )
                if version_check.returncode != 0:
                    details = f"{binary} --version exited {version_check.returncode}"
                    found = False
                else:
                    details = version_check.stdout.strip().splitlines()[0] if version_check.stdout.strip() else "ok"
            except (OSError, subprocess.TimeoutExpired) as exc:
                details = f"version check failed: {exc}"
                found = False
        rows.append({"binary": binary, "ok": found, "details": details})
    return rows


def _print_doctor(rows: list[dict[str, Any]]) -> bool:
    click.echo("Runtime preflight:")
    all_ok = True
    for row in rows:
        icon = "OK" if row["ok"] else "FAIL"
        click.echo(f"  [{icon}] {row['binary']} - {row['details']}")
        all_ok = all_ok and bool(row["ok"])
    return all_ok


@main.command("doctor")
def doctor_command() -> None:
    """Check that git and docker are available."""
    ok = _print_doctor(_doctor_rows())
    raise SystemExit(0 if ok else 1)


if __name__ == "__main__":
    main()

"""CLI entrypoint for autocycle."""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from autocycle import __version__
from autocycle.config.loader import load_config, validate_config
from autocycle.config.schema import AutocycleYamlConfig
from autocycle.coordinator.control import CONTROL_ACTIONS, RunControl
from autocycle.coordinator.controller import RunController, load_planner
from autocycle.errors import AutocycleError
from autocycle.grading import compare_runs
from autocycle.logger import setup_logging
from autocycle.planning.spec_parser import parse_spec
from autocycle.protocol.models import RunResult
from autocycle.tui.stores import RunStore, event_message

logger = logging.getLogger(__name__)

console = Console()


@click.group()
@click.version_option(__version__, prog_name="autocycle")
def main() -> None:
    """Autocycle: autonomous multi-cycle coding runs with agent subprocesses."""


def _apply_overrides(
    cfg: AutocycleYamlConfig,
    *,
    max_cycles: int | None,
    max_cost: float | None,
    max_minutes: float | None,
    parallel: int | None,
    run_dir: str | None,
    debug: bool,
) -> None:
    if max_cycles is not None:
        cfg.budget.max_cycles = max_cycles
    if max_cost is not None:
        cfg.budget.max_cost_usd = max_cost
    if max_minutes is not None:
        cfg.budget.max_duration_seconds = max_minutes * 60
    if parallel is not None:
        cfg.budget.max_parallel_tasks = parallel
    if run_dir:
        cfg.run.run_dir = run_dir
    if debug:
        cfg.run.debug = True
    validate_config(cfg)


async def _run_controller(controller: RunController) -> RunResult:
    loop = asyncio.get_running_loop()
    controller.control.install_signal_handlers(loop)
    try:
        return await controller.run()
    finally:
        controller.control.remove_signal_handlers(loop)


def _print_result(result: RunResult) -> None:
    table = Table(title=f"Run {result.run_id}: {result.outcome}")
    table.add_column("Cycle", justify="right")
    table.add_column("Title")
    table.add_column("Merged", justify="right")
    table.add_column("Blocked", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Spec %", justify="right")
    table.add_column("Tests")
    for cycle in result.cycles:
        table.add_row(
            str(cycle.number),
            cycle.title,
            str(cycle.merged_count),
            str(cycle.blocked_count),
            f"${cycle.cost_usd:.4f}",
            f"{cycle.spec_completion_pct:.0f}",
            f"{cycle.tests_passed}/{cycle.tests_passed + cycle.tests_failed}",
        )
    console.print(table)
    console.print(f"[bold]Outcome:[/bold] {result.outcome} ({result.reason})")
    console.print(
        f"Cost ${result.total_cost_usd:.4f} | {result.duration_seconds:.0f}s | "
        f"grade {result.grade.get('overall', 0.0)}"
    )


@main.command("run")
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--spec", "spec_path", type=click.Path(exists=True, dir_okay=False, path_type=Path), default=None,
              help="Spec file (overrides run.spec_file)")
@click.option("--max-cycles", type=int, default=None, help="Maximum number of cycles")
@click.option("--max-cost", type=float, default=None, help="Maximum cost in USD")
@click.option("--max-minutes", type=float, default=None, help="Maximum wall-clock minutes")
@click.option("--parallel", type=int, default=None, help="Maximum parallel task groups")
@click.option("--run-dir", default=None, help="Override run directory from config")
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--json-logs", is_flag=True, help="Emit JSON log lines")
@click.option("--log-file", default=None, help="Also write logs to this file")
def run_command(
    config_path: Path,
    spec_path: Path | None,
    max_cycles: int | None,
    max_cost: float | None,
    max_minutes: float | None,
    parallel: int | None,
    run_dir: str | None,
    debug: bool,
    json_logs: bool,
    log_file: str | None,
) -> None:
    """Run cycles from a spec until success, a budget limit or a stop."""
    try:
        cfg = load_config(config_path)
        _apply_overrides(
            cfg,
            max_cycles=max_cycles,
            max_cost=max_cost,
            max_minutes=max_minutes,
            parallel=parallel,
            run_dir=run_dir,
            debug=debug,
        )
        setup_logging(debug=cfg.run.debug, json_output=json_logs, log_file=log_file)
        if spec_path is not None:
            cfg.run.spec_file = str(spec_path.resolve())
        planner = load_planner(cfg, spec_path)
    except AutocycleError as exc:
        raise click.ClickException(str(exc)) from exc

    controller = RunController(cfg, planner)
    console.print(f"Run {controller.run_id} -> {controller.run_dir}")
    result = asyncio.run(_run_controller(controller))
    _print_result(result)
    raise SystemExit(0 if result.outcome == "success" else 1)


@main.command("plan")
@click.argument("spec_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def plan_command(spec_path: Path) -> None:
    """Show how a spec splits into cycles and tasks."""
    spec = parse_spec(spec_path.read_text(encoding="utf-8"))
    table = Table(title=f"{spec.title} ({spec.total_acceptance_criteria} acceptance criteria)")
    table.add_column("Cycle", justify="right")
    table.add_column("Task")
    table.add_column("Group")
    table.add_column("Criteria", justify="right")
    table.add_column("Title")
    for cycle in spec.cycles:
        for task in cycle.tasks:
            table.add_row(
                str(cycle.number),
                task.task_id,
                task.parallel_group,
                str(len(task.acceptance_criteria)),
                task.title,
            )
    console.print(table)


@main.command("inspect")
@click.argument("run_dir", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option("--tail", default=20, help="How many recent events to show")
@click.option("--task", "task_id", default=None, help="Filter events by task id")
def inspect_command(run_dir: Path, tail: int, task_id: str | None) -> None:
    """Summarize a run directory: state, cycles, result and recent events."""
    store = RunStore(run_dir)
    state = store.read_state()
    click.echo(
        f"run={state.get('run_id', '?')} phase={state.get('phase', 'unknown')} "
        f"tasks={state.get('task_counts', {})} budget={state.get('budget', {})}"
    )
    for cycle in store.read_cycles():
        click.echo(
            f"cycle {cycle.get('number')}: {cycle.get('title', '')} "
            f"statuses={cycle.get('statuses', {})} cost=${cycle.get('cost_usd', 0.0):.4f}"
            + (f" error={cycle.get('error')}" if cycle.get("error") else "")
        )
    summary = store.read_result().get("summary")
    if isinstance(summary, dict):
        click.echo(f"result: {summary.get('outcome')} ({summary.get('reason')}) grade={summary.get('grade')}")
    events = store.read_events(limit=max(tail, 1) * 10)
    if task_id:
        events = [e for e in events if e.get("task_id") == task_id]
    for event in events[-max(tail, 1):]:
        click.echo(f"  {event.get('event_type', '')} task={event.get('task_id', '')} {event_message(event)}")


@main.command("control")
@click.argument("run_dir", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.argument("action", type=click.Choice(list(CONTROL_ACTIONS)))
@click.option("--reason", default="", help="Reason recorded with the request")
def control_command(run_dir: Path, action: str, reason: str) -> None:
    """Pause, resume or stop a running run."""
    store = RunStore(run_dir)
    RunControl.write_request(store.control_path, action, reason)
    click.echo(f"{action} requested for {run_dir}")


def _doctor_rows(cfg: AutocycleYamlConfig) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for name, binary in (("git", "git"), ("agent", cfg.agent.command[0] if cfg.agent.command else "")):
        found = bool(binary) and shutil.which(binary) is not None
        rows.append(
            {"check": name, "binary": binary, "ok": found, "details": "ok" if found else f"missing binary `{binary}`"}
        )
    if cfg.tests.command:
        test_binary = cfg.tests.command.split()[0]
        found = shutil.which(test_binary) is not None
        rows.append(
            {
                "check": "tests",
                "binary": test_binary,
                "ok": found,
                "details": "ok" if found else f"missing binary `{test_binary}`",
            }
        )
    return rows


@main.command("doctor")
@click.argument("config_path", type=click.Path(exists=True, dir_okay=False, path_type=Path), required=False)
def doctor_command(config_path: Path | None) -> None:
    """Check that git and the agent command are available."""
    try:
        cfg = load_config(config_path)
    except AutocycleError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo("Preflight:")
    all_ok = True
    for row in _doctor_rows(cfg):
        icon = "OK" if row["ok"] else "FAIL"
        click.echo(f"  [{icon}] {row['check']} binary={row['binary']} - {row['details']}")
        all_ok = all_ok and bool(row["ok"])
    raise SystemExit(0 if all_ok else 1)


@main.command("compare")
@click.argument("run_dirs", nargs=-1, required=True, type=click.Path(exists=True, file_okay=False, path_type=Path))
def compare_command(run_dirs: tuple[Path, ...]) -> None:
    """Rank finished runs by grade."""
    summaries: list[dict[str, Any]] = []
    for run_dir in run_dirs:
        summary = RunStore(run_dir).read_result().get("summary")
        if not isinstance(summary, dict):
            click.echo(f"skipping {run_dir}: no result.json", err=True)
            continue
        summaries.append(summary)
    if not summaries:
        raise click.ClickException("No finished runs to compare")
    table = Table(title="Run comparison")
    for column in ("Rank", "Run", "Outcome", "Overall", "Spec", "Tests", "Cost score", "Cost", "Duration"):
        table.add_column(column)
    for row in compare_runs(summaries):
        table.add_row(
            str(row.rank),
            row.run_id,
            row.outcome,
            str(row.grade.get("overall", 0.0)),
            str(row.grade.get("spec", 0.0)),
            str(row.grade.get("tests", 0.0)),
            str(row.grade.get("cost", 0.0)),
            f"${row.total_cost_usd:.4f}",
            f"{row.duration_seconds:.0f}s",
        )
    console.print(table)


@main.command("monitor")
@click.argument("run_dir", type=click.Path(exists=True, file_okay=False, path_type=Path))
def monitor_command(run_dir: Path) -> None:
    """Open the dashboard for a run directory."""
    from autocycle.tui.app import AutocycleApp

    AutocycleApp(str(run_dir)).run()


if __name__ == "__main__":
    main()

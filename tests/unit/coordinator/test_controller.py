"""Tests for the cycle loop with a fake task executor."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from autocycle.config.schema import AutocycleYamlConfig
from autocycle.coordinator.control import RunControl
from autocycle.coordinator.controller import RunController, load_planner
from autocycle.coordinator.event_bus import CYCLE_COMPLETED, RUN_COMPLETED, TASK_BLOCKED, EventBus
from autocycle.errors import ConfigError
from autocycle.planning import SpecPlanner, parse_spec
from autocycle.planning.spec_parser import ParsedSpec, PlannedCycle, PlannedTask
from autocycle.protocol.models import RunResult, Task
from autocycle.verification.test_runner import TestRun, TestSummary

SPEC = """# Todo App

A small todo service.

### 1. Storage (Cycle 1)
- [ ] items persist
- [ ] items load

### 2. Listing (Cycle 2)
- [ ] list items

### 3. Search (Cycle 3)
- [ ] search items
"""

Decision = Callable[[Task], tuple[str, float]]


class FakeExecutor:
    """Drives each task straight to the status chosen by *decide*."""

    def __init__(self, decide: Decision) -> None:
        self.base_branch: str | None = None
        self.decide = decide
        self.executed: list[str] = []

    async def execute(self, task: Task, *, cycle_title: str = "", deadline: float | None = None) -> Task:
        self.executed.append(task.task_id)
        status, cost = self.decide(task)
        task.cost_usd = cost
        if status == "merged":
            for step in ("isolating", "running", "awaiting_review", "reviewing", "merged"):
                task.transition(step)  # type: ignore[arg-type]
        else:
            task.transition("blocked", "agent exited with code 1")
        return task


def merge_all(task: Task) -> tuple[str, float]:
    return "merged", 0.05


def block_all(task: Task) -> tuple[str, float]:
    return "blocked", 0.0


def _config(tmp_path: Path, **overrides: object) -> AutocycleYamlConfig:
    config = AutocycleYamlConfig()
    config.run.working_dir = str(tmp_path)
    config.run.poll_interval_ms = 10
    for dotted, value in overrides.items():
        section, key = dotted.split("__")
        setattr(getattr(config, section), key, value)
    return config


def _controller(
    tmp_path: Path,
    decide: Decision,
    *,
    control: RunControl | None = None,
    planner: SpecPlanner | None = None,
    executor: FakeExecutor | None = None,
    **overrides: object,
) -> tuple[RunController, FakeExecutor, EventBus]:
    config = _config(tmp_path, **overrides)
    executor = executor or FakeExecutor(decide)
    provider = MagicMock()
    provider.main_branch.return_value = "main"
    bus = EventBus()
    controller = RunController(
        config,
        planner or SpecPlanner(parse_spec(SPEC)),
        run_id="run-test",
        control=control,
        event_bus=bus,
        provider=provider,
        executor=executor,  # type: ignore[arg-type]
    )
    return controller, executor, bus


async def _run(controller: RunController) -> RunResult:
    with patch("autocycle.coordinator.controller.is_git_repo", return_value=True):
        return await controller.run()


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_success_after_first_cycle(tmp_path: Path) -> None:
    controller, executor, bus = _controller(tmp_path, merge_all)
    result = await _run(controller)

    assert result.outcome == "success"
    assert len(result.cycles) == 1
    assert result.spec_completion_pct == 50.0
    assert executor.executed == ["run-1-cycle-1-task-1"]
    assert executor.base_branch == "main"
    assert result.grade["overall"] > 0
    assert bus.of_type(RUN_COMPLETED)[0].data["outcome"] == "success"

    run_dir = tmp_path / ".autocycle" / "run"
    assert json.loads((run_dir / "state.json").read_text())["phase"] == "finished"
    assert json.loads((run_dir / "result.json").read_text())["summary"]["outcome"] == "success"
    assert (run_dir / "cycles" / "001.json").exists()


@pytest.mark.asyncio
async def test_cost_limit_reached_without_success(tmp_path: Path) -> None:
    def expensive(task: Task) -> tuple[str, float]:
        return "blocked", 0.60

    controller, _, _ = _controller(tmp_path, expensive, budget__max_cost_usd=1.0, budget__max_cycles=2)
    result = await _run(controller)

    assert result.outcome == "limit_reached"
    assert result.reason.startswith("cost limit")
    assert len(result.cycles) == 2
    assert result.total_cost_usd == pytest.approx(1.2)


@pytest.mark.asyncio
async def test_cycle_limit(tmp_path: Path) -> None:
    controller, _, _ = _controller(tmp_path, block_all, budget__max_cycles=1)
    result = await _run(controller)
    assert result.outcome == "limit_reached"
    assert result.reason.startswith("cycle limit")


@pytest.mark.asyncio
async def test_plan_exhausted_without_merges_fails(tmp_path: Path) -> None:
    controller, executor, bus = _controller(tmp_path, block_all)
    result = await _run(controller)
    assert result.outcome == "failed"
    assert result.reason == "plan exhausted without merging any task"
    assert len(executor.executed) == 3
    assert [e.data["blocked"] for e in bus.of_type(CYCLE_COMPLETED)] == [1, 1, 1]


@pytest.mark.asyncio
async def test_plan_exhausted_with_merges_is_partial(tmp_path: Path) -> None:
    def only_search(task: Task) -> tuple[str, float]:
        return ("merged", 0.01) if "cycle-3" in task.task_id else ("blocked", 0.0)

    controller, _, _ = _controller(tmp_path, only_search, run__min_spec_completion_pct=100.0)
    result = await _run(controller)
    assert result.outcome == "partial"
    assert result.spec_completion_pct == 25.0


@pytest.mark.asyncio
async def test_stop_request_ends_run_blocked(tmp_path: Path) -> None:
    control = RunControl()
    control.request_stop("operator stop")
    controller, executor, _ = _controller(tmp_path, merge_all, control=control)
    result = await _run(controller)
    assert result.outcome == "blocked"
    assert result.reason == "operator stop"
    assert executor.executed == []


@pytest.mark.asyncio
async def test_not_a_git_repo_fails(tmp_path: Path) -> None:
    controller, executor, _ = _controller(tmp_path, merge_all)
    with patch("autocycle.coordinator.controller.is_git_repo", return_value=False):
        result = await controller.run()
    assert result.outcome == "failed"
    assert "not a git repository" in result.reason
    assert executor.executed == []


@pytest.mark.asyncio
async def test_paused_run_waits_for_resume(tmp_path: Path) -> None:
    control = RunControl()
    control.pause()
    controller, executor, _ = _controller(tmp_path, merge_all, control=control)

    async def resume_later() -> None:
        await asyncio.sleep(0.05)
        assert executor.executed == []
        control.resume()

    with patch("autocycle.coordinator.controller.PAUSE_POLL_SECONDS", 0.01):
        result, _ = await asyncio.gather(_run(controller), resume_later())
    assert result.outcome == "success"


# ---------------------------------------------------------------------------
# Post-cycle tests and spec completion
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_failing_tests_queue_debug_task(tmp_path: Path) -> None:
    failing = TestRun(
        command="pytest", summary=TestSummary(passed=3, failed=1), exit_code=1, output="1 failed", duration_seconds=1
    )
    controller, executor, _ = _controller(
        tmp_path, merge_all, tests__command="pytest", budget__max_cycles=2
    )
    with patch("autocycle.coordinator.controller.run_test_command", AsyncMock(return_value=failing)):
        result = await _run(controller)

    assert result.outcome == "limit_reached"
    assert result.tests_failed == 1
    assert executor.executed == ["run-1-cycle-1-task-1", "run-2-debug-1", "run-2-cycle-2-task-1"]


@pytest.mark.asyncio
async def test_passing_tests_allow_success(tmp_path: Path) -> None:
    passing = TestRun(
        command="pytest", summary=TestSummary(passed=5, failed=0), exit_code=0, output="5 passed", duration_seconds=1
    )
    controller, _, _ = _controller(tmp_path, merge_all, tests__command="pytest")
    with patch("autocycle.coordinator.controller.run_test_command", AsyncMock(return_value=passing)):
        result = await _run(controller)
    assert result.outcome == "success"
    assert result.tests_passed == 5


@pytest.mark.asyncio
async def test_checked_boxes_in_repo_spec_drive_completion(tmp_path: Path) -> None:
    (tmp_path / "SPEC.md").write_text("- [x] one\n- [x] two\n- [x] three\n- [ ] four\n", encoding="utf-8")
    controller, _, _ = _controller(
        tmp_path, merge_all, run__spec_file="SPEC.md", run__min_spec_completion_pct=60.0
    )
    result = await _run(controller)
    assert result.outcome == "success"
    assert result.spec_completion_pct == 75.0


# ---------------------------------------------------------------------------
# load_planner
# ---------------------------------------------------------------------------


def test_load_planner_requires_spec(tmp_path: Path) -> None:
    config = _config(tmp_path)
    with pytest.raises(ConfigError, match="no spec file"):
        load_planner(config)
    with pytest.raises(ConfigError, match="not found"):
        load_planner(config, "missing.md")


def test_load_planner_resolves_against_working_dir(tmp_path: Path) -> None:
    (tmp_path / "SPEC.md").write_text(SPEC, encoding="utf-8")
    config = _config(tmp_path, run__spec_file="SPEC.md")
    planner = load_planner(config)
    assert planner.remaining == 3


# ---------------------------------------------------------------------------
# Dispatch within a cycle
# ---------------------------------------------------------------------------


class TrackingExecutor(FakeExecutor):
    """Records how many tasks are in flight at once."""

    def __init__(self, decide: Decision, *, work_seconds: float = 0.05) -> None:
        super().__init__(decide)
        self.work_seconds = work_seconds
        self.in_flight = 0
        self.peak = 0

    async def execute(self, task: Task, *, cycle_title: str = "", deadline: float | None = None) -> Task:
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(self.work_seconds)
            return await super().execute(task, cycle_title=cycle_title, deadline=deadline)
        finally:
            self.in_flight -= 1


def _wide_planner(count: int, group: str = "main") -> SpecPlanner:
    tasks = [
        PlannedTask(task_id=f"task-{i}", title=f"Part {i}", description="build it", parallel_group=group)
        for i in range(1, count + 1)
    ]
    return SpecPlanner(ParsedSpec(title="Wide", overview="", cycles=[PlannedCycle(1, "Wide", "", tasks)]))


@pytest.mark.asyncio
async def test_tasks_sharing_a_group_run_concurrently(tmp_path: Path) -> None:
    executor = TrackingExecutor(merge_all)
    controller, _, _ = _controller(
        tmp_path, merge_all, planner=_wide_planner(3), executor=executor, budget__max_parallel_tasks=3
    )
    result = await _run(controller)
    assert executor.peak == 3
    assert sorted(executor.executed) == ["run-1-task-1", "run-1-task-2", "run-1-task-3"]
    assert result.merged_count == 3


@pytest.mark.asyncio
async def test_parallelism_capped_by_max_parallel_tasks(tmp_path: Path) -> None:
    executor = TrackingExecutor(merge_all)
    controller, _, _ = _controller(
        tmp_path, merge_all, planner=_wide_planner(5), executor=executor, budget__max_parallel_tasks=2
    )
    await _run(controller)
    assert executor.peak == 2
    assert len(executor.executed) == 5


@pytest.mark.asyncio
async def test_budget_spent_mid_cycle_stops_further_tasks(tmp_path: Path) -> None:
    def costly(task: Task) -> tuple[str, float]:
        return "blocked", 0.60

    controller, executor, bus = _controller(
        tmp_path,
        costly,
        planner=_wide_planner(3),
        budget__max_parallel_tasks=1,
        budget__max_cost_usd=1.0,
    )
    result = await _run(controller)

    assert executor.executed == ["run-1-task-1", "run-1-task-2"]
    skipped = result.cycles[0].tasks[2]
    assert skipped.status == "blocked"
    assert skipped.reason == "limit_reached: cost limit reached ($1.20 >= $1.00)"
    assert bus.of_type(TASK_BLOCKED)[-1].task_id == "run-1-task-3"
    assert result.outcome == "limit_reached"
    assert result.reason.startswith("cost limit")


@pytest.mark.asyncio
async def test_stop_during_post_cycle_tests_returns_promptly(tmp_path: Path) -> None:
    control = RunControl()

    async def slow_tests(*args: object, **kwargs: object) -> TestRun:
        await asyncio.sleep(30)
        raise AssertionError("post-cycle tests should have been cancelled")

    controller, _, _ = _controller(tmp_path, merge_all, control=control, tests__command="pytest")
    asyncio.get_running_loop().call_later(0.05, control.request_stop, "operator stop")
    with patch("autocycle.coordinator.controller.run_test_command", slow_tests):
        result = await asyncio.wait_for(_run(controller), timeout=5)

    assert result.outcome == "blocked"
    assert result.reason == "operator stop"
    assert result.cycles[0].error == "operator stop"

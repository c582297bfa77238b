"""Cycle/run controller: the outer loop of an autonomous run.

Each cycle takes the next planned cycle, runs its tasks (one scheduler
factory per task, at most ``max_parallel_tasks`` at once), runs the project tests on the base line,
estimates spec completion and decides whether the run is done.  Only a
budget limit, a stop or shutdown request, success, or an exhausted plan
end a run; a cycle whose tasks all blocked does not.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from pathlib import Path

from autocycle.config.loader import budget_from_config
from autocycle.config.schema import AutocycleYamlConfig
from autocycle.coordinator.budget import RunLedger
from autocycle.coordinator.control import RunControl
from autocycle.coordinator.event_bus import (
    CYCLE_COMPLETED,
    CYCLE_STARTED,
    RUN_COMPLETED,
    TASK_BLOCKED,
    EventBus,
)
from autocycle.coordinator.prompts import build_debug_task_description, spec_overview
from autocycle.coordinator.recorder import RunRecorder
from autocycle.coordinator.review import ReviewGate
from autocycle.coordinator.scheduler import run_settled
from autocycle.coordinator.task_executor import TaskExecutor
from autocycle.errors import BudgetExhaustedError, ConfigError, RunAbortedError
from autocycle.grading import grade_run
from autocycle.logger import bind_run_context
from autocycle.monitor.anomaly import AnomalyMonitor
from autocycle.planning.planner import SpecPlanner
from autocycle.planning.spec_parser import PlannedCycle, PlannedTask, spec_completion
from autocycle.protocol.models import CycleRecord, RunOutcome, RunResult, Task, run_layout, utc_now_iso
from autocycle.session.file_tracker import FileAccessTracker
from autocycle.session.registry import SessionRegistry, SystemSessionSlots
from autocycle.verification.test_runner import TestRun, run_test_command
from autocycle.workspace.worktree import WorktreeProvider, is_git_repo

logger = logging.getLogger(__name__)

PAUSE_POLL_SECONDS = 1.0


class RunController:
    """Drives cycles until the run reaches an outcome.

    Collaborators are built from the configuration unless injected.
    """

    def __init__(
        self,
        config: AutocycleYamlConfig,
        planner: SpecPlanner,
        *,
        run_id: str | None = None,
        control: RunControl | None = None,
        event_bus: EventBus | None = None,
        provider: WorktreeProvider | None = None,
        registry: SessionRegistry | None = None,
        monitor: AnomalyMonitor | None = None,
        recorder: RunRecorder | None = None,
        executor: TaskExecutor | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.planner = planner
        self.run_id = run_id or f"run-{uuid.uuid4().hex[:8]}"
        self.repo_root = Path(config.run.working_dir).resolve()
        run_dir = Path(config.run.run_dir)
        self.run_dir = run_dir if run_dir.is_absolute() else self.repo_root / run_dir
        layout = run_layout(self.run_dir)
        self._clock = clock
        self._poll = max(0.01, config.run.poll_interval_ms / 1000.0)

        self.budget = budget_from_config(config)
        self.ledger = RunLedger(self.budget, clock=clock)
        self.control = control or RunControl(layout["control"])
        self.bus = event_bus or EventBus(layout["events"])
        self.recorder = recorder or RunRecorder(self.run_dir)
        self.provider = provider or WorktreeProvider(
            worktrees_root=config.workspace.worktrees_root or None,
            branch_prefix=config.workspace.branch_prefix,
        )
        self.monitor = monitor or AnomalyMonitor(
            self.bus,
            hang_threshold_seconds=config.monitor.hang_threshold_seconds,
            check_interval_seconds=config.monitor.hang_check_interval_seconds,
            history_size=config.monitor.history_size,
            recent_window=config.monitor.recent_window,
            repeat_threshold=config.monitor.repeat_threshold,
        )
        if registry is None:
            slots = None
            if config.sessions.system_slots_file:
                slots = SystemSessionSlots(
                    config.sessions.system_slots_file, config.sessions.system_max_sessions
                )
            registry = SessionRegistry(
                max_concurrent=config.sessions.max_concurrent_sessions,
                total_token_budget=config.sessions.total_token_budget,
                finished_ttl_seconds=config.sessions.finished_ttl_seconds,
                file_tracker=FileAccessTracker(),
                system_slots=slots,
            )
        self.registry = registry
        self.executor = executor or TaskExecutor(
            config,
            repo_root=self.repo_root,
            provider=self.provider,
            registry=self.registry,
            review_gate=ReviewGate(
                config.review,
                config.agent,
                registry=self.registry,
                event_bus=self.bus,
                control=self.control,
                poll_interval=config.run.poll_interval_ms / 1000.0,
            ),
            control=self.control,
            event_bus=self.bus,
            monitor=self.monitor,
            recorder=self.recorder,
            remaining_time=self.ledger.remaining_seconds,
            budget_check=self.ledger.spend_limit_reason,
            spec_overview=spec_overview(planner.spec.overview),
            clock=clock,
        )

        self.cycles: list[CycleRecord] = []
        self.tasks: list[Task] = []
        self.errors: list[str] = []
        self._phase = "idle"
        self._last_tests: TestRun | None = None
        self._started_at = utc_now_iso()

    # -- public API ----------------------------------------------------

    async def run(self) -> RunResult:
        bind_run_context(run_id=self.run_id)
        logger.info("run %s starting in %s", self.run_id, self.repo_root)
        self.ledger.started_at = self._clock()
        self._write_state("starting")
        try:
            self._check_workspace()
            outcome, reason = await self._run_cycles()
        except Exception as exc:
            logger.exception("run %s failed", self.run_id)
            self.errors.append(str(exc))
            outcome, reason = "failed", f"run error: {exc}"
        finally:
            self.monitor.close()
        await self._cleanup_blocked()
        return self._finish(outcome, reason)

    # -- cycle loop ----------------------------------------------------

    def _check_workspace(self) -> None:
        if not self.repo_root.is_dir():
            raise ConfigError(f"working directory does not exist: {self.repo_root}")
        if not is_git_repo(self.repo_root):
            raise ConfigError(f"working directory is not a git repository: {self.repo_root}")
        if self.executor.base_branch is None:
            self.executor.base_branch = self.provider.main_branch(self.repo_root)
        logger.info("base branch: %s", self.executor.base_branch)

    async def _run_cycles(self) -> tuple[RunOutcome, str]:
        number = 0
        while True:
            self.control.poll_file()
            if self.control.stop_requested or self.control.shutting_down:
                return "blocked", self.control.abort_reason
            if self.control.paused:
                self._write_state("paused")
                await asyncio.sleep(PAUSE_POLL_SECONDS)
                continue
            limit = self.ledger.limit_reason()
            if limit is not None:
                return "limit_reached", limit

            number += 1
            planned = self.planner.next_cycle(number)
            if planned is None:
                if self.ledger.tasks_merged > 0:
                    return "partial", (
                        f"plan exhausted after {number - 1} cycle(s); {self.ledger.tasks_merged} task(s) merged"
                    )
                return "failed", "plan exhausted without merging any task"

            cycle = await self._run_cycle(planned)
            self.ledger.cycles_completed += 1
            if self._cycle_succeeded(cycle):
                return "success", (
                    f"cycle {cycle.number} merged {cycle.merged_count} task(s), "
                    f"spec {cycle.spec_completion_pct:.0f}% complete, tests passing"
                )

    async def _run_cycle(self, planned: PlannedCycle) -> CycleRecord:
        cycle = CycleRecord(number=planned.number, title=planned.title)
        cycle.tasks = [
            Task(
                task_id=p.task_id,
                title=p.title,
                description=p.description,
                acceptance_criteria=list(p.acceptance_criteria),
                parallel_group=p.parallel_group,
                cycle_number=planned.number,
            )
            for p in planned.tasks
        ]
        self.cycles.append(cycle)
        self.tasks.extend(cycle.tasks)
        bind_run_context(cycle=cycle.number)
        self.bus.publish(
            CYCLE_STARTED,
            message=planned.title,
            cycle=cycle.number,
            tasks=[t.task_id for t in cycle.tasks],
        )
        self._write_state("running", current_cycle=cycle.number)

        started = self._clock()
        deadline = None
        if self.config.budget.cycle_timeout_seconds:
            deadline = started + self.config.budget.cycle_timeout_seconds
        try:
            await self._execute_tasks(cycle.tasks, planned.title, deadline)
            self._write_state("testing", current_cycle=cycle.number)
            tests = await self._post_cycle_tests()
            if tests is not None:
                cycle.tests_passed = tests.passed
                cycle.tests_failed = tests.failed
            cycle.spec_completion_pct = self._estimate_completion()
        except asyncio.CancelledError:
            raise
        except RunAbortedError as exc:
            logger.info("cycle %d interrupted: %s", cycle.number, exc)
            cycle.error = str(exc)
        except Exception as exc:
            logger.exception("cycle %d failed", cycle.number)
            cycle.error = str(exc)
            self.errors.append(f"cycle {cycle.number}: {exc}")

        cycle.cost_usd = sum(t.cost_usd for t in cycle.tasks)
        cycle.duration_seconds = self._clock() - started
        cycle.completed_at = utc_now_iso()
        self.ledger.tasks_merged += cycle.merged_count
        self.ledger.tasks_blocked += cycle.blocked_count
        self.registry.prune_finished()

        self.recorder.record_cycle(cycle)
        self.bus.publish(
            CYCLE_COMPLETED,
            message=f"{cycle.merged_count} merged, {cycle.blocked_count} blocked",
            cycle=cycle.number,
            merged=cycle.merged_count,
            blocked=cycle.blocked_count,
            cost_usd=round(cycle.cost_usd, 6),
            duration_seconds=round(cycle.duration_seconds, 1),
            spec_completion_pct=round(cycle.spec_completion_pct, 1),
            tests_passed=cycle.tests_passed,
            tests_failed=cycle.tests_failed,
            error=cycle.error,
        )
        logger.info(
            "cycle %d done: %d merged, %d blocked, $%.4f, %.0f%% complete",
            cycle.number,
            cycle.merged_count,
            cycle.blocked_count,
            cycle.cost_usd,
            cycle.spec_completion_pct,
        )
        self._queue_debug_task(cycle)
        self._write_state("running", current_cycle=cycle.number)
        return cycle

    async def _execute_tasks(self, tasks: list[Task], cycle_title: str, deadline: float | None) -> None:
        groups: dict[str, int] = {}
        for task in tasks:
            groups[task.parallel_group] = groups.get(task.parallel_group, 0) + 1
        logger.info("dispatching %d task(s) in %d group(s): %s", len(tasks), len(groups), groups)

        if len(tasks) == 1:
            await self._run_task(tasks[0], cycle_title, deadline)
            return

        def task_runner(task: Task) -> Callable[[], Awaitable[Task]]:
            return lambda: self._run_task(task, cycle_title, deadline)

        settled = await run_settled(
            [task_runner(task) for task in tasks],
            self.budget.max_parallel_tasks,
        )
        for task, item in zip(tasks, settled):
            if not item.ok:
                self.errors.append(f"task {task.task_id} failed: {item.error}")

    async def _run_task(self, task: Task, cycle_title: str, deadline: float | None) -> Task:
        """Execute *task* unless the budget is spent; its cost counts as soon as it settles."""
        limit = self.ledger.spend_limit_reason()
        if limit is not None:
            self._skip_task(task, str(BudgetExhaustedError(limit)))
            return task
        try:
            return await self.executor.execute(task, cycle_title=cycle_title, deadline=deadline)
        finally:
            self.ledger.add_cost(task.cost_usd)

    def _skip_task(self, task: Task, reason: str) -> None:
        logger.warning("task %s not started: %s", task.task_id, reason)
        task.transition("blocked", reason)
        self.recorder.record_task(task)
        self.bus.publish(
            TASK_BLOCKED,
            message=reason,
            task_id=task.task_id,
            cycle=task.cycle_number,
            reason=reason,
        )

    async def _post_cycle_tests(self) -> TestRun | None:
        command = self.config.tests.command
        if not command:
            self._last_tests = None
            return None
        run = await self.control.abortable(
            run_test_command(
                command,
                str(self.repo_root),
                timeout=self.config.tests.timeout_seconds,
                max_output_chars=self.config.tests.max_output_chars,
            ),
            poll_interval=self._poll,
        )
        self._last_tests = run
        logger.info("post-cycle tests: %d passed, %d failed", run.passed, run.failed)
        return run

    def _estimate_completion(self) -> float:
        spec_file = self.config.run.spec_file
        if spec_file:
            path = Path(spec_file)
            candidate = path if path.is_absolute() else self.repo_root / path
            if candidate.is_file() and self.repo_root in candidate.resolve().parents:
                pct = spec_completion(candidate.read_text(encoding="utf-8", errors="replace"))
                if pct > 0:
                    return pct

        planned_criteria = self.planner.spec.total_acceptance_criteria
        merged = [t for t in self.tasks if t.status == "merged"]
        if planned_criteria > 0:
            done = sum(len(t.acceptance_criteria) for t in merged)
            return min(100.0, 100.0 * done / planned_criteria)
        planned_tasks = self.planner.total_planned_tasks
        if planned_tasks > 0:
            return min(100.0, 100.0 * len(merged) / planned_tasks)
        return 0.0

    def _cycle_succeeded(self, cycle: CycleRecord) -> bool:
        if cycle.merged_count == 0:
            return False
        if cycle.spec_completion_pct < self.config.run.min_spec_completion_pct:
            return False
        return self._last_tests is None or self._last_tests.all_passed

    def _queue_debug_task(self, cycle: CycleRecord) -> None:
        tests = self._last_tests
        if not self.config.run.create_debug_tasks or tests is None or tests.all_passed:
            return
        if tests.failed == 0 and tests.passed == 0 and tests.error is None:
            return
        self.planner.add_followup(
            PlannedTask(
                task_id=f"debug-{cycle.number}",
                title=f"Fix failing tests after cycle {cycle.number}",
                description=build_debug_task_description(tests.failed, tests.output),
                parallel_group="debug",
            )
        )

    # -- wrap-up -------------------------------------------------------

    async def _cleanup_blocked(self) -> None:
        if not self.config.run.cleanup_blocked_worktrees:
            return
        for task in self.tasks:
            if task.status != "blocked":
                continue
            handle = self.provider.active_handle(task.task_id)
            if handle is None:
                continue
            try:
                await asyncio.to_thread(self.provider.remove, handle.path)
            except OSError as exc:
                logger.warning("could not remove worktree for %s: %s", task.task_id, exc)

    def _finish(self, outcome: RunOutcome, reason: str) -> RunResult:
        last_tests = self._last_tests
        result = RunResult(
            run_id=self.run_id,
            outcome=outcome,
            reason=reason,
            cycles=self.cycles,
            total_cost_usd=self.ledger.cost_usd,
            duration_seconds=self.ledger.elapsed_seconds(),
            spec_completion_pct=self.cycles[-1].spec_completion_pct if self.cycles else 0.0,
            tests_passed=last_tests.passed if last_tests else 0,
            tests_failed=last_tests.failed if last_tests else 0,
            budget=self.budget,
            started_at=self._started_at,
            finished_at=utc_now_iso(),
        )
        result.grade = grade_run(result)
        self.recorder.record_result(result)
        self._write_state("finished")
        self.bus.publish(RUN_COMPLETED, message=f"{outcome}: {reason}", **result.summary())
        logger.info("run %s finished: %s (%s)", self.run_id, outcome, reason)
        return result

    def _write_state(self, phase: str, *, current_cycle: int | None = None) -> None:
        self._phase = phase
        self.recorder.write_state(
            run_id=self.run_id,
            phase=phase,
            tasks=self.tasks,
            budget=self.ledger.as_dict(),
            sessions=self.registry.snapshot(),
            current_cycle=current_cycle,
            errors=self.errors,
        )


def load_planner(config: AutocycleYamlConfig, spec_path: str | Path | None = None) -> SpecPlanner:
    """Build the planner from *spec_path* or ``run.spec_file``."""
    raw = spec_path or config.run.spec_file
    if not raw:
        raise ConfigError("no spec file given (run.spec_file or --spec)")
    path = Path(raw)
    if not path.is_absolute() and not path.exists():
        path = Path(config.run.working_dir) / path
    if not path.is_file():
        raise ConfigError(f"spec file not found: {path}")
    return SpecPlanner.from_file(path, continue_after_plan=config.run.continue_after_plan)

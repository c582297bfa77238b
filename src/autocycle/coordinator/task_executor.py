"""End-to-end execution of a single task.

pending -> isolating -> running -> awaiting_review -> testing -> reviewing
-> merged | blocked | discarded

Every failure along the way lands the task in ``blocked`` with a readable
reason; nothing here raises into the scheduler except cancellation.
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Callable

from autocycle.config.schema import AutocycleYamlConfig
from autocycle.coordinator.control import RunControl
from autocycle.coordinator.event_bus import TASK_BLOCKED, TASK_MERGED, TASK_TRANSITION, EventBus
from autocycle.coordinator.prompts import build_task_prompt, list_workspace_files
from autocycle.coordinator.recorder import RunRecorder
from autocycle.coordinator.review import ReviewGate
from autocycle.errors import (
    AutocycleError,
    BudgetExhaustedError,
    MergeConflictError,
    ReviewUnavailableError,
    RunAbortedError,
    SpawnFailedError,
    TaskTimeoutError,
    TrivialRunError,
)
from autocycle.monitor.anomaly import AnomalyMonitor
from autocycle.protocol.models import ReviewDecision, Task, TaskStatus
from autocycle.session.agent_session import AgentSession, SessionOptions
from autocycle.session.registry import SessionRegistry
from autocycle.verification.test_runner import TestRun, run_test_command
from autocycle.workspace.worktree import IsolationHandle, WorktreeProvider

logger = logging.getLogger(__name__)

STDERR_IN_REASON_CHARS = 300


class TaskExecutor:
    def __init__(
        self,
        config: AutocycleYamlConfig,
        *,
        repo_root: str | Path,
        provider: WorktreeProvider,
        registry: SessionRegistry,
        review_gate: ReviewGate,
        control: RunControl,
        event_bus: EventBus | None = None,
        monitor: AnomalyMonitor | None = None,
        recorder: RunRecorder | None = None,
        remaining_time: Callable[[], float] | None = None,
        budget_check: Callable[[], str | None] | None = None,
        base_branch: str | None = None,
        spec_overview: str = "",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.repo_root = Path(repo_root).resolve()
        self.provider = provider
        self.registry = registry
        self.review_gate = review_gate
        self.control = control
        self._bus = event_bus
        self._monitor = monitor
        self._recorder = recorder
        self._remaining_time = remaining_time or (lambda: config.budget.max_duration_seconds)
        self._budget_check = budget_check
        self.base_branch = base_branch or config.workspace.base_branch or None
        self.spec_overview = spec_overview
        self._clock = clock
        self._poll = max(0.01, config.run.poll_interval_ms / 1000.0)

    # -- public API ----------------------------------------------------

    async def execute(self, task: Task, *, cycle_title: str = "", deadline: float | None = None) -> Task:
        """Run *task* to a terminal state and return it."""
        started = self._clock()
        counts_time = True
        try:
            await self._run(task, cycle_title or task.title, deadline)
        except SpawnFailedError as exc:
            counts_time = False
            self._block(task, f"spawn failed: {exc}")
        except AutocycleError as exc:
            self._block(task, str(exc))
        except asyncio.CancelledError:
            self._block(task, "cancelled")
            raise
        except Exception as exc:
            logger.exception("task %s failed unexpectedly", task.task_id)
            self._block(task, f"internal error: {exc}")
        finally:
            task.duration_seconds = self._clock() - started if counts_time else 0.0
            self._record(task)
        return task

    async def abandon(self, task: Task, reason: str = "abandoned") -> None:
        """Drop a task's worktree; non-terminal tasks become ``discarded``."""
        handle = self.provider.active_handle(task.task_id)
        if handle is not None:
            await asyncio.to_thread(self.provider.remove, handle.path)
        if not task.terminal:
            self._move(task, "discarded", reason)
        self._record(task)

    def task_timeout(self, deadline: float | None = None) -> float:
        """Seconds a task may run: the remaining run time, capped by *deadline*."""
        timeout = max(0.0, self._remaining_time())
        if deadline is not None:
            timeout = min(timeout, max(0.0, deadline - self._clock()))
        return timeout

    # -- pipeline ------------------------------------------------------

    async def _run(self, task: Task, cycle_title: str, deadline: float | None) -> None:
        self._check_abort()
        self._check_budget()
        self._move(task, "isolating")
        handle = await asyncio.to_thread(
            self.provider.create, self.repo_root, task.task_id, self.base_branch
        )
        task.worktree_path = str(handle.path)
        task.branch_name = handle.branch_name

        files = await asyncio.to_thread(list_workspace_files, handle.path)
        prompt = build_task_prompt(
            task,
            cycle_number=task.cycle_number,
            cycle_title=cycle_title,
            files=files,
            overview=self.spec_overview,
            test_command=self.config.tests.command,
        )

        self._check_budget()
        self._move(task, "running")
        session = await self._spawn(task, prompt, handle.path)
        try:
            await self._await_session(task, session, self.task_timeout(deadline))
        finally:
            if session.running:
                await session.terminate("task ended")
            task.cost_usd += session.cost_usd
            task.session_id = session.session_id or session.session_key

        min_duration = self.config.sessions.min_work_duration_seconds
        if session.elapsed_seconds < min_duration:
            raise TrivialRunError(session.elapsed_seconds, min_duration)
        if session.exit_code != 0:
            detail = session.stderr_tail.strip()[-STDERR_IN_REASON_CHARS:]
            raise AutocycleError(
                f"agent exited with code {session.exit_code}" + (f": {detail}" if detail else "")
            )
        if not session.clean_completion:
            raise AutocycleError("agent exited without a result event")

        if self.config.workspace.auto_commit:
            await asyncio.to_thread(
                self.provider.commit_pending, handle, f"{task.title} ({task.task_id})"
            )

        tests = await self._run_tests(task, handle)
        tests_passed = tests is None or tests.all_passed
        diff = await asyncio.to_thread(
            self.provider.diff, handle, max_chars=self.config.review.max_diff_chars
        )

        self._move(task, "reviewing")
        decision = await self._review(task, handle, diff, tests_passed, tests, deadline)
        await self._route(task, handle, decision, tests_passed)

    async def _spawn(self, task: Task, prompt: str, workdir: Path) -> AgentSession:
        agent = self.config.agent
        options = SessionOptions(
            command=list(agent.command),
            model=agent.model,
            permission_mode=agent.permission_mode,
            additional_dirs=list(agent.additional_dirs),
            max_turns=agent.max_turns,
            allowed_tools=list(agent.allowed_tools),
            disallowed_tools=list(agent.disallowed_tools),
            system_prompt=agent.system_prompt,
            env=dict(agent.env),
            task_id=task.task_id,
            channel_capacity=self.config.sessions.channel_capacity,
            compaction_drop_ratio=self.config.sessions.compaction_drop_ratio,
        )

        def on_exit(exit_code: int | None) -> None:
            if exit_code == 0:
                self._move(task, "awaiting_review", "agent exited cleanly")

        return await AgentSession.spawn(
            prompt,
            workdir,
            options,
            registry=self.registry,
            event_bus=self._bus,
            monitor=self._monitor,
            on_exit=on_exit,
        )

    async def _await_session(self, task: Task, session: AgentSession, timeout: float) -> None:
        started = self._clock()
        while session.running:
            self.control.poll_file()
            if self.control.should_abort:
                await session.terminate(self.control.abort_reason)
                raise RunAbortedError(self.control.abort_reason)
            # Paused runs do not burn the task's time allowance.
            if not self.control.paused and self._clock() - started >= timeout:
                await session.terminate("timeout")
                raise TaskTimeoutError(timeout, task_id=task.task_id)
            await asyncio.sleep(self._poll)

    async def _run_tests(self, task: Task, handle: IsolationHandle) -> TestRun | None:
        command = self.config.tests.command
        if not command:
            return None
        self._move(task, "testing")
        run = await self.control.abortable(
            run_test_command(
                command,
                str(handle.path),
                timeout=self.config.tests.timeout_seconds,
                max_output_chars=self.config.tests.max_output_chars,
            ),
            poll_interval=self._poll,
        )
        task.tests_passed = run.passed
        task.tests_failed = run.failed
        logger.info(
            "task %s tests: %d passed, %d failed%s",
            task.task_id,
            run.passed,
            run.failed,
            " (timed out)" if run.timed_out else "",
        )
        return run

    async def _review(
        self,
        task: Task,
        handle: IsolationHandle,
        diff: str,
        tests_passed: bool,
        tests: TestRun | None,
        deadline: float | None,
    ) -> ReviewDecision | ReviewUnavailableError:
        self._check_budget()
        review_deadline = self._clock() + self.task_timeout(deadline)
        try:
            decision = await self.review_gate.review(
                handle.path,
                f"{task.title}\n\n{task.description}",
                diff,
                tests_passed,
                task_id=task.task_id,
                tests_output=tests.output if tests is not None else "",
                deadline=review_deadline,
            )
        except ReviewUnavailableError as exc:
            self._check_abort()
            logger.warning("review unavailable for %s: %s", task.task_id, exc)
            return exc
        except RunAbortedError:
            raise
        except (AutocycleError, OSError) as exc:
            self._check_abort()
            logger.warning("review failed for %s: %s", task.task_id, exc)
            return ReviewUnavailableError(f"review failed: {exc}")
        task.review = decision
        task.cost_usd += decision.cost_usd or 0.0
        return decision

    async def _route(
        self,
        task: Task,
        handle: IsolationHandle,
        decision: ReviewDecision | ReviewUnavailableError,
        tests_passed: bool,
    ) -> None:
        if isinstance(decision, ReviewUnavailableError):
            if not tests_passed:
                raise ReviewUnavailableError(f"{decision}; tests did not pass")
            await self._merge(task, handle, f"{decision}; merged on passing tests")
            return
        if decision.decision == "approve":
            await self._merge(task, handle, f"approved: {decision.justification[:200]}")
            return
        self._block(task, f"review {decision.decision}: {decision.justification[:300]}")

    async def _merge(self, task: Task, handle: IsolationHandle, reason: str) -> None:
        outcome = await asyncio.to_thread(self.provider.merge, handle)
        if not outcome.merged:
            raise MergeConflictError(outcome.error or "merge failed", branch=handle.branch_name)
        if outcome.noop:
            reason = f"{reason} (no-op: branch has no new commits)"
        self._move(task, "merged", reason)
        await asyncio.to_thread(self.provider.remove, handle.path)
        if self._bus is not None:
            self._bus.publish(
                TASK_MERGED,
                message=task.title,
                task_id=task.task_id,
                cycle=task.cycle_number,
                branch=handle.branch_name,
                commit=outcome.commit,
                noop=outcome.noop,
                cost_usd=round(task.cost_usd, 6),
            )

    # -- helpers -------------------------------------------------------

    def _check_abort(self) -> None:
        if self.control.should_abort:
            raise RunAbortedError(self.control.abort_reason)

    def _check_budget(self) -> None:
        if self._budget_check is None:
            return
        limit = self._budget_check()
        if limit is not None:
            raise BudgetExhaustedError(limit)

    def _move(self, task: Task, status: TaskStatus, reason: str = "") -> None:
        previous = task.status
        if not task.transition(status, reason):
            return
        if self._bus is not None:
            self._bus.publish(
                TASK_TRANSITION,
                message=f"{previous} -> {status}",
                task_id=task.task_id,
                cycle=task.cycle_number,
                from_state=previous,
                to_state=status,
                reason=reason,
            )
        self._record(task)

    def _block(self, task: Task, reason: str) -> None:
        if task.terminal:
            return
        logger.warning("task %s blocked: %s", task.task_id, reason)
        self._move(task, "blocked", reason)
        if self._bus is not None:
            self._bus.publish(
                TASK_BLOCKED,
                message=reason,
                task_id=task.task_id,
                cycle=task.cycle_number,
                reason=reason,
            )

    def _record(self, task: Task) -> None:
        if self._recorder is not None:
            self._recorder.record_task(task)

"""Serves planned cycles to the run controller, one at a time."""

from __future__ import annotations

import logging
from pathlib import Path

from autocycle.planning.spec_parser import ParsedSpec, PlannedCycle, PlannedTask, parse_spec

logger = logging.getLogger(__name__)

CONTINUE_TITLE = "Continue implementation"


class SpecPlanner:
    """Yields the cycles of a parsed spec in order.

    Follow-up tasks (for example a debug task after failing post-cycle
    tests) are queued with :meth:`add_followup` and prepended to whatever
    cycle is served next.  Once the spec's cycles are used up, pending
    follow-ups still get a cycle of their own; with ``continue_after_plan``
    the planner keeps issuing a generic continuation cycle.
    """

    def __init__(self, spec: ParsedSpec, *, continue_after_plan: bool = False) -> None:
        self.spec = spec
        self.continue_after_plan = continue_after_plan
        self._index = 0
        self._followups: list[PlannedTask] = []

    @classmethod
    def from_file(cls, path: str | Path, *, continue_after_plan: bool = False) -> SpecPlanner:
        text = Path(path).read_text(encoding="utf-8")
        return cls(parse_spec(text), continue_after_plan=continue_after_plan)

    @property
    def remaining(self) -> int:
        return max(0, len(self.spec.cycles) - self._index)

    @property
    def total_planned_tasks(self) -> int:
        return sum(len(c.tasks) for c in self.spec.cycles)

    def add_followup(self, task: PlannedTask) -> None:
        logger.info("queued follow-up task %s", task.task_id)
        self._followups.append(task)

    def next_cycle(self, number: int) -> PlannedCycle | None:
        """The cycle to run as run-cycle *number*, or None when the plan is exhausted."""
        followups, self._followups = self._followups, []

        if self._index < len(self.spec.cycles):
            planned = self.spec.cycles[self._index]
            self._index += 1
            tasks = [_renumber(t, number) for t in followups] + [
                _renumber(t, number) for t in planned.tasks
            ]
            return PlannedCycle(
                number=number,
                title=planned.title,
                description=planned.description,
                tasks=tasks,
            )

        if followups:
            return PlannedCycle(
                number=number,
                title="Follow-up fixes",
                description="Fix issues found after the previous cycle.",
                tasks=[_renumber(t, number) for t in followups],
            )

        if self.continue_after_plan:
            description = (
                "All planned cycles have been attempted. Review the project against the "
                "spec, finish any unchecked acceptance criteria and fix remaining issues."
            )
            return PlannedCycle(
                number=number,
                title=CONTINUE_TITLE,
                description=description,
                tasks=[
                    PlannedTask(
                        task_id=f"run-{number}-continue",
                        title=CONTINUE_TITLE,
                        description=f"{description}\n\n{self.spec.overview}".strip(),
                    )
                ],
            )
        return None


def _renumber(task: PlannedTask, number: int) -> PlannedTask:
    """Copy *task* with an id unique to run-cycle *number*."""
    return PlannedTask(
        task_id=f"run-{number}-{task.task_id}",
        title=task.title,
        description=task.description,
        acceptance_criteria=list(task.acceptance_criteria),
        parallel_group=task.parallel_group,
    )

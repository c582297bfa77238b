"""Run-state types shared by the coordinator, recorder and CLI."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

logger = logging.getLogger(__name__)

TaskStatus = Literal[
    "pending",
    "isolating",
    "running",
    "awaiting_review",
    "testing",
    "reviewing",
    "merged",
    "discarded",
    "blocked",
]
ReviewVerdict = Literal["approve", "needs_changes", "reject"]
RunOutcome = Literal["success", "partial", "limit_reached", "failed", "blocked"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"merged", "discarded", "blocked"})

TRANSITIONS: dict[str, set[str]] = {
    "pending": {"isolating", "blocked", "discarded"},
    "isolating": {"running", "blocked", "discarded"},
    "running": {"awaiting_review", "blocked", "discarded"},
    "awaiting_review": {"testing", "reviewing", "blocked", "discarded"},
    "testing": {"reviewing", "blocked", "discarded"},
    "reviewing": {"merged", "blocked", "discarded"},
    "merged": set(),
    "discarded": set(),
    "blocked": set(),
}


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def run_layout(run_dir: Path) -> dict[str, Path]:
    """Return the canonical file locations inside a run directory."""
    return {
        "root": run_dir,
        "state": run_dir / "state.json",
        "events": run_dir / "events.jsonl",
        "tasks": run_dir / "tasks",
        "cycles": run_dir / "cycles",
        "control": run_dir / "control.json",
        "result": run_dir / "result.json",
    }


@dataclass(slots=True, frozen=True)
class ReviewDecision:
    """Outcome of the review gate for one task. Immutable once built."""

    decision: ReviewVerdict
    justification: str
    confidence: float = 0.5
    concerns: tuple[str, ...] = ()
    suggestions: tuple[str, ...] = ()
    cost_usd: float | None = None
    source: Literal["agent", "heuristic"] = "agent"


@dataclass(slots=True)
class TaskTransition:
    from_state: str
    to_state: str
    reason: str = ""
    timestamp: str = field(default_factory=utc_now_iso)


@dataclass(slots=True)
class Task:
    task_id: str
    title: str
    description: str
    acceptance_criteria: list[str] = field(default_factory=list)
    parallel_group: str = "main"
    cycle_number: int = 0
    status: TaskStatus = "pending"
    reason: str = ""
    session_id: str | None = None
    cost_usd: float = 0.0
    duration_seconds: float = 0.0
    tests_passed: int = 0
    tests_failed: int = 0
    review: ReviewDecision | None = None
    worktree_path: str | None = None
    branch_name: str | None = None
    transitions: list[TaskTransition] = field(default_factory=list)

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, to_state: TaskStatus, reason: str = "") -> bool:
        """Move to *to_state* if the transition table allows it.

        Invalid transitions are logged and ignored; returns whether the
        status changed.
        """
        current = self.status
        if current == to_state:
            return False
        if to_state not in TRANSITIONS.get(current, set()):
            logger.warning("invalid task transition %s: %s -> %s", self.task_id, current, to_state)
            return False
        self.status = to_state
        if reason:
            self.reason = reason
        self.transitions.append(TaskTransition(from_state=current, to_state=to_state, reason=reason))
        return True


@dataclass(slots=True)
class CycleRecord:
    number: int
    title: str
    tasks: list[Task] = field(default_factory=list)
    cost_usd: float = 0.0
    duration_seconds: float = 0.0
    spec_completion_pct: float = 0.0
    tests_passed: int = 0
    tests_failed: int = 0
    error: str = ""
    started_at: str = field(default_factory=utc_now_iso)
    completed_at: str | None = None

    @property
    def merged_count(self) -> int:
        return sum(1 for t in self.tasks if t.status == "merged")

    @property
    def blocked_count(self) -> int:
        return sum(1 for t in self.tasks if t.status == "blocked")


@dataclass(slots=True, frozen=True)
class RunBudget:
    """Ceilings for a whole run. Read-only while the run is active."""

    max_cycles: int = 10
    max_cost_usd: float = 5.0
    max_duration_seconds: float = 30 * 60
    max_parallel_tasks: int = 2


@dataclass(slots=True)
class RunResult:
    run_id: str
    outcome: RunOutcome
    reason: str
    cycles: list[CycleRecord] = field(default_factory=list)
    total_cost_usd: float = 0.0
    duration_seconds: float = 0.0
    spec_completion_pct: float = 0.0
    tests_passed: int = 0
    tests_failed: int = 0
    budget: RunBudget = field(default_factory=RunBudget)
    grade: dict[str, float] = field(default_factory=dict)
    started_at: str = field(default_factory=utc_now_iso)
    finished_at: str | None = None

    @property
    def merged_count(self) -> int:
        return sum(c.merged_count for c in self.cycles)

    @property
    def blocked_count(self) -> int:
        return sum(c.blocked_count for c in self.cycles)

    def summary(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "outcome": self.outcome,
            "reason": self.reason,
            "cycles": len(self.cycles),
            "merged": self.merged_count,
            "blocked": self.blocked_count,
            "total_cost_usd": round(self.total_cost_usd, 4),
            "duration_seconds": round(self.duration_seconds, 1),
            "spec_completion_pct": round(self.spec_completion_pct, 1),
            "tests_passed": self.tests_passed,
            "tests_failed": self.tests_failed,
            "grade": self.grade,
        }

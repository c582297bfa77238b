"""Run budget accounting."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

from autocycle.protocol.models import RunBudget


@dataclass(slots=True)
class RunLedger:
    """Cumulative spend of one run, checked against a :class:`RunBudget`.

    Counters only grow; cost is added per finished task.
    """

    budget: RunBudget
    clock: Callable[[], float] = time.monotonic
    started_at: float = 0.0
    cost_usd: float = 0.0
    cycles_completed: int = 0
    tasks_merged: int = 0
    tasks_blocked: int = 0

    def __post_init__(self) -> None:
        if not self.started_at:
            self.started_at = self.clock()

    def add_cost(self, cost_usd: float | None) -> None:
        if cost_usd is not None and cost_usd > 0:
            self.cost_usd += cost_usd

    def elapsed_seconds(self) -> float:
        return max(0.0, self.clock() - self.started_at)

    def remaining_seconds(self) -> float:
        return max(0.0, self.budget.max_duration_seconds - self.elapsed_seconds())

    def spend_limit_reason(self) -> str | None:
        """Cost or duration ceiling that forbids starting another session."""
        if self.cost_usd >= self.budget.max_cost_usd:
            return f"cost limit reached (${self.cost_usd:.2f} >= ${self.budget.max_cost_usd:.2f})"
        if self.elapsed_seconds() >= self.budget.max_duration_seconds:
            return f"duration limit reached ({self.elapsed_seconds():.0f}s >= {self.budget.max_duration_seconds:.0f}s)"
        return None

    def limit_reason(self) -> str | None:
        """Which ceiling has been hit, checked as cost, duration, cycles."""
        spent = self.spend_limit_reason()
        if spent is not None:
            return spent
        if self.cycles_completed >= self.budget.max_cycles:
            return f"cycle limit reached ({self.cycles_completed}/{self.budget.max_cycles})"
        return None

    def as_dict(self) -> dict[str, float | int]:
        return {
            "cost_used_usd": round(self.cost_usd, 6),
            "cost_max_usd": self.budget.max_cost_usd,
            "elapsed_seconds": round(self.elapsed_seconds(), 1),
            "max_duration_seconds": self.budget.max_duration_seconds,
            "cycles_completed": self.cycles_completed,
            "max_cycles": self.budget.max_cycles,
            "tasks_merged": self.tasks_merged,
            "tasks_blocked": self.tasks_blocked,
        }

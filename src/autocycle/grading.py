"""Run grading and side-by-side comparison."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from autocycle.protocol.models import RunResult

SPEC_WEIGHT = 0.4
TESTS_WEIGHT = 0.4
COST_WEIGHT = 0.2


def grade_run(result: RunResult) -> dict[str, float]:
    """Score a finished run on spec completion, tests and cost (0-100 each)."""
    spec_score = min(100.0, max(0.0, result.spec_completion_pct))
    total_tests = result.tests_passed + result.tests_failed
    test_score = 100.0 * result.tests_passed / total_tests if total_tests else 0.0
    max_cost = result.budget.max_cost_usd
    cost_score = max(0.0, 100.0 - result.total_cost_usd / max_cost * 100.0) if max_cost > 0 else 0.0
    overall = SPEC_WEIGHT * spec_score + TESTS_WEIGHT * test_score + COST_WEIGHT * cost_score
    return {
        "spec": round(spec_score, 1),
        "tests": round(test_score, 1),
        "cost": round(cost_score, 1),
        "overall": round(overall, 1),
    }


@dataclass(slots=True)
class RankedRun:
    rank: int
    run_id: str
    outcome: str
    grade: dict[str, float]
    total_cost_usd: float
    duration_seconds: float


def compare_runs(results: list[RunResult] | list[dict[str, Any]]) -> list[RankedRun]:
    """Rank runs by overall grade, best first.

    Accepts ``RunResult`` objects or the ``summary`` dicts stored in
    ``result.json``.  Runs without a grade are graded on the fly.
    """
    rows: list[tuple[str, str, dict[str, float], float, float]] = []
    for item in results:
        if isinstance(item, RunResult):
            grade = item.grade or grade_run(item)
            rows.append((item.run_id, item.outcome, grade, item.total_cost_usd, item.duration_seconds))
        else:
            rows.append(
                (
                    str(item.get("run_id", "?")),
                    str(item.get("outcome", "?")),
                    dict(item.get("grade") or {}),
                    float(item.get("total_cost_usd", 0.0)),
                    float(item.get("duration_seconds", 0.0)),
                )
            )
    rows.sort(key=lambda r: (-r[2].get("overall", 0.0), r[3]))
    return [
        RankedRun(rank=i, run_id=run_id, outcome=outcome, grade=grade, total_cost_usd=cost, duration_seconds=dur)
        for i, (run_id, outcome, grade, cost, dur) in enumerate(rows, 1)
    ]

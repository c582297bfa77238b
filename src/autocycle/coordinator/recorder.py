"""Best-effort persistence of run, cycle and task records.

Failures to write are logged and swallowed: losing a snapshot must never
take down the run that produced it.
"""

from __future__ import annotations

import logging
from collections import Counter
from pathlib import Path
from typing import Any

from autocycle.protocol.io import write_json_atomic
from autocycle.protocol.models import CycleRecord, RunResult, Task, run_layout, utc_now_iso

logger = logging.getLogger(__name__)


class RunRecorder:
    def __init__(self, run_dir: str | Path) -> None:
        self.layout = run_layout(Path(run_dir))
        self._state_seq = 0

    @property
    def run_dir(self) -> Path:
        return self.layout["root"]

    def record_task(self, task: Task) -> None:
        self._write(self.layout["tasks"] / f"{task.task_id}.json", task)

    def record_cycle(self, cycle: CycleRecord) -> None:
        payload = {
            "number": cycle.number,
            "title": cycle.title,
            "task_ids": [t.task_id for t in cycle.tasks],
            "statuses": {t.task_id: t.status for t in cycle.tasks},
            "cost_usd": cycle.cost_usd,
            "duration_seconds": cycle.duration_seconds,
            "spec_completion_pct": cycle.spec_completion_pct,
            "tests_passed": cycle.tests_passed,
            "tests_failed": cycle.tests_failed,
            "error": cycle.error,
            "started_at": cycle.started_at,
            "completed_at": cycle.completed_at,
        }
        self._write(self.layout["cycles"] / f"{cycle.number:03d}.json", payload)

    def write_state(
        self,
        *,
        run_id: str,
        phase: str,
        tasks: list[Task],
        budget: dict[str, Any],
        sessions: dict[str, Any],
        current_cycle: int | None,
        errors: list[str],
    ) -> None:
        self._state_seq += 1
        counts = Counter(t.status for t in tasks)
        payload = {
            "run_id": run_id,
            "phase": phase,
            "updated_at": utc_now_iso(),
            "state_seq": self._state_seq,
            "current_cycle": current_cycle,
            "task_counts": dict(counts),
            "tasks": [
                {
                    "task_id": t.task_id,
                    "title": t.title,
                    "status": t.status,
                    "cycle": t.cycle_number,
                    "reason": t.reason,
                    "cost_usd": round(t.cost_usd, 6),
                }
                for t in tasks
            ],
            "budget": budget,
            "sessions": sessions,
            "errors": errors[-50:],
        }
        self._write(self.layout["state"], payload)

    def record_result(self, result: RunResult) -> None:
        self._write(self.layout["result"], {"summary": result.summary(), "result": result})

    def _write(self, path: Path, data: Any) -> None:
        try:
            write_json_atomic(path, data)
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("failed to persist %s: %s", path, exc)

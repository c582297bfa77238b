from __future__ import annotations

import json
from pathlib import Path

from autocycle.coordinator.recorder import RunRecorder
from autocycle.protocol.models import CycleRecord, RunResult, Task


def _load(path: Path) -> dict:
    return json.loads(path.read_text(encoding="utf-8"))


def test_records_task_and_cycle(tmp_path: Path) -> None:
    recorder = RunRecorder(tmp_path)
    task = Task(task_id="run-1-task-1", title="T", description="D")
    task.transition("isolating")
    recorder.record_task(task)
    cycle = CycleRecord(number=1, title="Start", tasks=[task])
    recorder.record_cycle(cycle)

    saved = _load(tmp_path / "tasks" / "run-1-task-1.json")
    assert saved["status"] == "isolating"
    assert saved["transitions"][0]["to_state"] == "isolating"
    assert _load(tmp_path / "cycles" / "001.json")["statuses"] == {"run-1-task-1": "isolating"}


def test_state_sequence_increments(tmp_path: Path) -> None:
    recorder = RunRecorder(tmp_path)
    kwargs = dict(run_id="r1", phase="running", tasks=[], budget={}, sessions={}, current_cycle=1, errors=[])
    recorder.write_state(**kwargs)
    recorder.write_state(**kwargs)
    state = _load(tmp_path / "state.json")
    assert state["state_seq"] == 2
    assert state["task_counts"] == {}


def test_result_has_summary_and_detail(tmp_path: Path) -> None:
    recorder = RunRecorder(tmp_path)
    recorder.record_result(RunResult(run_id="r1", outcome="partial", reason="plan exhausted"))
    saved = _load(tmp_path / "result.json")
    assert saved["summary"]["outcome"] == "partial"
    assert saved["result"]["run_id"] == "r1"


def test_write_failures_are_swallowed(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    recorder = RunRecorder(blocker)
    recorder.record_result(RunResult(run_id="r1", outcome="failed", reason="x"))

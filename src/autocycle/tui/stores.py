"""Read-only view of a run directory for the monitor and ``inspect``."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from autocycle.protocol.io import read_json, read_jsonl
from autocycle.protocol.models import run_layout


class RunStore:
    def __init__(self, run_dir: str | Path) -> None:
        self.run_dir = Path(run_dir)
        self.layout = run_layout(self.run_dir)

    @property
    def control_path(self) -> Path:
        return self.layout["control"]

    def read_state(self) -> dict[str, Any]:
        data = read_json(self.layout["state"], default={})
        return data if isinstance(data, dict) else {}

    def read_result(self) -> dict[str, Any]:
        data = read_json(self.layout["result"], default={})
        return data if isinstance(data, dict) else {}

    def read_events(self, limit: int = 200) -> list[dict[str, Any]]:
        return read_jsonl(self.layout["events"], limit=limit)

    def read_task(self, task_id: str) -> dict[str, Any]:
        data = read_json(self.layout["tasks"] / f"{task_id}.json", default={})
        return data if isinstance(data, dict) else {}

    def read_cycles(self) -> list[dict[str, Any]]:
        cycles_dir = self.layout["cycles"]
        if not cycles_dir.is_dir():
            return []
        out: list[dict[str, Any]] = []
        for path in sorted(cycles_dir.glob("*.json")):
            data = read_json(path, default={})
            if isinstance(data, dict):
                out.append(data)
        return out


def event_message(event: dict[str, Any]) -> str:
    data = event.get("data") if isinstance(event.get("data"), dict) else {}
    return str(event.get("message") or data.get("reason") or data.get("kind") or "")

"""Event bus for orchestration events.

Sessions, the anomaly monitor and the coordinator publish named events
here; the run recorder, CLI and tests subscribe.  Publishing is
best-effort: a failing subscriber or an unwritable events file is logged
and never propagates into the caller.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from autocycle.protocol.io import append_jsonl

logger = logging.getLogger(__name__)

# Well-known event names.
SESSION_ID_ASSIGNED = "session_id_assigned"
TOKEN_USAGE = "token_usage"
COMPACTION_DETECTED = "compaction_detected"
FILE_CONFLICT = "file_conflict"
HANG_DETECTED = "hang_detected"
LOOP_DETECTED = "loop_detected"
SUBAGENT_SPAWNED = "subagent_spawned"
SUBAGENT_COMPLETED = "subagent_completed"
SESSION_FINISHED = "session_finished"
REVIEW_COMPLETED = "review_completed"
TASK_TRANSITION = "task_transition"
TASK_MERGED = "task_merged"
TASK_BLOCKED = "task_blocked"
CYCLE_STARTED = "cycle_started"
CYCLE_COMPLETED = "cycle_completed"
RUN_COMPLETED = "run_completed"


@dataclass(slots=True)
class RunEvent:
    """A single orchestration event."""

    event_type: str
    timestamp: float = field(default_factory=time.time)
    task_id: str = ""
    session_id: str = ""
    cycle: int | None = None
    data: dict[str, Any] = field(default_factory=dict)
    message: str = ""

    def as_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "timestamp": self.timestamp,
            "task_id": self.task_id,
            "session_id": self.session_id,
            "cycle": self.cycle,
            "data": self.data,
            "message": self.message,
        }


class EventBus:
    """In-process pub/sub for run events with optional JSONL persistence."""

    def __init__(self, persist_path: str | Path | None = None, *, history_limit: int = 5000) -> None:
        self._subscribers: list[Callable[[RunEvent], Any]] = []
        self._persist_path = Path(persist_path) if persist_path else None
        self._history: deque[RunEvent] = deque(maxlen=history_limit)

    def emit(self, event: RunEvent) -> None:
        """Deliver *event* to subscribers and persist it."""
        self._history.append(event)

        for cb in list(self._subscribers):
            try:
                cb(event)
            except Exception as exc:
                logger.debug("EventBus subscriber error: %s", exc)

        if self._persist_path is not None:
            try:
                append_jsonl(self._persist_path, event.as_dict())
            except (OSError, TypeError, ValueError) as exc:
                logger.warning("EventBus persist error: %s", exc)

    def publish(self, event_type: str, *, message: str = "", **fields: Any) -> RunEvent:
        """Build and emit an event in one call.

        ``task_id``, ``session_id`` and ``cycle`` go to the matching event
        fields; every other keyword lands in ``data``.
        """
        event = RunEvent(
            event_type=event_type,
            task_id=str(fields.pop("task_id", "") or ""),
            session_id=str(fields.pop("session_id", "") or ""),
            cycle=fields.pop("cycle", None),
            data=fields,
            message=message,
        )
        self.emit(event)
        return event

    def subscribe(self, callback: Callable[[RunEvent], Any]) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[RunEvent], Any]) -> None:
        self._subscribers = [cb for cb in self._subscribers if cb is not callback]

    @property
    def history(self) -> list[RunEvent]:
        return list(self._history)

    def recent(self, n: int = 20) -> list[RunEvent]:
        """Return the *n* most recent events."""
        return list(self._history)[-n:]

    def of_type(self, event_type: str) -> list[RunEvent]:
        return [e for e in self._history if e.event_type == event_type]

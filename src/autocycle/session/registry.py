"""Registry of active and recently finished agent sessions.

One registry is owned by the orchestration root and handed to every
component that spawns sessions.  It is the single place where the
concurrency ceiling and the token budget across live sessions are
enforced, and where a session's state is archived once its process exits.
"""

from __future__ import annotations

import json
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from autocycle.errors import SpawnFailedError
from autocycle.protocol.locks import locked_file
from autocycle.protocol.models import utc_now_iso
from autocycle.session.file_tracker import FileAccessTracker
from autocycle.session.usage import TokenUsage

if TYPE_CHECKING:
    from autocycle.session.agent_session import AgentSession

logger = logging.getLogger(__name__)

SNAPSHOT_FINISHED_LIMIT = 20


@dataclass(slots=True)
class FinishedSession:
    session_key: str
    session_id: str | None
    task_id: str | None
    model: str
    exit_code: int | None
    usage: TokenUsage
    cost_usd: float
    compaction_count: int
    elapsed_seconds: float
    last_assistant_text: str = ""
    finished_at: float = field(default_factory=time.monotonic)

    def describe(self) -> dict[str, Any]:
        return {
            "session_key": self.session_key,
            "session_id": self.session_id,
            "task_id": self.task_id,
            "model": self.model,
            "running": False,
            "exit_code": self.exit_code,
            "elapsed_seconds": round(self.elapsed_seconds, 1),
            "usage": self.usage.as_dict(),
            "compaction_count": self.compaction_count,
            "cost_usd": round(self.cost_usd, 6),
        }


class SystemSessionSlots:
    """Session ceiling shared by every run on this machine.

    Slots live in a small JSON file guarded by ``flock``.  Each slot
    records the PID of the orchestrator holding it, so slots left behind
    by a crashed process are reclaimed on the next acquire.
    """

    def __init__(self, path: str | Path, max_sessions: int) -> None:
        self.path = Path(path)
        self.max_sessions = max_sessions

    def acquire(self, owner: str) -> str:
        with locked_file(self.path) as handle:
            slots = self._load(handle)
            if len(slots) >= self.max_sessions:
                raise SpawnFailedError(
                    f"system-wide session limit reached ({len(slots)}/{self.max_sessions})",
                    details={"slots_file": str(self.path)},
                )
            slot_id = uuid.uuid4().hex[:12]
            slots[slot_id] = {"pid": os.getpid(), "owner": owner, "acquired_at": utc_now_iso()}
            self._store(handle, slots)
        return slot_id

    def release(self, slot_id: str) -> None:
        with locked_file(self.path) as handle:
            slots = self._load(handle)
            if slots.pop(slot_id, None) is not None:
                self._store(handle, slots)

    def in_use(self) -> int:
        with locked_file(self.path) as handle:
            return len(self._load(handle))

    def _load(self, handle: Any) -> dict[str, dict[str, Any]]:
        handle.seek(0)
        text = handle.read()
        try:
            data = json.loads(text) if text.strip() else {}
        except json.JSONDecodeError:
            logger.warning("corrupt session slots file %s, resetting", self.path)
            data = {}
        if not isinstance(data, dict):
            return {}
        return {k: v for k, v in data.items() if isinstance(v, dict) and _pid_alive(v.get("pid"))}

    def _store(self, handle: Any, slots: dict[str, dict[str, Any]]) -> None:
        handle.seek(0)
        handle.truncate()
        handle.write(json.dumps(slots, indent=2))
        handle.flush()


def _pid_alive(pid: Any) -> bool:
    if not isinstance(pid, int) or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class SessionRegistry:
    def __init__(
        self,
        *,
        max_concurrent: int = 4,
        total_token_budget: int = 600_000,
        finished_ttl_seconds: float = 3600.0,
        file_tracker: FileAccessTracker | None = None,
        system_slots: SystemSessionSlots | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_concurrent = max_concurrent
        self.total_token_budget = total_token_budget
        self.finished_ttl_seconds = finished_ttl_seconds
        self.file_tracker = file_tracker or FileAccessTracker()
        self.system_slots = system_slots
        self._clock = clock
        self._active: dict[str, AgentSession] = {}
        self._slots: dict[str, str] = {}
        self._finished: dict[str, FinishedSession] = {}

    # -- admission -----------------------------------------------------

    def register(self, session: AgentSession) -> None:
        """Admit *session* into the active set or raise SpawnFailedError."""
        if len(self._active) >= self.max_concurrent:
            raise SpawnFailedError(
                f"session limit reached ({len(self._active)}/{self.max_concurrent} active)"
            )
        used = self.active_token_total()
        if used >= self.total_token_budget:
            raise SpawnFailedError(
                f"token budget exhausted across active sessions ({used}/{self.total_token_budget})"
            )
        if self.system_slots is not None:
            self._slots[session.session_key] = self.system_slots.acquire(session.session_key)
        self._active[session.session_key] = session

    def discard(self, session: AgentSession) -> None:
        """Drop a session whose process never started."""
        self._active.pop(session.session_key, None)
        self._release_slot(session.session_key)
        self.file_tracker.clear_session(session.session_key)

    def finalize(self, session: AgentSession) -> FinishedSession:
        """Archive a session whose process has exited."""
        info = FinishedSession(
            session_key=session.session_key,
            session_id=session.session_id,
            task_id=session.task_id,
            model=session.model,
            exit_code=session.exit_code,
            usage=session.usage,
            cost_usd=session.cost_usd,
            compaction_count=session.compaction_count,
            elapsed_seconds=session.elapsed_seconds,
            last_assistant_text=session.last_assistant_text,
            finished_at=self._clock(),
        )
        self._active.pop(session.session_key, None)
        self._release_slot(session.session_key)
        self.file_tracker.clear_session(session.session_key)
        self._finished[session.session_key] = info
        self.prune_finished()
        return info

    def _release_slot(self, session_key: str) -> None:
        slot_id = self._slots.pop(session_key, None)
        if slot_id is None or self.system_slots is None:
            return
        try:
            self.system_slots.release(slot_id)
        except OSError as exc:
            logger.warning("failed to release system session slot %s: %s", slot_id, exc)

    # -- queries -------------------------------------------------------

    def prune_finished(self) -> int:
        cutoff = self._clock() - self.finished_ttl_seconds
        expired = [k for k, info in self._finished.items() if info.finished_at < cutoff]
        for key in expired:
            del self._finished[key]
        return len(expired)

    def active_token_total(self) -> int:
        return sum(s.usage.total for s in self._active.values())

    @property
    def active_count(self) -> int:
        return len(self._active)

    def finished_sessions(self) -> list[FinishedSession]:
        self.prune_finished()
        return list(self._finished.values())

    def snapshot(self) -> dict[str, Any]:
        return {
            "active": [s.describe() for s in self._active.values()],
            "finished": [info.describe() for info in self.finished_sessions()][-SNAPSHOT_FINISHED_LIMIT:],
            "active_tokens": self.active_token_total(),
            "token_budget": self.total_token_budget,
            "max_concurrent": self.max_concurrent,
            "system_slots_in_use": self._system_slots_in_use(),
        }

    def _system_slots_in_use(self) -> int | None:
        if self.system_slots is None:
            return None
        try:
            return self.system_slots.in_use()
        except OSError as exc:
            logger.warning("could not read system session slots: %s", exc)
            return None

"""Hang and loop detection for running agent sessions.

Signals produced here are advisory.  The monitor publishes them on the
event bus and hands them to optional callbacks; it never terminates a
session itself.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from collections import Counter, deque
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Callable, Literal

from autocycle.coordinator.event_bus import HANG_DETECTED, LOOP_DETECTED, EventBus

logger = logging.getLogger(__name__)

MIN_HISTORY_FOR_LOOPS = 4


def action_fingerprint(action: str) -> str:
    """Short BLAKE2b digest of an action description.

    Collisions only cause a spurious advisory signal, so 64 bits is plenty.
    """
    return hashlib.blake2b(action.encode("utf-8"), digest_size=8).hexdigest()


@dataclass(slots=True, frozen=True)
class LoopSignal:
    kind: Literal["repetition", "oscillation"]
    count: int = 0
    pattern: tuple[str, ...] = ()
    actions: tuple[str, ...] = ()


def detect_loop(
    history: Sequence[str],
    *,
    recent_window: int = 10,
    repeat_threshold: int = 3,
) -> LoopSignal | None:
    """Inspect a fingerprint history (oldest first) for loops.

    Repetition wins over oscillation when both apply.
    """
    if len(history) < MIN_HISTORY_FOR_LOOPS:
        return None
    recent = list(history)[-recent_window:]
    fingerprint, count = Counter(recent).most_common(1)[0]
    if count >= repeat_threshold:
        return LoopSignal(kind="repetition", count=count, pattern=(fingerprint,))
    a, b, c, d = list(history)[-4:]
    if a == c and b == d and a != b:
        return LoopSignal(kind="oscillation", count=2, pattern=(a, b))
    return None


@dataclass(slots=True)
class SessionWatch:
    session_key: str
    task_id: str | None
    last_output: float
    history: deque[str]
    labels: dict[str, str] = field(default_factory=dict)
    hang_notified: bool = False
    last_loop_window: tuple[str, ...] | None = None
    timer: asyncio.Task[None] | None = None


class AnomalyMonitor:
    def __init__(
        self,
        event_bus: EventBus | None = None,
        *,
        hang_threshold_seconds: float = 600.0,
        check_interval_seconds: float = 30.0,
        history_size: int = 20,
        recent_window: int = 10,
        repeat_threshold: int = 3,
        fingerprint: Callable[[str], str] = action_fingerprint,
        on_hang: Callable[[str, float], Any] | None = None,
        on_loop: Callable[[str, LoopSignal], Any] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._bus = event_bus
        self.hang_threshold_seconds = hang_threshold_seconds
        self.check_interval_seconds = check_interval_seconds
        self.history_size = history_size
        self.recent_window = recent_window
        self.repeat_threshold = repeat_threshold
        self._fingerprint = fingerprint
        self._on_hang = on_hang
        self._on_loop = on_loop
        self._clock = clock
        self._watches: dict[str, SessionWatch] = {}

    def watch(self, session_key: str, task_id: str | None = None) -> None:
        """Start tracking a session; starts its hang timer inside a running loop."""
        if session_key in self._watches:
            return
        state = SessionWatch(
            session_key=session_key,
            task_id=task_id,
            last_output=self._clock(),
            history=deque(maxlen=self.history_size),
        )
        self._watches[session_key] = state
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        state.timer = loop.create_task(self._hang_timer(session_key))

    def unwatch(self, session_key: str) -> None:
        state = self._watches.pop(session_key, None)
        if state is not None and state.timer is not None:
            state.timer.cancel()

    def is_watching(self, session_key: str) -> bool:
        return session_key in self._watches

    def history(self, session_key: str) -> list[str]:
        state = self._watches.get(session_key)
        return list(state.history) if state else []

    def record_output(self, session_key: str) -> None:
        state = self._watches.get(session_key)
        if state is None:
            return
        state.last_output = self._clock()
        state.hang_notified = False

    def record_action(self, session_key: str, action: str) -> LoopSignal | None:
        """Append an action to the session history and evaluate loop rules."""
        state = self._watches.get(session_key)
        if state is None:
            return None
        fp = self._fingerprint(action)
        state.history.append(fp)
        state.labels[fp] = action
        if len(state.labels) > self.history_size * 2:
            live = set(state.history)
            state.labels = {k: v for k, v in state.labels.items() if k in live}

        signal = detect_loop(
            state.history,
            recent_window=self.recent_window,
            repeat_threshold=self.repeat_threshold,
        )
        if signal is None:
            state.last_loop_window = None
            return None
        window = tuple(state.history)[-self.recent_window:]
        if window == state.last_loop_window:
            return None
        state.last_loop_window = window
        signal = LoopSignal(
            kind=signal.kind,
            count=signal.count,
            pattern=signal.pattern,
            actions=tuple(state.labels.get(fp, fp) for fp in signal.pattern),
        )
        logger.warning("loop detected in session %s: %s %s", session_key, signal.kind, signal.actions)
        if self._bus is not None:
            self._bus.publish(
                LOOP_DETECTED,
                message=f"{signal.kind} loop",
                session_id=session_key,
                task_id=state.task_id,
                kind=signal.kind,
                count=signal.count,
                pattern=list(signal.pattern),
                actions=list(signal.actions),
            )
        if self._on_loop is not None:
            self._on_loop(session_key, signal)
        return signal

    def check_hang(self, session_key: str, now: float | None = None) -> bool:
        """Emit a hang signal once per silent period. Returns True when emitted."""
        state = self._watches.get(session_key)
        if state is None or state.hang_notified:
            return False
        current = self._clock() if now is None else now
        silent_for = current - state.last_output
        if silent_for < self.hang_threshold_seconds:
            return False
        state.hang_notified = True
        logger.warning("session %s silent for %.0fs", session_key, silent_for)
        if self._bus is not None:
            self._bus.publish(
                HANG_DETECTED,
                message=f"no output for {silent_for:.0f}s",
                session_id=session_key,
                task_id=state.task_id,
                silent_seconds=round(silent_for, 1),
            )
        if self._on_hang is not None:
            self._on_hang(session_key, silent_for)
        return True

    async def _hang_timer(self, session_key: str) -> None:
        while session_key in self._watches:
            await asyncio.sleep(self.check_interval_seconds)
            self.check_hang(session_key)

    def close(self) -> None:
        for key in list(self._watches):
            self.unwatch(key)

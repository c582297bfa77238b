"""Stop, shutdown and pause flags shared by every suspension point of a run."""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Awaitable
from pathlib import Path
from typing import TypeVar

from autocycle.errors import RunAbortedError
from autocycle.protocol.io import read_json, write_json_atomic
from autocycle.protocol.models import utc_now_iso

logger = logging.getLogger(__name__)

CONTROL_ACTIONS = ("pause", "resume", "stop")

T = TypeVar("T")


class RunControl:
    """Flags observed by the controller, executors and review gate.

    Besides programmatic calls, requests arrive through SIGINT/SIGTERM and
    through a ``control.json`` file in the run directory, which the
    controller polls via :meth:`poll_file`.
    """

    def __init__(self, control_path: str | Path | None = None) -> None:
        self.control_path = Path(control_path) if control_path else None
        self.stop_requested = False
        self.shutting_down = False
        self.paused = False
        self.reason = ""
        self._last_request_at: str | None = None
        self._signals: list[signal.Signals] = []

    def request_stop(self, reason: str = "stopped by user") -> None:
        if not self.stop_requested:
            logger.info("stop requested: %s", reason)
        self.stop_requested = True
        self.reason = self.reason or reason

    def request_shutdown(self, reason: str = "shutdown") -> None:
        if not self.shutting_down:
            logger.info("shutdown requested: %s", reason)
        self.shutting_down = True
        self.reason = self.reason or reason

    def pause(self) -> None:
        self.paused = True

    def resume(self) -> None:
        self.paused = False

    @property
    def should_abort(self) -> bool:
        return self.stop_requested or self.shutting_down

    @property
    def abort_reason(self) -> str:
        if self.reason:
            return self.reason
        return "shutdown" if self.shutting_down else "stopped by user"

    def poll_file(self) -> str | None:
        """Apply a new request from the control file, if any."""
        if self.control_path is None:
            return None
        data = read_json(self.control_path, default={})
        if not isinstance(data, dict):
            return None
        action = data.get("action")
        requested_at = data.get("requested_at")
        if action not in CONTROL_ACTIONS or requested_at == self._last_request_at:
            return None
        self._last_request_at = requested_at
        if action == "pause":
            self.pause()
        elif action == "resume":
            self.resume()
        else:
            self.request_stop(str(data.get("reason") or "stopped by user"))
        logger.info("control request: %s", action)
        return action

    def check(self) -> None:
        """Raise :class:`RunAbortedError` if a stop or shutdown is pending."""
        self.poll_file()
        if self.should_abort:
            raise RunAbortedError(self.abort_reason)

    async def abortable(self, awaitable: Awaitable[T], *, poll_interval: float) -> T:
        """Await *awaitable*, cancelling it once a stop or shutdown arrives."""
        job = asyncio.ensure_future(awaitable)
        try:
            while not job.done():
                self.check()
                await asyncio.wait({job}, timeout=poll_interval)
            return job.result()
        finally:
            if not job.done():
                job.cancel()
                await asyncio.wait({job})

    @staticmethod
    def write_request(control_path: str | Path, action: str, reason: str = "") -> None:
        if action not in CONTROL_ACTIONS:
            raise ValueError(f"unknown control action: {action!r}")
        write_json_atomic(
            Path(control_path),
            {"action": action, "reason": reason, "requested_at": utc_now_iso()},
        )

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown, f"received {sig.name}")
            except (NotImplementedError, RuntimeError):
                continue
            self._signals.append(sig)

    def remove_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in self._signals:
            loop.remove_signal_handler(sig)
        self._signals.clear()

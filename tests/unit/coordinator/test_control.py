"""Tests for run control flags and the control file protocol."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from autocycle.coordinator.control import RunControl
from autocycle.errors import RunAbortedError


def _write(path: Path, action: str, requested_at: str, reason: str = "") -> None:
    path.write_text(json.dumps({"action": action, "reason": reason, "requested_at": requested_at}), encoding="utf-8")


def test_stop_reason_is_sticky() -> None:
    control = RunControl()
    control.request_stop("first")
    control.request_shutdown("second")
    assert control.should_abort
    assert control.abort_reason == "first"


def test_default_abort_reasons() -> None:
    control = RunControl()
    control.shutting_down = True
    assert control.abort_reason == "shutdown"


def test_poll_file_applies_each_request_once(tmp_path: Path) -> None:
    path = tmp_path / "control.json"
    control = RunControl(path)
    assert control.poll_file() is None

    _write(path, "pause", "2026-01-01T00:00:00")
    assert control.poll_file() == "pause"
    assert control.paused
    control.resume()
    assert control.poll_file() is None
    assert not control.paused

    _write(path, "stop", "2026-01-01T00:00:01", reason="enough")
    assert control.poll_file() == "stop"
    assert control.stop_requested
    assert control.abort_reason == "enough"


def test_poll_file_ignores_garbage(tmp_path: Path) -> None:
    path = tmp_path / "control.json"
    path.write_text("not json", encoding="utf-8")
    control = RunControl(path)
    assert control.poll_file() is None
    _write(path, "explode", "t")
    assert control.poll_file() is None


def test_write_request_round_trip(tmp_path: Path) -> None:
    path = tmp_path / "control.json"
    RunControl.write_request(path, "pause")
    control = RunControl(path)
    assert control.poll_file() == "pause"
    assert control.paused


def test_write_request_rejects_unknown_action(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="unknown control action"):
        RunControl.write_request(tmp_path / "control.json", "reboot")


# ---------------------------------------------------------------------------
# abortable
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_abortable_returns_result() -> None:
    async def work() -> int:
        await asyncio.sleep(0.01)
        return 7

    assert await RunControl().abortable(work(), poll_interval=0.005) == 7


@pytest.mark.asyncio
async def test_abortable_cancels_on_file_stop(tmp_path: Path) -> None:
    path = tmp_path / "control.json"
    control = RunControl(path)
    cancelled = asyncio.Event()

    async def work() -> None:
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    asyncio.get_running_loop().call_later(0.05, RunControl.write_request, path, "stop", "halt")
    with pytest.raises(RunAbortedError, match="halt"):
        await asyncio.wait_for(control.abortable(work(), poll_interval=0.01), timeout=5)
    assert cancelled.is_set()

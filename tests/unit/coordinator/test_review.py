"""Tests for review output parsing, the heuristic fallback and the gate."""

from __future__ import annotations

import asyncio
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from autocycle.config.schema import AgentConfig, ReviewConfig
from autocycle.coordinator.control import RunControl
from autocycle.coordinator.event_bus import REVIEW_COMPLETED, EventBus
from autocycle.coordinator.review import ReviewGate, heuristic_decision, parse_review_output
from autocycle.errors import ReviewUnavailableError, SpawnFailedError
from autocycle.session.registry import SessionRegistry

# ---------------------------------------------------------------------------
# parse_review_output
# ---------------------------------------------------------------------------


def test_parses_fenced_json() -> None:
    text = """Here is my review.
```json
{"decision": "approve", "justification": "Looks good", "confidence": 0.92,
 "concerns": [], "suggestions": ["add a docstring"]}
```"""
    decision = parse_review_output(text)
    assert decision is not None
    assert decision.decision == "approve"
    assert decision.confidence == 0.92
    assert decision.suggestions == ("add a docstring",)
    assert decision.source == "agent"


def test_skips_json_without_decision() -> None:
    text = '{"note": "x"} then {"decision": "needs-changes", "justification": "missing tests"}'
    decision = parse_review_output(text)
    assert decision is not None
    assert decision.decision == "needs_changes"
    assert decision.confidence == 0.5


def test_confidence_is_clamped() -> None:
    decision = parse_review_output('{"decision": "reject", "confidence": 7}')
    assert decision is not None
    assert decision.confidence == 1.0


def test_keyword_fallback() -> None:
    decision = parse_review_output("Decision: REJECT. The change deletes the database layer.")
    assert decision is not None
    assert decision.decision == "reject"
    assert "database" in decision.justification


@pytest.mark.parametrize("text", ["", "   ", "I am not sure what to think."])
def test_unparseable_output(text: str) -> None:
    assert parse_review_output(text) is None


def test_heuristic_decisions() -> None:
    approve = heuristic_decision(True, "review timed out")
    assert (approve.decision, approve.confidence, approve.source) == ("approve", 0.8, "heuristic")
    reject = heuristic_decision(False, "review timed out")
    assert (reject.decision, reject.confidence) == ("reject", 0.9)


# ---------------------------------------------------------------------------
# ReviewGate
# ---------------------------------------------------------------------------


def _gate(bus: EventBus | None = None, control: RunControl | None = None, **review: object) -> ReviewGate:
    return ReviewGate(
        ReviewConfig(**review),  # type: ignore[arg-type]
        AgentConfig(command=["fake-agent"]),
        registry=SessionRegistry(),
        event_bus=bus,
        control=control,
        poll_interval=0.01,
    )


def _session(text: str, *, running: bool = False) -> SimpleNamespace:
    return SimpleNamespace(
        session_key="s-review",
        running=running,
        last_assistant_text=text,
        cost_usd=0.02,
        terminate=AsyncMock(),
    )


@pytest.mark.asyncio
async def test_disabled_review_is_unavailable(tmp_path: Path) -> None:
    with pytest.raises(ReviewUnavailableError):
        await _gate(enabled=False).review(tmp_path, "task", "diff", True)


@pytest.mark.asyncio
async def test_spawn_failure_is_unavailable(tmp_path: Path) -> None:
    spawn = AsyncMock(side_effect=SpawnFailedError("no binary"))
    with patch("autocycle.coordinator.review.AgentSession.spawn", spawn):
        with pytest.raises(ReviewUnavailableError, match="could not start"):
            await _gate().review(tmp_path, "task", "diff", True)


@pytest.mark.asyncio
async def test_agent_decision_published_with_cost(tmp_path: Path) -> None:
    bus = EventBus()
    session = _session('{"decision": "approve", "justification": "fine", "confidence": 0.9}')
    with patch("autocycle.coordinator.review.AgentSession.spawn", AsyncMock(return_value=session)) as spawn:
        decision = await _gate(bus).review(tmp_path, "task", "x" * 100, True, task_id="t1")
    assert decision.decision == "approve"
    assert decision.cost_usd == 0.02
    assert spawn.await_args.args[2].allowed_tools == ["Read", "Grep", "Glob"]
    events = bus.of_type(REVIEW_COMPLETED)
    assert len(events) == 1
    assert events[0].task_id == "t1"


@pytest.mark.asyncio
async def test_long_diff_is_truncated(tmp_path: Path) -> None:
    session = _session('{"decision": "approve"}')
    with patch("autocycle.coordinator.review.AgentSession.spawn", AsyncMock(return_value=session)) as spawn:
        await _gate(max_diff_chars=10).review(tmp_path, "task", "y" * 500, True)
    prompt = spawn.await_args.args[0]
    assert "[diff truncated]" in prompt
    assert "y" * 11 not in prompt


@pytest.mark.asyncio
async def test_timeout_falls_back_to_heuristic(tmp_path: Path) -> None:
    session = _session("", running=True)
    with patch("autocycle.coordinator.review.AgentSession.spawn", AsyncMock(return_value=session)):
        decision = await _gate(timeout_seconds=0).review(tmp_path, "task", "diff", False)
    session.terminate.assert_awaited_once_with("review timeout")
    assert decision.decision == "reject"
    assert decision.source == "heuristic"
    assert "timed out" in decision.justification


@pytest.mark.asyncio
async def test_unparseable_answer_uses_heuristic(tmp_path: Path) -> None:
    session = _session("hmm")
    with patch("autocycle.coordinator.review.AgentSession.spawn", AsyncMock(return_value=session)):
        decision = await _gate().review(tmp_path, "task", "diff", True)
    assert decision.decision == "approve"
    assert decision.confidence == 0.8


@pytest.mark.asyncio
async def test_abort_interrupts_review(tmp_path: Path) -> None:
    control = RunControl()
    control.request_stop("user stop")
    session = _session("", running=True)
    with patch("autocycle.coordinator.review.AgentSession.spawn", AsyncMock(return_value=session)):
        with pytest.raises(ReviewUnavailableError, match="user stop"):
            await _gate(control=control).review(tmp_path, "task", "diff", True)
    session.terminate.assert_awaited_once()


@pytest.mark.asyncio
async def test_stop_written_to_control_file_interrupts_review(tmp_path: Path) -> None:
    control_path = tmp_path / "control.json"
    control = RunControl(control_path)
    session = _session("", running=True)

    async def stop_soon() -> None:
        await asyncio.sleep(0.05)
        RunControl.write_request(control_path, "stop", "stopped from dashboard")

    with patch("autocycle.coordinator.review.AgentSession.spawn", AsyncMock(return_value=session)):
        writer = asyncio.create_task(stop_soon())
        with pytest.raises(ReviewUnavailableError, match="stopped from dashboard"):
            await asyncio.wait_for(
                _gate(control=control, timeout_seconds=30).review(tmp_path, "task", "diff", True), timeout=5
            )
        await writer
    session.terminate.assert_awaited_once_with("stopped from dashboard")

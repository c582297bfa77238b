"""Review gate: a short-lived, read-only agent session that judges a diff.

When the reviewer's answer cannot be parsed (or it times out) a
conservative heuristic based on the test result takes over, so review
never stalls the pipeline.  ``ReviewUnavailableError`` is raised only when
no review could be attempted at all.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import re
import time
from pathlib import Path
from typing import Any

from autocycle.config.schema import AgentConfig, ReviewConfig
from autocycle.coordinator.control import RunControl
from autocycle.coordinator.event_bus import REVIEW_COMPLETED, EventBus
from autocycle.coordinator.prompts import build_review_prompt
from autocycle.errors import ReviewUnavailableError, SpawnFailedError
from autocycle.protocol.models import ReviewDecision, ReviewVerdict
from autocycle.session.agent_session import AgentSession, SessionOptions
from autocycle.session.registry import SessionRegistry

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.5
HEURISTIC_APPROVE_CONFIDENCE = 0.8
HEURISTIC_REJECT_CONFIDENCE = 0.9
MAX_JUSTIFICATION_CHARS = 1000

_DECISION_FIELD = re.compile(r"decision\W{0,5}(approve|needs[_\s-]changes|reject)", re.IGNORECASE)
_KEYWORD = re.compile(r"\b(needs[_\s-]changes|approved?|reject(?:ed)?)\b", re.IGNORECASE)


def _normalize_verdict(value: Any) -> ReviewVerdict | None:
    if not isinstance(value, str):
        return None
    word = value.strip().lower().replace("-", "_").replace(" ", "_")
    if word in {"approve", "approved"}:
        return "approve"
    if word in {"needs_changes", "needs_change", "revise"}:
        return "needs_changes"
    if word in {"reject", "rejected"}:
        return "reject"
    return None


def _confidence(value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return min(1.0, max(0.0, float(value)))
    return DEFAULT_CONFIDENCE


def _str_tuple(value: Any) -> tuple[str, ...]:
    if isinstance(value, list):
        return tuple(str(v) for v in value if v)
    if isinstance(value, str) and value:
        return (value,)
    return ()


def _json_objects(text: str) -> list[dict[str, Any]]:
    decoder = json.JSONDecoder()
    found: list[dict[str, Any]] = []
    index = text.find("{")
    while index != -1:
        try:
            obj, end = decoder.raw_decode(text, index)
        except json.JSONDecodeError:
            index = text.find("{", index + 1)
            continue
        if isinstance(obj, dict):
            found.append(obj)
        index = text.find("{", end)
    return found


def parse_review_output(text: str) -> ReviewDecision | None:
    """Turn a reviewer's final message into a decision, or None."""
    if not text or not text.strip():
        return None
    for obj in _json_objects(text):
        verdict = _normalize_verdict(obj.get("decision"))
        if verdict is None:
            continue
        return ReviewDecision(
            decision=verdict,
            justification=str(obj.get("justification") or "")[:MAX_JUSTIFICATION_CHARS],
            confidence=_confidence(obj.get("confidence")),
            concerns=_str_tuple(obj.get("concerns")),
            suggestions=_str_tuple(obj.get("suggestions")),
        )
    match = _DECISION_FIELD.search(text) or _KEYWORD.search(text)
    if match:
        verdict = _normalize_verdict(match.group(1))
        if verdict is not None:
            return ReviewDecision(
                decision=verdict,
                justification=text.strip()[:MAX_JUSTIFICATION_CHARS],
                confidence=DEFAULT_CONFIDENCE,
            )
    return None


def heuristic_decision(tests_passed: bool, why: str) -> ReviewDecision:
    if tests_passed:
        return ReviewDecision(
            decision="approve",
            justification=f"{why}; tests pass",
            confidence=HEURISTIC_APPROVE_CONFIDENCE,
            source="heuristic",
        )
    return ReviewDecision(
        decision="reject",
        justification=f"{why}; tests did not pass",
        confidence=HEURISTIC_REJECT_CONFIDENCE,
        source="heuristic",
    )


class ReviewGate:
    def __init__(
        self,
        config: ReviewConfig,
        agent: AgentConfig,
        *,
        registry: SessionRegistry,
        event_bus: EventBus | None = None,
        control: RunControl | None = None,
        poll_interval: float = 0.5,
    ) -> None:
        self.config = config
        self.agent = agent
        self._registry = registry
        self._bus = event_bus
        self._control = control
        self._poll_interval = poll_interval

    async def review(
        self,
        workspace: str | Path,
        task_description: str,
        diff: str,
        tests_passed: bool,
        *,
        task_id: str | None = None,
        tests_output: str = "",
        deadline: float | None = None,
    ) -> ReviewDecision:
        if not self.config.enabled:
            raise ReviewUnavailableError("review disabled")
        if len(diff) > self.config.max_diff_chars:
            diff = diff[: self.config.max_diff_chars] + "\n\n[diff truncated]"
        prompt = build_review_prompt(
            task_description,
            diff,
            tests_passed=tests_passed,
            tests_output=tests_output,
        )
        options = SessionOptions(
            command=list(self.agent.command),
            model=self.config.model or self.agent.model,
            max_turns=self.config.max_turns,
            allowed_tools=list(self.config.allowed_tools),
            env=dict(self.agent.env),
            task_id=task_id,
        )
        try:
            session = await AgentSession.spawn(
                prompt,
                workspace,
                options,
                registry=self._registry,
                event_bus=self._bus,
            )
        except SpawnFailedError as exc:
            raise ReviewUnavailableError(f"review session could not start: {exc}") from exc

        timeout = self.config.timeout_seconds
        if deadline is not None:
            timeout = max(0.0, min(timeout, deadline - time.monotonic()))
        timed_out = await self._wait(session, timeout)

        parsed = None if timed_out else parse_review_output(session.last_assistant_text)
        if parsed is None:
            why = "review timed out" if timed_out else "review output could not be parsed"
            logger.info("task %s: %s, using heuristic", task_id, why)
            parsed = heuristic_decision(tests_passed, why)
        decision = dataclasses.replace(parsed, cost_usd=session.cost_usd)

        if self._bus is not None:
            self._bus.publish(
                REVIEW_COMPLETED,
                message=f"{decision.decision}: {decision.justification[:120]}",
                task_id=task_id,
                session_id=session.session_key,
                decision=decision.decision,
                confidence=decision.confidence,
                source=decision.source,
                cost_usd=round(session.cost_usd, 6),
            )
        return decision

    async def _wait(self, session: AgentSession, timeout: float) -> bool:
        """Poll until the review session exits. Returns True on timeout."""
        started = time.monotonic()
        while session.running:
            if self._control is not None:
                self._control.poll_file()
                if self._control.should_abort:
                    await session.terminate(self._control.abort_reason)
                    raise ReviewUnavailableError(f"review interrupted: {self._control.abort_reason}")
            if time.monotonic() - started >= timeout:
                await session.terminate("review timeout")
                return True
            await asyncio.sleep(self._poll_interval)
        return False

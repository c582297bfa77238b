"""Test command execution and tolerant summary parsing.

Summaries are recognised through an ordered table of runner patterns.
Supporting a new runner means adding a row to ``SUMMARY_PATTERNS``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
import time
from collections.abc import Callable
from dataclasses import dataclass

from autocycle.errors import TestRunnerUnavailableError

logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 16 * 1024


@dataclass(slots=True)
class TestSummary:
    __test__ = False

    passed: int = 0
    failed: int = 0
    runner: str | None = None

    @property
    def all_passed(self) -> bool:
        return self.failed == 0 and self.passed > 0


@dataclass(slots=True)
class TestRun:
    __test__ = False

    command: str
    summary: TestSummary
    exit_code: int | None
    output: str
    duration_seconds: float
    timed_out: bool = False
    error: str | None = None

    @property
    def passed(self) -> int:
        return self.summary.passed

    @property
    def failed(self) -> int:
        return self.summary.failed

    @property
    def all_passed(self) -> bool:
        return self.summary.all_passed and not self.timed_out


def _last_int(pattern: re.Pattern[str], text: str) -> int | None:
    matches = pattern.findall(text)
    return int(matches[-1]) if matches else None


_PASSED = re.compile(r"(\d+)\s+passed\b", re.IGNORECASE)
_FAILED = re.compile(r"(\d+)\s+failed\b", re.IGNORECASE)
_ERRORS = re.compile(r"(\d+)\s+errors?\b", re.IGNORECASE)
_PASSING = re.compile(r"(\d+)\s+passing\b", re.IGNORECASE)
_FAILING = re.compile(r"(\d+)\s+failing\b", re.IGNORECASE)
_GO_OK = re.compile(r"^ok\s+\S+", re.MULTILINE)
_GO_FAIL = re.compile(r"^FAIL\s+\S+", re.MULTILINE)


def _passed_failed(text: str) -> tuple[int, int] | None:
    # pytest ("3 failed, 5 passed, 1 error"), jest/vitest ("Tests: 1 failed, 4 passed")
    passed = _last_int(_PASSED, text)
    failed = _last_int(_FAILED, text)
    if passed is None and failed is None:
        return None
    errors = _last_int(_ERRORS, text) or 0
    return passed or 0, (failed or 0) + errors


def _passing_failing(text: str) -> tuple[int, int] | None:
    # mocha ("12 passing (2s)" ... "1 failing")
    passing = _last_int(_PASSING, text)
    if passing is None:
        return None
    return passing, _last_int(_FAILING, text) or 0


def _go_packages(text: str) -> tuple[int, int] | None:
    ok = len(_GO_OK.findall(text))
    fail = len(_GO_FAIL.findall(text))
    if ok == 0 and fail == 0:
        return None
    return ok, fail


SUMMARY_PATTERNS: list[tuple[str, Callable[[str], tuple[int, int] | None]]] = [
    ("passed/failed", _passed_failed),
    ("passing/failing", _passing_failing),
    ("go", _go_packages),
]


def parse_test_summary(text: str) -> TestSummary:
    """Extract pass/fail counts; unrecognised output yields 0/0."""
    for name, matcher in SUMMARY_PATTERNS:
        counts = matcher(text)
        if counts is not None:
            return TestSummary(passed=counts[0], failed=counts[1], runner=name)
    return TestSummary()


async def _spawn(command: str, cwd: str) -> asyncio.subprocess.Process:
    try:
        return await asyncio.create_subprocess_shell(
            command,
            cwd=cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )
    except OSError as exc:
        raise TestRunnerUnavailableError(f"cannot start test command {command!r}: {exc}") from exc


def _kill_group(proc: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


async def run_test_command(
    command: str,
    cwd: str,
    *,
    timeout: float = 300.0,
    max_output_chars: int = 200_000,
) -> TestRun:
    """Run *command* through the shell and parse its summary.

    Only the last *max_output_chars* of combined output are kept, since
    runners print their summary at the end.
    """
    started = time.monotonic()
    try:
        proc = await _spawn(command, cwd)
    except TestRunnerUnavailableError as exc:
        logger.warning("%s", exc)
        return TestRun(
            command=command,
            summary=TestSummary(),
            exit_code=None,
            output="",
            duration_seconds=0.0,
            error=str(exc),
        )

    chunks: list[str] = []
    kept = 0

    async def _collect() -> None:
        nonlocal kept
        assert proc.stdout is not None
        while True:
            chunk = await proc.stdout.read(READ_CHUNK_BYTES)
            if not chunk:
                break
            text = chunk.decode("utf-8", errors="replace")
            chunks.append(text)
            kept += len(text)
            while kept - len(chunks[0]) >= max_output_chars and len(chunks) > 1:
                kept -= len(chunks.pop(0))

    timed_out = False
    try:
        await asyncio.wait_for(_collect(), timeout=timeout)
        exit_code: int | None = await proc.wait()
    except asyncio.CancelledError:
        _kill_group(proc)
        raise
    except TimeoutError:
        timed_out = True
        _kill_group(proc)
        await proc.wait()
        exit_code = None
        logger.warning("test command %r timed out after %.0fs", command, timeout)

    output = "".join(chunks)[-max_output_chars:]
    summary = parse_test_summary(output)
    if summary.runner is None:
        logger.info("no recognised test summary in output of %r (exit %s)", command, exit_code)
    return TestRun(
        command=command,
        summary=summary,
        exit_code=exit_code,
        output=output,
        duration_seconds=time.monotonic() - started,
        timed_out=timed_out,
        error="timed out" if timed_out else None,
    )

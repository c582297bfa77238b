"""Tests for test command execution and summary parsing."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

from autocycle.verification.test_runner import TestSummary, parse_test_summary, run_test_command


@pytest.mark.parametrize(
    ("output", "expected"),
    [
        ("===== 5 passed in 0.12s =====", (5, 0, "passed/failed")),
        ("==== 2 failed, 7 passed, 1 error in 3.1s ====", (7, 3, "passed/failed")),
        ("Tests:       1 failed, 4 passed, 5 total", (4, 1, "passed/failed")),
        ("  12 passing (2s)\n  2 failing\n", (12, 2, "passing/failing")),
        ("ok  \texample.com/a\t0.01s\nFAIL\texample.com/b\t0.02s\n", (1, 1, "go")),
        ("collected 0 items", (0, 0, None)),
    ],
)
def test_parse_test_summary(output: str, expected: tuple[int, int, str | None]) -> None:
    summary = parse_test_summary(output)
    assert (summary.passed, summary.failed, summary.runner) == expected


def test_last_summary_line_wins() -> None:
    output = "3 passed\n...rerun...\n4 passed, 1 failed"
    summary = parse_test_summary(output)
    assert (summary.passed, summary.failed) == (4, 1)


def test_all_passed_needs_at_least_one_pass() -> None:
    assert TestSummary(passed=0, failed=0).all_passed is False
    assert TestSummary(passed=2, failed=0).all_passed is True


@pytest.mark.asyncio
async def test_run_command_parses_output(tmp_path: Path) -> None:
    run = await run_test_command("echo '6 passed in 0.5s'", str(tmp_path))
    assert run.exit_code == 0
    assert run.passed == 6
    assert run.all_passed
    assert run.timed_out is False


@pytest.mark.asyncio
async def test_run_command_keeps_tail_of_output(tmp_path: Path) -> None:
    script = tmp_path / "noisy.py"
    script.write_text("print('x' * 5000)\nprint('1 failed, 2 passed')\n", encoding="utf-8")
    run = await run_test_command(f"{sys.executable} {script}", str(tmp_path), max_output_chars=100)
    assert len(run.output) <= 100
    assert run.output.rstrip().endswith("1 failed, 2 passed")
    assert (run.passed, run.failed) == (2, 1)


@pytest.mark.asyncio
async def test_run_command_timeout(tmp_path: Path) -> None:
    run = await run_test_command("echo '3 passed'; sleep 5", str(tmp_path), timeout=0.3)
    assert run.timed_out is True
    assert run.exit_code is None
    assert run.all_passed is False
    assert run.duration_seconds < 5


@pytest.mark.asyncio
async def test_missing_working_directory_reports_error(tmp_path: Path) -> None:
    run = await run_test_command("echo hi", str(tmp_path / "missing"))
    assert run.error is not None
    assert run.exit_code is None
    assert run.all_passed is False

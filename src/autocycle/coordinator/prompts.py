"""Prompt builders for task and review agents."""

from __future__ import annotations

import os
import re
from pathlib import Path

from autocycle.protocol.models import Task

MAX_LISTED_FILES = 50
MAX_TEST_OUTPUT_CHARS = 3000
SKIPPED_DIRS = {".git", "node_modules", "__pycache__", ".venv", "venv", "dist", "build", ".mypy_cache", ".pytest_cache"}

_CYCLE_HEADER = re.compile(r"^###\s+\d+\.", re.MULTILINE)


def list_workspace_files(root: str | Path, limit: int = MAX_LISTED_FILES) -> list[str]:
    """Relative paths of the first *limit* files under *root*, sorted."""
    base = Path(root)
    found: list[str] = []
    for dirpath, dirnames, filenames in os.walk(base):
        dirnames[:] = sorted(d for d in dirnames if d not in SKIPPED_DIRS)
        for name in sorted(filenames):
            found.append((Path(dirpath) / name).relative_to(base).as_posix())
            if len(found) >= limit:
                return found
    return found


def spec_overview(spec_text: str, fallback_chars: int = 2000) -> str:
    """Everything before the first numbered cycle header."""
    match = _CYCLE_HEADER.search(spec_text)
    if match and match.start() > 0:
        return spec_text[: match.start()].strip()
    return spec_text[:fallback_chars].strip()


def build_task_prompt(
    task: Task,
    *,
    cycle_number: int,
    cycle_title: str,
    files: list[str],
    overview: str = "",
    test_command: str = "",
) -> str:
    criteria = (
        "\n".join(f"- [ ] {c}" for c in task.acceptance_criteria)
        if task.acceptance_criteria
        else "(No specific criteria)"
    )
    listing = "\n".join(files) if files else "(empty workspace)"
    first_step = (
        "Set up the project skeleton and tooling the description calls for"
        if cycle_number == 1
        else "Review the existing code and understand its current state"
    )
    parts: list[str] = []
    if overview:
        parts += ["## Project Overview", overview, "", "---", ""]
    parts += [
        "## Your Current Task",
        "",
        f"You are implementing **Cycle {cycle_number}: {cycle_title}**",
        f"Specifically, your task is: **{task.title}**",
        "",
        "### Task Description",
        task.description,
        "",
        "### Acceptance Criteria",
        criteria,
        "",
        "### Existing Files in Workspace",
        "```",
        listing,
        "```",
        "",
        "## Workflow",
        f"1. {first_step}",
        "2. Implement the feature incrementally, committing after each logical unit",
        "3. Write tests covering the acceptance criteria",
    ]
    if test_command:
        parts.append(f"4. Make sure `{test_command}` passes")
    else:
        parts.append("4. Make sure the project's tests pass")
    parts += [
        "5. Commit all remaining changes",
        "",
        "## Important",
        "- Work only inside the current directory.",
        "- Do not ask questions; make reasonable decisions and keep going.",
        "- Mark acceptance criteria you completed as `- [x]` in the spec file if one exists.",
    ]
    return "\n".join(parts)


def diff_stats(diff: str) -> tuple[int, int, int]:
    """(files changed, insertions, deletions) counted from a unified diff."""
    files = insertions = deletions = 0
    for line in diff.splitlines():
        if line.startswith("diff --git"):
            files += 1
        elif line.startswith("+") and not line.startswith("+++"):
            insertions += 1
        elif line.startswith("-") and not line.startswith("---"):
            deletions += 1
    return files, insertions, deletions


def build_review_prompt(
    task_description: str,
    diff: str,
    *,
    tests_passed: bool,
    tests_output: str = "",
    conventions: str = "",
) -> str:
    files, insertions, deletions = diff_stats(diff)
    parts = [
        "# Code Review Request",
        "",
        "You are a code reviewer evaluating a completed task. "
        "Analyze the changes and provide a structured review decision.",
        "",
        "## Task Description",
        task_description,
        "",
        "## Change Summary",
        f"- Files changed: {files}",
        f"- Insertions: {insertions}",
        f"- Deletions: {deletions}",
        "",
        "## Code Changes (git diff)",
        "```",
        diff,
        "```",
        "",
        "## Test Results",
        "All tests pass" if tests_passed else "Tests failed or were not run",
    ]
    if tests_output:
        parts += ["", "Test output:", tests_output[-MAX_TEST_OUTPUT_CHARS:]]
    if conventions:
        parts += ["", "## Project Conventions", conventions]
    parts += [
        "",
        "## Review Criteria",
        "1. Does the implementation address the task requirements?",
        "2. Does the code follow project conventions?",
        "3. Are there any obvious bugs or issues?",
        "4. Is the code maintainable and readable?",
        "5. Are there security concerns?",
        "",
        "## Required Output Format",
        "You MUST respond with a valid JSON object in this exact format:",
        "```json",
        "{",
        '  "decision": "approve" | "needs_changes" | "reject",',
        '  "justification": "Brief explanation of your decision",',
        '  "concerns": ["List of specific concerns, if any"],',
        '  "suggestions": ["List of improvement suggestions, if any"],',
        '  "confidence": 0.95',
        "}",
        "```",
        "",
        "Rules:",
        '- "approve": the change is acceptable and can be merged',
        '- "needs_changes": the change is on track but must be revised first',
        '- "reject": the change is wrong or harmful and should be discarded',
    ]
    return "\n".join(parts)


def build_debug_task_description(failed: int, output: str) -> str:
    return (
        f"The project test suite reports {failed} failing test(s) after the last cycle.\n"
        "Investigate the failures, fix the underlying bugs (not the tests, unless a test is wrong), "
        "and make the whole suite pass.\n\n"
        f"Recent test output:\n```\n{output[-MAX_TEST_OUTPUT_CHARS:]}\n```"
    )

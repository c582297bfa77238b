from __future__ import annotations

from pathlib import Path

from autocycle.coordinator.prompts import (
    build_debug_task_description,
    build_review_prompt,
    build_task_prompt,
    diff_stats,
    list_workspace_files,
    spec_overview,
)
from autocycle.protocol.models import Task

DIFF = """diff --git a/app.py b/app.py
--- a/app.py
+++ b/app.py
@@ -1,2 +1,3 @@
-old
+new
+extra
"""


def test_list_workspace_files_skips_vcs_and_caches(tmp_path: Path) -> None:
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "HEAD").write_text("ref", encoding="utf-8")
    (tmp_path / "node_modules").mkdir()
    (tmp_path / "node_modules" / "x.js").write_text("", encoding="utf-8")
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "b.py").write_text("", encoding="utf-8")
    (tmp_path / "a.py").write_text("", encoding="utf-8")
    assert list_workspace_files(tmp_path) == ["a.py", "src/b.py"]
    assert list_workspace_files(tmp_path, limit=1) == ["a.py"]


def test_spec_overview_stops_at_first_cycle() -> None:
    text = "# Todo App\n\nBuild a todo app.\n\n### 1. Storage\n- [ ] save items\n"
    assert spec_overview(text) == "# Todo App\n\nBuild a todo app."
    assert spec_overview("no cycles here", fallback_chars=5) == "no cy"


def test_task_prompt_sections() -> None:
    task = Task(task_id="t1", title="Storage", description="Persist items", acceptance_criteria=["save", "load"])
    prompt = build_task_prompt(
        task, cycle_number=1, cycle_title="Storage", files=[], overview="Todo app", test_command="pytest -q"
    )
    assert prompt.startswith("## Project Overview\nTodo app")
    assert "- [ ] save\n- [ ] load" in prompt
    assert "(empty workspace)" in prompt
    assert "Set up the project skeleton" in prompt
    assert "`pytest -q` passes" in prompt


def test_later_cycle_prompt_reviews_existing_code() -> None:
    task = Task(task_id="t2", title="UI", description="Screens")
    prompt = build_task_prompt(task, cycle_number=3, cycle_title="UI", files=["a.py"])
    assert "(No specific criteria)" in prompt
    assert "Review the existing code" in prompt
    assert "## Project Overview" not in prompt


def test_diff_stats() -> None:
    assert diff_stats(DIFF) == (1, 2, 1)


def test_review_prompt_includes_stats_and_test_tail() -> None:
    prompt = build_review_prompt("Do it", DIFF, tests_passed=False, tests_output="x" * 5000 + "END")
    assert "- Files changed: 1" in prompt
    assert "Tests failed or were not run" in prompt
    assert prompt.count("x") < 5000
    assert "END" in prompt
    assert '"decision": "approve" | "needs_changes" | "reject"' in prompt


def test_debug_description_mentions_failures() -> None:
    text = build_debug_task_description(3, "FAILED test_a")
    assert "3 failing test(s)" in text
    assert "FAILED test_a" in text

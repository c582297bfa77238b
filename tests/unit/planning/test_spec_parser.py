"""Tests for markdown spec parsing."""

from __future__ import annotations

from autocycle.planning.spec_parser import (
    extract_acceptance_criteria,
    extract_title,
    is_api_criterion,
    parse_spec,
    spec_completion,
)

SPLIT_SPEC = """# Notes App

Users keep private notes.

### 1. Accounts (Cycle 1)

**User Stories:**
- As a user I can sign up

**API Endpoints**
```
POST /api/register
POST /api/login
```

**UI Components**
```
┌──────────┐
│ Sign up  │
└──────────┘
```

**Acceptance Criteria:**
- [ ] POST /api/register returns 201
- [ ] Passwords are hashed
- [ ] Sign-up form shows inline errors

### 2. Notes (Cycle 2)

Plain note CRUD.

- [x] Notes list renders
- [ ] Notes can be deleted
"""


def test_title_and_overview() -> None:
    spec = parse_spec(SPLIT_SPEC)
    assert spec.title == "Notes App"
    assert spec.overview == "# Notes App\n\nUsers keep private notes."
    assert extract_title("no heading") == "Untitled Spec"


def test_cycles_and_criteria_counts() -> None:
    spec = parse_spec(SPLIT_SPEC)
    assert [(c.number, c.title) for c in spec.cycles] == [(1, "Accounts"), (2, "Notes")]
    assert spec.total_acceptance_criteria == 5


def test_api_and_ui_cycle_split_into_parallel_tasks() -> None:
    first = parse_spec(SPLIT_SPEC).cycles[0]
    api, ui = first.tasks
    assert (api.task_id, api.parallel_group, api.title) == ("cycle-1-api", "api", "Accounts - API/Backend")
    assert (ui.task_id, ui.parallel_group, ui.title) == ("cycle-1-ui", "ui", "Accounts - UI/Frontend")
    assert api.acceptance_criteria == ["POST /api/register returns 201", "Passwords are hashed"]
    assert ui.acceptance_criteria == ["Sign-up form shows inline errors"]
    assert "POST /api/login" in api.description
    assert "As a user I can sign up" in api.description
    assert "Sign up" in ui.description


def test_plain_cycle_is_single_task() -> None:
    second = parse_spec(SPLIT_SPEC).cycles[1]
    assert len(second.tasks) == 1
    task = second.tasks[0]
    assert task.task_id == "cycle-2-task-1"
    assert task.parallel_group == "main"
    assert task.acceptance_criteria == ["Notes list renders", "Notes can be deleted"]


def test_flat_spec_becomes_one_cycle() -> None:
    text = "# Tiny\n\nDo a thing.\n\n- [ ] it works\n"
    spec = parse_spec(text)
    assert len(spec.cycles) == 1
    assert spec.cycles[0].tasks[0].task_id == "task-1"
    assert spec.overview == text.strip()
    assert spec.total_acceptance_criteria == 1


def test_header_without_cycle_suffix() -> None:
    spec = parse_spec("# X\n\n### 1. Setup\n- [ ] repo exists\n")
    assert spec.cycles[0].title == "Setup"


def test_extract_and_classify_criteria() -> None:
    assert extract_acceptance_criteria("- [ ] a\n- [X] b\n* [ ] not a dash\n") == ["a", "b"]
    assert is_api_criterion("GET /items returns 200")
    assert is_api_criterion("Invalid JWT gives 401")
    assert not is_api_criterion("Button is blue")


def test_spec_completion() -> None:
    assert spec_completion("- [x] a\n  - [X] b\n- [ ] c\n- [ ] d\n") == 50.0
    assert spec_completion("no boxes") == 0.0

from __future__ import annotations

from autocycle.session.file_tracker import FileAccessTracker, FileConflict, normalize_path


def test_normalize_path() -> None:
    assert normalize_path("./src\\App.py") == "src/app.py"
    assert normalize_path("././docs/") == "docs"
    assert normalize_path("/") == "/"


def test_two_writers_produce_exactly_one_conflict() -> None:
    tracker = FileAccessTracker()
    assert tracker.record("s-1", "src/app.py", "write") == []
    conflicts = tracker.record("s-2", "src/app.py", "write")
    assert conflicts == [
        FileConflict(path="src/app.py", session_ids=("s-1", "s-2"), access_types=("write", "write"))
    ]
    # Same pair and path again: already reported.
    assert tracker.record("s-2", "./SRC/app.py", "edit") == []
    assert tracker.record("s-1", "src/app.py", "write") == []


def test_concurrent_reads_do_not_conflict() -> None:
    tracker = FileAccessTracker()
    tracker.record("s-1", "README.md", "read")
    assert tracker.record("s-2", "README.md", "read") == []


def test_read_after_write_conflicts() -> None:
    tracker = FileAccessTracker()
    tracker.record("s-1", "a.py", "edit")
    conflicts = tracker.record("s-2", "a.py", "read")
    assert len(conflicts) == 1
    assert conflicts[0].access_types == ("edit", "read")


def test_third_session_reports_its_own_pairs() -> None:
    tracker = FileAccessTracker()
    tracker.record("s-1", "a.py", "write")
    tracker.record("s-2", "a.py", "write")
    conflicts = tracker.record("s-3", "a.py", "write")
    assert {c.session_ids for c in conflicts} == {("s-1", "s-3"), ("s-2", "s-3")}


def test_clear_session_forgets_accesses() -> None:
    tracker = FileAccessTracker()
    tracker.record("s-1", "a.py", "write")
    tracker.clear_session("s-1")
    assert tracker.paths_for("s-1") == {}
    assert tracker.record("s-2", "a.py", "write") == []


def test_paths_for_returns_copy() -> None:
    tracker = FileAccessTracker()
    tracker.record("s-1", "a.py", "read")
    tracker.record("s-1", "a.py", "edit")
    paths = tracker.paths_for("s-1")
    assert paths == {"a.py": {"read", "edit"}}
    paths["a.py"].clear()
    assert tracker.paths_for("s-1") == {"a.py": {"read", "edit"}}

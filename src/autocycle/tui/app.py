"""Textual dashboard for a running (or finished) autocycle run."""

from __future__ import annotations

from datetime import datetime

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.widgets import DataTable, Footer, Header, Static, TabbedContent, TabPane

from autocycle.coordinator.control import RunControl
from autocycle.tui.stores import RunStore, event_message

REFRESH_SECONDS = 0.5


class AutocycleApp(App[None]):
    TITLE = "Autocycle"
    BINDINGS = [
        Binding("p", "pause_resume", "Pause/Resume"),
        Binding("s", "stop", "Stop run"),
        Binding("r", "refresh_now", "Refresh"),
        Binding("q", "quit", "Quit"),
    ]

    def __init__(self, run_dir: str) -> None:
        super().__init__()
        self._store = RunStore(run_dir)
        self._paused = False

        self._phase = Static("Phase: unknown", id="phase")
        self._budget = Static("Budget: -", id="budget")
        self._tasks = DataTable(id="tasks")
        self._sessions = DataTable(id="sessions")
        self._timeline = DataTable(id="timeline")
        self._task_detail = Static("", id="task-detail")
        self._errors = Static("", id="errors")
        self._selected_task_id: str | None = None

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Vertical():
            yield self._phase
            yield self._budget
            with TabbedContent(initial="tasks-tab"):
                with TabPane("Tasks", id="tasks-tab"):
                    yield self._tasks
                with TabPane("Sessions", id="sessions-tab"):
                    yield self._sessions
                with TabPane("Timeline", id="timeline-tab"):
                    yield self._timeline
                with TabPane("Task Detail", id="task-detail-tab"):
                    yield self._task_detail
                with TabPane("Errors", id="errors-tab"):
                    yield self._errors
        yield Footer()

    def on_mount(self) -> None:
        self._tasks.add_columns("Task", "Cycle", "Status", "Cost", "Title", "Reason")
        self._sessions.add_columns("Session", "Task", "Running", "Tokens", "Cost", "Elapsed")
        self._timeline.add_columns("Time", "Type", "Task", "Message")
        self.set_interval(REFRESH_SECONDS, self._refresh)
        self._refresh()

    def _refresh(self) -> None:
        state = self._store.read_state()
        phase = state.get("phase", "unknown")
        self._paused = phase == "paused"
        self._phase.update(
            f"Run: {state.get('run_id', '?')}  Phase: {phase}  Cycle: {state.get('current_cycle') or '-'}"
        )
        budget = state.get("budget", {}) if isinstance(state.get("budget"), dict) else {}
        self._budget.update(
            "Budget: "
            f"${budget.get('cost_used_usd', 0.0)}/${budget.get('cost_max_usd', 0.0)} | "
            f"{budget.get('elapsed_seconds', 0)}s/{budget.get('max_duration_seconds', 0)}s | "
            f"cycles {budget.get('cycles_completed', 0)}/{budget.get('max_cycles', 0)} | "
            f"merged {budget.get('tasks_merged', 0)} blocked {budget.get('tasks_blocked', 0)}"
        )

        self._tasks.clear(columns=False)
        task_ids: list[str] = []
        for row in state.get("tasks", []):
            task_id = str(row.get("task_id", ""))
            task_ids.append(task_id)
            self._tasks.add_row(
                task_id,
                str(row.get("cycle", "")),
                str(row.get("status", "")),
                f"${row.get('cost_usd', 0.0)}",
                str(row.get("title", ""))[:50],
                str(row.get("reason", ""))[:60],
            )

        self._sessions.clear(columns=False)
        sessions = state.get("sessions", {}) if isinstance(state.get("sessions"), dict) else {}
        for row in [*sessions.get("active", []), *sessions.get("finished", [])]:
            usage = row.get("usage", {}) if isinstance(row.get("usage"), dict) else {}
            self._sessions.add_row(
                str(row.get("session_key", "")),
                str(row.get("task_id", "")),
                str(row.get("running", "")),
                str(usage.get("input_tokens", 0) + usage.get("output_tokens", 0)),
                f"${row.get('cost_usd', 0.0)}",
                f"{row.get('elapsed_seconds', 0)}s",
            )

        self._timeline.clear(columns=False)
        for event in self._store.read_events(limit=200)[-60:]:
            ts = event.get("timestamp")
            when = datetime.fromtimestamp(ts).strftime("%H:%M:%S") if isinstance(ts, (int, float)) else ""
            self._timeline.add_row(
                when,
                str(event.get("event_type", "")),
                str(event.get("task_id", "")),
                event_message(event)[:90],
            )

        if task_ids and self._selected_task_id not in task_ids:
            self._selected_task_id = task_ids[0]
        self._render_task_detail()

        errors = state.get("errors", []) if isinstance(state.get("errors"), list) else []
        self._errors.update("\n".join(str(e) for e in errors[-20:]) or "No errors")

    def _render_task_detail(self) -> None:
        if not self._selected_task_id:
            self._task_detail.update("No task selected")
            return
        task = self._store.read_task(self._selected_task_id)
        transitions = task.get("transitions", []) if isinstance(task.get("transitions"), list) else []
        lines = [
            f"{t.get('timestamp', '')} {t.get('from_state', '')} -> {t.get('to_state', '')} ({t.get('reason', '')})"
            for t in transitions[-10:]
            if isinstance(t, dict)
        ]
        review = task.get("review") if isinstance(task.get("review"), dict) else {}
        self._task_detail.update(
            f"task={self._selected_task_id}\n"
            f"title={task.get('title', '')}\n"
            f"status={task.get('status', '')} reason={task.get('reason', '')}\n"
            f"branch={task.get('branch_name', '')} worktree={task.get('worktree_path', '')}\n"
            f"tests={task.get('tests_passed', 0)} passed / {task.get('tests_failed', 0)} failed\n"
            f"review={review.get('decision', '-')} ({review.get('source', '')})\n"
            "transitions:\n" + ("\n".join(lines) if lines else "(none)")
        )

    def action_refresh_now(self) -> None:
        self._refresh()

    def action_pause_resume(self) -> None:
        action = "resume" if self._paused else "pause"
        RunControl.write_request(self._store.control_path, action, "requested from monitor")
        self.notify(f"{action} requested")

    def action_stop(self) -> None:
        RunControl.write_request(self._store.control_path, "stop", "stopped from monitor")
        self.notify("stop requested")

    def on_data_table_row_highlighted(self, event: DataTable.RowHighlighted) -> None:
        if event.data_table.id != "tasks" or event.cursor_row < 0:
            return
        self._selected_task_id = str(event.data_table.get_cell_at((event.cursor_row, 0)))
        self._render_task_detail()

"""Configuration schema for autocycle YAML files."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class RunConfig:
    name: str = "autocycle-run"
    working_dir: str = "."
    run_dir: str = ".autocycle/run"
    spec_file: str = ""
    poll_interval_ms: int = 500
    min_spec_completion_pct: float = 10.0
    create_debug_tasks: bool = True
    continue_after_plan: bool = False
    cleanup_blocked_worktrees: bool = False
    debug: bool = False


@dataclass(slots=True)
class BudgetConfig:
    max_cycles: int = 10
    max_cost_usd: float = 5.0
    max_duration_seconds: float = 1800.0
    max_parallel_tasks: int = 2
    cycle_timeout_seconds: float | None = None


@dataclass(slots=True)
class AgentConfig:
    command: list[str] = field(default_factory=lambda: ["claude"])
    model: str = ""
    permission_mode: str = "bypassPermissions"
    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
    max_turns: int | None = None
    additional_dirs: list[str] = field(default_factory=list)
    system_prompt: str = ""
    env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class SessionConfig:
    max_concurrent_sessions: int = 4
    total_token_budget: int = 600_000
    finished_ttl_seconds: float = 3600.0
    compaction_drop_ratio: float = 0.5  # input tokens below this share of the previous count
    min_work_duration_seconds: float = 1.0
    channel_capacity: int = 64
    system_slots_file: str = ""  # empty = no cross-run ceiling
    system_max_sessions: int = 8


@dataclass(slots=True)
class MonitorConfig:
    hang_threshold_seconds: float = 600.0
    hang_check_interval_seconds: float = 30.0
    history_size: int = 20
    recent_window: int = 10
    repeat_threshold: int = 3


@dataclass(slots=True)
class TestConfig:
    __test__ = False

    command: str = ""
    timeout_seconds: float = 300.0
    max_output_chars: int = 200_000


@dataclass(slots=True)
class ReviewConfig:
    enabled: bool = True
    model: str = ""
    max_turns: int = 1
    timeout_seconds: float = 300.0
    allowed_tools: list[str] = field(default_factory=lambda: ["Read", "Grep", "Glob"])
    max_diff_chars: int = 50_000


@dataclass(slots=True)
class WorkspaceConfig:
    base_branch: str = ""  # empty = detect origin/HEAD, main, master, current
    worktrees_root: str = ""  # empty = <repo>-worktrees next to the repository
    branch_prefix: str = "autocycle"
    auto_commit: bool = True


@dataclass(slots=True)
class AutocycleYamlConfig:
    version: int = 1
    run: RunConfig = field(default_factory=RunConfig)
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    sessions: SessionConfig = field(default_factory=SessionConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    tests: TestConfig = field(default_factory=TestConfig)
    review: ReviewConfig = field(default_factory=ReviewConfig)
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)

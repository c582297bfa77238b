"""YAML config loader for autocycle."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from autocycle.config.schema import (
    AgentConfig,
    AutocycleYamlConfig,
    BudgetConfig,
    MonitorConfig,
    ReviewConfig,
    RunConfig,
    SessionConfig,
    TestConfig,
    WorkspaceConfig,
)
from autocycle.errors import ConfigError
from autocycle.protocol.models import RunBudget

_SECTIONS: dict[str, type[Any]] = {
    "run": RunConfig,
    "budget": BudgetConfig,
    "agent": AgentConfig,
    "sessions": SessionConfig,
    "monitor": MonitorConfig,
    "tests": TestConfig,
    "review": ReviewConfig,
    "workspace": WorkspaceConfig,
}


def load_config(path: str | Path | None = None) -> AutocycleYamlConfig:
    """Load a run configuration; a missing file yields the defaults."""
    raw: Any = {}
    if path is not None:
        p = Path(path)
        if p.exists():
            try:
                raw = yaml.safe_load(p.read_text(encoding="utf-8"))
            except yaml.YAMLError as exc:
                raise ConfigError(f"Invalid YAML in {p}: {exc}") from exc
    if not isinstance(raw, dict):
        raw = {}

    sections: dict[str, Any] = {}
    for key, model_type in _SECTIONS.items():
        section_raw = raw.get(key, {}) if isinstance(raw.get(key), dict) else {}
        sections[key] = model_type(**_pick(section_raw, model_type))

    agent: AgentConfig = sections["agent"]
    if isinstance(agent.command, str):
        agent.command = agent.command.split()

    config = AutocycleYamlConfig(version=int(raw.get("version", 1)), **sections)
    validate_config(config)
    return config


def validate_config(config: AutocycleYamlConfig) -> None:
    errors: list[str] = []
    if config.budget.max_cycles < 1:
        errors.append("budget.max_cycles must be >= 1")
    if config.budget.max_cost_usd <= 0:
        errors.append("budget.max_cost_usd must be > 0")
    if config.budget.max_duration_seconds <= 0:
        errors.append("budget.max_duration_seconds must be > 0")
    if config.budget.max_parallel_tasks < 1:
        errors.append("budget.max_parallel_tasks must be >= 1")
    if not config.agent.command:
        errors.append("agent.command must not be empty")
    if not 0 < config.sessions.compaction_drop_ratio < 1:
        errors.append("sessions.compaction_drop_ratio must be between 0 and 1")
    if config.sessions.max_concurrent_sessions < 1:
        errors.append("sessions.max_concurrent_sessions must be >= 1")
    if config.monitor.history_size < 4:
        errors.append("monitor.history_size must be >= 4")
    if config.monitor.recent_window > config.monitor.history_size:
        errors.append("monitor.recent_window must not exceed monitor.history_size")
    if config.run.poll_interval_ms <= 0:
        errors.append("run.poll_interval_ms must be > 0")
    if errors:
        raise ConfigError("; ".join(errors))


def budget_from_config(config: AutocycleYamlConfig) -> RunBudget:
    b = config.budget
    return RunBudget(
        max_cycles=b.max_cycles,
        max_cost_usd=b.max_cost_usd,
        max_duration_seconds=b.max_duration_seconds,
        max_parallel_tasks=b.max_parallel_tasks,
    )


def _pick(raw: dict[str, Any], model_type: type[Any]) -> dict[str, Any]:
    allowed = set(model_type.__dataclass_fields__.keys())
    return {k: v for k, v in raw.items() if k in allowed}

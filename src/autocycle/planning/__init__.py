"""Spec parsing and cycle planning."""

from autocycle.planning.planner import SpecPlanner
from autocycle.planning.spec_parser import (
    ParsedSpec,
    PlannedCycle,
    PlannedTask,
    extract_acceptance_criteria,
    is_api_criterion,
    parse_spec,
    spec_completion,
)

__all__ = [
    "ParsedSpec",
    "PlannedCycle",
    "PlannedTask",
    "SpecPlanner",
    "extract_acceptance_criteria",
    "is_api_criterion",
    "parse_spec",
    "spec_completion",
]

"""Markdown spec parsing.

Splits a spec into cycles by ``### N. Title (Cycle N)`` headers, collects
checkbox acceptance criteria per cycle and splits cycles that describe both
API and UI work into two parallel tasks. Specs without cycle headers become
a single cycle holding a single task.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class PlannedTask:
    """A unit of work inside a planned cycle."""

    task_id: str
    title: str
    description: str
    acceptance_criteria: list[str] = field(default_factory=list)
    parallel_group: str = "main"


@dataclass(slots=True)
class PlannedCycle:
    number: int
    title: str
    description: str
    tasks: list[PlannedTask] = field(default_factory=list)

    @property
    def acceptance_criteria(self) -> list[str]:
        return [c for t in self.tasks for c in t.acceptance_criteria]


@dataclass(slots=True)
class ParsedSpec:
    title: str
    overview: str
    cycles: list[PlannedCycle] = field(default_factory=list)
    total_acceptance_criteria: int = 0


# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

_TITLE_RE = re.compile(r"^#{1,2}\s+(.+)$", re.MULTILINE)
_CYCLE_RE = re.compile(r"^###\s+(\d+)\.\s+(.+?)(?:\s*\(Cycle\s+\d+\))?\s*$", re.MULTILINE)
_CRITERION_RE = re.compile(r"^-\s+\[[ xX]\]\s+(.+)$", re.MULTILINE)
_CHECKED_RE = re.compile(r"^\s*-\s+\[[xX]\]", re.MULTILINE)
_UNCHECKED_RE = re.compile(r"^\s*-\s+\[ \]", re.MULTILINE)

_API_SECTION_RE = re.compile(r"\*\*API Endpoints?\*\*|```\s*\n(?:GET|POST|PUT|PATCH|DELETE)\s", re.MULTILINE)
_UI_SECTION_RE = re.compile(r"\*\*UI Components?\*\*|```\s*\n[┌│└─┤├]", re.MULTILINE)
_API_BLOCK_RE = re.compile(r"\*\*API Endpoints?\*\*[\s\S]*?(?=\*\*(?:UI|Acceptance)|\Z)")
_UI_BLOCK_RE = re.compile(r"\*\*UI Components?\*\*[\s\S]*?(?=\*\*(?:API|Acceptance)|\Z)")
_STORY_BLOCK_RE = re.compile(r"\*\*User Stories?:\*\*[\s\S]*?(?=\*\*)")

_API_KEYWORDS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"api", r"endpoint", r"route", r"401", r"403", r"status code", r"jwt", r"token",
        r"hash", r"password", r"auth", r"database", r"sql", r"schema", r"validation",
        r"parameterized",
    )
] + [re.compile(r"\b(GET|POST|PUT|PATCH|DELETE)\b")]


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def extract_title(text: str) -> str:
    match = _TITLE_RE.search(text)
    return match.group(1).strip() if match else "Untitled Spec"


def extract_acceptance_criteria(section: str) -> list[str]:
    """Text of every ``- [ ]`` / ``- [x]`` item in *section*."""
    return [m.group(1).strip() for m in _CRITERION_RE.finditer(section)]


def is_api_criterion(criterion: str) -> bool:
    return any(p.search(criterion) for p in _API_KEYWORDS)


def spec_completion(text: str) -> float:
    """Percentage of checked acceptance boxes; 0 when there are none."""
    checked = len(_CHECKED_RE.findall(text))
    unchecked = len(_UNCHECKED_RE.findall(text))
    total = checked + unchecked
    if total == 0:
        return 0.0
    return 100.0 * checked / total


def _split_tasks(number: int, title: str, section: str, criteria: list[str]) -> list[PlannedTask]:
    single = [
        PlannedTask(
            task_id=f"cycle-{number}-task-1",
            title=title,
            description=section.strip(),
            acceptance_criteria=criteria,
        )
    ]
    if not (_API_SECTION_RE.search(section) and _UI_SECTION_RE.search(section)):
        return single

    api = [c for c in criteria if is_api_criterion(c)]
    ui = [c for c in criteria if not is_api_criterion(c)]
    if not api or not ui:
        return single

    api_parts = [m.group(0) for m in (_API_BLOCK_RE.search(section), _STORY_BLOCK_RE.search(section)) if m]
    ui_match = _UI_BLOCK_RE.search(section)
    return [
        PlannedTask(
            task_id=f"cycle-{number}-api",
            title=f"{title} - API/Backend",
            description="\n\n".join(api_parts) or section.strip(),
            acceptance_criteria=api,
            parallel_group="api",
        ),
        PlannedTask(
            task_id=f"cycle-{number}-ui",
            title=f"{title} - UI/Frontend",
            description=ui_match.group(0) if ui_match else section.strip(),
            acceptance_criteria=ui,
            parallel_group="ui",
        ),
    ]


def parse_spec(text: str) -> ParsedSpec:
    title = extract_title(text)
    headers = list(_CYCLE_RE.finditer(text))

    if not headers:
        cycle = PlannedCycle(
            number=1,
            title=title,
            description=text.strip(),
            tasks=[
                PlannedTask(
                    task_id="task-1",
                    title=title,
                    description=text.strip(),
                    acceptance_criteria=extract_acceptance_criteria(text),
                )
            ],
        )
        return ParsedSpec(
            title=title,
            overview=text.strip(),
            cycles=[cycle],
            total_acceptance_criteria=len(cycle.acceptance_criteria),
        )

    cycles: list[PlannedCycle] = []
    for i, match in enumerate(headers):
        end = headers[i + 1].start() if i + 1 < len(headers) else len(text)
        section = text[match.start():end]
        number = int(match.group(1))
        cycle_title = match.group(2).strip()
        criteria = extract_acceptance_criteria(section)
        cycles.append(
            PlannedCycle(
                number=number,
                title=cycle_title,
                description=section.strip(),
                tasks=_split_tasks(number, cycle_title, section, criteria),
            )
        )

    return ParsedSpec(
        title=title,
        overview=text[: headers[0].start()].strip(),
        cycles=cycles,
        total_acceptance_criteria=sum(len(c.acceptance_criteria) for c in cycles),
    )

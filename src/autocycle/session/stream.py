"""Incremental parser for the agent's newline-delimited JSON event stream.

The parser is a plain synchronous state machine: feed it raw chunks in
arrival order and it returns one item per complete line.  Chunks may cut
lines (and UTF-8 sequences) anywhere.  Lines that are not JSON objects are
returned as :class:`PassthroughLine` and never raise.
"""

from __future__ import annotations

import codecs
import json
from dataclasses import dataclass
from typing import Any

# Tool name -> kind of file access it performs.
FILE_TOOL_ACCESS: dict[str, str] = {
    "Read": "read",
    "Glob": "read",
    "Grep": "read",
    "Write": "write",
    "Edit": "edit",
    "MultiEdit": "edit",
    "NotebookEdit": "edit",
}

ACTION_COMMAND_PREFIX = 50


@dataclass(slots=True)
class StreamEvent:
    type: str
    data: dict[str, Any]
    raw: str


@dataclass(slots=True)
class PassthroughLine:
    text: str


StreamItem = StreamEvent | PassthroughLine


class StreamParser:
    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.events_parsed = 0
        self.passthrough_lines = 0

    def feed(self, chunk: bytes | str) -> list[StreamItem]:
        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        if not text:
            return []
        self._buffer += text
        if "\n" not in self._buffer:
            return []
        *complete, self._buffer = self._buffer.split("\n")
        return self._parse_lines(complete)

    def flush(self) -> list[StreamItem]:
        """Parse whatever is left once the stream has ended."""
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return self._parse_lines([tail])

    @property
    def pending(self) -> str:
        return self._buffer

    def _parse_lines(self, lines: list[str]) -> list[StreamItem]:
        items: list[StreamItem] = []
        for line in lines:
            item = parse_line(line)
            if item is None:
                continue
            if isinstance(item, StreamEvent):
                self.events_parsed += 1
            else:
                self.passthrough_lines += 1
            items.append(item)
        return items


def parse_line(line: str) -> StreamItem | None:
    stripped = line.strip()
    if not stripped:
        return None
    if stripped.startswith("{"):
        try:
            data = json.loads(stripped)
        except json.JSONDecodeError:
            return PassthroughLine(text=stripped)
        if isinstance(data, dict):
            return StreamEvent(type=str(data.get("type", "")), data=data, raw=stripped)
    return PassthroughLine(text=stripped)


def content_blocks(event: StreamEvent) -> list[dict[str, Any]]:
    """Return the message content blocks of an assistant/user event."""
    message = event.data.get("message")
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if isinstance(content, list):
        return [b for b in content if isinstance(b, dict)]
    return []


def extract_usage(event: StreamEvent) -> dict[str, Any] | None:
    usage = event.data.get("usage")
    if isinstance(usage, dict):
        return usage
    message = event.data.get("message")
    if isinstance(message, dict) and isinstance(message.get("usage"), dict):
        return message["usage"]
    return None


def extract_session_id(event: StreamEvent) -> str | None:
    value = event.data.get("session_id")
    if isinstance(value, str) and value:
        return value
    return None


def assistant_text(event: StreamEvent) -> str:
    parts = [str(b.get("text", "")) for b in content_blocks(event) if b.get("type") == "text"]
    return "\n".join(p for p in parts if p)


def tool_result_text(block: dict[str, Any]) -> str:
    content = block.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            str(c.get("text", "")) for c in content if isinstance(c, dict) and c.get("type") == "text"
        )
    return ""


@dataclass(slots=True)
class ResultSummary:
    cost_usd: float | None = None
    duration_ms: int | None = None
    num_turns: int | None = None
    is_error: bool = False
    text: str = ""


def extract_result(event: StreamEvent) -> ResultSummary:
    """Read the terminal summary, nested under ``result`` or at top level."""
    data = event.data
    nested = data.get("result") if isinstance(data.get("result"), dict) else {}

    def pick(*keys: str) -> Any:
        for source in (nested, data):
            for key in keys:
                value = source.get(key)
                if isinstance(value, (int, float)) and not isinstance(value, bool):
                    return value
        return None

    cost = pick("cost_usd", "total_cost_usd")
    duration = pick("duration_ms")
    turns = pick("num_turns")
    text = data.get("result") if isinstance(data.get("result"), str) else ""
    return ResultSummary(
        cost_usd=float(cost) if cost is not None else None,
        duration_ms=int(duration) if duration is not None else None,
        num_turns=int(turns) if turns is not None else None,
        is_error=bool(data.get("is_error", False)) or data.get("subtype") == "error",
        text=text,
    )


def action_key(tool_name: str, tool_input: dict[str, Any] | None) -> str:
    """Describe a tool call by its name and its most identifying argument."""
    params = tool_input or {}
    if isinstance(params.get("file_path"), str):
        return f"{tool_name}:{params['file_path']}"
    if isinstance(params.get("command"), str):
        return f"{tool_name}:{params['command'][:ACTION_COMMAND_PREFIX]}"
    if isinstance(params.get("pattern"), str):
        return f"{tool_name}:{params['pattern']}"
    if isinstance(params.get("path"), str):
        return f"{tool_name}:{params['path']}"
    return tool_name


def file_target(tool_name: str, tool_input: dict[str, Any] | None) -> tuple[str, str] | None:
    """Return ``(path, access)`` for file tools, else None."""
    access = FILE_TOOL_ACCESS.get(tool_name)
    if access is None:
        return None
    params = tool_input or {}
    for key in ("file_path", "notebook_path", "path"):
        value = params.get(key)
        if isinstance(value, str) and value:
            return value, access
    return None

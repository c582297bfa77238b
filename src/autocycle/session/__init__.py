"""Agent subprocess sessions: stream parsing, token ledger and registry."""

from autocycle.session.agent_session import AgentSession, SessionOptions, build_agent_args
from autocycle.session.file_tracker import FileAccessTracker, FileConflict
from autocycle.session.registry import FinishedSession, SessionRegistry, SystemSessionSlots
from autocycle.session.stream import PassthroughLine, StreamEvent, StreamParser
from autocycle.session.usage import TokenUsage, estimate_cost

__all__ = [
    "AgentSession",
    "FileAccessTracker",
    "FileConflict",
    "FinishedSession",
    "PassthroughLine",
    "SessionOptions",
    "SessionRegistry",
    "StreamEvent",
    "StreamParser",
    "SystemSessionSlots",
    "TokenUsage",
    "build_agent_args",
    "estimate_cost",
]

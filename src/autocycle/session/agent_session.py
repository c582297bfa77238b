"""Supervision of one external agent subprocess.

The process's stdout is pumped in raw chunks onto a bounded
``asyncio.Queue``; a consumer task drains the queue through
:class:`~autocycle.session.stream.StreamParser` and applies each parsed
event to the session state.  Queue capacity provides backpressure: when the
consumer falls behind, the pump stops reading and the pipe fills up.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from autocycle.coordinator.event_bus import (
    COMPACTION_DETECTED,
    FILE_CONFLICT,
    SESSION_FINISHED,
    SESSION_ID_ASSIGNED,
    SUBAGENT_COMPLETED,
    SUBAGENT_SPAWNED,
    TOKEN_USAGE,
    EventBus,
)
from autocycle.errors import SpawnFailedError
from autocycle.session.stream import (
    PassthroughLine,
    ResultSummary,
    StreamEvent,
    StreamItem,
    StreamParser,
    action_key,
    assistant_text,
    content_blocks,
    extract_result,
    extract_session_id,
    extract_usage,
    file_target,
    tool_result_text,
)
from autocycle.session.usage import TokenUsage, estimate_cost

if TYPE_CHECKING:
    from autocycle.monitor.anomaly import AnomalyMonitor
    from autocycle.session.registry import SessionRegistry

logger = logging.getLogger(__name__)

# Env vars that make a nested agent CLI refuse to start.
_STRIP_ENV_VARS = {
    "CLAUDECODE", "CLAUDE_CODE_ENTRYPOINT", "CLAUDE_REPL",
    "CLAUDE_CODE_PACKAGE_DIR",
}

READ_CHUNK_BYTES = 16 * 1024
STDERR_TAIL_CHARS = 4000
PASSTHROUGH_TAIL_LINES = 50
TERMINATE_GRACE_SECONDS = 5.0
SUBAGENT_TOOL = "Task"


@dataclass(slots=True)
class SessionOptions:
    command: list[str] = field(default_factory=lambda: ["claude"])
    model: str = ""
    permission_mode: str = ""
    additional_dirs: list[str] = field(default_factory=list)
    max_turns: int | None = None
    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
    system_prompt: str = ""
    env: dict[str, str] = field(default_factory=dict)
    task_id: str | None = None
    channel_capacity: int = 64
    compaction_drop_ratio: float = 0.5


def build_agent_args(prompt: str, options: SessionOptions) -> list[str]:
    """Build the argv for a stream-json agent invocation."""
    args = [*options.command, "--print", "--output-format", "stream-json", "--verbose"]
    if options.model:
        args.extend(["--model", options.model])
    if options.system_prompt:
        args.extend(["--append-system-prompt", options.system_prompt])
    for directory in options.additional_dirs:
        args.extend(["--add-dir", directory])
    if options.max_turns:
        args.extend(["--max-turns", str(options.max_turns)])
    if options.allowed_tools:
        args.extend(["--allowedTools", *options.allowed_tools])
    if options.disallowed_tools:
        args.extend(["--disallowedTools", *options.disallowed_tools])
    if options.permission_mode:
        args.extend(["--permission-mode", options.permission_mode])
    args.extend(["--", prompt])
    return args


def build_agent_env(options: SessionOptions) -> dict[str, str]:
    env = {k: v for k, v in os.environ.items() if k not in _STRIP_ENV_VARS}
    env.update(options.env)
    if options.task_id:
        env["AUTOCYCLE_TASK_ID"] = options.task_id
    return env


class AgentSession:
    """One agent subprocess plus everything learned from its event stream."""

    def __init__(
        self,
        prompt: str,
        working_dir: str | Path,
        options: SessionOptions,
        *,
        registry: SessionRegistry,
        event_bus: EventBus | None = None,
        monitor: AnomalyMonitor | None = None,
        on_exit: Callable[[int | None], Any] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session_key = f"s-{uuid.uuid4().hex[:10]}"
        self.session_id: str | None = None
        self.prompt = prompt
        self.working_dir = Path(working_dir)
        self.options = options
        self.task_id = options.task_id
        self.model = options.model
        self.usage = TokenUsage()
        self.compaction_count = 0
        self.last_update_compacted = False
        self.paused = False
        self.last_output_at: float | None = None
        self.last_assistant_text = ""
        self.result: ResultSummary | None = None
        self.exit_code: int | None = None
        self.termination_reason: str | None = None
        self.stderr_tail = ""
        self.passthrough: deque[str] = deque(maxlen=PASSTHROUGH_TAIL_LINES)
        self.tool_errors = 0
        self.pending_subagents: dict[str, str] = {}
        self.subagents_completed = 0
        self.started_at: float | None = None
        self.ended_at: float | None = None

        self._registry = registry
        self._bus = event_bus
        self._monitor = monitor
        self._on_exit = on_exit
        self._clock = clock
        self._parser = StreamParser()
        self._process: asyncio.subprocess.Process | None = None
        self._channel: asyncio.Queue[bytes | None] | None = None
        self._supervisor: asyncio.Task[None] | None = None
        self._done = asyncio.Event()
        self._finalized = False

    # -- lifecycle -----------------------------------------------------

    @classmethod
    async def spawn(
        cls,
        prompt: str,
        working_dir: str | Path,
        options: SessionOptions,
        *,
        registry: SessionRegistry,
        event_bus: EventBus | None = None,
        monitor: AnomalyMonitor | None = None,
        on_exit: Callable[[int | None], Any] | None = None,
    ) -> AgentSession:
        """Start an agent process. Raises SpawnFailedError without side effects."""
        session = cls(
            prompt,
            working_dir,
            options,
            registry=registry,
            event_bus=event_bus,
            monitor=monitor,
            on_exit=on_exit,
        )
        await session.start()
        return session

    async def start(self) -> None:
        if self._process is not None:
            raise RuntimeError(f"session {self.session_key} already started")
        if not self.working_dir.is_dir():
            raise SpawnFailedError(f"working directory does not exist: {self.working_dir}")
        self._registry.register(self)
        argv = build_agent_args(self.prompt, self.options)
        try:
            self._process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.working_dir),
                env=build_agent_env(self.options),
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            self._registry.discard(self)
            raise SpawnFailedError(f"'{argv[0]}' CLI not found. Install it or add it to PATH.") from exc
        except OSError as exc:
            self._registry.discard(self)
            raise SpawnFailedError(f"agent spawn failed: {exc}") from exc

        self.started_at = self._clock()
        self.last_output_at = self.started_at
        logger.info(
            "spawned agent session %s (pid=%s task=%s) in %s",
            self.session_key,
            self._process.pid,
            self.task_id,
            self.working_dir,
        )
        if self._monitor is not None:
            self._monitor.watch(self.session_key, self.task_id)
        self._channel = asyncio.Queue(maxsize=max(1, self.options.channel_capacity))
        self._supervisor = asyncio.create_task(self._supervise())

    async def _supervise(self) -> None:
        assert self._process is not None
        pump = asyncio.create_task(self._pump(self._process.stdout))
        stderr = asyncio.create_task(self._drain_stderr(self._process.stderr))
        exit_code: int | None = None
        try:
            await self._consume()
            await asyncio.gather(pump, stderr)
            exit_code = await self._process.wait()
        except asyncio.CancelledError:
            pump.cancel()
            stderr.cancel()
            self._signal(signal.SIGKILL)
            raise
        finally:
            if exit_code is None:
                exit_code = self._process.returncode
            self._finalize(exit_code)

    async def _pump(self, stream: asyncio.StreamReader | None) -> None:
        assert self._channel is not None
        if stream is not None:
            try:
                while True:
                    chunk = await stream.read(READ_CHUNK_BYTES)
                    if not chunk:
                        break
                    await self._channel.put(chunk)
            except (OSError, ValueError) as exc:
                logger.warning("stdout read failed for session %s: %s", self.session_key, exc)
        await self._channel.put(None)

    async def _consume(self) -> None:
        assert self._channel is not None
        while True:
            chunk = await self._channel.get()
            if chunk is None:
                break
            self._handle_items(self._parser.feed(chunk))
        self._handle_items(self._parser.flush())

    async def _drain_stderr(self, stream: asyncio.StreamReader | None) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(READ_CHUNK_BYTES)
            if not chunk:
                break
            text = chunk.decode("utf-8", errors="replace")
            self.stderr_tail = (self.stderr_tail + text)[-STDERR_TAIL_CHARS:]
            self._mark_output()

    def _finalize(self, exit_code: int | None) -> None:
        if self._finalized:
            return
        self._finalized = True
        self.exit_code = exit_code
        self.ended_at = self._clock()
        if self._monitor is not None:
            self._monitor.unwatch(self.session_key)
        self._registry.finalize(self)
        logger.info(
            "agent session %s exited code=%s after %.1fs (cost=$%.4f)",
            self.session_key,
            exit_code,
            self.elapsed_seconds,
            self.cost_usd,
        )
        self._publish(
            SESSION_FINISHED,
            message=f"exit code {exit_code}",
            exit_code=exit_code,
            agent_session_id=self.session_id,
            cost_usd=round(self.cost_usd, 6),
            usage=self.usage.as_dict(),
            reason=self.termination_reason or "",
        )
        if self._on_exit is not None:
            try:
                self._on_exit(exit_code)
            except Exception:
                logger.exception("on_exit hook failed for session %s", self.session_key)
        self._done.set()

    async def wait(self, timeout: float | None = None) -> int | None:
        """Wait for the session to finish; raises TimeoutError on *timeout*."""
        await asyncio.wait_for(self._done.wait(), timeout=timeout)
        return self.exit_code

    async def terminate(self, reason: str, *, grace_seconds: float = TERMINATE_GRACE_SECONDS) -> None:
        """SIGTERM the process group, then SIGKILL after *grace_seconds*."""
        if self._process is None or self._finalized:
            return
        self.termination_reason = reason
        logger.info("terminating session %s: %s", self.session_key, reason)
        self._signal(signal.SIGTERM)
        if self.paused:
            self._signal(signal.SIGCONT)
            self.paused = False
        try:
            await asyncio.wait_for(self._process.wait(), timeout=grace_seconds)
        except TimeoutError:
            self._signal(signal.SIGKILL)
            await self._process.wait()
        try:
            await asyncio.wait_for(self._done.wait(), timeout=grace_seconds)
        except TimeoutError:
            # A grandchild is still holding the pipe open.
            if self._supervisor is not None:
                self._supervisor.cancel()
                try:
                    await self._supervisor
                except asyncio.CancelledError:
                    pass

    def pause(self) -> bool:
        if not self.running or self.paused:
            return False
        self._signal(signal.SIGSTOP)
        self.paused = True
        return True

    def resume(self) -> bool:
        if not self.running or not self.paused:
            return False
        self._signal(signal.SIGCONT)
        self.paused = False
        self._mark_output()
        return True

    def _signal(self, sig: signal.Signals) -> None:
        proc = self._process
        if proc is None or proc.returncode is not None:
            return
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            proc.send_signal(sig)

    # -- event handling ------------------------------------------------

    def _mark_output(self) -> None:
        self.last_output_at = self._clock()
        if self._monitor is not None:
            self._monitor.record_output(self.session_key)

    def _handle_items(self, items: list[StreamItem]) -> None:
        for item in items:
            self._mark_output()
            if isinstance(item, PassthroughLine):
                self.passthrough.append(item.text)
                logger.debug("session %s passthrough: %s", self.session_key, item.text[:200])
                continue
            try:
                self._handle_event(item)
            except (KeyError, TypeError, ValueError, AttributeError) as exc:
                logger.warning("session %s: could not apply %s event: %s", self.session_key, item.type, exc)

    def _handle_event(self, event: StreamEvent) -> None:
        agent_id = extract_session_id(event)
        if agent_id and self.session_id is None:
            self.session_id = agent_id
            self._publish(SESSION_ID_ASSIGNED, message=agent_id, agent_session_id=agent_id)

        if event.type == "assistant":
            self._handle_assistant(event)
        elif event.type == "user":
            self._handle_tool_results(event)
        elif event.type == "result":
            self.result = extract_result(event)
            if self.result.text and not self.last_assistant_text:
                self.last_assistant_text = self.result.text

    def _handle_assistant(self, event: StreamEvent) -> None:
        usage = extract_usage(event)
        if usage is not None:
            previous_input = self.usage.input_tokens
            compacted = self.usage.apply(usage, drop_ratio=self.options.compaction_drop_ratio)
            self.last_update_compacted = compacted
            self._publish(TOKEN_USAGE, **self.usage.as_dict())
            if compacted:
                self.compaction_count += 1
                logger.info(
                    "session %s compacted context: %d -> %d input tokens",
                    self.session_key,
                    previous_input,
                    self.usage.input_tokens,
                )
                self._publish(
                    COMPACTION_DETECTED,
                    previous_input_tokens=previous_input,
                    input_tokens=self.usage.input_tokens,
                    compaction_count=self.compaction_count,
                )

        text = assistant_text(event)
        if text:
            self.last_assistant_text = text

        for block in content_blocks(event):
            if block.get("type") != "tool_use":
                continue
            name = str(block.get("name", ""))
            params = block.get("input") if isinstance(block.get("input"), dict) else {}
            if self._monitor is not None:
                self._monitor.record_action(self.session_key, action_key(name, params))
            target = file_target(name, params)
            if target is not None:
                self._track_file(*target)
            if name == SUBAGENT_TOOL:
                tool_use_id = str(block.get("id", ""))
                kind = str(params.get("subagent_type", "general-purpose"))
                self.pending_subagents[tool_use_id] = kind
                self._publish(SUBAGENT_SPAWNED, tool_use_id=tool_use_id, subagent_type=kind)

    def _handle_tool_results(self, event: StreamEvent) -> None:
        for block in content_blocks(event):
            if block.get("type") != "tool_result":
                continue
            if block.get("is_error"):
                self.tool_errors += 1
                logger.debug("session %s tool error: %s", self.session_key, tool_result_text(block)[:200])
            tool_use_id = str(block.get("tool_use_id", ""))
            kind = self.pending_subagents.pop(tool_use_id, None)
            if kind is not None:
                self.subagents_completed += 1
                self._publish(SUBAGENT_COMPLETED, tool_use_id=tool_use_id, subagent_type=kind)

    def _track_file(self, path: str, access: str) -> None:
        relative = self._workspace_relative(path)
        for conflict in self._registry.file_tracker.record(self.session_key, relative, access):
            self._publish(
                FILE_CONFLICT,
                message=f"{conflict.path} touched by {conflict.session_ids[0]} and {conflict.session_ids[1]}",
                path=conflict.path,
                sessions=list(conflict.session_ids),
                access_types=list(conflict.access_types),
            )

    def _workspace_relative(self, path: str) -> str:
        p = Path(path)
        if not p.is_absolute():
            return p.as_posix()
        try:
            return p.resolve().relative_to(self.working_dir.resolve()).as_posix()
        except ValueError:
            return p.as_posix()

    def _publish(self, event_type: str, *, message: str = "", **fields: Any) -> None:
        if self._bus is None:
            return
        self._bus.publish(
            event_type,
            message=message,
            session_id=self.session_key,
            task_id=self.task_id,
            **fields,
        )

    # -- views ---------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._process is not None and not self._finalized

    @property
    def finished(self) -> bool:
        return self._finalized

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def elapsed_seconds(self) -> float:
        if self.started_at is None:
            return 0.0
        end = self.ended_at if self.ended_at is not None else self._clock()
        return max(0.0, end - self.started_at)

    @property
    def cost_usd(self) -> float:
        if self.result is not None and self.result.cost_usd is not None:
            return self.result.cost_usd
        return estimate_cost(self.usage, self.model)

    @property
    def clean_completion(self) -> bool:
        return self.exit_code == 0 and self.result is not None

    def describe(self) -> dict[str, Any]:
        return {
            "session_key": self.session_key,
            "session_id": self.session_id,
            "task_id": self.task_id,
            "model": self.model,
            "pid": self.pid,
            "running": self.running,
            "paused": self.paused,
            "elapsed_seconds": round(self.elapsed_seconds, 1),
            "usage": self.usage.as_dict(),
            "compaction_count": self.compaction_count,
            "cost_usd": round(self.cost_usd, 6),
            "tool_errors": self.tool_errors,
            "files_touched": len(self._registry.file_tracker.paths_for(self.session_key)),
            "pending_subagents": len(self.pending_subagents),
        }

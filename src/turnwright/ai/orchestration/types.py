"""Core type definitions for the turn engine.

This module defines the dataclasses that flow through one turn: chat
messages, stream events emitted by a model provider, tool invocations
assembled from those events, the caller-owned session state and the
decree produced by the turn evaluator.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, ClassVar, Literal, Mapping, Sequence, Union

from ..errors import OperationCancelledError, TurnFault
from .json_repair import parse_tool_arguments
from .response import ModelResponse

__all__ = [
    # Messages
    "Message",
    "MessageRole",
    # Stream events
    "RunStarted",
    "StageChange",
    "ContentDelta",
    "ReasoningDelta",
    "ToolCallDelta",
    "ToolCallDone",
    "Usage",
    "RunCompleted",
    "StreamEvent",
    # Invocations
    "ToolCallStatus",
    "ToolInvocation",
    # Session and decree
    "SessionRunState",
    "Strategy",
    "Urgency",
    "StopCondition",
    "TurnDecree",
    # Engine
    "TurnPhase",
    "TurnOutcome",
    "ProgressEvent",
    "ProgressSink",
    "CancellationToken",
]


# -----------------------------------------------------------------------------
# Message Type
# -----------------------------------------------------------------------------

MessageRole = Literal["system", "user", "assistant", "tool"]


@dataclass(slots=True, frozen=True)
class Message:
    """Immutable chat message.

    Attributes:
        role: The role of the message sender.
        content: Text content, or a list of typed content blocks.
        tool_call_id: ID linking a tool result to its call.
        tool_calls: Tool calls made by the assistant.
        name: Optional name for tool messages.
    """

    role: MessageRole
    content: str | Sequence[Mapping[str, Any]]
    tool_call_id: str | None = None
    tool_calls: tuple[Mapping[str, Any], ...] | None = None
    name: str | None = None

    def to_chat_param(self) -> dict[str, Any]:
        """Convert to the OpenAI chat message format."""
        content = self.content
        if not isinstance(content, str):
            content = ModelResponse.wrap(content).text
        payload: dict[str, Any] = {"role": self.role, "content": content}
        if self.name is not None:
            payload["name"] = self.name
        if self.tool_call_id is not None:
            payload["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            payload["tool_calls"] = list(self.tool_calls)
        return payload

    @property
    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return ModelResponse.wrap(self.content).text

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role="user", content=content)

    @classmethod
    def assistant(
        cls,
        content: str,
        tool_calls: Sequence[Mapping[str, Any]] | None = None,
    ) -> Message:
        return cls(
            role="assistant",
            content=content,
            tool_calls=tuple(tool_calls) if tool_calls else None,
        )

    @classmethod
    def tool(cls, content: str, tool_call_id: str, name: str | None = None) -> Message:
        return cls(role="tool", content=content, tool_call_id=tool_call_id, name=name)


# -----------------------------------------------------------------------------
# Stream Events
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class RunStarted:
    """The provider accepted the request and opened a stream."""

    run_id: str = ""
    type: ClassVar[str] = "run_started"


@dataclass(slots=True, frozen=True)
class StageChange:
    """The provider moved to a new stage (e.g. thinking, responding)."""

    stage: str
    label: str = ""
    type: ClassVar[str] = "stage_change"


@dataclass(slots=True, frozen=True)
class ContentDelta:
    """A fragment of visible response text."""

    text: str
    type: ClassVar[str] = "content_delta"


@dataclass(slots=True, frozen=True)
class ReasoningDelta:
    """A fragment of reasoning text."""

    text: str
    type: ClassVar[str] = "reasoning_delta"


@dataclass(slots=True, frozen=True)
class ToolCallDelta:
    """A fragment of a tool call.

    The first delta for an index carries the call id and/or tool name and
    starts the invocation; later deltas usually carry only an arguments
    fragment.
    """

    index: int
    call_id: str | None = None
    name: str | None = None
    arguments_delta: str | None = None
    type: ClassVar[str] = "tool_call_delta"


@dataclass(slots=True, frozen=True)
class ToolCallDone:
    """End of the content block for the tool call at ``index``.

    ``arguments`` optionally carries the provider's full argument text; when
    present it replaces whatever was accumulated from deltas.
    """

    index: int
    arguments: str | None = None
    type: ClassVar[str] = "tool_call_done"


@dataclass(slots=True, frozen=True)
class Usage:
    """Token accounting for one request."""

    input_tokens: int = 0
    output_tokens: int = 0
    type: ClassVar[str] = "usage"

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(slots=True, frozen=True)
class RunCompleted:
    """Terminal stream event carrying usage totals."""

    usage: Usage | None = None
    duration_ms: float = 0.0
    type: ClassVar[str] = "run_completed"


StreamEvent = Union[
    RunStarted,
    StageChange,
    ContentDelta,
    ReasoningDelta,
    ToolCallDelta,
    ToolCallDone,
    Usage,
    RunCompleted,
]


# -----------------------------------------------------------------------------
# Tool Invocation
# -----------------------------------------------------------------------------


class ToolCallStatus(str, Enum):
    """Lifecycle of a tool invocation."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(slots=True)
class ToolInvocation:
    """One tool call assembled from the stream.

    Attributes:
        call_id: Identifier assigned by the model (or synthesized).
        name: Tool name.
        index: Stream index the provider used for this call.
        order: Position in which the call was started in the stream.
        arguments: Raw argument text accumulated from deltas.
        parsed_arguments: Arguments after parsing, None until finalized.
        parse_error: Reason parsing failed, if it did.
        status: Current lifecycle status.
        output: Captured tool output or error message.
        duration_ms: Execution time once terminal.
        declined: True when the operator rejected the call.
    """

    call_id: str
    name: str
    index: int = 0
    order: int = 0
    arguments: str = ""
    parsed_arguments: dict[str, Any] | None = None
    parse_error: str | None = None
    status: ToolCallStatus = ToolCallStatus.PENDING
    output: str | None = None
    duration_ms: float | None = None
    declined: bool = False
    finalized: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in (ToolCallStatus.COMPLETED, ToolCallStatus.ERROR)

    def append_arguments(self, fragment: str) -> None:
        if self.finalized:
            raise RuntimeError(f"Tool call {self.call_id} is already finalized")
        self.arguments += fragment

    def finalize(self, arguments: str | None = None) -> None:
        """Parse the accumulated argument text.

        Parsing happens exactly once; a failure is recorded in
        ``parse_error`` rather than raised.
        """
        if self.finalized:
            return
        if arguments is not None:
            self.arguments = arguments
        self.finalized = True
        try:
            self.parsed_arguments = parse_tool_arguments(self.arguments)
        except ValueError as exc:
            self.parse_error = str(exc)

    def to_chat_tool_call(self) -> dict[str, Any]:
        return {
            "id": self.call_id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments or "{}"},
        }

    def to_tool_message(self) -> Message:
        return Message.tool(self.output or "", tool_call_id=self.call_id, name=self.name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "call_id": self.call_id,
            "name": self.name,
            "status": self.status.value,
            "arguments": self.parsed_arguments if self.parsed_arguments is not None else self.arguments,
            "output": self.output,
            "duration_ms": self.duration_ms,
            "declined": self.declined,
        }


# -----------------------------------------------------------------------------
# Session Run State
# -----------------------------------------------------------------------------

TOOL_HISTORY_LIMIT = 20
RECENT_FILES_LIMIT = 10
PRESSURE_FLOOR = 0.0
PRESSURE_CEILING = 100.0


@dataclass(slots=True)
class SessionRunState:
    """Cross-turn state owned by the caller and updated after each turn.

    ``error_hotspots`` is insertion ordered; a path is moved to the end every
    time it records a failure, so iteration runs from least to most recently
    seen.
    """

    total_error_count: int = 0
    error_hotspots: dict[str, int] = field(default_factory=dict)
    victory_streak: int = 0
    pressure: float = 50.0
    tool_history: list[str] = field(default_factory=list)
    recent_files: list[str] = field(default_factory=list)
    shaky_density: float = 0.0
    previous_confidence: float = 1.2
    consecutive_successes: int = 0

    def record_success(self, tool_name: str, file_path: str | None = None) -> None:
        self.victory_streak += 1
        self.pressure = min(PRESSURE_CEILING, self.pressure + 10)
        self.tool_history.append(tool_name)
        del self.tool_history[:-TOOL_HISTORY_LIMIT]
        if file_path:
            if file_path in self.recent_files:
                self.recent_files.remove(file_path)
            self.recent_files.append(file_path)
            del self.recent_files[:-RECENT_FILES_LIMIT]

    def record_failure(self, tool_name: str, file_path: str | None = None) -> None:
        self.victory_streak = 0
        self.pressure = max(PRESSURE_FLOOR, self.pressure - 20)
        self.total_error_count += 1
        if file_path:
            count = self.error_hotspots.pop(file_path, 0)
            self.error_hotspots[file_path] = count + 1

    def record_shaky(self) -> None:
        self.shaky_density = min(1.0, round(self.shaky_density + 0.2, 6))

    def recent_hotspots(self, threshold: int) -> list[str]:
        """Return hotspot paths with at least ``threshold`` failures, newest first."""
        return [path for path, count in reversed(self.error_hotspots.items()) if count >= threshold]


# -----------------------------------------------------------------------------
# Turn Decree
# -----------------------------------------------------------------------------


class Strategy(str, Enum):
    EXECUTE = "EXECUTE"
    DEBUG = "DEBUG"
    HYPE = "HYPE"


class Urgency(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class StopCondition(str, Enum):
    LANDED = "landed"
    STRUCTURAL_UNCERTAINTY = "structural_uncertainty"


@dataclass(slots=True, frozen=True)
class TurnDecree:
    """Deterministic verdict produced after a turn.

    Only ``strategy``, ``urgency``, ``confidence`` and ``stop_condition``
    drive control flow; ``rationale`` is informational.
    """

    strategy: Strategy
    urgency: Urgency
    confidence: float
    stop_condition: StopCondition
    structural_uncertainty: bool = False
    is_continue_directive: bool = False
    rationale: str = ""
    blocked_by: tuple[str, ...] = ()
    profile: str = "balanced"

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "urgency": self.urgency.value,
            "confidence": self.confidence,
            "stop_condition": self.stop_condition.value,
            "structural_uncertainty": self.structural_uncertainty,
            "is_continue_directive": self.is_continue_directive,
            "rationale": self.rationale,
            "blocked_by": list(self.blocked_by),
            "profile": self.profile,
        }


# -----------------------------------------------------------------------------
# Engine Types
# -----------------------------------------------------------------------------


class TurnPhase(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    ASSEMBLING_TOOLS = "assembling_tools"
    DISPATCHING_TOOLS = "dispatching_tools"
    EVALUATING = "evaluating"
    ROLLED_BACK = "rolled_back"
    RECOVERED = "recovered"


@dataclass(slots=True, frozen=True)
class TurnOutcome:
    """Summary of one turn returned to the caller.

    Attributes:
        run_id: Identifier shared with every progress event of the turn.
        phase: EVALUATING for a completed turn, otherwise ROLLED_BACK or
            RECOVERED.
        response: Normalized view of the model output.
        invocations: Tool invocations in dispatch order.
        decree: Evaluator verdict; None when the turn did not complete.
        fault: Turn-level fault, if any.
        cancelled: True when a cancellation token stopped the turn.
        shaky: True when the response was classified as degenerate.
        usage: Token usage reported by the provider.
        elapsed_ms: Wall-clock duration.
    """

    run_id: str
    phase: TurnPhase
    response: ModelResponse
    invocations: tuple[ToolInvocation, ...] = ()
    decree: TurnDecree | None = None
    fault: TurnFault | None = None
    cancelled: bool = False
    shaky: bool = False
    usage: Usage | None = None
    elapsed_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.phase == TurnPhase.EVALUATING and self.fault is None

    def history_messages(self) -> list[Message]:
        """Messages to append to the conversation for the next turn."""
        messages = [
            Message.assistant(
                self.response.text,
                tool_calls=[invocation.to_chat_tool_call() for invocation in self.invocations],
            )
        ]
        messages.extend(invocation.to_tool_message() for invocation in self.invocations)
        return messages


@dataclass(slots=True, frozen=True)
class ProgressEvent:
    """Structured progress notification delivered to a progress sink."""

    type: str
    run_id: str
    elapsed_ms: float
    payload: Mapping[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(
            {"type": self.type, "run_id": self.run_id, "elapsed_ms": self.elapsed_ms, **self.payload},
            default=str,
        )


ProgressSink = Callable[[ProgressEvent], None]


class CancellationToken:
    """Cooperative cancellation flag checked at stream and dispatch boundaries."""

    __slots__ = ("_event", "_reason")

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError(message=self._reason or "cancelled")

"""Fault taxonomy for the turn engine.

Every fault is a dataclass exception with a machine-readable code so that
it can be recorded on a tool invocation or a turn outcome and serialized
for progress events, not only raised.

Per-tool faults (``ValidationFault``, ``ExecutionFault``) are captured on
the invocation and never abort the turn. Turn-level faults
(``StreamFault``, ``LockTimeoutFault``, cancellation) roll back file effects
before the engine returns to idle.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Sequence

__all__ = [
    "ErrorCode",
    "TurnFault",
    "StreamFault",
    "ValidationFault",
    "ExecutionFault",
    "HangWarning",
    "LockTimeoutFault",
    "ShakyResponseFault",
    "OperationCancelledError",
    "EngineDisposedError",
    "FileStoreError",
]


# -----------------------------------------------------------------------------
# Error Code Constants
# -----------------------------------------------------------------------------


class ErrorCode:
    """Constants for fault codes."""

    # Turn-level
    STREAM_FAILURE = "stream_failure"
    LOCK_TIMEOUT = "lock_timeout"
    HANG = "reasoning_hang"
    SHAKY_RESPONSE = "shaky_response"
    OPERATION_CANCELLED = "operation_cancelled"
    ENGINE_DISPOSED = "engine_disposed"

    # Tool-level
    UNKNOWN_TOOL = "unknown_tool"
    INVALID_ARGUMENTS = "invalid_arguments"
    MISSING_PARAMETER = "missing_parameter"
    INVALID_PARAMETER = "invalid_parameter"
    PATH_OUTSIDE_WORKSPACE = "path_outside_workspace"
    CIRCUIT_OPEN = "circuit_breaker"
    EXECUTION_FAILED = "execution_failed"
    APPROVAL_FAILED = "approval_failed"
    TOO_MANY_TOOLS = "too_many_tools"

    # Storage
    FILE_STORE = "file_store_error"
    BACKUP_FAILED = "backup_failed"


# -----------------------------------------------------------------------------
# Base Fault
# -----------------------------------------------------------------------------


@dataclass
class TurnFault(Exception):
    """Base exception for every fault raised or recorded by the engine.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable description.
        details: Additional structured information.
        suggestion: Guidance for recovery, surfaced to the model or operator.
    """

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = ""

    severity: ClassVar[str] = "error"
    turn_level: ClassVar[bool] = False

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for progress events and tool outputs."""
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
            "severity": self.severity,
        }
        if self.details:
            result["details"] = dict(self.details)
        if self.suggestion:
            result["suggestion"] = self.suggestion
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"


# -----------------------------------------------------------------------------
# Turn-Level Faults
# -----------------------------------------------------------------------------


@dataclass
class StreamFault(TurnFault):
    """Network or protocol failure while consuming the model stream."""

    error_code: str = field(default=ErrorCode.STREAM_FAILURE)
    message: str = field(default="The model stream failed")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Retry the turn; file changes were rolled back")

    turn_level: ClassVar[bool] = True

    @classmethod
    def from_exception(cls, exc: BaseException) -> StreamFault:
        return cls(
            message=str(exc) or type(exc).__name__,
            details={"exception_type": type(exc).__name__},
        )


@dataclass
class LockTimeoutFault(TurnFault):
    """The turn lock was held past its bound.

    Raised when waiting for the lock times out, and recorded on the outcome
    when the watchdog reclaims the lock from a zombie turn.
    """

    error_code: str = field(default=ErrorCode.LOCK_TIMEOUT)
    message: str = field(default="Turn lock held past the watchdog bound; recovered")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="The stalled turn was rolled back; submit again")

    severity: ClassVar[str] = "critical"
    turn_level: ClassVar[bool] = True


@dataclass
class OperationCancelledError(TurnFault):
    """A cancellation token was observed."""

    error_code: str = field(default=ErrorCode.OPERATION_CANCELLED)
    message: str = field(default="cancelled")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = ""

    severity: ClassVar[str] = "warning"
    turn_level: ClassVar[bool] = True


@dataclass
class HangWarning(TurnFault):
    """No stream activity within the heartbeat bound. Informational only."""

    error_code: str = field(default=ErrorCode.HANG)
    message: str = field(default="Reasoning is taking longer than expected")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = ""

    severity: ClassVar[str] = "warning"

    @classmethod
    def after(cls, idle_seconds: float) -> HangWarning:
        return cls(
            message=f"No stream activity for {idle_seconds:.0f}s; the model may be stuck reasoning",
            details={"idle_seconds": round(idle_seconds, 3)},
        )


@dataclass
class ShakyResponseFault(TurnFault):
    """The response was too empty to count as progress."""

    error_code: str = field(default=ErrorCode.SHAKY_RESPONSE)
    message: str = field(default="The model returned an empty or degenerate response")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Retry once or ask the operator how to proceed")

    severity: ClassVar[str] = "warning"


@dataclass
class EngineDisposedError(TurnFault):
    """The engine was disposed and cannot run further turns."""

    error_code: str = field(default=ErrorCode.ENGINE_DISPOSED)
    message: str = field(default="Turn engine has been disposed")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = ""


# -----------------------------------------------------------------------------
# Tool-Level Faults
# -----------------------------------------------------------------------------


@dataclass
class ValidationFault(TurnFault):
    """Arguments do not satisfy the tool's declared schema."""

    error_code: str = field(default=ErrorCode.INVALID_ARGUMENTS)
    message: str = field(default="Invalid tool arguments")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = field(default="Check the tool schema and resend the call")

    missing_fields: tuple[str, ...] = field(default=())

    @classmethod
    def missing(cls, tool_name: str, fields: Sequence[str]) -> ValidationFault:
        names = tuple(fields)
        return cls(
            error_code=ErrorCode.MISSING_PARAMETER,
            message=f"Missing required fields: {', '.join(names)}",
            details={"tool": tool_name, "missing": list(names)},
            missing_fields=names,
        )

    @classmethod
    def unknown_tool(cls, tool_name: str) -> ValidationFault:
        return cls(
            error_code=ErrorCode.UNKNOWN_TOOL,
            message=f"Tool '{tool_name}' is not registered",
            details={"tool": tool_name},
            suggestion="Call one of the tools listed in the request",
        )


@dataclass
class ExecutionFault(TurnFault):
    """An exception raised inside a tool."""

    error_code: str = field(default=ErrorCode.EXECUTION_FAILED)
    message: str = field(default="Tool execution failed")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = ""

    @classmethod
    def from_exception(cls, tool_name: str, exc: BaseException) -> ExecutionFault:
        return cls(
            message=str(exc) or type(exc).__name__,
            details={"tool": tool_name, "exception_type": type(exc).__name__},
        )


# -----------------------------------------------------------------------------
# Storage Faults
# -----------------------------------------------------------------------------


@dataclass
class FileStoreError(TurnFault):
    """A file store operation failed."""

    error_code: str = field(default=ErrorCode.FILE_STORE)
    message: str = field(default="File store operation failed")
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = ""

    path: str | None = field(default=None)

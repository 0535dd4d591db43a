"""Tool dispatcher for assembled tool invocations.

Validates an invocation's arguments against the tool's declared schema,
asks for operator approval unless the approval policy bypasses it, backs
up the target file of destructive tools and executes the tool. Every
outcome, including failures, is recorded on the invocation; a single tool
failure never aborts the turn.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Protocol

from jsonschema import SchemaError
from jsonschema.validators import validator_for
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from ...settings import ApprovalMode, EngineSettings
from ..errors import (
    ErrorCode,
    ExecutionFault,
    OperationCancelledError,
    TurnFault,
    ValidationFault,
)
from ..tools.registry import ToolContext, ToolDefinition, ToolRegistry
from .file_store import TransactionalFileStore
from .types import CancellationToken, SessionRunState, ToolCallStatus, ToolInvocation

__all__ = [
    "ApprovalPolicy",
    "ApprovalRequester",
    "DispatchListener",
    "DispatchResult",
    "ToolDispatcher",
    "is_transient_error",
]

LOGGER = logging.getLogger(__name__)

ApprovalRequester = Callable[[str, Mapping[str, Any]], Awaitable[bool]]

DECLINED_MESSAGE = "Tool call declined by the operator."
_LOG_VALUE_LIMIT = 500
_MAX_SCHEMA_ERRORS = 5

_TRANSIENT_MARKERS: tuple[str, ...] = (
    "econnreset",
    "etimedout",
    "connection reset",
    "timeout",
    "timed out",
    "rate limit",
    "temporarily unavailable",
    "429",
    "503",
    "504",
)
_PERMANENT_MARKERS: tuple[str, ...] = (
    "eacces",
    "permission denied",
    "401",
    "403",
    "not found",
    "404",
    "invalid",
    "validation",
)


def is_transient_error(exc: BaseException) -> bool:
    """Whether a tool failure is worth retrying.

    Engine faults and cancellation are never retried. Permanent markers in
    the message win over transient ones.
    """
    if isinstance(exc, TurnFault):
        return False
    message = str(exc).lower()
    if any(marker in message for marker in _PERMANENT_MARKERS):
        return False
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True
    return any(marker in message for marker in _TRANSIENT_MARKERS)


# -----------------------------------------------------------------------------
# Dispatch Result
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class DispatchResult:
    """Result of dispatching one invocation.

    Attributes:
        call_id: Invocation identifier.
        tool_name: Name of the tool.
        success: Whether the tool executed and returned normally.
        declined: Whether the operator rejected the call.
        output: Captured output or error message.
        error: Fault recorded for a failed call.
        duration_ms: Time from dispatch start to terminal state.
        attempts: Number of execution attempts made.
        backed_up_path: File backed up before execution, if any.
    """

    call_id: str
    tool_name: str
    success: bool
    declined: bool = False
    output: str | None = None
    error: TurnFault | None = None
    duration_ms: float = 0.0
    attempts: int = 0
    backed_up_path: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "call_id": self.call_id,
            "tool_name": self.tool_name,
            "success": self.success,
            "duration_ms": self.duration_ms,
        }
        if self.declined:
            data["declined"] = True
        if self.error is not None:
            data["error"] = self.error.to_dict()
        elif self.output is not None:
            data["output"] = self.output
        if self.attempts > 1:
            data["attempts"] = self.attempts
        if self.metadata:
            data["metadata"] = self.metadata
        return data


# -----------------------------------------------------------------------------
# Approval Policy
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ApprovalPolicy:
    """Decides when the approval requester is skipped.

    ``autonomous`` never asks. ``trusted`` skips read-only tools, and any
    tool while the session is running hot (high pressure and a long
    success streak). ``manual`` always asks.
    """

    mode: ApprovalMode = "manual"
    trusted_pressure: float = 70.0
    trusted_streak: int = 5

    def bypasses(self, tool: ToolDefinition, state: SessionRunState | None = None) -> bool:
        if self.mode == "autonomous":
            return True
        if self.mode == "trusted":
            if tool.read_only:
                return True
            if state is not None:
                return state.pressure > self.trusted_pressure and state.victory_streak > self.trusted_streak
        return False


# -----------------------------------------------------------------------------
# Dispatch Listener
# -----------------------------------------------------------------------------


class DispatchListener(Protocol):
    """Callback protocol for dispatch events."""

    def on_tool_start(self, invocation: ToolInvocation) -> None:
        ...

    def on_tool_complete(self, invocation: ToolInvocation, result: DispatchResult) -> None:
        ...

    def on_tool_error(self, invocation: ToolInvocation, error: TurnFault) -> None:
        ...


# -----------------------------------------------------------------------------
# Tool Dispatcher
# -----------------------------------------------------------------------------


class ToolDispatcher:
    """Validates, approves and executes tool invocations.

    Example:
        dispatcher = ToolDispatcher(registry, file_store=store)
        result = await dispatcher.dispatch(invocation)
    """

    def __init__(
        self,
        registry: ToolRegistry,
        *,
        file_store: TransactionalFileStore | None = None,
        approval_requester: ApprovalRequester | None = None,
        approval_policy: ApprovalPolicy | None = None,
        listener: DispatchListener | None = None,
        settings: EngineSettings | None = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            registry: Source of tool definitions.
            file_store: Store used to back up destructive tools' targets.
            approval_requester: Async yes/no callback for operator approval.
            approval_policy: When to skip the approval requester.
            listener: Dispatch event listener.
            settings: Output cap, circuit breaker and retry bounds.
        """
        settings = settings or EngineSettings()
        self._registry = registry
        self._file_store = file_store
        self._approval_requester = approval_requester
        self._approval_policy = approval_policy or ApprovalPolicy(mode=settings.approval_mode)
        self._listener = listener
        self._max_output_bytes = settings.max_output_bytes
        self._breaker_threshold = settings.circuit_breaker_threshold
        self._retry_attempts = max(1, settings.tool_retry_attempts)
        self._retry_min_seconds = settings.tool_retry_min_seconds
        self._retry_max_seconds = settings.tool_retry_max_seconds
        self._failure_counts: dict[tuple[str, str], int] = {}
        self._validators: dict[str, Any] = {}

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def approval_policy(self) -> ApprovalPolicy:
        return self._approval_policy

    def set_listener(self, listener: DispatchListener | None) -> None:
        self._listener = listener

    def reset_circuit(self) -> None:
        self._failure_counts.clear()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(
        self,
        invocation: ToolInvocation,
        *,
        cancel_token: CancellationToken | None = None,
        session_state: SessionRunState | None = None,
    ) -> DispatchResult:
        """Dispatch one invocation to its tool.

        Args:
            invocation: Assembled invocation; finalized here if needed.
            cancel_token: Turn cancellation token, checked before execution.
            session_state: Consulted by the approval policy.

        Returns:
            DispatchResult mirroring the invocation's terminal state.

        Raises:
            OperationCancelledError: If the token is cancelled before or
                during execution. The invocation is left as an error.
        """
        start = time.perf_counter()
        self._notify("on_tool_start", invocation)

        tool = self._registry.get_tool(invocation.name)
        if tool is None:
            return self._fail(invocation, ValidationFault.unknown_tool(invocation.name), start)

        invocation.finalize()
        if invocation.parse_error is not None:
            fault = ValidationFault(
                message=f"Could not parse arguments for {invocation.name}: {invocation.parse_error}",
                details={"tool": invocation.name, "raw_arguments": _clip(invocation.arguments)},
            )
            return self._fail(invocation, fault, start)

        arguments = dict(invocation.parsed_arguments or {})
        fault = self.validate(tool, arguments)
        if fault is not None:
            return self._fail(invocation, fault, start)

        breaker_key = self._breaker_key(tool.name, arguments)
        if self._failure_counts.get(breaker_key, 0) >= self._breaker_threshold:
            fault = ValidationFault(
                error_code=ErrorCode.CIRCUIT_OPEN,
                message=(
                    f"{tool.name} failed {self._failure_counts[breaker_key]} times with the same input; "
                    "refusing to run it again"
                ),
                details={"tool": tool.name},
                suggestion="Change the arguments or try a different approach",
            )
            return self._fail(invocation, fault, start)

        try:
            approved = await self._approved(tool, arguments, session_state)
        except Exception as exc:
            LOGGER.warning("Approval request for %s failed: %s", tool.name, exc, exc_info=True)
            fault = ExecutionFault(
                error_code=ErrorCode.APPROVAL_FAILED,
                message=f"Approval request for {tool.name} failed: {exc}",
                details={"tool": tool.name, "exception_type": type(exc).__name__},
            )
            return self._fail(invocation, fault, start)

        if not approved:
            invocation.status = ToolCallStatus.COMPLETED
            invocation.declined = True
            invocation.output = DECLINED_MESSAGE
            invocation.duration_ms = _elapsed_ms(start)
            LOGGER.info("Tool %s declined by operator", tool.name)
            result = DispatchResult(
                call_id=invocation.call_id,
                tool_name=tool.name,
                success=False,
                declined=True,
                output=DECLINED_MESSAGE,
                duration_ms=invocation.duration_ms,
            )
            self._notify("on_tool_complete", invocation, result)
            return result

        if cancel_token is not None and cancel_token.is_cancelled:
            self._mark_cancelled(invocation, start)
            cancel_token.raise_if_cancelled()

        invocation.status = ToolCallStatus.RUNNING
        backed_up: str | None = None
        if tool.destructive and self._file_store is not None:
            target = tool.target_path(arguments)
            if target:
                try:
                    await self._file_store.backup_file(target)
                except TurnFault as exc:
                    return self._fail(invocation, exc, start, breaker_key=breaker_key)
                except Exception as exc:
                    LOGGER.exception("Backup of %s failed before %s", target, tool.name)
                    fault = ExecutionFault(
                        error_code=ErrorCode.BACKUP_FAILED,
                        message=f"Could not back up {target}: {exc}",
                        details={"tool": tool.name, "path": target},
                    )
                    return self._fail(invocation, fault, start, breaker_key=breaker_key)
                backed_up = target

        LOGGER.debug("Executing %s args=%s", tool.name, _sanitize_arguments(arguments))
        context = ToolContext(
            call_id=invocation.call_id,
            file_store=self._file_store,
            cancel_token=cancel_token,
        )
        attempts = 0
        output: Any = None
        try:
            async for attempt in self._retrying():
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    if attempts > 1:
                        LOGGER.info("Retrying %s (attempt %s)", tool.name, attempts)
                    output = await self._execute(tool, arguments, context)
        except OperationCancelledError:
            self._mark_cancelled(invocation, start)
            raise
        except asyncio.CancelledError:
            self._mark_cancelled(invocation, start)
            raise
        except TurnFault as exc:
            return self._fail(invocation, exc, start, breaker_key=breaker_key, attempts=attempts)
        except Exception as exc:
            LOGGER.warning("Tool %s failed: %s", tool.name, exc, exc_info=True)
            fault = ExecutionFault.from_exception(tool.name, exc)
            return self._fail(invocation, fault, start, breaker_key=breaker_key, attempts=attempts)

        self._failure_counts.pop(breaker_key, None)
        invocation.status = ToolCallStatus.COMPLETED
        invocation.output = self._format_output(output)
        invocation.duration_ms = _elapsed_ms(start)
        result = DispatchResult(
            call_id=invocation.call_id,
            tool_name=tool.name,
            success=True,
            output=invocation.output,
            duration_ms=invocation.duration_ms,
            attempts=attempts,
            backed_up_path=backed_up,
        )
        LOGGER.debug("Tool %s completed in %.1fms", tool.name, invocation.duration_ms)
        self._notify("on_tool_complete", invocation, result)
        return result

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, tool: ToolDefinition, arguments: Mapping[str, Any]) -> ValidationFault | None:
        """Check arguments against the tool's input schema.

        Every missing required field is reported at once. Remaining schema
        violations (types, enums, bounds) are reported by the JSON Schema
        validator.
        """
        missing = [name for name in tool.required_fields if name not in arguments]
        if missing:
            return ValidationFault.missing(tool.name, missing)

        validator = self._validator(tool)
        if validator is None:
            return None
        problems: list[str] = []
        for issue in validator.iter_errors(dict(arguments)):
            if issue.validator == "required":
                continue
            path = ".".join(str(part) for part in issue.absolute_path)
            problems.append(f"{path}: {issue.message}" if path else issue.message)
            if len(problems) >= _MAX_SCHEMA_ERRORS:
                break
        if not problems:
            return None
        return ValidationFault(
            error_code=ErrorCode.INVALID_PARAMETER,
            message=f"Invalid arguments for {tool.name}: " + "; ".join(problems),
            details={"tool": tool.name, "problems": problems},
        )

    def _validator(self, tool: ToolDefinition) -> Any | None:
        if tool.name in self._validators:
            return self._validators[tool.name]
        schema = dict(tool.input_schema)
        validator = None
        if schema:
            validator_cls = validator_for(schema)
            try:
                validator_cls.check_schema(schema)
            except SchemaError as exc:
                LOGGER.warning("Tool %s declares an invalid schema: %s", tool.name, exc.message)
            else:
                validator = validator_cls(schema)
        self._validators[tool.name] = validator
        return validator

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _approved(
        self,
        tool: ToolDefinition,
        arguments: Mapping[str, Any],
        session_state: SessionRunState | None,
    ) -> bool:
        if self._approval_requester is None or self._approval_policy.bypasses(tool, session_state):
            return True
        return bool(await self._approval_requester(tool.name, arguments))

    async def _execute(self, tool: ToolDefinition, arguments: dict[str, Any], context: ToolContext) -> Any:
        if context.cancel_token is not None:
            context.cancel_token.raise_if_cancelled()
        result = tool.execute(dict(arguments), context)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self._retry_attempts),
            wait=wait_exponential(multiplier=self._retry_min_seconds, max=self._retry_max_seconds),
            retry=retry_if_exception(is_transient_error),
        )

    def _format_output(self, output: Any) -> str:
        if output is None:
            text = ""
        elif isinstance(output, str):
            text = output
        else:
            try:
                text = json.dumps(output, ensure_ascii=False, default=str)
            except (TypeError, ValueError):
                text = str(output)
        encoded = text.encode("utf-8")
        if len(encoded) <= self._max_output_bytes:
            return text
        kept = encoded[: self._max_output_bytes].decode("utf-8", errors="ignore")
        return f"{kept}\n\n[output truncated: {len(encoded)} bytes, showing first {self._max_output_bytes}]"

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def _fail(
        self,
        invocation: ToolInvocation,
        fault: TurnFault,
        start: float,
        *,
        breaker_key: tuple[str, str] | None = None,
        attempts: int = 0,
    ) -> DispatchResult:
        invocation.status = ToolCallStatus.ERROR
        invocation.output = str(fault.message)
        invocation.duration_ms = _elapsed_ms(start)
        if breaker_key is not None:
            self._failure_counts[breaker_key] = self._failure_counts.get(breaker_key, 0) + 1
        LOGGER.warning("Tool %s failed: %s", invocation.name, fault)
        result = DispatchResult(
            call_id=invocation.call_id,
            tool_name=invocation.name,
            success=False,
            output=invocation.output,
            error=fault,
            duration_ms=invocation.duration_ms,
            attempts=attempts,
        )
        self._notify("on_tool_error", invocation, fault)
        return result

    def _mark_cancelled(self, invocation: ToolInvocation, start: float) -> None:
        invocation.status = ToolCallStatus.ERROR
        invocation.output = "Cancelled before completion."
        invocation.duration_ms = _elapsed_ms(start)

    def _notify(self, method: str, *args: Any) -> None:
        if self._listener is None:
            return
        callback = getattr(self._listener, method, None)
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            LOGGER.debug("Listener %s failed", method, exc_info=True)

    @staticmethod
    def _breaker_key(tool_name: str, arguments: Mapping[str, Any]) -> tuple[str, str]:
        return tool_name, json.dumps(arguments, sort_keys=True, default=str)


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 3)


def _clip(value: str, limit: int = _LOG_VALUE_LIMIT) -> str:
    if len(value) <= limit:
        return value
    return f"{value[:limit]}... [{len(value) - limit} more chars]"


def _sanitize_arguments(arguments: Mapping[str, Any]) -> dict[str, Any]:
    return {key: _clip(value) if isinstance(value, str) else value for key, value in arguments.items()}

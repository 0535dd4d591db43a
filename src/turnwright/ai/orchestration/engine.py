"""Turn engine: runs one model turn from stream to decree.

A turn moves through ``TurnPhase`` states::

    idle -> streaming -> assembling_tools -> dispatching_tools -> evaluating
                 \\________________ rolled_back / recovered ________________/

The engine holds the session's ``TurnLock`` for the whole turn, wraps it in
a ``LivenessMonitor`` and delegates tool execution to ``ToolDispatcher``.
Turn-level faults never escape ``run_turn``; they are rolled back through
the file store and reported on the returned ``TurnOutcome``.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Mapping, Sequence

from ...settings import Settings
from ...utils.logging import turn_context
from ..errors import (
    EngineDisposedError,
    ErrorCode,
    HangWarning,
    LockTimeoutFault,
    OperationCancelledError,
    ShakyResponseFault,
    StreamFault,
    TurnFault,
    ValidationFault,
)
from ..providers import ModelProvider, ModelRequest
from ..tools.registry import ToolRegistry
from .evaluator import EvaluationOptions, TurnEvaluator
from .file_store import TransactionalFileStore
from .liveness import LivenessMonitor
from .response import ModelResponse
from .tag_matcher import StreamTagDetector
from .tool_call_parser import embedded_invocations, strip_tool_blocks
from .tool_dispatcher import ApprovalRequester, DispatchResult, ToolDispatcher
from .turn_lock import TurnLock
from .types import (
    CancellationToken,
    ContentDelta,
    Message,
    ProgressEvent,
    ProgressSink,
    ReasoningDelta,
    RunCompleted,
    RunStarted,
    SessionRunState,
    StageChange,
    StreamEvent,
    ToolCallDelta,
    ToolCallDone,
    ToolCallStatus,
    ToolInvocation,
    TurnOutcome,
    TurnPhase,
    Usage,
)

__all__ = ["TurnEngine", "TurnState"]

LOGGER = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Turn State
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class TurnState:
    """Mutable bookkeeping for the turn in flight. Private to the engine."""

    run_id: str
    token: CancellationToken
    started: float = field(default_factory=time.perf_counter)
    phase: TurnPhase = TurnPhase.IDLE
    content: list[str] = field(default_factory=list)
    content_chars: int = 0
    content_truncated: bool = False
    reasoning: list[str] = field(default_factory=list)
    calls: dict[int, ToolInvocation] = field(default_factory=dict)
    invocations: list[ToolInvocation] = field(default_factory=list)
    results: list[DispatchResult] = field(default_factory=list)
    usage: Usage | None = None
    response: ModelResponse | None = None
    detector: StreamTagDetector = field(default_factory=StreamTagDetector)
    hang_count: int = 0
    rolled_back: bool = False
    recovered: bool = False
    recovery: asyncio.Future[None] | None = None
    task: asyncio.Task[TurnOutcome] | None = None

    @property
    def elapsed_ms(self) -> float:
        return round((time.perf_counter() - self.started) * 1000, 3)

    @property
    def text(self) -> str:
        return "".join(self.content)

    def reset_stream(self) -> None:
        self.content.clear()
        self.content_chars = 0
        self.content_truncated = False
        self.reasoning.clear()
        self.calls.clear()
        self.invocations.clear()
        self.response = None
        self.detector.reset()


# -----------------------------------------------------------------------------
# Turn Engine
# -----------------------------------------------------------------------------


class TurnEngine:
    """Orchestrates one turn at a time per session.

    Example:
        engine = TurnEngine(provider, registry, InMemoryFileStore())
        outcome = await engine.run_turn(history, session_state)
        history.extend(outcome.history_messages())
    """

    def __init__(
        self,
        provider: ModelProvider,
        registry: ToolRegistry,
        file_store: TransactionalFileStore,
        *,
        dispatcher: ToolDispatcher | None = None,
        evaluator: TurnEvaluator | None = None,
        settings: Settings | None = None,
        progress: ProgressSink | None = None,
        lock: TurnLock | None = None,
        approval_requester: ApprovalRequester | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            provider: Model stream port.
            registry: Tools offered to the model.
            file_store: Store whose backups make a turn transactional.
            dispatcher: Tool dispatcher; built from the registry if omitted.
            evaluator: Decree evaluator; built from settings if omitted.
            settings: Aggregate settings; defaults apply if omitted.
            progress: Sink receiving ``ProgressEvent`` notifications.
            lock: Session lock; pass a shared one to serialize engines that
                operate on the same session.
            approval_requester: Operator approval callback used when the
                dispatcher is built here.
        """
        self._settings = settings or Settings()
        self._provider = provider
        self._registry = registry
        self._file_store = file_store
        self._dispatcher = dispatcher or ToolDispatcher(
            registry,
            file_store=file_store,
            approval_requester=approval_requester,
            settings=self._settings.engine,
        )
        self._evaluator = evaluator or TurnEvaluator(self._settings.evaluator)
        self._progress = progress
        self._lock = lock or TurnLock()
        self._monitor: LivenessMonitor | None = None
        self._active: TurnState | None = None
        self._disposed = False

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def lock(self) -> TurnLock:
        return self._lock

    @property
    def dispatcher(self) -> ToolDispatcher:
        return self._dispatcher

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def phase(self) -> TurnPhase:
        """Phase of the turn in flight, or IDLE."""
        return self._active.phase if self._active is not None else TurnPhase.IDLE

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def dispose(self) -> None:
        """Stop timers and refuse further turns. Idempotent."""
        if self._disposed:
            return
        self._disposed = True
        if self._monitor is not None:
            self._monitor.stop()
        if self._active is not None:
            self._active.token.cancel("engine disposed")
        LOGGER.debug("Turn engine disposed")

    async def aclose(self) -> None:
        """Dispose the engine and close the provider if it supports it."""
        self.dispose()
        close = getattr(self._provider, "aclose", None)
        if close is not None:
            result = close()
            if inspect.isawaitable(result):
                await result

    # ------------------------------------------------------------------
    # Turn
    # ------------------------------------------------------------------

    async def run_turn(
        self,
        history: Sequence[Message | Mapping[str, Any]],
        session_state: SessionRunState,
        *,
        cancel_token: CancellationToken | None = None,
        system: str | None = None,
        options: EvaluationOptions | None = None,
    ) -> TurnOutcome:
        """Run one turn against ``history``.

        Args:
            history: Conversation so far, oldest first.
            session_state: Caller-owned state updated from the turn's tool
                outcomes and consulted by the evaluator.
            cancel_token: Cooperative cancellation for this turn.
            system: Optional system prompt.
            options: Per-turn evaluator overrides.

        Returns:
            The turn outcome. Stream faults, cancellation and watchdog
            recovery are reported on it rather than raised.

        Raises:
            EngineDisposedError: If the engine was disposed.
        """
        if self._disposed:
            raise EngineDisposedError()
        state = TurnState(run_id=uuid.uuid4().hex[:12], token=cancel_token or CancellationToken())
        with turn_context(state.run_id):
            return await self._run_locked(state, history, session_state, system, options)

    async def _run_locked(
        self,
        state: TurnState,
        history: Sequence[Message | Mapping[str, Any]],
        session_state: SessionRunState,
        system: str | None,
        options: EvaluationOptions | None,
    ) -> TurnOutcome:
        engine_settings = self._settings.engine

        try:
            lock_session = await self._lock.acquire(
                f"turn:{state.run_id}",
                timeout=engine_settings.lock_timeout_seconds,
                metadata={"run_id": state.run_id},
            )
        except LockTimeoutFault as fault:
            LOGGER.warning("Turn %s could not acquire the session lock: %s", state.run_id, fault)
            state.phase = TurnPhase.ROLLED_BACK
            return self._outcome(state, fault=fault)

        if self._disposed:
            self._lock.release(lock_session)
            raise EngineDisposedError()

        loop = asyncio.get_running_loop()
        monitor = LivenessMonitor(
            on_hang=partial(self._on_hang, state),
            on_watchdog=partial(self._on_watchdog, state),
            heartbeat_seconds=engine_settings.heartbeat_seconds,
            watchdog_seconds=engine_settings.watchdog_seconds,
        )
        self._monitor = monitor
        self._active = state
        state.recovery = loop.create_future()
        task = loop.create_task(
            self._execute(state, monitor, history, session_state, system, options),
            name=f"turn-{state.run_id}",
        )
        task.add_done_callback(_consume_task_result)
        state.task = task
        monitor.start()
        LOGGER.debug("Turn %s started", state.run_id)

        try:
            try:
                await asyncio.wait((task, state.recovery), return_when=asyncio.FIRST_COMPLETED)
            except asyncio.CancelledError:
                task.cancel()
                await self._drain(state)
                await self._rollback(state)
                raise
            if state.recovered:
                return await self._recover(state)
            return task.result()
        finally:
            monitor.stop()
            if self._monitor is monitor:
                self._monitor = None
            if self._active is state:
                self._active = None
            self._lock.release(lock_session)

    async def _execute(
        self,
        state: TurnState,
        monitor: LivenessMonitor,
        history: Sequence[Message | Mapping[str, Any]],
        session_state: SessionRunState,
        system: str | None,
        options: EvaluationOptions | None,
    ) -> TurnOutcome:
        engine_settings = self._settings.engine
        request = ModelRequest(
            model=self._settings.client.model,
            system=system,
            messages=list(history),
            tools=self._registry.to_openai_tools(),
            max_tokens=engine_settings.max_tokens,
        )
        self._emit(state, "run_started", {"model": request.model, "tools": len(request.tools)})

        try:
            attempts = 2 if engine_settings.retry_shaky_once else 1
            shaky = False
            for attempt in range(attempts):
                if attempt:
                    LOGGER.info("Turn %s produced a shaky response; retrying once", state.run_id)
                    state.reset_stream()
                    monitor.reset_watchdog()
                await self._stream(state, monitor, request)
                response = self._assemble(state)
                shaky = response.is_shaky
                if shaky:
                    session_state.record_shaky()
                    self._emit(state, "shaky", {"attempt": attempt + 1})
                else:
                    break

            await self._dispatch_all(state, session_state)
        except OperationCancelledError as exc:
            LOGGER.info("Turn %s cancelled: %s", state.run_id, exc.message)
            await self._rollback(state)
            state.phase = TurnPhase.ROLLED_BACK
            return self._finish(state, fault=exc, cancelled=True)
        except StreamFault as exc:
            LOGGER.warning("Turn %s stream failed: %s", state.run_id, exc)
            await self._rollback(state)
            state.phase = TurnPhase.ROLLED_BACK
            return self._finish(state, fault=exc)
        except Exception:
            LOGGER.exception("Turn %s failed unexpectedly", state.run_id)
            await self._rollback(state)
            raise

        state.phase = TurnPhase.EVALUATING
        self._record_outcomes(state, session_state)
        decree = self._evaluator.evaluate(history, session_state, options)
        self._emit(state, "decree", decree.to_dict())
        self._file_store.clear_backups()
        fault = ShakyResponseFault() if shaky else None
        return self._finish(state, fault=fault, decree=decree, shaky=shaky)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def _stream(self, state: TurnState, monitor: LivenessMonitor, request: ModelRequest) -> None:
        state.phase = TurnPhase.STREAMING
        state.token.raise_if_cancelled()
        stream = self._provider.stream(request)
        try:
            async for event in stream:
                state.token.raise_if_cancelled()
                monitor.touch()
                self._handle_event(state, event)
        except (OperationCancelledError, StreamFault):
            raise
        except TurnFault as exc:
            raise StreamFault(message=exc.message, details={"cause": exc.error_code}) from exc
        except Exception as exc:
            raise StreamFault.from_exception(exc) from exc
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception:
                    LOGGER.debug("Closing the model stream failed", exc_info=True)

        tail = state.detector.flush()
        if tail:
            self._emit(state, "content_delta", {"text": tail})

    def _handle_event(self, state: TurnState, event: StreamEvent) -> None:
        if isinstance(event, ContentDelta):
            self._on_content(state, event.text)
        elif isinstance(event, ReasoningDelta):
            state.reasoning.append(event.text)
            self._emit(state, "reasoning", {"text": event.text})
        elif isinstance(event, ToolCallDelta):
            self._on_tool_delta(state, event)
        elif isinstance(event, ToolCallDone):
            invocation = state.calls.get(event.index)
            if invocation is None:
                LOGGER.debug("Tool call end for unknown index %s", event.index)
            else:
                invocation.finalize(event.arguments)
        elif isinstance(event, Usage):
            state.usage = event
            self._emit(state, "usage", {"input_tokens": event.input_tokens, "output_tokens": event.output_tokens})
        elif isinstance(event, RunCompleted):
            if event.usage is not None:
                state.usage = event.usage
        elif isinstance(event, StageChange):
            self._emit(state, "stage_change", {"stage": event.stage, "label": event.label})
        elif isinstance(event, RunStarted):
            LOGGER.debug("Provider run %s opened for turn %s", event.run_id, state.run_id)

    def _on_content(self, state: TurnState, text: str) -> None:
        if not text:
            return
        limit = self._settings.engine.content_buffer_max_chars
        room = limit - state.content_chars
        if room <= 0:
            if not state.content_truncated:
                LOGGER.warning("Turn %s content exceeded %s chars; dropping the rest", state.run_id, limit)
                state.content_truncated = True
            return
        if len(text) > room:
            text = text[:room]
        state.content.append(text)
        state.content_chars += len(text)

        result = state.detector.process(text)
        while True:
            if result.text:
                self._emit(state, "content_delta", {"text": result.text})
            if result.kind != "tag":
                break
            result = state.detector.process("")

    def _on_tool_delta(self, state: TurnState, event: ToolCallDelta) -> None:
        invocation = state.calls.get(event.index)
        if invocation is None:
            if not event.name and not event.call_id:
                LOGGER.debug("Dropping tool delta for unstarted index %s", event.index)
                return
            call_id = event.call_id or f"call_{state.run_id}_{event.index}"
            if any(existing.call_id == call_id for existing in state.invocations):
                call_id = f"{call_id}_{len(state.invocations)}"
            invocation = ToolInvocation(
                call_id=call_id,
                name=event.name or "",
                index=event.index,
                order=len(state.invocations),
            )
            state.calls[event.index] = invocation
            state.invocations.append(invocation)
            self._emit(state, "tool_call_delta", {"call_id": call_id, "name": invocation.name, "index": event.index})
        elif event.name and not invocation.name:
            invocation.name = event.name

        if event.arguments_delta:
            if invocation.finalized:
                LOGGER.warning("Ignoring arguments for finalized tool call %s", invocation.call_id)
                return
            invocation.append_arguments(event.arguments_delta)

    # ------------------------------------------------------------------
    # Assembly and dispatch
    # ------------------------------------------------------------------

    def _assemble(self, state: TurnState) -> ModelResponse:
        state.phase = TurnPhase.ASSEMBLING_TOOLS
        for invocation in state.invocations:
            invocation.finalize()

        text = state.text
        if not state.invocations:
            recovered = embedded_invocations(text)
            if recovered:
                LOGGER.info("Recovered %s embedded tool call(s) from turn %s", len(recovered), state.run_id)
                state.invocations.extend(recovered)
                text = strip_tool_blocks(text)

        tool_calls = [
            {"id": inv.call_id, "name": inv.name, "input": inv.parsed_arguments or {}}
            for inv in state.invocations
        ]
        state.response = ModelResponse.from_parts(text, reasoning="".join(state.reasoning), tool_calls=tool_calls)
        return state.response

    async def _dispatch_all(self, state: TurnState, session_state: SessionRunState) -> None:
        state.phase = TurnPhase.DISPATCHING_TOOLS
        limit = self._settings.engine.max_tools_per_turn
        for position, invocation in enumerate(state.invocations):
            if position >= limit:
                self._skip(state, invocation, limit)
                continue
            state.token.raise_if_cancelled()
            self._emit(state, "tool", {"call_id": invocation.call_id, "name": invocation.name, "status": "running"})
            result = await self._dispatcher.dispatch(
                invocation,
                cancel_token=state.token,
                session_state=session_state,
            )
            state.results.append(result)
            payload = result.to_dict()
            payload["status"] = invocation.status.value
            self._emit(state, "tool", payload)

    def _skip(self, state: TurnState, invocation: ToolInvocation, limit: int) -> None:
        fault = ValidationFault(
            error_code=ErrorCode.TOO_MANY_TOOLS,
            message=f"Tool call limit of {limit} per turn reached; {invocation.name} was not run",
            details={"tool": invocation.name, "limit": limit},
        )
        invocation.finalize()
        invocation.status = ToolCallStatus.ERROR
        invocation.output = fault.message
        invocation.duration_ms = 0.0
        self._emit(state, "tool", {"call_id": invocation.call_id, "name": invocation.name, **fault.to_dict()})

    def _record_outcomes(self, state: TurnState, session_state: SessionRunState) -> None:
        dispatched = {result.call_id for result in state.results}
        for invocation in state.invocations:
            if invocation.call_id not in dispatched or invocation.declined:
                continue
            tool = self._registry.get_tool(invocation.name)
            path = tool.target_path(invocation.parsed_arguments or {}) if tool is not None else None
            if invocation.status == ToolCallStatus.COMPLETED:
                session_state.record_success(invocation.name, path)
            else:
                session_state.record_failure(invocation.name, path)

    # ------------------------------------------------------------------
    # Failure paths
    # ------------------------------------------------------------------

    async def _rollback(self, state: TurnState) -> list[str]:
        if state.rolled_back:
            return []
        state.rolled_back = True
        restored = await self._file_store.rollback_all()
        if restored:
            LOGGER.info("Turn %s rolled back %s file(s)", state.run_id, len(restored))
        self._emit(state, "rollback", {"restored": restored})
        return restored

    async def _drain(self, state: TurnState) -> None:
        """Give a cancelled turn task a bounded window to unwind before rollback."""
        task = state.task
        if task is None or task.done():
            return
        grace = self._settings.engine.cancel_grace_seconds
        _, pending = await asyncio.wait({task}, timeout=grace)
        if pending:
            LOGGER.warning("Turn %s did not unwind within %.1fs of cancellation", state.run_id, grace)

    def _on_hang(self, state: TurnState, idle_seconds: float) -> None:
        state.hang_count += 1
        self._emit(state, "hang", HangWarning.after(idle_seconds).to_dict())

    def _on_watchdog(self, state: TurnState) -> None:
        state.recovered = True
        if state.task is not None and not state.task.done():
            state.task.cancel()
        if state.recovery is not None and not state.recovery.done():
            state.recovery.set_result(None)

    async def _recover(self, state: TurnState) -> TurnOutcome:
        seconds = self._settings.engine.watchdog_seconds
        fault = LockTimeoutFault(
            message=f"Turn {state.run_id} exceeded the {seconds:g}s watchdog and was recovered",
            details={"run_id": state.run_id, "phase": state.phase.value},
        )
        await self._drain(state)
        restored = await self._rollback(state)
        self._lock.force_release("watchdog")
        payload = fault.to_dict()
        payload["restored"] = restored
        self._emit(state, "critical", payload)
        state.phase = TurnPhase.RECOVERED
        return self._finish(state, fault=fault)

    # ------------------------------------------------------------------
    # Outcome and progress
    # ------------------------------------------------------------------

    def _finish(self, state: TurnState, **kwargs: Any) -> TurnOutcome:
        outcome = self._outcome(state, **kwargs)
        self._emit(
            state,
            "run_completed",
            {"phase": outcome.phase.value, "tools": len(outcome.invocations), "shaky": outcome.shaky},
        )
        LOGGER.debug("Turn %s finished in phase %s after %.1fms", state.run_id, outcome.phase.value, outcome.elapsed_ms)
        return outcome

    def _outcome(self, state: TurnState, **kwargs: Any) -> TurnOutcome:
        response = state.response or ModelResponse.from_parts(state.text, reasoning="".join(state.reasoning))
        return TurnOutcome(
            run_id=state.run_id,
            phase=state.phase,
            response=response,
            invocations=tuple(state.invocations),
            usage=state.usage,
            elapsed_ms=state.elapsed_ms,
            **kwargs,
        )

    def _emit(self, state: TurnState, event_type: str, payload: Mapping[str, Any] | None = None) -> None:
        if self._progress is None:
            return
        event = ProgressEvent(event_type, state.run_id, state.elapsed_ms, dict(payload or {}))
        try:
            self._progress(event)
        except Exception:
            LOGGER.debug("Progress sink failed for %s", event_type, exc_info=True)


def _consume_task_result(task: asyncio.Task[Any]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        LOGGER.debug("Turn task ended with %s", type(exc).__name__)

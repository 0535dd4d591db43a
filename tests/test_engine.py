"""Tests for TurnEngine turn execution, rollback and recovery."""

from __future__ import annotations

import asyncio
import random
import time
from pathlib import Path
from typing import Any

import pytest

from tests.helpers import (
    ARGUMENT_PAYLOADS,
    Hang,
    ProgressRecorder,
    ScriptedProvider,
    random_split,
    text_events,
    tool_call_events,
)
from turnwright.ai.errors import (
    EngineDisposedError,
    ErrorCode,
    LockTimeoutFault,
    ShakyResponseFault,
    StreamFault,
)
from turnwright.ai.orchestration import file_store as file_store_module
from turnwright.ai.orchestration.engine import TurnEngine
from turnwright.ai.orchestration.file_store import LocalFileStore, TransactionalFileStore
from turnwright.ai.orchestration.json_repair import parse_tool_arguments
from turnwright.ai.orchestration.types import (
    CancellationToken,
    ContentDelta,
    Message,
    SessionRunState,
    ToolCallStatus,
    TurnPhase,
    Usage,
)
from turnwright.ai.tools.registry import ToolRegistry
from turnwright.settings import EngineSettings, Settings

ORIGINAL = "export const answer = 41;\n"
HISTORY = [Message.user("Bump the answer to 42")]


def make_engine(
    provider: ScriptedProvider,
    registry: ToolRegistry,
    file_store: TransactionalFileStore,
    progress: Any = None,
    **engine_options: Any,
) -> TurnEngine:
    engine_options.setdefault("tool_retry_min_seconds", 0.0)
    engine_options.setdefault("tool_retry_max_seconds", 0.0)
    settings = Settings(engine=EngineSettings(**engine_options))
    return TurnEngine(provider, registry, file_store, settings=settings, progress=progress)


def write_call(index: int = 0, call_id: str = "call_write") -> list[Any]:
    return tool_call_events(
        index,
        call_id,
        "write_file",
        '{"path": "src/app.ts", ',
        '"content": "export const answer = 42;\\n"}',
    )


class TestCompletedTurns:
    """Tests for turns that reach evaluation."""

    @pytest.mark.asyncio
    async def test_text_only_turn(self, registry, file_store, session_state, progress: ProgressRecorder) -> None:
        provider = ScriptedProvider(text_events("The answer is ", "already documented in the README."))
        engine = make_engine(provider, registry, file_store, progress)

        outcome = await engine.run_turn(HISTORY, session_state, system="Be brief")

        assert outcome.succeeded
        assert outcome.phase is TurnPhase.EVALUATING
        assert outcome.response.text == "The answer is already documented in the README."
        assert outcome.invocations == ()
        assert outcome.decree is not None
        assert progress.types()[0] == "run_started"
        assert progress.types()[-1] == "run_completed"
        assert [event.payload["text"] for event in progress.of_type("content_delta")] == [
            "The answer is ",
            "already documented in the README.",
        ]
        assert {event.run_id for event in progress.events} == {outcome.run_id}

        request = provider.requests[0]
        assert request.system == "Be brief"
        assert len(request.tools) == 4
        assert request.max_tokens == 4096
        assert engine.phase is TurnPhase.IDLE
        assert not engine.lock.is_locked

    @pytest.mark.asyncio
    async def test_native_tool_call_with_split_arguments(self, registry, file_store, session_state, progress) -> None:
        provider = ScriptedProvider([ContentDelta("Updating the constant."), *write_call()])
        engine = make_engine(provider, registry, file_store, progress)

        outcome = await engine.run_turn(HISTORY, session_state)

        assert outcome.succeeded
        (invocation,) = outcome.invocations
        assert invocation.call_id == "call_write"
        assert invocation.parsed_arguments == {"path": "src/app.ts", "content": "export const answer = 42;\n"}
        assert invocation.status is ToolCallStatus.COMPLETED
        assert await file_store.read_file("src/app.ts") == "export const answer = 42;\n"
        assert file_store.backed_up_paths == ()
        assert session_state.victory_streak == 1
        assert session_state.recent_files == ["src/app.ts"]
        assert "tool_call_delta" in progress.types()
        assert [event.payload["status"] for event in progress.of_type("tool")] == ["running", "completed"]

        assistant, tool_message = outcome.history_messages()
        assert assistant.tool_calls[0]["id"] == "call_write"
        assert tool_message.tool_call_id == "call_write"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", ARGUMENT_PAYLOADS)
    async def test_streamed_arguments_match_unsplit_parse(
        self, payload: str, registry, file_store, session_state
    ) -> None:
        received: list[dict[str, Any]] = []

        async def record(arguments, context) -> str:
            received.append(arguments)
            return "ok"

        registry.register_function("record", record)
        rng = random.Random(len(payload))
        splits = [random_split(payload, rng) for _ in range(5)]
        engine = make_engine(
            ScriptedProvider(*(tool_call_events(0, "call_record", "record", *fragments) for fragments in splits)),
            registry,
            file_store,
        )

        for _ in splits:
            outcome = await engine.run_turn(HISTORY, session_state)
            assert outcome.invocations[0].status is ToolCallStatus.COMPLETED

        assert received == [parse_tool_arguments(payload)] * len(splits)

    @pytest.mark.asyncio
    async def test_multiple_calls_dispatch_in_order(self, registry, file_store, session_state) -> None:
        script = [
            *tool_call_events(0, "call_a", "read_file", '{"path": "src/app.ts"}'),
            *tool_call_events(1, "call_b", "append_file", '{"path": "src/app.ts", "content": "// end\\n"}'),
        ]
        engine = make_engine(ScriptedProvider(script), registry, file_store)

        outcome = await engine.run_turn(HISTORY, session_state)

        assert [inv.name for inv in outcome.invocations] == ["read_file", "append_file"]
        assert [inv.order for inv in outcome.invocations] == [0, 1]
        assert await file_store.read_file("src/app.ts") == ORIGINAL + "// end\n"
        assert session_state.tool_history == ["read_file", "append_file"]

    @pytest.mark.asyncio
    async def test_embedded_tool_calls_are_recovered(self, registry, file_store, session_state) -> None:
        provider = ScriptedProvider(
            text_events(
                "Let me look at the file first.<|tool_calls_be",
                'gin|><|tool_call_begin|>read_file<|tool_sep|>{"path": "src/app.ts"}',
                "<|tool_call_end|><|tool_calls_end|>",
            )
        )
        engine = make_engine(provider, registry, file_store)

        outcome = await engine.run_turn(HISTORY, session_state)

        assert outcome.succeeded
        (invocation,) = outcome.invocations
        assert invocation.name == "read_file"
        assert invocation.call_id.startswith("embedded_")
        assert invocation.status is ToolCallStatus.COMPLETED
        assert outcome.response.text == "Let me look at the file first."
        assert outcome.response.has_tool_calls

    @pytest.mark.asyncio
    async def test_failed_tool_does_not_fail_the_turn(self, registry, file_store, session_state) -> None:
        provider = ScriptedProvider(tool_call_events(0, "call_bad", "write_file", '{"path": "src/app.ts"}'))
        engine = make_engine(provider, registry, file_store)

        outcome = await engine.run_turn(HISTORY, session_state)

        assert outcome.succeeded
        assert outcome.invocations[0].status is ToolCallStatus.ERROR
        assert outcome.invocations[0].output == "Missing required fields: content"
        assert session_state.total_error_count == 1
        assert session_state.error_hotspots == {"src/app.ts": 1}
        assert await file_store.read_file("src/app.ts") == ORIGINAL

    @pytest.mark.asyncio
    async def test_tool_limit_skips_extra_calls(self, registry, file_store, session_state) -> None:
        script = [
            *tool_call_events(0, "call_a", "read_file", '{"path": "src/app.ts"}'),
            *tool_call_events(1, "call_b", "read_file", '{"path": "src/app.ts"}'),
        ]
        engine = make_engine(ScriptedProvider(script), registry, file_store, max_tools_per_turn=1)

        outcome = await engine.run_turn(HISTORY, session_state)

        first, second = outcome.invocations
        assert first.status is ToolCallStatus.COMPLETED
        assert second.status is ToolCallStatus.ERROR
        assert "limit of 1" in (second.output or "")
        assert session_state.tool_history == ["read_file"]
        assert session_state.total_error_count == 0

    @pytest.mark.asyncio
    async def test_usage_is_reported(self, registry, file_store, session_state, progress) -> None:
        provider = ScriptedProvider([*text_events("A complete and useful answer."), Usage(10, 6)])
        engine = make_engine(provider, registry, file_store, progress)

        outcome = await engine.run_turn(HISTORY, session_state)

        assert outcome.usage == Usage(10, 6)
        assert progress.of_type("usage")[0].payload == {"input_tokens": 10, "output_tokens": 6}

    @pytest.mark.asyncio
    async def test_broken_progress_sink_is_ignored(self, registry, file_store, session_state) -> None:
        def broken(event) -> None:
            raise RuntimeError("sink offline")

        provider = ScriptedProvider([ContentDelta("Writing."), *write_call()])
        engine = make_engine(provider, registry, file_store, broken)

        outcome = await engine.run_turn(HISTORY, session_state)

        assert outcome.succeeded
        assert await file_store.read_file("src/app.ts") == "export const answer = 42;\n"


class TestShakyResponses:
    """Tests for empty or degenerate responses."""

    @pytest.mark.asyncio
    async def test_shaky_response_is_retried_once(self, registry, file_store, session_state, progress) -> None:
        provider = ScriptedProvider(text_events("ok"), text_events("Here is the full answer you asked for."))
        engine = make_engine(provider, registry, file_store, progress, retry_shaky_once=True)

        outcome = await engine.run_turn(HISTORY, session_state)

        assert len(provider.requests) == 2
        assert not outcome.shaky
        assert outcome.succeeded
        assert outcome.response.text == "Here is the full answer you asked for."
        assert session_state.shaky_density == pytest.approx(0.2)
        assert len(progress.of_type("shaky")) == 1

    @pytest.mark.asyncio
    async def test_shaky_response_is_flagged(self, registry, file_store, session_state) -> None:
        provider = ScriptedProvider(text_events(""))
        engine = make_engine(provider, registry, file_store)

        outcome = await engine.run_turn(HISTORY, session_state)

        assert len(provider.requests) == 1
        assert outcome.shaky
        assert isinstance(outcome.fault, ShakyResponseFault)
        assert outcome.phase is TurnPhase.EVALUATING
        assert outcome.decree is not None


class TestRollback:
    """Tests for turns that are undone."""

    @pytest.mark.asyncio
    async def test_stream_fault_rolls_back(self, registry, file_store, session_state, progress) -> None:
        provider = ScriptedProvider([ContentDelta("partial"), RuntimeError("socket closed")])
        engine = make_engine(provider, registry, file_store, progress)

        outcome = await engine.run_turn(HISTORY, session_state)

        assert outcome.phase is TurnPhase.ROLLED_BACK
        assert isinstance(outcome.fault, StreamFault)
        assert outcome.fault.error_code == ErrorCode.STREAM_FAILURE
        assert outcome.decree is None
        assert progress.types().count("rollback") == 1
        assert not engine.lock.is_locked

    @pytest.mark.asyncio
    async def test_cancellation_restores_files(self, registry, file_store, session_state) -> None:
        token = CancellationToken()

        def stop(arguments, context) -> str:
            token.cancel("user pressed stop")
            return "stopping"

        registry.register_function("stop", stop)
        script = [
            *write_call(0),
            *tool_call_events(1, "call_stop", "stop", "{}"),
            *tool_call_events(2, "call_read", "read_file", '{"path": "src/app.ts"}'),
        ]
        engine = make_engine(ScriptedProvider(script), registry, file_store)

        outcome = await engine.run_turn(HISTORY, session_state, cancel_token=token)

        assert outcome.cancelled
        assert outcome.phase is TurnPhase.ROLLED_BACK
        assert await file_store.read_file("src/app.ts") == ORIGINAL
        assert outcome.invocations[2].status is ToolCallStatus.PENDING
        assert session_state.tool_history == []

    @pytest.mark.asyncio
    async def test_pre_cancelled_token_never_streams(self, registry, file_store, session_state) -> None:
        token = CancellationToken()
        token.cancel("stop")
        provider = ScriptedProvider(text_events("never seen"))
        engine = make_engine(provider, registry, file_store)

        outcome = await engine.run_turn(HISTORY, session_state, cancel_token=token)

        assert outcome.cancelled
        assert provider.requests == []

    @pytest.mark.asyncio
    async def test_task_cancellation_rolls_back_and_propagates(
        self, registry, file_store, session_state, progress
    ) -> None:
        hang = Hang()
        engine = make_engine(ScriptedProvider([ContentDelta("thinking"), hang]), registry, file_store, progress)

        task = asyncio.ensure_future(engine.run_turn(HISTORY, session_state))
        await asyncio.sleep(0.02)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert progress.types().count("rollback") == 1
        assert not engine.lock.is_locked


class TestLiveness:
    """Tests for heartbeat warnings and watchdog recovery."""

    @pytest.mark.asyncio
    async def test_heartbeat_reports_hang_without_failing(self, registry, file_store, session_state, progress) -> None:
        hang = Hang()
        provider = ScriptedProvider([ContentDelta("Reasoning about the change. "), hang, ContentDelta("Done now.")])
        engine = make_engine(provider, registry, file_store, progress, heartbeat_seconds=0.01, watchdog_seconds=5.0)

        asyncio.get_running_loop().call_later(0.08, hang.release.set)
        outcome = await engine.run_turn(HISTORY, session_state)

        assert outcome.succeeded
        hangs = progress.of_type("hang")
        assert hangs
        assert hangs[0].payload["error"] == ErrorCode.HANG

    @pytest.mark.asyncio
    async def test_watchdog_recovers_stuck_tool_once(self, registry, file_store, session_state, progress) -> None:
        never = asyncio.Event()

        async def stuck(arguments, context) -> str:
            await never.wait()
            return "unreachable"

        registry.register_function("stuck", stuck)
        script = [*write_call(0), *tool_call_events(1, "call_stuck", "stuck", "{}")]
        engine = make_engine(
            ScriptedProvider(script), registry, file_store, progress, heartbeat_seconds=1.0, watchdog_seconds=0.05
        )

        outcome = await asyncio.wait_for(engine.run_turn(HISTORY, session_state), timeout=2.0)

        assert outcome.phase is TurnPhase.RECOVERED
        assert isinstance(outcome.fault, LockTimeoutFault)
        assert outcome.fault.severity == "critical"
        assert await file_store.read_file("src/app.ts") == ORIGINAL
        assert progress.types().count("rollback") == 1
        assert progress.types().count("critical") == 1
        assert engine.lock.forced_releases == 1
        assert not engine.lock.is_locked

    @pytest.mark.asyncio
    async def test_watchdog_recovers_stalled_stream(self, registry, file_store, session_state) -> None:
        hang = Hang()
        provider = ScriptedProvider(
            [ContentDelta("thinking"), hang],
            text_events("Second turn finished normally."),
        )
        engine = make_engine(provider, registry, file_store, heartbeat_seconds=1.0, watchdog_seconds=0.05)

        outcome = await asyncio.wait_for(engine.run_turn(HISTORY, session_state), timeout=2.0)
        assert outcome.phase is TurnPhase.RECOVERED

        follow_up = await asyncio.wait_for(engine.run_turn(HISTORY, session_state), timeout=2.0)
        assert follow_up.succeeded

    @pytest.mark.asyncio
    async def test_watchdog_during_slow_disk_write_restores_file(
        self, registry, session_state, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        target = tmp_path / "src" / "app.ts"
        target.parent.mkdir()
        target.write_text("ORIGINAL", encoding="utf-8")
        write_text = file_store_module._write_text

        def slow_write(path: Path, content: str, append: bool) -> None:
            time.sleep(0.3)
            write_text(path, content, append)

        monkeypatch.setattr(file_store_module, "_write_text", slow_write)
        store = LocalFileStore(tmp_path)
        script = tool_call_events(0, "call_write", "write_file", '{"path": "src/app.ts", "content": "MUTATED"}')
        engine = make_engine(ScriptedProvider(script), registry, store, heartbeat_seconds=1.0, watchdog_seconds=0.1)

        outcome = await asyncio.wait_for(engine.run_turn(HISTORY, session_state), timeout=5.0)
        await asyncio.sleep(0.5)

        assert outcome.phase is TurnPhase.RECOVERED
        assert target.read_text(encoding="utf-8") == "ORIGINAL"
        assert not store.backed_up_paths


class TestLifecycle:
    """Tests for locking and disposal."""

    @pytest.mark.asyncio
    async def test_lock_timeout_returns_rolled_back_outcome(self, registry, file_store, session_state) -> None:
        engine = make_engine(ScriptedProvider(text_events("hi")), registry, file_store, lock_timeout_seconds=0.01)
        held = await engine.lock.acquire("another turn")

        outcome = await engine.run_turn(HISTORY, session_state)

        assert outcome.phase is TurnPhase.ROLLED_BACK
        assert isinstance(outcome.fault, LockTimeoutFault)
        engine.lock.release(held)

    @pytest.mark.asyncio
    async def test_turns_on_one_engine_are_serialized(self, registry, file_store) -> None:
        hang = Hang()
        provider = ScriptedProvider(
            [ContentDelta("First turn is working."), hang],
            text_events("Second turn answer is here."),
        )
        engine = make_engine(provider, registry, file_store)

        first = asyncio.ensure_future(engine.run_turn(HISTORY, SessionRunState()))
        await asyncio.sleep(0.01)
        second = asyncio.ensure_future(engine.run_turn(HISTORY, SessionRunState()))
        await asyncio.sleep(0.01)
        assert len(provider.requests) == 1
        assert not second.done()

        hang.release.set()
        first_outcome, second_outcome = await asyncio.gather(first, second)
        assert first_outcome.response.text == "First turn is working."
        assert second_outcome.response.text == "Second turn answer is here."

    @pytest.mark.asyncio
    async def test_disposed_engine_refuses_turns(self, registry, file_store, session_state) -> None:
        provider = ScriptedProvider()
        engine = make_engine(provider, registry, file_store)
        await engine.aclose()
        engine.dispose()

        assert engine.disposed
        assert provider.closed
        with pytest.raises(EngineDisposedError):
            await engine.run_turn(HISTORY, session_state)

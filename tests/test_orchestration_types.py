"""Tests for orchestration data types."""

from __future__ import annotations

import json
import random

import pytest

from tests.helpers import ARGUMENT_PAYLOADS, random_split
from turnwright.ai.errors import OperationCancelledError
from turnwright.ai.orchestration.json_repair import parse_tool_arguments
from turnwright.ai.orchestration.response import ModelResponse
from turnwright.ai.orchestration.types import (
    CancellationToken,
    Message,
    ProgressEvent,
    SessionRunState,
    ToolCallStatus,
    ToolInvocation,
    TurnOutcome,
    TurnPhase,
    Usage,
)


class TestMessage:
    """Tests for Message."""

    def test_tool_message_chat_param(self) -> None:
        message = Message.tool("result", tool_call_id="c1", name="read_file")
        assert message.to_chat_param() == {
            "role": "tool",
            "content": "result",
            "name": "read_file",
            "tool_call_id": "c1",
        }

    def test_block_content_flattened(self) -> None:
        message = Message(role="user", content=[{"type": "text", "text": "hi"}])
        assert message.text == "hi"
        assert message.to_chat_param()["content"] == "hi"

    def test_messages_are_immutable(self) -> None:
        message = Message.user("hello")
        with pytest.raises(AttributeError):
            message.content = "changed"  # type: ignore[misc]


class TestToolInvocation:
    """Tests for ToolInvocation argument assembly."""

    def test_arguments_parse_at_finalize(self) -> None:
        invocation = ToolInvocation(call_id="c1", name="write_file")
        invocation.append_arguments('{"path": "te')
        invocation.append_arguments('st.ts"}')
        assert invocation.parsed_arguments is None
        invocation.finalize()
        assert invocation.parsed_arguments == {"path": "test.ts"}

    @pytest.mark.parametrize("payload", ARGUMENT_PAYLOADS)
    def test_any_split_parses_like_the_whole_text(self, payload: str) -> None:
        expected = parse_tool_arguments(payload)
        splits = [[payload[:cut], payload[cut:]] for cut in range(len(payload) + 1)]
        rng = random.Random(11)
        splits.extend(random_split(payload, rng) for _ in range(50))
        for fragments in splits:
            invocation = ToolInvocation(call_id="c1", name="edit")
            for fragment in fragments:
                invocation.append_arguments(fragment)
            invocation.finalize()
            assert invocation.parse_error is None
            assert invocation.parsed_arguments == expected, fragments

    def test_finalize_with_provider_text_replaces_buffer(self) -> None:
        invocation = ToolInvocation(call_id="c1", name="write_file", arguments='{"pa')
        invocation.finalize('{"path": "a"}')
        assert invocation.arguments == '{"path": "a"}'
        assert invocation.parsed_arguments == {"path": "a"}

    def test_parse_failure_recorded_not_raised(self) -> None:
        invocation = ToolInvocation(call_id="c1", name="write_file", arguments="[1, 2]")
        invocation.finalize()
        assert invocation.parsed_arguments is None
        assert "JSON object" in (invocation.parse_error or "")

    def test_finalize_is_idempotent(self) -> None:
        invocation = ToolInvocation(call_id="c1", name="t", arguments='{"a": 1}')
        invocation.finalize()
        invocation.finalize('{"a": 2}')
        assert invocation.parsed_arguments == {"a": 1}

    def test_append_after_finalize_rejected(self) -> None:
        invocation = ToolInvocation(call_id="c1", name="t")
        invocation.finalize()
        with pytest.raises(RuntimeError):
            invocation.append_arguments("{}")

    def test_terminal_status(self) -> None:
        invocation = ToolInvocation(call_id="c1", name="t")
        assert not invocation.is_terminal
        invocation.status = ToolCallStatus.ERROR
        assert invocation.is_terminal


class TestSessionRunState:
    """Tests for session bookkeeping."""

    def test_success_raises_pressure_and_streak(self) -> None:
        state = SessionRunState()
        state.record_success("write_file", "a.ts")
        assert state.victory_streak == 1
        assert state.pressure == 60
        assert state.tool_history == ["write_file"]
        assert state.recent_files == ["a.ts"]

    def test_pressure_is_capped(self) -> None:
        state = SessionRunState(pressure=95)
        state.record_success("t")
        assert state.pressure == 100

    def test_failure_resets_streak_and_floors_pressure(self) -> None:
        state = SessionRunState(victory_streak=4, pressure=10)
        state.record_failure("write_file", "a.ts")
        assert state.victory_streak == 0
        assert state.pressure == 0
        assert state.total_error_count == 1
        assert state.error_hotspots == {"a.ts": 1}

    def test_history_and_recent_files_are_bounded(self) -> None:
        state = SessionRunState()
        for index in range(25):
            state.record_success(f"tool{index}", f"file{index}")
        assert len(state.tool_history) == 20
        assert state.tool_history[-1] == "tool24"
        assert len(state.recent_files) == 10
        assert state.recent_files[0] == "file15"

    def test_recent_hotspots_newest_first(self) -> None:
        state = SessionRunState()
        for path in ["a", "b", "a", "b", "a", "b", "c"]:
            state.record_failure("t", path)
        # "b" failed last among the paths over the threshold.
        assert state.recent_hotspots(3) == ["b", "a"]

    def test_shaky_density_capped(self) -> None:
        state = SessionRunState()
        for _ in range(7):
            state.record_shaky()
        assert state.shaky_density == 1.0


class TestCancellationToken:
    """Tests for CancellationToken."""

    def test_cancel_keeps_first_reason(self) -> None:
        token = CancellationToken()
        token.cancel("user")
        token.cancel("other")
        assert token.is_cancelled
        assert token.reason == "user"

    def test_raise_if_cancelled(self) -> None:
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel("stop")
        with pytest.raises(OperationCancelledError, match="stop"):
            token.raise_if_cancelled()


class TestTurnOutcome:
    """Tests for TurnOutcome helpers."""

    def test_history_messages_pair_calls_with_results(self) -> None:
        invocation = ToolInvocation(call_id="c1", name="read_file", arguments='{"path": "a"}')
        invocation.output = "contents"
        outcome = TurnOutcome(
            run_id="r1",
            phase=TurnPhase.EVALUATING,
            response=ModelResponse("Reading the file now."),
            invocations=(invocation,),
        )
        assistant, tool = outcome.history_messages()
        assert assistant.role == "assistant"
        assert assistant.tool_calls[0]["function"]["name"] == "read_file"
        assert tool.tool_call_id == "c1"
        assert tool.content == "contents"
        assert outcome.succeeded

    def test_progress_event_json(self) -> None:
        event = ProgressEvent("usage", "r1", 12.5, {"input_tokens": 3})
        assert json.loads(event.to_json()) == {
            "type": "usage",
            "run_id": "r1",
            "elapsed_ms": 12.5,
            "input_tokens": 3,
        }

    def test_usage_total(self) -> None:
        assert Usage(input_tokens=3, output_tokens=4).total_tokens == 7

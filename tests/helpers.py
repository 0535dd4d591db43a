"""Shared test helpers and scripted collaborators.

Import from here instead of duplicating stubs in individual test files.
"""

from __future__ import annotations

import asyncio
import random
from typing import Any, AsyncIterator, Sequence

from turnwright.ai.orchestration.response import ModelResponse
from turnwright.ai.orchestration.types import (
    ContentDelta,
    ProgressEvent,
    RunCompleted,
    RunStarted,
    StreamEvent,
    ToolCallDelta,
    ToolCallDone,
)
from turnwright.ai.providers import ModelRequest, estimate_tokens


class Hang:
    """Script step that blocks the stream until ``release`` is set."""

    def __init__(self) -> None:
        self.release = asyncio.Event()


class ScriptedProvider:
    """Model provider replaying one scripted event list per ``stream`` call.

    A script item may be a ``StreamEvent``, an exception instance (raised at
    that point) or a ``Hang``.

    Example:
        provider = ScriptedProvider(text_events("Hello"), [RuntimeError("boom")])
    """

    def __init__(self, *scripts: Sequence[Any]) -> None:
        self._scripts = [list(script) for script in scripts]
        self.requests: list[ModelRequest] = []
        self.closed = False

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        self.requests.append(request)
        script = self._scripts.pop(0) if self._scripts else []
        yield RunStarted(run_id=f"run-{len(self.requests)}")
        for item in script:
            if isinstance(item, BaseException):
                raise item
            if isinstance(item, Hang):
                await item.release.wait()
                continue
            yield item
        yield RunCompleted()

    async def create_message(self, request: ModelRequest) -> ModelResponse:
        self.requests.append(request)
        return ModelResponse("")

    def estimate_tokens(self, text: str) -> int:
        return estimate_tokens(text)

    async def aclose(self) -> None:
        self.closed = True


class ProgressRecorder:
    """Progress sink that keeps every event."""

    def __init__(self) -> None:
        self.events: list[ProgressEvent] = []

    def __call__(self, event: ProgressEvent) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [event.type for event in self.events]

    def of_type(self, event_type: str) -> list[ProgressEvent]:
        return [event for event in self.events if event.type == event_type]


def tool_call_events(index: int, call_id: str, name: str, *fragments: str) -> list[StreamEvent]:
    """Events for one native tool call whose arguments arrive in ``fragments``."""
    events: list[StreamEvent] = [ToolCallDelta(index=index, call_id=call_id, name=name)]
    events.extend(ToolCallDelta(index=index, arguments_delta=fragment) for fragment in fragments)
    events.append(ToolCallDone(index=index))
    return events


def text_events(*chunks: str) -> list[StreamEvent]:
    return [ContentDelta(chunk) for chunk in chunks]


# Argument texts covering nesting, escapes, unicode and text that only parses after repair.
ARGUMENT_PAYLOADS = [
    '{"path": "src/app.ts", "content": "line1\\nline2\\t\\"quoted\\" \\\\ end"}',
    '{"edits": [{"start": 1, "end": 3, "text": "ünïcødé ✓ 日本"}], "options": {"dry_run": false, "tags": ["a", null]}}',
    '{"path": "caf\\u00e9.md", "content": "{not: [json]} inside a string"}',
    '{path: "bare.ts", "items": [1, 2,], "nested": {"deep": {"deeper": [{}]}},}',
    '{"path": "a.ts", "content": "truncated mid-str',
]


def random_split(text: str, rng: random.Random, max_parts: int = 8) -> list[str]:
    """Cut ``text`` at up to ``max_parts - 1`` random boundaries."""
    cuts = sorted(rng.sample(range(1, len(text)), min(len(text) - 1, rng.randint(1, max_parts - 1))))
    bounds = [0, *cuts, len(text)]
    return [text[start:end] for start, end in zip(bounds, bounds[1:])]

"""Model providers behind one stream port.

Every backend implements ``ModelProvider``; the factory picks one from a
lookup table keyed on the provider identifier. The bundled implementation
talks to any OpenAI-compatible endpoint (OpenAI, OpenRouter, Cerebras)
and normalizes its stream into the engine's ``StreamEvent`` variants.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import math
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, Iterator, List, Mapping, Protocol, Sequence, runtime_checkable

import httpx
from openai import APIConnectionError, APIError, APIStatusError, AsyncOpenAI, RateLimitError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..settings import ClientSettings
from .errors import StreamFault
from .orchestration.json_repair import try_parse_json_block
from .orchestration.response import ModelResponse
from .orchestration.types import (
    ContentDelta,
    Message,
    ReasoningDelta,
    RunCompleted,
    RunStarted,
    StreamEvent,
    ToolCallDelta,
    ToolCallDone,
    Usage,
)

__all__ = [
    "ModelRequest",
    "ModelProvider",
    "OpenAICompatibleProvider",
    "PROVIDER_BASE_URLS",
    "create_provider",
    "register_provider",
    "available_providers",
    "estimate_tokens",
]

LOGGER = logging.getLogger(__name__)

_RETRYABLE_ERRORS = (
    APIError,
    APIStatusError,
    APIConnectionError,
    RateLimitError,
    httpx.TimeoutException,
)


def estimate_tokens(text: str, tokens_per_char: float = 0.25) -> int:
    """Approximate token count as characters times a ratio, rounded up."""
    if not text:
        return 0
    return math.ceil(len(text) * tokens_per_char)


# -----------------------------------------------------------------------------
# Port
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ModelRequest:
    """One request to the model stream port."""

    model: str
    messages: Sequence[Message | Mapping[str, Any]]
    system: str | None = None
    tools: Sequence[Mapping[str, Any]] = ()
    max_tokens: int | None = None
    temperature: float | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def chat_messages(self) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        if self.system:
            messages.append({"role": "system", "content": self.system})
        for message in self.messages:
            if isinstance(message, Message):
                messages.append(message.to_chat_param())
            else:
                messages.append(dict(message))
        return messages


@runtime_checkable
class ModelProvider(Protocol):
    """Capability interface every backend conforms to."""

    def stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        """Stream events for ``request``, ending with ``RunCompleted``."""
        ...

    async def create_message(self, request: ModelRequest) -> ModelResponse:
        """Return one complete response without streaming."""
        ...

    def estimate_tokens(self, text: str) -> int:
        ...


# -----------------------------------------------------------------------------
# OpenAI-compatible provider
# -----------------------------------------------------------------------------


class OpenAICompatibleProvider:
    """Provider for OpenAI-compatible chat completion endpoints."""

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)
        self._models_cache: List[str] | None = None
        self._models_lock = asyncio.Lock()

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    def estimate_tokens(self, text: str) -> int:
        return estimate_tokens(text, self._settings.tokens_per_char)

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamEvent]:
        """Stream chat completions normalized to engine events.

        Transient API errors are retried only while nothing has been
        yielded; after the first event a failure surfaces as
        ``StreamFault`` so the caller never sees duplicated deltas.
        """
        payload = self._build_payload(request, stream=True)
        LOGGER.debug(
            "Starting streamed completion via %s with %s message(s)",
            payload["model"],
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_payload(payload)

        started = time.perf_counter()
        run_id = uuid.uuid4().hex[:12]
        usage: Usage | None = None
        emitted = False
        yield RunStarted(run_id=run_id)

        async for attempt in self._retrying():
            with attempt:
                try:
                    async with self._client.chat.completions.stream(**payload) as stream:
                        async for event in stream:
                            for normalized in self._normalize_stream_event(event):
                                if isinstance(normalized, Usage):
                                    usage = normalized
                                    continue
                                emitted = True
                                yield normalized
                except _RETRYABLE_ERRORS as exc:
                    if emitted:
                        raise StreamFault.from_exception(exc) from exc
                    LOGGER.warning("Stream attempt %s failed: %s", attempt.retry_state.attempt_number, exc)
                    raise

        if usage is not None:
            yield usage
        yield RunCompleted(usage=usage, duration_ms=round((time.perf_counter() - started) * 1000, 3))

    async def create_message(self, request: ModelRequest) -> ModelResponse:
        payload = self._build_payload(request, stream=False)
        completion = None
        async for attempt in self._retrying():
            with attempt:
                completion = await self._client.chat.completions.create(**payload)
        assert completion is not None
        if not completion.choices:
            return ModelResponse("")
        message = completion.choices[0].message
        tool_calls = []
        for call in message.tool_calls or []:
            arguments = call.function.arguments or ""
            tool_calls.append(
                {
                    "id": call.id,
                    "name": call.function.name,
                    "input": try_parse_json_block(arguments) or {},
                    "arguments": arguments,
                }
            )
        return ModelResponse.from_parts(
            message.content or "",
            reasoning=_extract_reasoning(message) or "",
            tool_calls=tool_calls,
        )

    async def list_models(self, *, force_refresh: bool = False) -> List[str]:
        if self._models_cache is not None and not force_refresh:
            return list(self._models_cache)
        async with self._models_lock:
            if self._models_cache is not None and not force_refresh:
                return list(self._models_cache)
            response = await self._client.models.list()
            self._models_cache = [item.id for item in response.data if getattr(item, "id", None)]
            return list(self._models_cache)

    async def aclose(self) -> None:
        """Close the underlying client to release network resources."""
        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url or PROVIDER_BASE_URLS.get(settings.provider),
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(_RETRYABLE_ERRORS),
        )

    def _build_payload(self, request: ModelRequest, *, stream: bool) -> Dict[str, Any]:
        messages = request.chat_messages()
        if not messages:
            raise ValueError("At least one message is required to start a chat")
        payload: Dict[str, Any] = {
            "model": request.model or self._settings.model,
            "messages": messages,
        }
        if request.tools:
            payload["tools"] = [dict(tool) for tool in request.tools]
        if request.max_tokens is not None:
            payload["max_tokens"] = request.max_tokens
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if stream:
            payload["stream_options"] = {"include_usage": True}
        return payload

    def _normalize_stream_event(self, event: Any) -> Iterator[StreamEvent]:
        event_type = getattr(event, "type", None)
        if event_type == "content.delta":
            delta_text = getattr(event, "delta", None)
            if delta_text:
                yield ContentDelta(str(delta_text))
        elif event_type == "tool_calls.function.arguments.done":
            index = getattr(event, "index", None)
            if index is not None:
                yield ToolCallDone(index=int(index), arguments=getattr(event, "arguments", None))
        elif event_type == "chunk":
            yield from self._normalize_chunk(getattr(event, "chunk", None))

    def _normalize_chunk(self, chunk: Any) -> Iterator[StreamEvent]:
        if chunk is None:
            return
        usage = getattr(chunk, "usage", None)
        if usage is not None:
            yield Usage(
                input_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
                output_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
            )
        for choice in getattr(chunk, "choices", None) or []:
            delta = getattr(choice, "delta", None)
            if delta is None:
                continue
            reasoning = _extract_reasoning(delta)
            if reasoning:
                yield ReasoningDelta(reasoning)
            for call in getattr(delta, "tool_calls", None) or []:
                function = getattr(call, "function", None)
                yield ToolCallDelta(
                    index=int(getattr(call, "index", 0) or 0),
                    call_id=getattr(call, "id", None),
                    name=getattr(function, "name", None) if function else None,
                    arguments_delta=getattr(function, "arguments", None) if function else None,
                )

    def _log_payload(self, payload: Mapping[str, Any]) -> None:
        redacted = dict(payload)
        try:
            serialized = json.dumps(redacted, ensure_ascii=False, indent=2, default=str)
        except (TypeError, ValueError):
            LOGGER.debug("Model payload (unserializable): %s", redacted)
        else:
            LOGGER.debug("Model payload:\n%s", serialized)


def _extract_reasoning(message: Any) -> str | None:
    for attr in ("reasoning", "reasoning_content"):
        value = getattr(message, attr, None)
        if isinstance(value, str) and value:
            return value
    extra = getattr(message, "model_extra", None) or {}
    for key in ("reasoning", "reasoning_content"):
        value = extra.get(key)
        if isinstance(value, str) and value:
            return value
    return None


# -----------------------------------------------------------------------------
# Factory
# -----------------------------------------------------------------------------

PROVIDER_BASE_URLS: Dict[str, str] = {
    "openai": "https://api.openai.com/v1",
    "openrouter": "https://openrouter.ai/api/v1",
    "cerebras": "https://api.cerebras.ai/v1",
}

ProviderBuilder = Callable[[ClientSettings], ModelProvider]

_PROVIDERS: Dict[str, ProviderBuilder] = {
    name: OpenAICompatibleProvider for name in PROVIDER_BASE_URLS
}


def register_provider(provider_id: str, builder: ProviderBuilder) -> None:
    """Add or replace the builder for ``provider_id``."""
    key = provider_id.strip().lower()
    if not key:
        raise ValueError("provider_id is required")
    _PROVIDERS[key] = builder


def available_providers() -> list[str]:
    return sorted(_PROVIDERS)


def create_provider(settings: ClientSettings) -> ModelProvider:
    """Build the provider named by ``settings.provider``.

    Raises:
        ValueError: If no builder is registered for the identifier.
    """
    key = (settings.provider or "").strip().lower()
    builder = _PROVIDERS.get(key)
    if builder is None:
        raise ValueError(f"Unknown provider '{settings.provider}'. Known providers: {', '.join(available_providers())}")
    LOGGER.debug("Creating %s provider for model %s", key, settings.model)
    return builder(settings)

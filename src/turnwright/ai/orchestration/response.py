"""Read-only view over raw model response content.

Providers return either a plain string or an ordered list of typed content
blocks (``text``, ``thought``/``reasoning``, ``tool_use``). Blocks may be
mappings or SDK objects exposing the same attributes. ``ModelResponse``
normalizes both into one interface so callers never branch on the shape.
"""

from __future__ import annotations

from typing import Any, Mapping, Sequence

__all__ = ["ModelResponse", "SHAKY_MIN_LENGTH"]

SHAKY_MIN_LENGTH = 10
_REASONING_TYPES = frozenset({"thought", "reasoning"})


def _block_get(block: Any, key: str) -> Any:
    if isinstance(block, Mapping):
        return block.get(key)
    return getattr(block, key, None)


class ModelResponse:
    """Stable view of one model response.

    The flattened text is computed once at construction.
    """

    __slots__ = ("_content", "_text", "_reasoning", "_tool_calls")

    def __init__(self, content: Any) -> None:
        self._content = content
        self._text = self._extract_text(content)
        self._reasoning: str | None = None
        self._tool_calls: list[Any] | None = None

    @classmethod
    def wrap(cls, content: Any) -> ModelResponse:
        if isinstance(content, ModelResponse):
            return content
        return cls(content)

    @classmethod
    def from_parts(
        cls,
        text: str,
        *,
        reasoning: str = "",
        tool_calls: Sequence[Mapping[str, Any]] = (),
    ) -> ModelResponse:
        """Build a block-list response from streamed parts."""
        blocks: list[dict[str, Any]] = []
        if reasoning:
            blocks.append({"type": "reasoning", "text": reasoning})
        if text:
            blocks.append({"type": "text", "text": text})
        for call in tool_calls:
            blocks.append({"type": "tool_use", **call})
        return cls(blocks)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def raw(self) -> Any:
        return self._content

    @property
    def text(self) -> str:
        return self._text

    @property
    def trimmed(self) -> str:
        return self._text.strip()

    @property
    def has_text(self) -> bool:
        return len(self._text) > 0

    @property
    def reasoning(self) -> str:
        """Reasoning and thought blocks joined by a blank line."""
        if self._reasoning is None:
            parts: list[str] = []
            if self._is_block_list(self._content):
                for block in self._content:
                    if _block_get(block, "type") in _REASONING_TYPES:
                        parts.append(_block_get(block, "text") or _block_get(block, "reasoning") or "")
            self._reasoning = "\n\n".join(parts)
        return self._reasoning

    def tool_calls(self, name: str | None = None) -> list[Any]:
        """Return tool-use blocks, optionally only those calling ``name``."""
        if self._tool_calls is None:
            self._tool_calls = []
            if self._is_block_list(self._content):
                self._tool_calls = [b for b in self._content if _block_get(b, "type") == "tool_use"]
        if name is None:
            return list(self._tool_calls)
        return [block for block in self._tool_calls if _block_get(block, "name") == name]

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls())

    @property
    def is_shaky(self) -> bool:
        """True when the response is too empty to count as progress."""
        if self.has_tool_calls:
            return False
        text = self.trimmed
        reasoning = self.reasoning
        if not text and not reasoning:
            return True
        return len(text) < SHAKY_MIN_LENGTH and len(reasoning) < SHAKY_MIN_LENGTH

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _is_block_list(content: Any) -> bool:
        return isinstance(content, (list, tuple))

    @classmethod
    def _extract_text(cls, content: Any) -> str:
        if content is None:
            return ""
        if isinstance(content, str):
            return content
        if cls._is_block_list(content):
            texts = []
            for block in content:
                if isinstance(block, str):
                    texts.append(block)
                elif _block_get(block, "type") == "text":
                    texts.append(_block_get(block, "text") or "")
            return " ".join(texts)
        text = _block_get(content, "text")
        return text if isinstance(text, str) else str(content)

    def __repr__(self) -> str:
        preview = self.trimmed[:40]
        return f"ModelResponse(text={preview!r}, tool_calls={len(self.tool_calls())})"

"""Parsing of tool calls that a model embedded in its text output.

Some open-weight models ignore the native tool-call channel and print
calls between control tokens instead, e.g.::

    <|tool_calls_begin|><|tool_call_begin|>write_file<|tool_sep|>{"path": "a"}<|tool_call_end|><|tool_calls_end|>

The engine uses these only when the stream produced no native calls.
"""

from __future__ import annotations

import re
import uuid
from typing import Any

from .json_repair import try_parse_json_block
from .types import ToolInvocation

__all__ = [
    "TOOL_MARKER_TRANSLATION",
    "TOOL_CALLS_BLOCK_RE",
    "TOOL_CALL_ENTRY_RE",
    "normalize_tool_marker_text",
    "parse_embedded_tool_calls",
    "embedded_invocations",
    "strip_tool_blocks",
]

# Stylized glyphs some models emit inside the control tokens.
TOOL_MARKER_TRANSLATION = str.maketrans(
    {
        "＜": "<",
        "﹤": "<",
        "〈": "<",
        "＞": ">",
        "﹥": ">",
        "〉": ">",
        "｜": "|",
        "￨": "|",
        "│": "|",
        "▁": "_",
        "\u00a0": " ",
        "\u200b": " ",
        "\u3000": " ",
        "\ufeff": " ",
    }
)

_TOKEN = r"<\s*\|?\s*{body}\s*\|?\s*>"


def _token(body: str) -> str:
    return _TOKEN.format(body=body)


TOOL_CALLS_BLOCK_RE = re.compile(
    _token(r"tool[\s_]*calls[\s_]*begin") + r"(?P<body>.*?)" + _token(r"tool[\s_]*calls[\s_]*end"),
    re.IGNORECASE | re.DOTALL,
)

TOOL_CALL_ENTRY_RE = re.compile(
    _token(r"tool[\s_]*call[\s_]*begin")
    + r"(?P<name>.*?)"
    + _token(r"tool[\s_]*sep")
    + r"(?P<args>.*?)"
    + _token(r"tool[\s_]*call[\s_]*end"),
    re.IGNORECASE | re.DOTALL,
)


def normalize_tool_marker_text(text: str) -> str:
    return text.translate(TOOL_MARKER_TRANSLATION)


def parse_embedded_tool_calls(text: str, start_index: int = 0) -> list[dict[str, Any]]:
    """Extract tool calls from every marker block in ``text``.

    Args:
        text: Model output that may contain marker blocks.
        start_index: Index assigned to the first parsed call.

    Returns:
        Dicts with ``id``, ``name``, ``arguments`` (raw text), ``input``
        (parsed mapping or None) and ``index``. Entries without a name are
        skipped.
    """
    if not text or not isinstance(text, str):
        return []
    normalized = normalize_tool_marker_text(text)
    calls: list[dict[str, Any]] = []
    index = start_index
    for block in TOOL_CALLS_BLOCK_RE.finditer(normalized):
        for entry in TOOL_CALL_ENTRY_RE.finditer(block.group("body") or ""):
            name = (entry.group("name") or "").strip().strip("\"'` \t\r\n")
            if not name:
                continue
            args_raw = (entry.group("args") or "").strip()
            calls.append(
                {
                    "id": f"embedded_{index}_{uuid.uuid4().hex[:8]}",
                    "name": name,
                    "arguments": args_raw,
                    "input": try_parse_json_block(args_raw),
                    "index": index,
                }
            )
            index += 1
    return calls


def embedded_invocations(text: str, start_order: int = 0) -> list[ToolInvocation]:
    """Build finalized invocations from marker blocks in ``text``."""
    invocations: list[ToolInvocation] = []
    for offset, call in enumerate(parse_embedded_tool_calls(text, start_order)):
        invocation = ToolInvocation(
            call_id=call["id"],
            name=call["name"],
            index=call["index"],
            order=start_order + offset,
        )
        invocation.finalize(call["arguments"])
        invocations.append(invocation)
    return invocations


def strip_tool_blocks(text: str) -> str:
    """Remove marker blocks so only the visible prose remains."""
    if not text:
        return ""
    return TOOL_CALLS_BLOCK_RE.sub("", normalize_tool_marker_text(text)).strip()

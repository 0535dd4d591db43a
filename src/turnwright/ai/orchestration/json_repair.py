"""Parsing and repair of model-generated tool argument text.

Models frequently emit argument JSON that is truncated mid-string, carries
trailing commas or uses bare keys. ``parse_tool_arguments`` tries strict
JSON first and only falls back to a repaired candidate when that fails.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

__all__ = ["RepairResult", "repair_json", "parse_tool_arguments", "try_parse_json_block"]

_BARE_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_$][\w$]*)(\s*):")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_CLOSERS = {"{": "}", "[": "]"}


@dataclass(slots=True, frozen=True)
class RepairResult:
    repaired: str
    was_fixed: bool


def repair_json(text: str) -> RepairResult:
    """Best-effort repair of truncated or sloppy JSON.

    Closes an unterminated string, closes unbalanced objects and arrays in
    reverse order, quotes bare keys and strips trailing commas. Single quotes
    are only converted when the text contains no double quotes at all.
    """
    if not isinstance(text, str):
        return RepairResult("{}", False)
    original = text.strip()
    if not original:
        return RepairResult("{}", False)

    repaired = original
    if '"' not in repaired and "'" in repaired:
        repaired = repaired.replace("'", '"')

    in_string = False
    escaped = False
    stack: list[str] = []
    for char in repaired:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in _CLOSERS:
            stack.append(char)
        elif char in ("}", "]"):
            if stack and _CLOSERS[stack[-1]] == char:
                stack.pop()

    if in_string:
        if escaped:
            repaired = repaired[:-1]
        repaired += '"'
    while stack:
        repaired += _CLOSERS[stack.pop()]

    repaired = _BARE_KEY_RE.sub(r'\1"\2"\3:', repaired)
    repaired = _TRAILING_COMMA_RE.sub(r"\1", repaired)
    return RepairResult(repaired, repaired != original)


def parse_tool_arguments(text: str | None) -> dict[str, Any]:
    """Parse tool argument text into a dictionary.

    Args:
        text: Raw argument text; empty or None means no arguments.

    Returns:
        The parsed argument object.

    Raises:
        ValueError: If neither the text nor its repaired form is a JSON object.
    """
    if text is None or not text.strip():
        return {}
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        repaired = repair_json(text)
        try:
            parsed = json.loads(repaired.repaired)
        except json.JSONDecodeError:
            raise ValueError(f"Tool arguments are not valid JSON: {exc.msg} at position {exc.pos}") from exc
    if not isinstance(parsed, dict):
        raise ValueError(f"Tool arguments must be a JSON object, got {type(parsed).__name__}")
    return parsed


def try_parse_json_block(text: str) -> dict[str, Any] | None:
    """Attempt to parse text as a JSON object, returning None on failure."""
    try:
        return parse_tool_arguments(text) if text else None
    except ValueError:
        return None

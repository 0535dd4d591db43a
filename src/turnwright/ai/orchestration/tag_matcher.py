"""Marker detection for streamed model output.

``PrefixTree`` answers three questions about a pool of marker strings:
where the earliest complete marker in a buffer is, how long the trailing
unfinished marker prefix is, and which markers are within a small edit
distance of a candidate. ``StreamTagDetector`` builds on it to split a
stream into safe-to-emit text and withheld tails.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Literal

__all__ = [
    "TagMatch",
    "PrefixTree",
    "StreamTagDetector",
    "DetectorResult",
    "DEFAULT_STREAM_TAGS",
    "levenshtein",
]

LOGGER = logging.getLogger(__name__)

_MAX_LEVENSHTEIN_CHARS = 5000


# -----------------------------------------------------------------------------
# Edit Distance
# -----------------------------------------------------------------------------


def levenshtein(a: str, b: str) -> int:
    """Edit distance between ``a`` and ``b`` using two rows of storage.

    Inputs longer than 5000 characters get an estimate from the shared
    prefix and suffix instead of the quadratic computation.
    """
    if len(a) > _MAX_LEVENSHTEIN_CHARS or len(b) > _MAX_LEVENSHTEIN_CHARS:
        return _estimate_distance(a, b)
    if len(a) > len(b):
        a, b = b, a
    if not a:
        return len(b)

    previous = list(range(len(a) + 1))
    current = [0] * (len(a) + 1)
    for i, b_char in enumerate(b, start=1):
        current[0] = i
        for j, a_char in enumerate(a, start=1):
            if a_char == b_char:
                current[j] = previous[j - 1]
            else:
                current[j] = min(previous[j - 1], current[j - 1], previous[j]) + 1
        previous, current = current, previous
    return previous[len(a)]


def _estimate_distance(a: str, b: str) -> int:
    shorter = min(len(a), len(b))
    prefix = 0
    while prefix < shorter and a[prefix] == b[prefix]:
        prefix += 1
    suffix = 0
    while suffix < shorter - prefix and a[-1 - suffix] == b[-1 - suffix]:
        suffix += 1
    return max(len(a), len(b)) - prefix - suffix


# -----------------------------------------------------------------------------
# Prefix Tree
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class TagMatch:
    index: int
    tag: str

    @property
    def end(self) -> int:
        return self.index + len(self.tag)


class _Node:
    __slots__ = ("children", "tag")

    def __init__(self) -> None:
        self.children: dict[str, _Node] = {}
        self.tag: str | None = None


class PrefixTree:
    """Trie over a fixed pool of marker strings."""

    MAX_CACHE_SIZE = 1000

    def __init__(self, tags: Iterable[str]) -> None:
        self._root = _Node()
        self._tags: tuple[str, ...] = tuple(dict.fromkeys(tag for tag in tags if tag))
        self._distance_cache: dict[tuple[str, str], int] = {}
        for tag in self._tags:
            self._insert(tag)

    @property
    def tags(self) -> tuple[str, ...]:
        return self._tags

    @property
    def cache_size(self) -> int:
        return len(self._distance_cache)

    def _insert(self, tag: str) -> None:
        node = self._root
        for char in tag:
            node = node.children.setdefault(char, _Node())
        node.tag = tag

    # ------------------------------------------------------------------
    # Exact matching
    # ------------------------------------------------------------------

    def find_earliest_tag(self, text: str) -> TagMatch | None:
        """Return the lowest-index marker in ``text``, shortest at that index.

        Start positions are scanned in order, so the first hit is already
        the earliest and the scan stops there.
        """
        for start in range(len(text)):
            tag = self._match_from(text, start)
            if tag is not None:
                return TagMatch(start, tag)
        return None

    def _match_from(self, text: str, start: int) -> str | None:
        node = self._root
        for index in range(start, len(text)):
            node = node.children.get(text[index])  # type: ignore[assignment]
            if node is None:
                return None
            if node.tag is not None:
                return node.tag
        return None

    def find_longest_partial_at_end(self, text: str) -> int:
        """Length of the longest suffix that is a strict marker prefix.

        A suffix whose walk passes through a complete marker does not count;
        that marker would have been found by ``find_earliest_tag``.
        """
        for start in range(len(text)):
            length = self._partial_from(text, start)
            if length:
                # Earlier starts give longer suffixes.
                return length
        return 0

    def _partial_from(self, text: str, start: int) -> int:
        node = self._root
        for index in range(start, len(text)):
            node = node.children.get(text[index])  # type: ignore[assignment]
            if node is None or node.tag is not None:
                return 0
        return len(text) - start

    # ------------------------------------------------------------------
    # Approximate matching
    # ------------------------------------------------------------------

    def find_similar_tags(self, value: str, max_distance: int = 2) -> list[str]:
        """Markers within ``max_distance`` edits of ``value``."""
        similar: list[str] = []
        for tag in self._tags:
            key = (value, tag)
            distance = self._distance_cache.get(key)
            if distance is None:
                distance = levenshtein(value, tag)
                if len(self._distance_cache) >= self.MAX_CACHE_SIZE:
                    self._evict_oldest_half()
                self._distance_cache[key] = distance
            if distance <= max_distance:
                similar.append(tag)
        return similar

    def _evict_oldest_half(self) -> None:
        stale = list(self._distance_cache)[: self.MAX_CACHE_SIZE // 2]
        for key in stale:
            del self._distance_cache[key]

    def clear_cache(self) -> None:
        self._distance_cache.clear()


# -----------------------------------------------------------------------------
# Stream Tag Detector
# -----------------------------------------------------------------------------

DEFAULT_STREAM_TAGS: tuple[str, ...] = (
    "<|tool_call_begin|>",
    "<|tool_call_end|>",
    "<|tool_calls_begin|>",
    "<|tool_calls_end|>",
    "<|tool_calls_section_begin|>",
    "<|tool_calls_section_end|>",
    "<|tool_call_id|>",
    "<|tool_call_argument_begin|>",
    "<|tool_call_arguments_begin|>",
    "<|tool_sep|>",
    "<tool>",
    "</tool>",
    "<function",
    "</function>",
    "<function_calls>",
    "</function_calls>",
    "<invoke",
    "</invoke>",
    "<thought>",
    "</thought>",
    "<tool_code>",
    "</tool_code>",
    "<tool_call>",
    "</tool_call>",
    "<|eot_id|>",
    "<|start_header_id|>",
    "<|end_header_id|>",
)

_DYNAMIC_TAG_RE = re.compile(r"<\|[\w]{3,}(?:\|>|>)?|(?:^|[^A-Za-z0-9_])(call:\d+>)")
_TRAILING_CONTROL_RE = re.compile(r"<\|\w*$")
_TRAILING_CALL_RE = re.compile(r"call:\d*$")
_DYNAMIC_LOOKBACK = 200

DetectorKind = Literal["content", "incomplete", "tag"]


@dataclass(slots=True, frozen=True)
class DetectorResult:
    """Outcome of feeding one chunk to ``StreamTagDetector``.

    ``content``: no marker; ``text`` is everything buffered.
    ``incomplete``: ``text`` is safe; a possible marker prefix is withheld.
    ``tag``: ``text`` precedes ``tag``; anything after stays buffered.
    """

    kind: DetectorKind
    text: str
    tag: str | None = None


class StreamTagDetector:
    """Incremental marker splitter for streamed text."""

    MAX_BUFFER_SIZE = 100_000

    def __init__(self, tags: Iterable[str] = DEFAULT_STREAM_TAGS) -> None:
        self._tree = PrefixTree(tags)
        self._buffer = ""

    @property
    def buffer_size(self) -> int:
        return len(self._buffer)

    def process(self, chunk: str) -> DetectorResult:
        self._buffer += chunk

        if len(self._buffer) > self.MAX_BUFFER_SIZE:
            LOGGER.error("Stream tag buffer exceeded %s chars; flushing as content", self.MAX_BUFFER_SIZE)
            return DetectorResult("content", self._take(len(self._buffer)))

        match = self._tree.find_earliest_tag(self._buffer)
        if match is not None:
            text = self._buffer[: match.index]
            self._buffer = self._buffer[match.end :]
            LOGGER.debug("Stream tag detected: %s at %s", match.tag, match.index)
            return DetectorResult("tag", text, match.tag)

        dynamic = self._find_dynamic_tag()
        if dynamic is not None:
            text = self._buffer[: dynamic.index]
            self._buffer = self._buffer[dynamic.end :]
            LOGGER.debug("Dynamic stream tag detected: %s", dynamic.tag)
            return DetectorResult("tag", text, dynamic.tag)

        partial = max(
            self._tree.find_longest_partial_at_end(self._buffer),
            self._trailing_length(_TRAILING_CONTROL_RE),
            self._trailing_length(_TRAILING_CALL_RE),
        )
        if partial:
            safe = len(self._buffer) - partial
            return DetectorResult("incomplete", self._take(safe))

        return DetectorResult("content", self._take(len(self._buffer)))

    def flush(self) -> str:
        """Return and clear whatever is still withheld."""
        return self._take(len(self._buffer))

    def reset(self) -> None:
        self._buffer = ""

    def _take(self, length: int) -> str:
        text, self._buffer = self._buffer[:length], self._buffer[length:]
        return text

    def _find_dynamic_tag(self) -> TagMatch | None:
        offset = max(0, len(self._buffer) - _DYNAMIC_LOOKBACK)
        recent = self._buffer[offset:]
        matches = list(_DYNAMIC_TAG_RE.finditer(recent))
        if not matches:
            return None
        last = matches[-1]
        if last.group(1):
            candidate, start = last.group(1), last.start(1)
        else:
            candidate, start = last.group(0), last.start(0)
        if candidate.endswith(">") or candidate in self._tree.tags:
            return TagMatch(offset + start, candidate)
        return None

    def _trailing_length(self, pattern: re.Pattern[str]) -> int:
        found = pattern.search(self._buffer)
        return len(found.group(0)) if found else 0

"""Tests for tool argument parsing and JSON repair."""

from __future__ import annotations

import pytest

from turnwright.ai.orchestration.json_repair import (
    parse_tool_arguments,
    repair_json,
    try_parse_json_block,
)


class TestRepairJson:
    """Tests for repair_json."""

    def test_valid_json_is_untouched(self) -> None:
        """Already valid JSON is returned unchanged."""
        result = repair_json('{"path": "a.ts"}')
        assert result.repaired == '{"path": "a.ts"}'
        assert result.was_fixed is False

    def test_closes_unterminated_string_and_object(self) -> None:
        """A truncated string value is closed before the object."""
        result = repair_json('{"path": "te')
        assert result.repaired == '{"path": "te"}'
        assert result.was_fixed is True

    def test_closes_nested_brackets_in_reverse_order(self) -> None:
        result = repair_json('{"items": [1, 2, {"a": 1')
        assert result.repaired == '{"items": [1, 2, {"a": 1}]}'

    def test_quotes_bare_keys(self) -> None:
        result = repair_json("{path: \"a\", count: 2}")
        assert result.repaired == '{"path": "a", "count": 2}'

    def test_strips_trailing_commas(self) -> None:
        result = repair_json('{"a": [1, 2,], "b": 3,}')
        assert result.repaired == '{"a": [1, 2], "b": 3}'

    def test_single_quotes_converted_only_without_double_quotes(self) -> None:
        assert repair_json("{'a': 'b'}").repaired == '{"a": "b"}'
        # Apostrophes inside a double-quoted value must survive.
        assert repair_json('{"a": "it\'s"}').repaired == '{"a": "it\'s"}'

    def test_escaped_quote_does_not_end_string(self) -> None:
        result = repair_json('{"a": "say \\"hi')
        assert result.repaired == '{"a": "say \\"hi"}'

    def test_empty_input(self) -> None:
        assert repair_json("   ").repaired == "{}"


class TestParseToolArguments:
    """Tests for parse_tool_arguments."""

    def test_empty_text_is_empty_object(self) -> None:
        assert parse_tool_arguments("") == {}
        assert parse_tool_arguments(None) == {}

    def test_strict_json(self) -> None:
        assert parse_tool_arguments('{"path": "test.ts"}') == {"path": "test.ts"}

    def test_split_fragments_match_unsplit_text(self) -> None:
        """Fragments concatenated before parsing equal the whole text."""
        fragments = ['{"path": "te', 'st.ts"}']
        assert parse_tool_arguments("".join(fragments)) == {"path": "test.ts"}

    def test_truncated_text_is_repaired(self) -> None:
        assert parse_tool_arguments('{"path": "a.ts", "content": "x') == {"path": "a.ts", "content": "x"}

    def test_non_object_rejected(self) -> None:
        with pytest.raises(ValueError, match="JSON object"):
            parse_tool_arguments("[1, 2]")

    def test_unrepairable_text_rejected(self) -> None:
        with pytest.raises(ValueError, match="not valid JSON"):
            parse_tool_arguments("not json at all")


def test_try_parse_json_block_returns_none_on_failure() -> None:
    assert try_parse_json_block('{"a": 1}') == {"a": 1}
    assert try_parse_json_block("nope") is None
    assert try_parse_json_block("") is None

"""
Tests for lenient JSON parsing of model output.
"""
import json

from json_repair import (
    extract_items,
    extract_json_block,
    parse_json_lenient,
    repair_truncated_json,
    strip_code_fences,
)


class TestFencesAndBlocks:
    def test_strip_code_fences_returns_fenced_body(self):
        text = 'Here you go:\n```json\n{"a": 1}\n```\nEnjoy!'
        assert strip_code_fences(text) == '{"a": 1}'

    def test_strip_code_fences_without_fence(self):
        assert strip_code_fences("  plain  ") == "plain"

    def test_extract_json_block_picks_first_opener(self):
        assert extract_json_block('Result: [1, {"a": 2}]') == '[1, {"a": 2}]'
        assert extract_json_block('noise {"a": [1]}') == '{"a": [1]}'

    def test_extract_json_block_without_json(self):
        assert extract_json_block("no json here") == ""


class TestRepairTruncatedJson:
    def test_closes_open_array_and_object(self):
        assert repair_truncated_json('{"a": [1, 2, 3') == '{"a": [1, 2, 3]}'

    def test_closes_unterminated_string_value(self):
        repaired = repair_truncated_json('{"questions": [{"question": "What is')
        assert repaired == '{"questions": [{"question": "What is"}]}'

    def test_drops_dangling_key(self):
        assert parse_json_lenient('{"q": "B", "opt') == {"q": "B"}

    def test_drops_dangling_colon(self):
        assert parse_json_lenient('{"a": 1, "b":') == {"a": 1}

    def test_drops_partial_literal(self):
        assert parse_json_lenient('{"a": 1, "b": tr') == {"a": 1}

    def test_removes_trailing_comma(self):
        assert parse_json_lenient("[1, 2, ]") == [1, 2]

    def test_keeps_complete_items_of_truncated_list(self):
        text = '{"flashcards": [{"front": "A", "back": "B"}, {"front": "C", "ba'
        assert parse_json_lenient(text) == {"flashcards": [{"front": "A", "back": "B"}, {"front": "C"}]}

    def test_skips_bracket_in_leading_prose(self):
        text = 'Note [see below]: {"questions": [{"question": "Q1", "answer": 0}, {"question": "Q2'
        expected = {"questions": [{"question": "Q1", "answer": 0}, {"question": "Q2"}]}
        assert json.loads(repair_truncated_json(text)) == expected
        assert parse_json_lenient(text) == expected

    def test_nothing_recoverable(self):
        assert repair_truncated_json("see [chapter two] for details") == ""


class TestParseJsonLenient:
    def test_valid_json_unchanged(self):
        assert parse_json_lenient('{"a": [1, 2], "b": null}') == {"a": [1, 2], "b": None}

    def test_fenced_json(self):
        assert parse_json_lenient('```json\n[{"term": "ATP"}]\n```') == [{"term": "ATP"}]

    def test_json_wrapped_in_prose(self):
        assert parse_json_lenient('Sure! {"safe": true, "reason": "ok"} Hope that helps.') == {
            "safe": True,
            "reason": "ok",
        }

    def test_bracket_in_prose_before_complete_object(self):
        text = 'Here is the quiz [10 questions]: {"questions": [{"question": "Q1", "options": ["a", "b", "c", "d"], "answer": 0}]}'
        expected = {"questions": [{"question": "Q1", "options": ["a", "b", "c", "d"], "answer": 0}]}
        assert parse_json_lenient(text) == expected
        assert json.loads(repair_truncated_json(text)) == expected

    def test_longest_embedded_value_wins(self):
        assert parse_json_lenient('Result: [1, {"a": 2}] done') == [1, {"a": 2}]

    def test_default_when_nothing_parses(self):
        assert parse_json_lenient("I cannot answer that.", default={}) == {}
        assert parse_json_lenient("", default=[]) == []


class TestExtractItems:
    def test_list_passthrough(self):
        assert extract_items([1, 2], "questions") == [1, 2]

    def test_wrapper_key(self):
        assert extract_items({"questions": [{"q": 1}]}, "questions") == [{"q": 1}]

    def test_items_fallback_and_missing(self):
        assert extract_items({"items": ["x"]}, "cards") == ["x"]
        assert extract_items({"other": 1}, "cards") == []
        assert extract_items(None, "cards") == []

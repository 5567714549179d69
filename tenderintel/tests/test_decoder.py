"""Tests for the lenient structured decoder.

Covers: fence stripping, balanced-span extraction, string repair, field
extraction on truncated output, the minimal-record floor and array decoding.
"""
from __future__ import annotations

from tenderintel.decoder import (
    FALLBACK_CONTENT,
    FragmentShape,
    decode,
    decode_list,
    find_balanced_span,
    sanitize,
    strip_fences,
)

SHAPE = FragmentShape(
    "analysis",
    text_fields=("content", "overallMatch"),
    list_fields=("strengths", "gaps"),
)


class TestDecodeTiers:
    def test_clean_json(self):
        out = decode('{"content": "ok", "overallMatch": "80", "strengths": ["a"], "gaps": []}', SHAPE)
        assert out == {"content": "ok", "overallMatch": "80", "strengths": ["a"], "gaps": []}

    def test_fenced_json(self):
        raw = '```json\n{"content": "fenced", "strengths": ["x"]}\n```'
        out = decode(raw, SHAPE)
        assert out["content"] == "fenced"
        assert out["strengths"] == ["x"]
        assert out["gaps"] == []

    def test_prose_around_object(self):
        raw = 'Here is the analysis you asked for:\n{"content": "inside"}\nLet me know!'
        assert decode(raw, SHAPE)["content"] == "inside"

    def test_raw_newline_inside_string(self):
        raw = '{"content": "line one\nline two", "strengths": ["a"]}'
        out = decode(raw, SHAPE)
        assert out["content"] == "line one\nline two"
        assert out["strengths"] == ["a"]

    def test_trailing_commas(self):
        out = decode('{"content": "x", "gaps": ["a", "b",],}', SHAPE)
        assert out["gaps"] == ["a", "b"]

    def test_smart_quotes(self):
        out = decode("{“content”: “hello”}", SHAPE)
        assert out["content"] == "hello"

    def test_unescaped_inner_quotes(self):
        out = decode('{"content": "He said "yes" today", "gaps": []}', SHAPE)
        assert out["content"] == 'He said "yes" today'

    def test_truncated_output_uses_field_extraction(self):
        raw = '{"content": "Summary here", "overallMatch": "75", "strengths": ["a", "b"], "gaps": ["c"'
        out = decode(raw, SHAPE)
        assert out["content"] == "Summary here"
        assert out["overallMatch"] == "75"
        assert out["strengths"] == ["a", "b"]
        assert out["gaps"] == []

    def test_extra_keys_are_kept(self):
        out = decode('{"content": "x", "confidence": 0.9}', SHAPE)
        assert out["confidence"] == 0.9


class TestDecodeFloor:
    def test_plain_refusal_gives_minimal_record(self):
        out = decode("I cannot help with that.", SHAPE)
        assert out == {"content": FALLBACK_CONTENT, "overallMatch": "", "strengths": [], "gaps": []}

    def test_empty_and_none(self):
        assert decode("", SHAPE)["content"] == FALLBACK_CONTENT
        assert decode(None, SHAPE)["content"] == FALLBACK_CONTENT

    def test_invalid_utf8_bytes(self):
        out = decode(b'\xff\xfe{"content": "ok"}', SHAPE)
        assert out["content"] == "ok"

    def test_wrong_collection_type_is_defaulted(self):
        out = decode('{"content": "x", "strengths": "not a list", "overallMatch": null}', SHAPE)
        assert out["strengths"] == []
        assert out["overallMatch"] == ""

    def test_idempotent(self):
        raw = '```\n{"content": "a\nb", "strengths": ["s",],}\n```'
        first = decode(raw, SHAPE)
        assert decode(first, SHAPE) == first


class TestHelpers:
    def test_strip_fences_without_fence(self):
        assert strip_fences('  {"a": 1}  ') == '{"a": 1}'

    def test_balanced_span_ignores_braces_in_strings(self):
        text = 'prefix {"a": "} not the end", "b": {"c": 1}} suffix'
        assert find_balanced_span(text) == '{"a": "} not the end", "b": {"c": 1}}'

    def test_balanced_span_array(self):
        assert find_balanced_span('x [1, [2, 3]] y', "[") == "[1, [2, 3]]"

    def test_balanced_span_unbalanced(self):
        assert find_balanced_span('{"a": [1, 2') is None

    def test_sanitize_escapes_tabs_in_strings_only(self):
        assert sanitize('{"a":\t"x\ty"}') == '{"a":\t"x\\ty"}'


class TestDecodeList:
    def test_plain_array(self):
        items = decode_list('[{"issue": "a"}, {"issue": "b"}]')
        assert [i["issue"] for i in items] == ["a", "b"]

    def test_wrapped_array_with_key_hint(self):
        items = decode_list('{"questions": [{"issue": "a"}], "meta": {}}', key_hint="questions")
        assert items == [{"issue": "a"}]

    def test_fenced_array_with_prose(self):
        raw = 'Sure:\n```json\n[{"issue": "a", "koRisk": 2}]\n```'
        assert decode_list(raw) == [{"issue": "a", "koRisk": 2}]

    def test_broken_item_is_dropped_others_salvaged(self):
        raw = '[{"issue": "a", "koRisk": 2}, {"issue": "b" "koRisk": }, {"issue": "c"}]'
        items = decode_list(raw)
        assert [i["issue"] for i in items] == ["a", "c"]

    def test_non_object_items_are_dropped(self):
        assert decode_list('[{"issue": "a"}, "stray", 3]') == [{"issue": "a"}]

    def test_total_failure_is_empty(self):
        assert decode_list("no questions today") == []
        assert decode_list(None) == []

"""
Tests for lm_session.partial module.

The decoder sees the whole buffer on every feed; these tests grow buffers
one byte at a time the way a model stream would.
"""

import pytest

from lm_session.content import GeneratedContent
from lm_session.errors import MalformedContent
from lm_session.partial import PartialDecoder, decode_partial


def prefixes(text: str):
    return [text[:i] for i in range(1, len(text) + 1)]


class TestTruncation:
    """Truncated input is never an error."""

    def test_city_paris_progression(self):
        decoder = PartialDecoder()

        first = decoder.feed(b'{"ci')
        assert first.content == GeneratedContent.object()
        assert first.is_complete is False

        second = decoder.feed(b'{"city":"P')
        assert second.content == GeneratedContent.object({"city": "P"})
        assert second.is_complete is False

        third = decoder.feed(b'{"city":"Paris"}')
        assert third.content == GeneratedContent.object({"city": "Paris"})
        assert third.is_complete is True

    def test_empty_and_whitespace(self):
        assert decode_partial(b"").content is None
        assert decode_partial("  \n").content is None
        assert decode_partial("  \n").is_complete is False

    @pytest.mark.parametrize("buffer", ["-", "1.", "1e", "1e+"])
    def test_incomplete_numbers_are_absent(self, buffer):
        assert decode_partial('{"n":' + buffer).content == GeneratedContent.object()

    def test_trailing_number_complete_only_when_final(self):
        partial = decode_partial("42")
        assert partial.content == GeneratedContent.number(42)
        assert partial.is_complete is False

        final = decode_partial("42", final=True)
        assert final.is_complete is True

    def test_number_followed_by_delimiter_is_complete(self):
        result = decode_partial('{"n": 12,')
        assert result.content == GeneratedContent.object({"n": 12})
        assert "n" in result.completed_paths

    @pytest.mark.parametrize("buffer", ["t", "tr", "fals", "nu"])
    def test_partial_literals_are_absent(self, buffer):
        assert decode_partial("[" + buffer).content == GeneratedContent.array([])

    def test_nested_arrays(self):
        result = decode_partial('{"rows": [[1, 2], [3')
        assert result.content.to_value() == {"rows": [[1, 2], [3]]}
        assert result.is_complete is False

    def test_key_without_colon(self):
        assert decode_partial('{"a": 1, "b"').content.to_value() == {"a": 1}

    def test_dangling_escape(self):
        result = decode_partial('"ab\\')
        assert result.content == GeneratedContent.string("ab")
        assert result.is_complete is False

    def test_partial_unicode_escape(self):
        assert decode_partial('"x\\u00').content == GeneratedContent.string("x")
        assert decode_partial('"x\\u00e9"').content == GeneratedContent.string("xé")

    def test_surrogate_pair(self):
        assert decode_partial('"\\ud83d').content == GeneratedContent.string("")
        assert decode_partial('"\\ud83d\\ude00"').content == GeneratedContent.string("\U0001F600")

    def test_split_multibyte_utf8(self):
        encoded = '{"w":"é"}'.encode("utf-8")
        cut = encoded.index(b"\xc3") + 1
        result = decode_partial(encoded[:cut])
        assert result.content == GeneratedContent.object({"w": ""})


class TestMonotonicity:
    """Values reported complete never change as the buffer grows."""

    DOCUMENT = '{"name": "Ada", "langs": ["en", "fr"], "age": 36, "ok": true, "meta": {"x": null}}'

    def test_completed_paths_are_stable(self):
        decoder = PartialDecoder()
        seen: dict = {}

        for buffer in prefixes(self.DOCUMENT):
            result = decoder.feed(buffer)
            value = result.content.to_value() if result.content is not None else None
            for path in result.completed_paths:
                current = _lookup(value, path)
                if path in seen:
                    assert seen[path] == current, f"{path} changed at {buffer!r}"
                seen[path] = current

        final = decoder.feed(self.DOCUMENT, final=True)
        assert final.is_complete is True
        assert final.content == GeneratedContent.from_json(self.DOCUMENT)

    def test_no_prefix_raises(self):
        decoder = PartialDecoder()
        for buffer in prefixes(self.DOCUMENT):
            decoder.feed(buffer)

    def test_repeated_key_cannot_replace_completed_value(self):
        decoder = PartialDecoder()

        early = decoder.feed('{"a": 1,')
        assert "a" in early.completed_paths

        with pytest.raises(MalformedContent, match="duplicate key"):
            decoder.feed('{"a": 1, "a": 2}')

    def test_same_buffer_same_result(self):
        decoder = PartialDecoder()
        assert decoder.feed('{"a": [1') is decoder.feed('{"a": [1')


class TestMalformed:
    """Bytes that can never become JSON raise MalformedContent."""

    @pytest.mark.parametrize("buffer", [
        "}",
        '{"a" 1}',
        '{"a": 1 "b": 2}',
        "[1 2]",
        "[1,]",
        '{"a": 1}}',
        '"bad \\q escape"',
        "nope",
        "{'a': 1}",
        '"\\u12zz"',
        "[01]",
        '{"a": 1, "a": 2}',
    ])
    def test_malformed(self, buffer):
        with pytest.raises(MalformedContent):
            decode_partial(buffer)

    def test_invalid_utf8(self):
        with pytest.raises(MalformedContent, match="UTF-8"):
            decode_partial(b'{"a": "\xff"}')

    def test_error_reports_offset(self):
        with pytest.raises(MalformedContent) as exc_info:
            decode_partial('{"a": 1 "b"')
        assert exc_info.value.offset == 8


def _lookup(value, path: str):
    """Resolve "a.b[0]" style paths against plain values."""
    if path == "":
        return value
    current = value
    for part in path.replace("[", ".[").split("."):
        if not part:
            continue
        if part.startswith("["):
            current = current[int(part[1:-1])]
        else:
            current = current[part]
    return current

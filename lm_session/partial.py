"""
PartialDecoder - best-effort decoding of a growing JSON buffer.

Models stream structured output (and tool-call arguments) a few bytes at a
time. The decoder turns whatever has arrived so far into a GeneratedContent
that callers can render or inspect before the payload is finished:

    decoder = PartialDecoder()
    decoder.feed(b'{"ci')           # {}            incomplete
    decoder.feed(b'{"city":"P')     # {"city": "P"} incomplete
    decoder.feed(b'{"city":"Paris"}')  # {"city": "Paris"} complete

Truncation is never an error. Only bytes that can never become valid JSON
(stray closers, missing separators, bad escapes) raise MalformedContent.

Values listed in `completed_paths` are closed and never change when the
buffer is later extended.
"""

import codecs
import logging
import re
from dataclasses import dataclass
from typing import Optional, Union

from lm_session.content import GeneratedContent
from lm_session.errors import MalformedContent

logger = logging.getLogger(__name__)

_WHITESPACE = " \t\n\r"
_NUMBER_CHARS = set("+-0123456789.eE")
_NUMBER_RE = re.compile(r"-?(?:0|[1-9][0-9]*)(?:\.[0-9]+)?(?:[eE][+-]?[0-9]+)?")
_LITERALS = {"t": ("true", True), "f": ("false", False), "n": ("null", None)}
_ESCAPES = {
    '"': '"',
    "\\": "\\",
    "/": "/",
    "b": "\b",
    "f": "\f",
    "n": "\n",
    "r": "\r",
    "t": "\t",
}
_HEX = set("0123456789abcdefABCDEF")
_TRUNCATED = object()


@dataclass(frozen=True)
class DecodeResult:
    """
    Outcome of one feed.

    content is None when nothing parseable has arrived yet (empty or
    whitespace-only buffer, or a top-level scalar still being typed).
    """

    content: Optional[GeneratedContent]
    is_complete: bool
    completed_paths: tuple[str, ...] = ()


class PartialDecoder:
    """
    Stateless-by-contract decoder with a one-entry cache.

    feed() always receives the whole buffer so far, never a delta. Feeding
    the same buffer twice returns the same result.
    """

    def __init__(self):
        self._last_key: Optional[tuple[str, bool]] = None
        self._last_result: Optional[DecodeResult] = None

    def feed(self, buffer: Union[bytes, str], final: bool = False) -> DecodeResult:
        """
        Decode the buffer seen so far.

        Args:
            buffer: All bytes (or text) received so far
            final: True when no more bytes will arrive; lets a trailing
                number count as complete

        Raises:
            MalformedContent: if the buffer can never become valid JSON
        """
        text = _decode_utf8_prefix(buffer) if isinstance(buffer, (bytes, bytearray)) else buffer
        key = (text, final)
        if key == self._last_key and self._last_result is not None:
            return self._last_result

        parser = _Parser(text, final)
        value, complete = parser.parse_document()
        result = DecodeResult(
            content=value,
            is_complete=complete,
            completed_paths=tuple(parser.completed),
        )
        self._last_key = key
        self._last_result = result
        return result


def decode_partial(buffer: Union[bytes, str], final: bool = False) -> DecodeResult:
    """One-shot convenience wrapper around PartialDecoder.feed()."""
    return PartialDecoder().feed(buffer, final=final)


def _decode_utf8_prefix(buffer: bytes) -> str:
    """Decode bytes, holding back an incomplete multi-byte sequence at the end."""
    decoder = codecs.getincrementaldecoder("utf-8")()
    try:
        return decoder.decode(bytes(buffer), final=False)
    except UnicodeDecodeError as e:
        raise MalformedContent(f"invalid UTF-8: {e.reason}", offset=e.start) from e


def _join_key(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


# ─────────────────────────────────────────────────────────────────────
# RECURSIVE DESCENT
# ─────────────────────────────────────────────────────────────────────


class _Parser:
    """
    Single-pass parser over one buffer.

    Every parse_* method returns (value, complete). value is None when
    nothing usable was read before the end of input. Once a method hits
    the end of input, callers stop and return what they have.
    """

    def __init__(self, text: str, final: bool):
        self.text = text
        self.pos = 0
        self.final = final
        self.completed: list[str] = []

    def at_end(self) -> bool:
        return self.pos >= len(self.text)

    def skip_whitespace(self) -> None:
        while self.pos < len(self.text) and self.text[self.pos] in _WHITESPACE:
            self.pos += 1

    def fail(self, reason: str):
        raise MalformedContent(reason, offset=self.pos)

    def parse_document(self) -> tuple[Optional[GeneratedContent], bool]:
        value, complete = self.parse_value("")
        if complete:
            self.skip_whitespace()
            if not self.at_end():
                self.fail(f"unexpected {self.text[self.pos]!r} after top-level value")
        return value, complete

    def parse_value(self, path: str) -> tuple[Optional[GeneratedContent], bool]:
        self.skip_whitespace()
        if self.at_end():
            return None, False

        ch = self.text[self.pos]
        if ch == "{":
            value, complete = self.parse_object(path)
        elif ch == "[":
            value, complete = self.parse_array(path)
        elif ch == '"':
            text, complete = self.parse_string()
            value = GeneratedContent.string(text)
        elif ch == "-" or ch.isdigit():
            value, complete = self.parse_number()
        elif ch in _LITERALS:
            value, complete = self.parse_literal()
        elif ch in "}]":
            self.fail(f"closing {ch!r} without a matching opener")
        else:
            self.fail(f"unexpected character {ch!r}")

        if complete:
            self.completed.append(path)
        return value, complete

    def parse_object(self, path: str) -> tuple[GeneratedContent, bool]:
        self.pos += 1
        pairs: list[tuple[str, GeneratedContent]] = []
        seen: set[str] = set()
        first = True

        while True:
            self.skip_whitespace()
            if self.at_end():
                return GeneratedContent.object(pairs), False

            ch = self.text[self.pos]
            if ch == "}":
                self.pos += 1
                return GeneratedContent.object(pairs), True
            if not first:
                if ch != ",":
                    self.fail(f"expected ',' or '}}' in object, got {ch!r}")
                self.pos += 1
                self.skip_whitespace()
                if self.at_end():
                    return GeneratedContent.object(pairs), False
                ch = self.text[self.pos]

            if ch != '"':
                self.fail(f"expected string key in object, got {ch!r}")
            key, key_done = self.parse_string()
            if not key_done:
                return GeneratedContent.object(pairs), False
            if key in seen:
                self.fail(f"duplicate key {key!r}")
            seen.add(key)

            self.skip_whitespace()
            if self.at_end():
                return GeneratedContent.object(pairs), False
            if self.text[self.pos] != ":":
                self.fail(f"expected ':' after key {key!r}")
            self.pos += 1

            value, complete = self.parse_value(_join_key(path, key))
            if value is not None:
                pairs.append((key, value))
            if not complete:
                return GeneratedContent.object(pairs), False
            first = False

    def parse_array(self, path: str) -> tuple[GeneratedContent, bool]:
        self.pos += 1
        elements: list[GeneratedContent] = []

        while True:
            self.skip_whitespace()
            if self.at_end():
                return GeneratedContent.array(elements), False

            ch = self.text[self.pos]
            if ch == "]":
                self.pos += 1
                return GeneratedContent.array(elements), True
            if elements:
                if ch != ",":
                    self.fail(f"expected ',' or ']' in array, got {ch!r}")
                self.pos += 1
                self.skip_whitespace()
                if self.at_end():
                    return GeneratedContent.array(elements), False
                if self.text[self.pos] == "]":
                    self.fail("trailing ',' in array")

            value, complete = self.parse_value(f"{path}[{len(elements)}]")
            if value is not None:
                elements.append(value)
            if not complete:
                return GeneratedContent.array(elements), False

    def parse_string(self) -> tuple[str, bool]:
        """Parse a string starting at the opening quote. Partial text is returned on truncation."""
        self.pos += 1
        chars: list[str] = []
        text = self.text

        while self.pos < len(text):
            ch = text[self.pos]
            if ch == '"':
                self.pos += 1
                return "".join(chars), True
            if ch == "\\":
                if self.pos + 1 >= len(text):
                    self.pos = len(text)
                    return "".join(chars), False
                esc = text[self.pos + 1]
                if esc in _ESCAPES:
                    chars.append(_ESCAPES[esc])
                    self.pos += 2
                    continue
                if esc != "u":
                    self.pos += 1
                    self.fail(f"invalid escape '\\{esc}'")
                code = self._read_unicode_escape(self.pos)
                if code is None:
                    self.pos = len(text)
                    return "".join(chars), False
                self.pos += 6
                if 0xD800 <= code <= 0xDBFF:
                    low = self._read_low_surrogate(self.pos)
                    if low is _TRUNCATED:
                        self.pos = len(text)
                        return "".join(chars), False
                    if low is not None:
                        code = 0x10000 + ((code - 0xD800) << 10) + (low - 0xDC00)
                        self.pos += 6
                chars.append(chr(code))
                continue
            if ord(ch) < 0x20:
                self.fail(f"unescaped control character {ch!r} in string")
            chars.append(ch)
            self.pos += 1

        return "".join(chars), False

    def _read_unicode_escape(self, start: int) -> Optional[int]:
        """Read \\uXXXX at start. None if truncated; fails on non-hex digits."""
        digits = self.text[start + 2:start + 6]
        for offset, digit in enumerate(digits):
            if digit not in _HEX:
                self.pos = start + 2 + offset
                self.fail(f"invalid \\u escape digit {digit!r}")
        if len(digits) < 4:
            return None
        return int(digits, 16)

    def _read_low_surrogate(self, start: int):
        """A low surrogate escape following a high one, None if absent, _TRUNCATED if cut off."""
        remaining = self.text[start:start + 6]
        if len(remaining) < 6 and "\\u".startswith(remaining[:2]):
            if all(d in _HEX for d in remaining[2:]):
                return _TRUNCATED
        if not remaining.startswith("\\u"):
            return None
        digits = remaining[2:6]
        if not all(d in _HEX for d in digits):
            return None
        code = int(digits, 16)
        if 0xDC00 <= code <= 0xDFFF:
            return code
        return None

    def parse_number(self) -> tuple[Optional[GeneratedContent], bool]:
        start = self.pos
        while self.pos < len(self.text) and self.text[self.pos] in _NUMBER_CHARS:
            self.pos += 1
        token = self.text[start:self.pos]
        valid = _NUMBER_RE.fullmatch(token) is not None

        if self.at_end():
            if not valid:
                # "-", "1.", "1e" may still become a number.
                return None, False
            return GeneratedContent.number(_to_number(token)), self.final

        if not valid:
            self.pos = start
            self.fail(f"invalid number {token!r}")
        return GeneratedContent.number(_to_number(token)), True

    def parse_literal(self) -> tuple[Optional[GeneratedContent], bool]:
        word, value = _LITERALS[self.text[self.pos]]
        remaining = self.text[self.pos:self.pos + len(word)]
        if remaining == word:
            self.pos += len(word)
            return GeneratedContent.from_value(value), True
        if word.startswith(remaining) and self.pos + len(remaining) >= len(self.text):
            self.pos = len(self.text)
            return None, False
        self.fail(f"invalid literal, expected {word!r}")


def _to_number(token: str):
    if any(c in token for c in ".eE"):
        return float(token)
    return int(token)

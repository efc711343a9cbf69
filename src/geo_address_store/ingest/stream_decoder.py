"""Incremental decoder for GeoJSON feature collections.

The document is never parsed as a whole. A small structural scanner walks the
top-level object, skips every member except ``features`` and cuts each array
element out of a rolling text buffer by tracking bracket depth and string
state. Only that element is handed to ``orjson``, so memory stays bounded by
one feature plus one read chunk regardless of the collection size.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
import logging
from pathlib import Path
import re
from typing import TextIO

import orjson

from geo_address_store.domain.errors import InputError
from geo_address_store.domain.model import DecodedFeature, Feature, SkipReason


logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 65_536
FEATURES_MEMBER = "features"

_WHITESPACE = re.compile(r"[ \t\n\r]*")
_STRUCTURAL = re.compile(r'["{}\[\]]')
_STRING_SPECIAL = re.compile(r'["\\]')
_SCALAR_END = re.compile(r"[,\]}\s]")


class _JsonScanner:
    """Forward-only cursor over a text stream with a compacting buffer."""

    def __init__(self, stream: TextIO, chunk_size: int) -> None:
        self._stream = stream
        self._chunk_size = chunk_size
        self._buf = ""
        self._pos = 0
        self._eof = False
        self._started = False
        self._skipping = False

    def _refill(self, keep_from: int | None = None) -> int:
        """Drop text before ``keep_from`` (default: the cursor) and append more input.

        At least as much is read as is retained, so a value spanning many
        chunks is copied a logarithmic number of times. Returns how far
        indexes shifted, or ``-1`` once the stream is exhausted.
        """
        if self._eof:
            return -1
        keep = self._pos if keep_from is None else keep_from
        try:
            chunk = self._stream.read(max(self._chunk_size, len(self._buf) - keep))
        except UnicodeDecodeError as exc:
            raise InputError(f"input is not valid UTF-8: {exc}") from exc
        if not self._started:
            self._started = True
            chunk = chunk.removeprefix("\ufeff")
        if not chunk:
            self._eof = True
            return -1
        self._buf = self._buf[keep:] + chunk
        self._pos = max(self._pos - keep, 0)
        return keep

    def peek(self) -> str:
        """Skip whitespace and return the next character, or ``""`` at end of input."""
        while True:
            self._pos = _WHITESPACE.match(self._buf, self._pos).end()
            if self._pos < len(self._buf):
                return self._buf[self._pos]
            if self._refill() < 0:
                return ""

    def expect(self, char: str, context: str) -> None:
        found = self.peek()
        if found != char:
            shown = repr(found) if found else "end of input"
            raise InputError(f"expected {char!r} {context}, found {shown}")
        self._pos += 1

    def advance(self) -> None:
        self._pos += 1

    def read_value(self) -> str:
        """Return the raw text of the next JSON value and move past it."""
        start, end = self._value_span()
        text = self._buf[start:end]
        self._pos = end
        return text

    def skip_value(self) -> None:
        """Move past the next JSON value, discarding its text while scanning it."""
        self._skipping = True
        try:
            _, self._pos = self._value_span()
        finally:
            self._skipping = False

    def _value_span(self) -> tuple[int, int]:
        first = self.peek()
        if not first:
            raise InputError("unexpected end of input while reading a value")
        if first in "{[":
            end = self._container_end(self._pos)
        elif first == '"':
            end = self._string_end(self._pos + 1)
        else:
            end = self._scalar_end(self._pos)
            if end == self._pos:
                raise InputError(f"unexpected {first!r} where a value was expected")
        return self._pos, end

    def _container_end(self, i: int) -> int:
        depth = 0
        while True:
            match = _STRUCTURAL.search(self._buf, i)
            if match is None:
                i = self._shifted(len(self._buf), "unterminated array or object")
                continue
            char = match.group()
            i = match.end()
            if char == '"':
                i = self._string_end(i)
            elif char in "{[":
                depth += 1
            else:
                depth -= 1
                if depth == 0:
                    return i

    def _string_end(self, i: int) -> int:
        while True:
            match = _STRING_SPECIAL.search(self._buf, i)
            if match is None:
                i = self._shifted(len(self._buf), "unterminated string")
                continue
            if match.group() == '"':
                return match.end()
            # Skip the escaped character; it may still be in the next chunk.
            i = match.end() + 1
            while i > len(self._buf):
                i = self._shifted(i, "unterminated string escape")

    def _scalar_end(self, i: int) -> int:
        while True:
            match = _SCALAR_END.search(self._buf, i)
            if match is not None:
                return match.start()
            scanned = len(self._buf)
            shift = self._refill(scanned if self._skipping else None)
            if shift < 0:
                return scanned
            i = scanned - shift

    def _shifted(self, i: int, problem: str) -> int:
        shift = self._refill(min(i, len(self._buf)) if self._skipping else None)
        if shift < 0:
            raise InputError(f"{problem} at end of input")
        return i - shift


def _decode_element(ordinal: int, text: str) -> DecodedFeature:
    try:
        raw = orjson.loads(text)
    except orjson.JSONDecodeError as exc:
        logger.debug("Skipping malformed feature #%d: %s", ordinal, exc)
        return DecodedFeature(ordinal=ordinal, error=SkipReason.MALFORMED_JSON)
    if not isinstance(raw, dict):
        logger.debug("Skipping feature #%d: element is %s, not an object", ordinal, type(raw).__name__)
        return DecodedFeature(ordinal=ordinal, error=SkipReason.NOT_AN_OBJECT)
    return DecodedFeature(ordinal=ordinal, feature=Feature.from_mapping(raw))


def iter_features(stream: TextIO, *, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[DecodedFeature]:
    """Yield every element of the top-level ``features`` array in document order.

    Elements that fail to parse are yielded as malformed ``DecodedFeature``
    values and decoding continues. Top-level members other than ``features``
    are skipped, and anything after the array closes is never read.

    Raises:
        InputError: the root is not an object or the framing ends prematurely.
    """
    scanner = _JsonScanner(stream, chunk_size)
    scanner.expect("{", "at the start of the document")

    if scanner.peek() == "}":
        return
    while True:
        key_text = scanner.read_value()
        if not key_text.startswith('"'):
            raise InputError(f"expected an object key, found {key_text[:40]!r}")
        try:
            key = orjson.loads(key_text)
        except orjson.JSONDecodeError as exc:
            raise InputError(f"invalid object key {key_text[:40]!r}: {exc}") from exc
        scanner.expect(":", f"after key {key!r}")

        if key == FEATURES_MEMBER:
            yield from _iter_array(scanner)
            return

        scanner.skip_value()
        separator = scanner.peek()
        if separator == ",":
            scanner.advance()
            continue
        if separator == "}":
            logger.warning("Document has no %r member", FEATURES_MEMBER)
            return
        raise InputError(f"expected ',' or '}}' between top-level members, found {separator or 'end of input'!r}")


def _iter_array(scanner: _JsonScanner) -> Iterator[DecodedFeature]:
    scanner.expect("[", f"to open the {FEATURES_MEMBER!r} array")
    ordinal = 0
    while True:
        char = scanner.peek()
        if char == "]":
            scanner.advance()
            return
        if char == ",":
            scanner.advance()
            continue
        if not char:
            raise InputError(f"{FEATURES_MEMBER!r} array is not closed before end of input")
        ordinal += 1
        yield _decode_element(ordinal, scanner.read_value())


@contextmanager
def open_features(path: str | Path, *, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[Iterator[DecodedFeature]]:
    """Open a feature collection file and yield a lazy feature iterator.

    Bytes that are not valid UTF-8 decode to U+FFFD inside the affected
    feature; they never end the run.
    """
    try:
        stream = Path(path).open(encoding="utf-8", errors="replace")
    except OSError as exc:
        raise InputError(f"cannot open input {path}: {exc}") from exc
    with stream:
        yield iter_features(stream, chunk_size=chunk_size)

"""Incremental parser for action directives embedded in model text.

The model answers in prose interleaved with a small tag vocabulary:

    Sure! <write path="src/app.ts">...</write>
    <add name="left-pad" version="1.0.0"/>
    <execute description="create table">CREATE TABLE ...</execute>

Text arrives in arbitrary chunks, so a tag may be split anywhere. The parser
keeps everything from the first possibly-incomplete tag onward in its buffer
and only emits a directive once its closing marker has arrived. Output does
not depend on where the chunk boundaries fall.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Union

from turnforge.errors import ParseAmbiguous
from turnforge.pipeline.actions import TAG_NAMES, ActionKind, ActionNode, TextSpan

logger = logging.getLogger(__name__)

ParsedItem = Union[TextSpan, ActionNode]

_NAME_CHARS = frozenset("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789_-")
_WHITESPACE = frozenset(" \t\r\n")


class _ScanStatus(Enum):
    MATCH = "match"
    PARTIAL = "partial"    # could still become a tag once more text arrives
    NO_MATCH = "no_match"  # literal text


@dataclass(frozen=True)
class _OpenTag:
    kind: ActionKind
    attributes: dict[str, str]
    self_closing: bool
    end: int  # index just past the closing '>'


def _scan_open_tag(buf: str, start: int) -> tuple[_ScanStatus, _OpenTag | None]:
    """Try to read an opening tag at buf[start] (which is '<')."""
    length = len(buf)
    i = start + 1
    name_start = i
    while i < length and buf[i] in _NAME_CHARS:
        i += 1
    name = buf[name_start:i]

    if i >= length:
        # Still reading the name: keep waiting only if it can become a known tag.
        if any(tag.startswith(name) for tag in TAG_NAMES):
            return _ScanStatus.PARTIAL, None
        return _ScanStatus.NO_MATCH, None

    kind = ActionKind.from_tag(name)
    if kind is None:
        return _ScanStatus.NO_MATCH, None

    attributes: dict[str, str] = {}
    while True:
        had_space = False
        while i < length and buf[i] in _WHITESPACE:
            i += 1
            had_space = True
        if i >= length:
            return _ScanStatus.PARTIAL, None

        ch = buf[i]
        if ch == ">":
            return _ScanStatus.MATCH, _OpenTag(kind, attributes, False, i + 1)
        if ch == "/":
            if i + 1 >= length:
                return _ScanStatus.PARTIAL, None
            if buf[i + 1] == ">":
                return _ScanStatus.MATCH, _OpenTag(kind, attributes, True, i + 2)
            return _ScanStatus.NO_MATCH, None
        if ch not in _NAME_CHARS or not had_space:
            return _ScanStatus.NO_MATCH, None

        attr_start = i
        while i < length and buf[i] in _NAME_CHARS:
            i += 1
        attr_name = buf[attr_start:i]
        while i < length and buf[i] in _WHITESPACE:
            i += 1
        if i >= length:
            return _ScanStatus.PARTIAL, None
        if buf[i] != "=":
            return _ScanStatus.NO_MATCH, None
        i += 1
        while i < length and buf[i] in _WHITESPACE:
            i += 1
        if i >= length:
            return _ScanStatus.PARTIAL, None
        quote = buf[i]
        if quote not in ("'", '"'):
            return _ScanStatus.NO_MATCH, None
        close_quote = buf.find(quote, i + 1)
        if close_quote == -1:
            return _ScanStatus.PARTIAL, None
        # Duplicate attributes: first one wins.
        attributes.setdefault(attr_name, buf[i + 1:close_quote])
        i = close_quote + 1


class TagStreamParser:
    """Turns a stream of text chunks into text spans and action nodes.

    Usage:
        parser = TagStreamParser()
        for chunk in chunks:
            for item in parser.feed(chunk):
                ...
        for item in parser.finish():
            ...
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._finished = False
        self._next_position = 0
        self.warnings: list[ParseAmbiguous] = []

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def pending(self) -> str:
        """Text held back because it may still become a directive."""
        return self._buffer

    def feed(self, chunk: str) -> list[ParsedItem]:
        """Append a chunk and return the items it completed."""
        if self._finished:
            raise RuntimeError("Cannot feed a parser after finish()")
        if not chunk:
            return []
        self._buffer += chunk
        return self._drain(final=False)

    def finish(self) -> list[ParsedItem]:
        """Signal end of stream and flush whatever is buffered."""
        if self._finished:
            return []
        self._finished = True
        return self._drain(final=True)

    def _drain(self, *, final: bool) -> list[ParsedItem]:
        buf = self._buffer
        items: list[ParsedItem] = []
        text_start = 0
        cursor = 0
        held_from: int | None = None

        while True:
            lt = buf.find("<", cursor)
            if lt == -1:
                break

            status, tag = _scan_open_tag(buf, lt)
            if status is _ScanStatus.NO_MATCH:
                cursor = lt + 1
                continue

            if status is _ScanStatus.PARTIAL:
                if final:
                    # Truncated opening tag: everything from here on is text.
                    logger.debug("Unterminated opening tag at end of stream kept as text")
                    self._warn_unterminated(buf, lt)
                    cursor = len(buf)
                    break
                held_from = lt
                break

            assert tag is not None
            if tag.self_closing:
                body = ""
                end = tag.end
            else:
                close_marker = f"</{tag.kind.value}>"
                close_at = buf.find(close_marker, tag.end)
                if close_at == -1:
                    if final:
                        logger.debug("Unterminated <%s> at end of stream kept as text", tag.kind.value)
                        self._warn_unterminated(buf, lt, tag.kind.value)
                        cursor = len(buf)
                        break
                    held_from = lt
                    break
                body = buf[tag.end:close_at]
                if body.startswith("\r\n"):
                    body = body[2:]
                elif body.startswith("\n"):
                    body = body[1:]
                end = close_at + len(close_marker)

            if lt > text_start:
                items.append(TextSpan(buf[text_start:lt]))
            items.append(
                ActionNode(
                    kind=tag.kind,
                    attributes=tag.attributes,
                    body=body,
                    raw=buf[lt:end],
                    position=self._next_position,
                )
            )
            self._next_position += 1
            text_start = cursor = end

        text_end = held_from if held_from is not None else len(buf)
        if text_end > text_start:
            items.append(TextSpan(buf[text_start:text_end]))
        self._buffer = buf[text_end:]
        return items

    def _warn_unterminated(self, buf: str, start: int, tag: str | None = None) -> None:
        if tag is None:
            end = start + 1
            while end < len(buf) and buf[end] in _NAME_CHARS:
                end += 1
            tag = buf[start + 1:end]
            if not tag:
                return
        self.warnings.append(ParseAmbiguous(tag=tag, fragment=buf[start:]))


def parse_text(text: str) -> list[ParsedItem]:
    """Parse a complete response in one go."""
    parser = TagStreamParser()
    return parser.feed(text) + parser.finish()

"""Tolerant parsing of truncated JSON.

A streamed JSON document is invalid until its last byte arrives. This module
accepts any *prefix* of a valid document and returns the value decoded so far:

    >>> parse_partial_json('{"content": "Hel')
    PartialJSON(value={'content': 'Hel'}, complete=False)

Complete documents go through :mod:`json`; prefixes go through
``pydantic_core.from_json(..., allow_partial="trailing-strings")`` after the
tail is cut back to something that can only grow:

- strings keep their decoded prefix; a half-received escape sequence (or a
  high surrogate still waiting for its low half) is dropped, so a string
  value only ever grows by appending;
- numbers and ``true``/``false``/``null`` literals that touch the end of the
  buffer are omitted (``12`` might still become ``123``);
- an object key without a complete value is omitted.

Text that cannot be the prefix of any valid document raises
:class:`~agent_loop.errors.DecodeDegradation`.
"""

from __future__ import annotations

import json
import re
from typing import Any, NamedTuple

from pydantic_core import from_json

from agent_loop.errors import DecodeDegradation

_DECODER = json.JSONDecoder()

_TRAILING_SCALAR_RE = re.compile(
    r"(?:^|(?<=[\[{:,\s]))(?:-?[0-9][0-9.eE+-]*|-|t(?:ru?)?|f(?:a(?:ls?)?)?|n(?:ul?)?)\Z"
)
_INCOMPLETE_ESCAPE_RE = re.compile(r"\\(?:u[0-9a-fA-F]{0,3})?")
_HIGH_SURROGATE_RE = re.compile(r"\\u[dD][89abAB][0-9a-fA-F]{2}")


class PartialJSON(NamedTuple):
    value: Any
    complete: bool


def _open_string_escapes(text: str) -> list[int] | None:
    """Offsets of the escapes in the string ``text`` ends inside; None when it doesn't."""
    in_string = escape = False
    escapes: list[int] = []
    for i, ch in enumerate(text):
        if not in_string:
            if ch == '"':
                in_string = True
                escapes = []
        elif escape:
            escape = False
        elif ch == "\\":
            escape = True
            escapes.append(i)
        elif ch == '"':
            in_string = False
    return escapes if in_string else None


def _growable_prefix(text: str) -> str:
    escapes = _open_string_escapes(text)
    if escapes is None:
        match = _TRAILING_SCALAR_RE.search(text)
        return text[: match.start()] if match else text
    while escapes:
        tail = text[escapes[-1] :]
        if not (_INCOMPLETE_ESCAPE_RE.fullmatch(tail) or _HIGH_SURROGATE_RE.fullmatch(tail)):
            break
        text = text[: escapes.pop()]
    return text


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def parse_partial_json(text: str, *, allow_trailing: bool = False) -> PartialJSON:
    """Parse a (possibly truncated) JSON document.

    With ``allow_trailing``, anything after a complete top-level value (a
    closing markdown fence, say) is ignored.

    Raises:
        DecodeDegradation: If ``text`` is empty or can't be a prefix of valid JSON.
    """
    start = len(text) - len(text.lstrip())
    if start == len(text):
        raise DecodeDegradation(f"Empty document at offset {start}")

    try:
        value, end = _DECODER.raw_decode(text, start)
    except json.JSONDecodeError:
        pass
    else:
        if text[end:].strip():
            if not allow_trailing:
                raise DecodeDegradation(f"Trailing data at offset {end}")
            return PartialJSON(value, True)
        # A bare number at the very end may still have digits on the way.
        if not (end == len(text) and _is_number(value)):
            return PartialJSON(value, True)

    prefix = _growable_prefix(text)
    if not prefix.strip():
        raise DecodeDegradation(f"No decodable value at offset {start}")
    try:
        value = from_json(prefix, allow_partial="trailing-strings")
    except ValueError as exc:
        raise DecodeDegradation(f"Not a JSON prefix: {exc}") from exc
    return PartialJSON(value, False)

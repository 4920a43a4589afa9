"""IMAP BODYSTRUCTURE parsing.

The server describes a message as a parenthesized list (RFC 3501 section
7.4.2). Multipart bodies start with one nested list per child followed by
the multipart subtype; single parts start with the media type, subtype,
parameter list, id, description and transfer encoding. Only the fields the
text extractor needs are kept.
"""
from __future__ import annotations

import re
from typing import Any, Iterator, Optional

from .errors import MessageParseError
from .types import BodyPart, Multipart, Structure

_TOKEN_RE = re.compile(
    r'\s*(?:(?P<open>\()|(?P<close>\))|"(?P<quoted>(?:[^"\\]|\\.)*)"'
    r'|\{(?P<literal>\d+)\}\r?\n|(?P<atom>[^\s()"{]+))'
)
_QUOTED_ESCAPE = re.compile(r'\\(.)')
_KEYWORD = 'BODYSTRUCTURE'


class _Nil:
    def __repr__(self):
        return 'NIL'


NIL = _Nil()


def _tokens(text: str) -> Iterator[tuple[str, Any]]:
    pos = 0
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if m is None:
            if text[pos:].strip():
                raise MessageParseError(f"Unexpected BODYSTRUCTURE data at {pos}: {text[pos:pos + 20]!r}")
            return
        if m.end() == pos or m.lastgroup is None:
            return
        pos = m.end()
        kind = m.lastgroup
        if kind in ('open', 'close'):
            yield kind, None
        elif kind == 'quoted':
            yield 'value', _QUOTED_ESCAPE.sub(r'\1', m.group('quoted'))
        elif kind == 'literal':
            size = int(m.group('literal'))
            yield 'value', text[pos:pos + size]
            pos += size
        else:
            atom = m.group('atom')
            yield 'value', NIL if atom.upper() == 'NIL' else atom


def parse_list(text: str) -> list[Any]:
    """Parse the first complete parenthesized list found in ``text``.

    Strings come back as ``str``, ``NIL`` as the :data:`NIL` sentinel and
    nested lists as ``list``. Anything after the closing parenthesis is
    ignored.

    Raises:
        MessageParseError: unbalanced parentheses or no list at all.
    """
    stack: list[list[Any]] = []
    for kind, value in _tokens(text):
        if kind == 'open':
            stack.append([])
        elif kind == 'close':
            if not stack:
                raise MessageParseError("Unbalanced ')' in BODYSTRUCTURE")
            done = stack.pop()
            if not stack:
                return done
            stack[-1].append(done)
        elif stack:
            stack[-1].append(value)
    raise MessageParseError("Incomplete BODYSTRUCTURE list")


def _text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _params(value: Any) -> dict[str, str]:
    if not isinstance(value, list):
        return {}
    out: dict[str, str] = {}
    for key, val in zip(value[0::2], value[1::2]):
        if isinstance(key, str) and isinstance(val, str):
            out[key.lower()] = val
    return out


def build_structure(node: Any) -> Structure:
    """Turn a parsed BODYSTRUCTURE list into :class:`BodyPart` / :class:`Multipart`."""
    if not isinstance(node, list) or not node:
        raise MessageParseError(f"Not a body structure: {node!r}")
    if isinstance(node[0], list):
        children = []
        idx = 0
        while idx < len(node) and isinstance(node[idx], list):
            children.append(build_structure(node[idx]))
            idx += 1
        subtype = _text(node[idx]) if idx < len(node) else None
        return Multipart(subtype=(subtype or 'mixed').lower(), parts=tuple(children))
    maintype, subtype = _text(node[0]), _text(node[1]) if len(node) > 1 else None
    if not maintype or not subtype or len(node) < 6:
        raise MessageParseError(f"Truncated body part: {node!r}")
    encoding = _text(node[5])
    return BodyPart(
        maintype=maintype.lower(),
        subtype=subtype.lower(),
        params=_params(node[2]),
        encoding=encoding.lower() if encoding else None,
    )


def parse_bodystructure(data: str | bytes) -> Structure:
    """Parse the BODYSTRUCTURE item out of a FETCH response line.

    ``data`` may be the whole response text (``1 FETCH (UID 5 BODYSTRUCTURE
    (...))``) or just the structure list itself.
    """
    text = data.decode('utf-8', errors='replace') if isinstance(data, (bytes, bytearray)) else data
    idx = text.upper().find(_KEYWORD)
    if idx >= 0:
        text = text[idx + len(_KEYWORD):]
    return build_structure(parse_list(text))

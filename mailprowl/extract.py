"""Turn a fetched message into the short text used in a notification.

Pipeline:
  * locate the first ``text/*`` part in the BODYSTRUCTURE tree (depth-first,
    recording the IMAP part path such as ``1.2``)
  * fetch only that part's bytes
  * undo the transfer encoding (quoted-printable / base64)
  * decode the declared charset with replacement characters
  * strip per-line leading whitespace, drop empty lines, truncate

Subject and From come from the raw header block and are decoded with the
same replacement policy. Every step is guarded per message: a malformed
message yields placeholder strings, never an exception, except for
connection errors raised while fetching part bytes.
"""
from __future__ import annotations

import asyncio
import binascii
import codecs
import email
import logging
import quopri
import re
from dataclasses import dataclass
from email.header import decode_header
from email.message import Message
from email.utils import parseaddr
from typing import Awaitable, Callable, Optional

from .errors import MessageParseError
from .types import UID, BodyPart, MessageRecord, Multipart, Structure

logger = logging.getLogger(__name__)

FALLBACK_CHARSET = 'cp1252'
ELLIPSIS = '...'
NO_TEXT_PART = '(no text part)'
INVALID_SENDER = 'invalid sender'
INVALID_SUBJECT = 'invalid subject'
BODY_ERROR = 'could not parse body'
UNTITLED = 'Untitled'
UNKNOWN_SENDER = 'unknown'
_FOLD_RE = re.compile(r'\r?\n[ \t]+')
_CONNECTION_ERRORS = (ConnectionError, asyncio.TimeoutError)

FetchPart = Callable[[UID, str], Awaitable[bytes]]


@dataclass
class MessageSummary:
    subject: str
    sender: str
    name: str
    address: str
    body: str


def truncate(text: str, length: int) -> str:
    """Cut ``text`` to ``length`` characters and append ``...`` if anything was cut.

    A non-positive ``length`` disables truncation.
    """
    if length <= 0 or len(text) <= length:
        return text
    return text[:length] + ELLIPSIS


def find_text_part(structure: Structure) -> Optional[tuple[str, BodyPart]]:
    """Depth-first search for the first textual leaf.

    Returns ``(path, part)`` where ``path`` is the IMAP section number of the
    part (``"1"`` for a single-part message, ``"2.1"`` for the first child of
    the second part of a multipart), or ``None`` when no part is textual.
    """
    if isinstance(structure, BodyPart):
        return ('1', structure) if structure.maintype == 'text' else None
    stack: list[tuple[str, Structure]] = [
        (str(i), child) for i, child in reversed(list(enumerate(structure.parts, start=1)))
    ]
    while stack:
        path, node = stack.pop()
        if isinstance(node, Multipart):
            stack.extend(
                (f"{path}.{i}", child) for i, child in reversed(list(enumerate(node.parts, start=1)))
            )
        elif node.maintype == 'text':
            return path, node
    return None


def transfer_decode(data: bytes, encoding: Optional[str]) -> bytes:
    enc = (encoding or '').lower()
    if enc == 'quoted-printable':
        return quopri.decodestring(data)
    if enc == 'base64':
        cleaned = re.sub(rb'[^A-Za-z0-9+/=]', b'', data)
        cleaned += b'=' * (-len(cleaned) % 4)
        try:
            return binascii.a2b_base64(cleaned)
        except binascii.Error:
            # Stray padding in the middle; decode what precedes it
            head = cleaned.split(b'=')[0]
            return binascii.a2b_base64(head[:len(head) - len(head) % 4])
    return data


def _known_charset(charset: Optional[str]) -> Optional[str]:
    if not charset:
        return None
    try:
        return codecs.lookup(charset.strip().strip('"')).name
    except LookupError:
        logger.debug("Unknown charset %r", charset)
        return None


def to_text(data: bytes, charset: Optional[str]) -> str:
    """Decode ``data`` to ``str`` using ``charset``; never raises on bad bytes.

    Without a usable charset the bytes are tried as UTF-8 first and fall back
    to ``cp1252`` (single-byte legacy mail) with replacement characters.
    """
    codec = _known_charset(charset)
    if codec:
        return data.decode(codec, errors='replace')
    try:
        return data.decode('utf-8')
    except UnicodeDecodeError:
        return data.decode(FALLBACK_CHARSET, errors='replace')


def clean_body(text: str) -> str:
    lines = (line.lstrip() for line in text.splitlines())
    return '\n'.join(line for line in lines if line)


def unfold(value: str) -> str:
    """Join folded header continuation lines so split encoded words decode together."""
    return _FOLD_RE.sub(' ', value)


def decode_header_value(raw: str) -> str:
    """RFC 2047 decode with replacement for undecodable bytes or unknown charsets."""
    value = unfold(raw)
    if '=?' not in value:
        return value.strip()
    chunks = []
    for data, charset in decode_header(value):
        if isinstance(data, str):
            chunks.append(data)
        elif charset is None:
            # Unencoded runs between encoded words come back raw-unicode-escape encoded
            chunks.append(data.decode('raw-unicode-escape', errors='replace'))
        else:
            chunks.append(to_text(data, charset))
    return ''.join(chunks).strip()


def parse_headers(raw: bytes) -> Message:
    """Parse the Subject/From block after decoding raw 8-bit bytes like a body part.

    Headers sent as plain UTF-8 (RFC 6532) or a legacy single-byte charset
    stay readable instead of turning into ``unknown-8bit`` replacement text.
    """
    return email.message_from_string(to_text(raw or b'', None))


def decode_subject(headers: Message, length: int) -> str:
    raw = headers.get('Subject')
    if raw is None:
        return UNTITLED
    subject = re.sub(r'[\r\n]+', ' ', decode_header_value(str(raw)))
    return truncate(subject, length) if subject else UNTITLED


def decode_sender(headers: Message) -> tuple[str, str, str]:
    """Return ``(display, name, address)`` for the From header.

    ``display`` is the decoded name when present, else ``<address>``.
    """
    raw = headers.get('From')
    if raw is None:
        return UNKNOWN_SENDER, '', ''
    name, address = parseaddr(unfold(str(raw)))
    name = decode_header_value(name) if name else ''
    if name:
        return name, name, address
    if address:
        return f"<{address}>", '', address
    return UNKNOWN_SENDER, '', ''


async def extract_body(
    record: MessageRecord,
    fetch_part: FetchPart,
    length: int,
    log: logging.Logger | logging.LoggerAdapter = logger,
) -> str:
    if record.structure is None:
        raise MessageParseError(f"No usable BODYSTRUCTURE for UID {record.uid}")
    found = find_text_part(record.structure)
    if found is None:
        log.warning("UID %s has no text part", record.uid)
        return NO_TEXT_PART
    path, part = found
    data = await fetch_part(record.uid, path)
    text = to_text(transfer_decode(data, part.encoding), part.charset)
    return truncate(clean_body(text), length)


async def summarize(
    record: MessageRecord,
    fetch_part: FetchPart,
    subject_length: int,
    body_length: int,
    log: logging.Logger | logging.LoggerAdapter = logger,
    fetch_body: bool = True,
) -> MessageSummary:
    """Build a :class:`MessageSummary`; per-field failures become placeholders.

    Args:
        record: Structure + raw headers of one message.
        fetch_part: Coroutine returning the bytes of one part by path.
        subject_length: Max subject characters (before ``...``).
        body_length: Max body characters (before ``...``).
        log: Logger used for the per-message error lines.
        fetch_body: False skips the part fetch and leaves ``body`` empty.
    """
    try:
        headers = parse_headers(record.headers)
    except Exception as e:
        log.error("UID %s: could not parse headers: %s", record.uid, e)
        headers = Message()
    try:
        subject = decode_subject(headers, subject_length)
    except Exception as e:
        log.error("UID %s: %s: %s", record.uid, INVALID_SUBJECT, e)
        subject = INVALID_SUBJECT
    try:
        sender, name, address = decode_sender(headers)
    except Exception as e:
        log.error("UID %s: %s: %s", record.uid, INVALID_SENDER, e)
        sender, name, address = INVALID_SENDER, '', ''
    if not fetch_body:
        return MessageSummary(subject=subject, sender=sender, name=name, address=address, body='')
    try:
        body = await extract_body(record, fetch_part, body_length, log)
    except _CONNECTION_ERRORS:
        raise
    except Exception as e:
        log.error("UID %s: %s: %s", record.uid, BODY_ERROR, e)
        body = BODY_ERROR
    return MessageSummary(subject=subject, sender=sender, name=name, address=address, body=body)

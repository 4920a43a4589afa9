"""Async IMAP client backed by ``aioimaplib``.

Implements the :class:`mailprowl.types.MailClient` capability on top of a
single IMAP connection: UID SEARCH / UID FETCH for the unseen-check cycle,
IDLE for the long poll (with an explicit ``DONE`` handshake on every exit
path) and STATUS for the fallback poll probe.

Every aioimaplib / socket failure is re-raised as
:class:`mailprowl.errors.MailConnectionError` so callers only need to handle
one connection-level exception type.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import re
import ssl
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import aioimaplib

from .bodystructure import parse_bodystructure
from .errors import MailConnectionError, MessageParseError
from .types import UID, EventCallback, MessageRecord

logger = logging.getLogger(__name__)

IDLE_CAPABILITY = 'IDLE'
# RFC 2177 servers may drop IDLE after 30 minutes
IDLE_MAX_SECONDS = 29 * 60
HANDSHAKE_TIMEOUT = 10.0
HEADER_FIELDS = 'BODY.PEEK[HEADER.FIELDS (SUBJECT FROM)]'
_STOP_MARKER = 'stop_wait_server_push'
_UNSEEN_RE = re.compile(rb'UNSEEN\s+(\d+)', re.IGNORECASE)
_HEADER_ITEM_RE = re.compile(rb'BODY\[HEADER[^\]]*\]\s*\{\d+\}\s*$', re.IGNORECASE)
_TRANSPORT_ERRORS = (aioimaplib.Abort, aioimaplib.CommandTimeout, asyncio.TimeoutError, OSError)


def _literals(lines: list) -> list[bytes]:
    # aioimaplib hands literal payloads back as bytearray, protocol lines as bytes
    return [bytes(line) for line in lines if isinstance(line, bytearray)]


def _text_lines(lines: list) -> list[bytes]:
    return [line if isinstance(line, bytes) else str(line).encode() for line in lines
            if not isinstance(line, bytearray)]


def _fetch_text(lines: list) -> bytes:
    """Rejoin a FETCH response, putting each literal back after its ``{n}`` marker."""
    out = b''
    for line in lines:
        if isinstance(line, bytearray):
            out += b'\r\n' + bytes(line)
        else:
            out += b' ' + (line if isinstance(line, bytes) else str(line).encode())
    return out


def _header_literal(lines: list) -> bytes:
    """Return the literal that follows the ``BODY[HEADER.FIELDS ...]`` item."""
    for prev, line in zip(lines, lines[1:]):
        if isinstance(line, bytearray) and not isinstance(prev, bytearray):
            marker = prev if isinstance(prev, bytes) else str(prev).encode()
            if _HEADER_ITEM_RE.search(marker):
                return bytes(line)
    return b''


def _is_stop(lines: list) -> bool:
    return any(_STOP_MARKER in (ln.decode(errors='ignore') if isinstance(ln, (bytes, bytearray)) else str(ln))
               for ln in lines)


def _has_exists(lines: list) -> bool:
    for ln in lines:
        raw = bytes(ln) if isinstance(ln, (bytes, bytearray)) else str(ln).encode()
        if raw.upper().endswith(b'EXISTS'):
            return True
    return False


class AsyncImapClient:
    """One IMAP connection for one account.

    The client is created disconnected; :meth:`connect` opens the socket and
    waits for the server greeting.
    """

    def __init__(self, host: str, port: int = 993, *, secure: bool = True,
                 verify_ssl: bool = True, timeout: float = 30):
        self.host = host
        self.port = port
        self.secure = secure
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        self._client: Optional[aioimaplib.IMAP4] = None
        self._cancel: Optional[asyncio.Event] = None

    def __repr__(self):
        return f"AsyncImapClient({self.host}:{self.port})"

    @asynccontextmanager
    async def _guard(self, what: str) -> AsyncIterator[aioimaplib.IMAP4]:
        if self._client is None:
            raise MailConnectionError(f"{what}: not connected to {self.host}")
        try:
            yield self._client
        except MailConnectionError:
            raise
        except _TRANSPORT_ERRORS as e:
            raise MailConnectionError(f"{what} failed on {self.host}: {e!r}") from e

    def _ssl_context(self) -> Optional[ssl.SSLContext]:
        if self.verify_ssl:
            return None
        ctx = ssl.create_default_context()
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        return ctx

    async def connect(self) -> None:
        logger.debug("Connecting to %s:%s (secure=%s)", self.host, self.port, self.secure)
        if self.secure:
            self._client = aioimaplib.IMAP4_SSL(
                host=self.host, port=self.port, timeout=self.timeout, ssl_context=self._ssl_context()
            )
        else:
            self._client = aioimaplib.IMAP4(host=self.host, port=self.port, timeout=self.timeout)
        async with self._guard('connect') as client:
            await client.wait_hello_from_server()

    async def login(self, user: str, password: str) -> bool:
        async with self._guard('LOGIN') as client:
            resp = await client.login(user, password)
        if resp.result != 'OK':
            logger.debug("LOGIN rejected by %s: %s", self.host, resp.lines)
            return False
        return True

    async def select(self, mailbox: str) -> None:
        logger.debug("Selecting mailbox: %s", mailbox)
        async with self._guard('SELECT') as client:
            resp = await client.select(mailbox)
        if resp.result != 'OK':
            raise MailConnectionError(f"Failed to select folder {mailbox}: {resp.result}")

    async def capabilities(self) -> set[str]:
        async with self._guard('CAPABILITY') as client:
            resp = await client.capability()
        if resp.result != 'OK':
            raise MailConnectionError(f"CAPABILITY failed: {resp.result}")
        caps: set[str] = set()
        for line in _text_lines(resp.lines[:-1] or resp.lines):
            caps.update(tok.upper() for tok in line.decode(errors='ignore').split())
        return caps

    async def search(self, criteria: str) -> list[UID]:
        async with self._guard('UID SEARCH') as client:
            resp = await client.uid_search(criteria, charset=None)
        # Raise on non-OK so the supervisor reconnects instead of trusting a dead session
        if resp.result != 'OK':
            raise MailConnectionError(f"UID SEARCH {criteria} failed: {resp.result}")
        lines = _text_lines(resp.lines)
        if len(lines) > 1:
            lines = lines[:-1]
        uids: list[UID] = []
        for line in lines:
            uids.extend(int(tok) for tok in line.split() if tok.isdigit())
        return sorted(set(uids))

    async def fetch(self, uids: list[UID]) -> list[MessageRecord]:
        """Fetch structure and Subject/From headers for each UID.

        A message whose BODYSTRUCTURE cannot be parsed comes back with
        ``structure=None``; it does not fail the batch.
        """
        records: list[MessageRecord] = []
        for uid in uids:
            async with self._guard('UID FETCH') as client:
                resp = await client.uid('fetch', str(uid), f'(UID BODYSTRUCTURE {HEADER_FIELDS})')
            if resp.result != 'OK':
                raise MailConnectionError(f"UID FETCH failed for {uid}: {resp.result}")
            try:
                structure = parse_bodystructure(_fetch_text(resp.lines))
            except MessageParseError as e:
                logger.debug("Unparseable BODYSTRUCTURE for UID %s: %s", uid, e)
                structure = None
            records.append(MessageRecord(uid=uid, structure=structure, headers=_header_literal(resp.lines)))
        return records

    async def fetch_part(self, uid: UID, path: str) -> bytes:
        async with self._guard('UID FETCH') as client:
            resp = await client.uid('fetch', str(uid), f'(BODY.PEEK[{path}])')
        if resp.result != 'OK':
            raise MailConnectionError(f"UID FETCH BODY[{path}] failed for {uid}: {resp.result}")
        literals = _literals(resp.lines)
        if literals:
            return literals[0]
        # Small parts may arrive as a quoted string instead of a literal
        for line in _text_lines(resp.lines):
            m = re.search(rb'BODY\[[^\]]*\]\s+"((?:[^"\\]|\\.)*)"', line)
            if m:
                return m.group(1)
        return b''

    async def unseen_count(self, mailbox: str) -> int:
        async with self._guard('STATUS') as client:
            resp = await client.status(mailbox, '(UNSEEN)')
        if resp.result != 'OK':
            raise MailConnectionError(f"STATUS {mailbox} failed: {resp.result}")
        for line in _text_lines(resp.lines):
            m = _UNSEEN_RE.search(line)
            if m:
                return int(m.group(1))
        return 0

    async def long_poll(self, on_event: Optional[EventCallback] = None) -> bool:
        """Block in IDLE until the server reports EXISTS or the wait is cancelled.

        Returns True when a new-message push ended the wait, False when it was
        cancelled (:meth:`cancel_long_poll`) or the server ended IDLE on its
        own. ``DONE`` is always sent and the tagged completion awaited before
        returning.

        Raises:
            MailConnectionError: the connection failed or the DONE handshake
                did not complete within ``HANDSHAKE_TIMEOUT``.
        """
        cancel = self._cancel = asyncio.Event()
        got_event = False
        async with self._guard('IDLE') as client:
            idle = await client.idle_start(timeout=IDLE_MAX_SECONDS)
            waiters: set[asyncio.Task] = set()
            try:
                while not got_event and not cancel.is_set():
                    push = asyncio.create_task(client.wait_server_push(timeout=IDLE_MAX_SECONDS))
                    stop = asyncio.create_task(cancel.wait())
                    waiters = {push, stop}
                    done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
                    if push not in done:
                        break
                    lines = push.result()
                    if _is_stop(lines):
                        break
                    if _has_exists(lines):
                        got_event = True
                        logger.debug("Received EXISTS from %s", self.host)
                        if on_event is not None:
                            res = on_event(lines)
                            if inspect.isawaitable(res):
                                await res
            finally:
                for task in waiters:
                    task.cancel()
                self._cancel = None
                await self._finish_idle(client, idle)
        return got_event

    async def _finish_idle(self, client: aioimaplib.IMAP4, idle: asyncio.Future) -> None:
        if client.has_pending_idle():
            client.idle_done()
        try:
            resp = await asyncio.wait_for(idle, HANDSHAKE_TIMEOUT)
        except asyncio.TimeoutError as e:
            raise MailConnectionError(f"IDLE DONE handshake with {self.host} timed out") from e
        if getattr(resp, 'result', 'OK') != 'OK':
            raise MailConnectionError(f"IDLE ended with {resp.result} on {self.host}")

    def cancel_long_poll(self) -> None:
        if self._cancel is not None:
            self._cancel.set()

    def is_disconnected(self) -> bool:
        if self._client is None:
            return True
        protocol = getattr(self._client, 'protocol', None)
        transport = getattr(protocol, 'transport', None)
        if transport is None or transport.is_closing():
            return True
        return self._client.get_state() == 'LOGOUT'

    async def logout(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        try:
            await asyncio.wait_for(client.logout(), HANDSHAKE_TIMEOUT)
        except Exception:  # pragma: no cover - best effort on a possibly dead socket
            logger.debug("LOGOUT from %s failed", self.host, exc_info=True)


import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

import pytest

from mailprowl import bodystructure as bs
from mailprowl import config as cfg
from mailprowl import extract as ex
from mailprowl import http_async as ha
from mailprowl import notifier as nt
from mailprowl import supervisor as sv
from mailprowl import watcher as wt
from mailprowl.dedup import DedupCache
from mailprowl.errors import ConfigurationError, MailConnectionError, MessageParseError
from mailprowl.types import BodyPart, MessageRecord, Multipart

PLAIN = BodyPart('text', 'plain', {'charset': 'utf-8'}, '7bit')


def header_block(subject: str, sender: str) -> bytes:
    return f"Subject: {subject}\r\nFrom: {sender}\r\n\r\n".encode()


@dataclass
class FakeMessage:
    structure: Optional[object]
    headers: bytes
    parts: dict = field(default_factory=dict)


class FakeMailClient:
    """In-memory stand-in for :class:`mailprowl.imap_async.AsyncImapClient`."""

    def __init__(self, capabilities=('IMAP4REV1', 'IDLE'), login_ok=True):
        self.caps = set(capabilities)
        self.login_ok = login_ok
        self.messages: dict[int, FakeMessage] = {}
        self.unseen: set[int] = set()
        self.pushes: asyncio.Queue = asyncio.Queue()
        self.polling = asyncio.Event()
        self.connected = False
        self.disconnected = False
        self.logged_out = False
        self.search_calls = 0
        self.fetch_calls: list[list[int]] = []
        self.part_calls: list[tuple[int, str]] = []
        self.cancels = 0
        self._cancel: Optional[asyncio.Event] = None
        self._failure: Optional[BaseException] = None

    def add_message(self, uid, subject=None, sender='Alice <alice@example.com>', body=b'Hello',
                    structure=PLAIN, parts=None, unseen=True):
        self.messages[uid] = FakeMessage(
            structure=structure,
            headers=header_block(subject or f'Subject {uid}', sender),
            parts=parts if parts is not None else {'1': body},
        )
        if unseen:
            self.unseen.add(uid)

    def push_exists(self):
        self.pushes.put_nowait([b'%d EXISTS' % (max(self.messages) if self.messages else 0)])

    def fail(self, exc: BaseException):
        """Make the in-flight (or next) long poll raise ``exc``."""
        self._failure = exc
        if self._cancel is not None:
            self._cancel.set()

    async def connect(self):
        self.connected = True

    async def login(self, user, password):
        return self.login_ok

    async def select(self, mailbox):
        return None

    async def capabilities(self):
        return set(self.caps)

    async def search(self, criteria):
        assert criteria == 'UNSEEN'
        self.search_calls += 1
        return sorted(self.unseen)

    async def fetch(self, uids):
        self.fetch_calls.append(list(uids))
        return [
            MessageRecord(uid=uid, structure=self.messages[uid].structure, headers=self.messages[uid].headers)
            for uid in uids if uid in self.messages
        ]

    async def fetch_part(self, uid, path):
        self.part_calls.append((uid, path))
        return self.messages[uid].parts[path]

    async def long_poll(self, on_event=None):
        cancel = self._cancel = asyncio.Event()
        if self._failure is not None:
            cancel.set()
        self.polling.set()
        push = asyncio.create_task(self.pushes.get())
        stop = asyncio.create_task(cancel.wait())
        try:
            done, _ = await asyncio.wait({push, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            push.cancel()
            stop.cancel()
            self._cancel = None
            self.polling.clear()
        if self._failure is not None:
            exc, self._failure = self._failure, None
            raise exc
        return push in done and not push.cancelled()

    def cancel_long_poll(self):
        self.cancels += 1
        if self._cancel is not None:
            self._cancel.set()

    async def unseen_count(self, mailbox):
        return len(self.unseen)

    def is_disconnected(self):
        return self.disconnected or not self.connected

    async def logout(self):
        self.logged_out = True


class RecordingNotifier(nt.Notifier):
    """Notifier that records rendered events instead of posting them."""

    def __init__(self, result=True):
        super().__init__(api_key='test-key')
        self.result = result
        self.events: list[tuple[str, nt.NotificationEvent]] = []

    async def send(self, template, event):
        self.events.append((self.render(template, event), event))
        return self.result

    @property
    def subjects(self):
        return [event.subject for _, event in self.events]


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def make_account(**overrides) -> cfg.AccountConfig:
    values = dict(host='imap.example.com', user='me', password='secret', label='work')
    values.update(overrides)
    return cfg.AccountConfig(**values)


def make_watcher(client=None, notifier=None, clock=None, factory=None, **account_overrides):
    client = client if client is not None else FakeMailClient()
    return wt.Watcher(
        make_account(**account_overrides),
        notifier if notifier is not None else RecordingNotifier(),
        client_factory=factory or (lambda account: client),
        clock=clock or FakeClock(),
    )


async def eventually(predicate, timeout=2.0):
    """Yield to the loop until ``predicate()`` is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


@pytest.fixture(autouse=True)
def global_fixture(monkeypatch):
    for name in ('PROWL_API_KEY', 'PROWL_PROXY', 'PROWL_PROXY_USER', 'PROWL_PROXY_PASSWORD',
                 'MAILPROWL_CONFIG', 'LOG_LEVEL'):
        monkeypatch.delenv(name, raising=False)

    async def _no_network(*a, **k):  # pragma: no cover - guards against real POSTs
        raise AssertionError('unexpected HTTP call')
    monkeypatch.setattr(ha, 'post_form', _no_network)
    yield


__all__ = [
    'asyncio',
    'logging',
    'pytest',
    'bs',
    'cfg',
    'ex',
    'ha',
    'nt',
    'sv',
    'wt',
    'DedupCache',
    'ConfigurationError',
    'MailConnectionError',
    'MessageParseError',
    'BodyPart',
    'MessageRecord',
    'Multipart',
    'PLAIN',
    'header_block',
    'FakeMailClient',
    'RecordingNotifier',
    'FakeClock',
    'make_account',
    'make_watcher',
    'eventually',
    'global_fixture',
]

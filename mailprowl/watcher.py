"""Per-account mailbox watcher (pure async).

A :class:`Watcher` owns one IMAP connection and one :class:`DedupCache`.
:meth:`Watcher.start` connects, logs in, selects the mailbox, picks the wait
mode from the server's capabilities and runs one silent baseline scan; it
then spawns the watch loop as an ``asyncio.Task``:

* long-poll mode: IDLE until the server pushes EXISTS (or the supervisor
  cancels the wait), then re-check UNSEEN and notify, forever;
* fallback mode: sleep ``poll_interval`` seconds, probe the unseen count,
  re-check when there is something to look at.

Connection errors end the task with the watcher in ``FAILED`` state. The
watcher never reconnects on its own: :class:`mailprowl.supervisor.Supervisor`
notices the dead task and calls :meth:`Watcher.restart`.
"""
from __future__ import annotations

import asyncio
import enum
import time
from typing import Callable, Optional

from .config import AccountConfig
from .dedup import DedupCache
from .extract import summarize
from .imap_async import IDLE_CAPABILITY, AsyncImapClient
from .logging_utils import account_logger
from .notifier import NotificationEvent, Notifier, validate_template
from .types import MailClient

_CONNECTION_ERRORS = (ConnectionError, asyncio.TimeoutError)


class WatcherState(enum.Enum):
    DISCONNECTED = 'disconnected'
    CONNECTING = 'connecting'
    READY = 'ready'
    LONG_POLLING = 'long-polling'
    FALLBACK_POLLING = 'fallback-polling'
    FAILED = 'failed'


class WatchMode(enum.Enum):
    LONG_POLL = 'long-poll'
    FALLBACK_POLL = 'fallback-poll'


ClientFactory = Callable[[AccountConfig], MailClient]


def default_client_factory(account: AccountConfig) -> MailClient:
    return AsyncImapClient(
        host=account.host, port=account.port, secure=account.secure, verify_ssl=account.verify_ssl
    )


class Watcher:
    """Watch one mailbox and notify for each newly unseen message."""

    def __init__(
        self,
        account: AccountConfig,
        notifier: Notifier,
        *,
        client_factory: ClientFactory = default_client_factory,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.account = account
        self.notifier = notifier
        self.template = validate_template(account.template, account.label)
        self.cache = DedupCache()
        self.state = WatcherState.DISCONNECTED
        self.mode: Optional[WatchMode] = None
        self.last_activity: Optional[float] = None
        self.task: Optional[asyncio.Task] = None
        self.client: Optional[MailClient] = None
        self.cycles = 0
        self.log = account_logger(__name__, account.label)
        self._client_factory = client_factory
        self._clock = clock
        self._stopping = False

    def __repr__(self):
        return f"Watcher({self.label}, state={self.state.value})"

    @property
    def label(self) -> str:
        return self.account.label

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()

    def is_disconnected(self) -> bool:
        return self.client is None or self.client.is_disconnected()

    def idle_age(self) -> Optional[float]:
        """Seconds spent in the current long poll, or None when not waiting."""
        if self.state is not WatcherState.LONG_POLLING or self.last_activity is None:
            return None
        return self._clock() - self.last_activity

    async def start(self) -> bool:
        """Connect, authenticate, baseline-scan and launch the watch task.

        Returns:
            True when the task is running; False when the login was rejected
            or the connection failed (the watcher is then left
            ``DISCONNECTED`` / ``FAILED`` for the supervisor to retry).
        """
        await self.close()
        self._stopping = False
        self.client = self._client_factory(self.account)
        self.state = WatcherState.CONNECTING
        user, host = self.account.user, self.account.host
        try:
            await self.client.connect()
            if not await self.client.login(user, self.account.password):
                self.log.error("Failed to login: user: %s@%s.", user, host)
                await self.close()
                return False
            await self.client.select(self.account.mailbox)
            self.state = WatcherState.READY
            self.mode = await self._decide_mode()
            await self.check_unseen(notify=False)
        except _CONNECTION_ERRORS as e:
            self.log.error("Could not start watching %s@%s: %s", user, host, e)
            self.state = WatcherState.FAILED
            return False
        self.task = asyncio.create_task(self._run(), name=f"watcher:{self.label}")
        return True

    async def _decide_mode(self) -> WatchMode:
        if self.account.force_poll:
            self.log.info("Fallback polling forced by configuration (every %ss).", self.account.poll_interval)
            return WatchMode.FALLBACK_POLL
        if IDLE_CAPABILITY in await self.client.capabilities():
            return WatchMode.LONG_POLL
        self.log.warning("%s does not support IDLE; polling every %ss.",
                         self.account.host, self.account.poll_interval)
        return WatchMode.FALLBACK_POLL

    async def _run(self) -> None:
        self.log.info("Start (%s).", self.mode.value if self.mode else '?')
        try:
            if self.mode is WatchMode.LONG_POLL:
                await self._long_poll_loop()
            else:
                await self._fallback_loop()
        except asyncio.CancelledError:
            self.log.debug("Watch task cancelled.")
            raise
        except _CONNECTION_ERRORS as e:
            self.state = WatcherState.FAILED
            self.log.error("Error! %s", e)
        except Exception:
            self.state = WatcherState.FAILED
            self.log.exception("Unexpected error in watch loop")
        finally:
            self.last_activity = None

    async def _long_poll_loop(self) -> None:
        while not self._stopping:
            self.state = WatcherState.LONG_POLLING
            self.last_activity = self._clock()
            self.log.debug("Entering IDLE.")
            try:
                event = await self.client.long_poll()
            finally:
                self.last_activity = None
            self.state = WatcherState.READY
            if self._stopping:
                break
            if event:
                self.log.debug("Received EXISTS.")
            else:
                self.log.debug("IDLE ended without an event; resyncing.")
            await self.check_unseen(notify=True)

    async def _fallback_loop(self) -> None:
        while not self._stopping:
            self.state = WatcherState.FALLBACK_POLLING
            await asyncio.sleep(self.account.poll_interval)
            pending = await self.client.unseen_count(self.account.mailbox)
            self.log.debug("Status probe: %d unseen.", pending)
            # A non-empty cache with nothing unseen still needs a resync to forget read mail
            if pending or len(self.cache):
                self.state = WatcherState.READY
                await self.check_unseen(notify=True)

    async def check_unseen(self, notify: bool) -> int:
        """Run one unseen-check cycle and replace the dedup cache.

        Args:
            notify: False for the silent baseline scan after login.

        Returns:
            Number of notifications attempted.
        """
        self.log.debug("Checking UNSEEN mail.")
        unseen = await self.client.search('UNSEEN')
        self.cycles += 1
        if not unseen:
            self.cache.clear()
            return 0
        snapshot = {uid for uid in unseen if uid in self.cache}
        for uid in sorted(snapshot):
            self.log.debug("SKIP Already notified: UID=%s", uid)
        new_uids = self.cache.unknown(unseen)
        attempted = 0
        if new_uids:
            for record in await self.client.fetch(new_uids):
                try:
                    if await self._handle(record, notify):
                        attempted += 1
                except _CONNECTION_ERRORS:
                    raise
                except Exception as e:
                    self.log.error("Error while processing UID %s: %s", record.uid, e, exc_info=True)
                # Recorded even when the notification failed so it is not retried forever
                snapshot.add(record.uid)
        self.cache.replace(snapshot)
        return attempted

    async def _handle(self, record, notify: bool) -> bool:
        summary = await summarize(
            record,
            self.client.fetch_part,
            self.account.subject_length,
            self.account.body_length,
            log=self.log,
            fetch_body=notify,
        )
        if not notify:
            return False
        event = NotificationEvent(
            subject=summary.subject,
            sender=summary.sender,
            name=summary.name,
            address=summary.address,
            body=summary.body,
            priority=self.account.priority,
            source=self.label,
        )
        self.log.info("Prowling: UID=%s %s", record.uid, summary.subject)
        if not await self.notifier.send(self.template, event):
            self.log.warning("Notification for UID=%s was not delivered.", record.uid)
        return True

    def cancel_wait(self) -> None:
        """Interrupt an in-flight long poll; the loop resyncs and re-enters IDLE."""
        if self.state is WatcherState.LONG_POLLING and self.client is not None:
            self.log.debug("Stop IDLE.")
            self.client.cancel_long_poll()

    async def stop(self, grace: float = 5.0) -> None:
        """Stop the watch task and release the connection.

        The in-flight wait is cancelled first so IDLE can finish with a DONE
        handshake; after ``grace`` seconds the task is cancelled outright.
        """
        self._stopping = True
        task, self.task = self.task, None
        if task is not None and not task.done():
            if self.mode is WatchMode.LONG_POLL and self.client is not None:
                self.client.cancel_long_poll()
                done, _ = await asyncio.wait({task}, timeout=grace)
                if not done:
                    self.log.warning("IDLE did not finish within %.0fs; cancelling.", grace)
                    task.cancel()
            else:
                task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        try:
            await asyncio.wait_for(self.close(), grace)
        except asyncio.TimeoutError:
            self.log.warning("Logout did not finish within %.0fs.", grace)
            self.client = None
            self.state = WatcherState.DISCONNECTED

    async def close(self) -> None:
        client, self.client = self.client, None
        self.state = WatcherState.DISCONNECTED
        self.last_activity = None
        if client is not None:
            await client.logout()

    async def restart(self, grace: float = 5.0) -> bool:
        await self.stop(grace)
        return await self.start()

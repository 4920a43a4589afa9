"""Liveness supervision for all watchers.

Once per tick every enabled watcher is inspected:

* a finished (or never started) watch task -> full restart;
* a connection that reports itself disconnected -> force stop + restart;
* an IDLE older than the account's ``idle_timeout`` minutes -> cancel the
  wait so the watcher resyncs and re-enters IDLE on a connection that was
  just exercised.

A restart that fails is retried once in the same tick; after that the
watcher waits for the next tick.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Iterable

from .watcher import Watcher

logger = logging.getLogger(__name__)

DEFAULT_GRACE = 5.0


class Supervisor:
    def __init__(self, watchers: Iterable[Watcher], tick: float = 60, grace: float = DEFAULT_GRACE):
        self.watchers = list(watchers)
        self.tick_interval = tick
        self.grace = grace
        self.restarts = 0

    @property
    def enabled(self) -> list[Watcher]:
        return [w for w in self.watchers if w.account.enabled]

    async def start_all(self) -> None:
        for w in self.watchers:
            if not w.account.enabled:
                logger.info("[%s] Account disabled; not watching.", w.label)
        await asyncio.gather(*(self._start(w) for w in self.enabled))

    async def _start(self, watcher: Watcher) -> bool:
        retried = False
        while True:
            try:
                if await watcher.start():
                    return True
            except Exception:
                watcher.log.exception("Start failed")
            if retried:
                watcher.log.error("Could not start; next attempt in %ss.", self.tick_interval)
                return False
            retried = True

    async def restart(self, watcher: Watcher) -> bool:
        """Stop and start ``watcher``, retrying once if the first attempt fails."""
        retried = False
        while True:
            try:
                if await watcher.restart(self.grace):
                    self.restarts += 1
                    watcher.log.debug("Restarted")
                    return True
            except Exception:
                watcher.log.exception("Restart failed")
            if retried:
                watcher.log.error("Restart failed twice; next attempt in %ss.", self.tick_interval)
                return False
            retried = True
            watcher.log.info("Retrying restart.")

    async def inspect(self, watcher: Watcher) -> None:
        if not watcher.running:
            watcher.log.error("Watcher is not running (%s); trying to reconnect...", watcher.state.value)
            await self.restart(watcher)
            return
        if watcher.is_disconnected():
            watcher.log.error("Socket is disconnected; trying to reconnect...")
            await self.restart(watcher)
            return
        timeout = watcher.account.idle_timeout
        age = watcher.idle_age()
        if timeout > 0 and age is not None and age > timeout * 60:
            watcher.log.info("No IDLE event for %d minutes; refreshing.", timeout)
            watcher.cancel_wait()

    async def tick(self) -> None:
        await asyncio.gather(*(self.inspect(w) for w in self.enabled))

    async def run(self, stop_event: asyncio.Event) -> None:
        """Start every watcher, tick until ``stop_event`` is set, then shut down."""
        await self.start_all()
        try:
            while not stop_event.is_set():
                try:
                    await asyncio.wait_for(stop_event.wait(), self.tick_interval)
                except asyncio.TimeoutError:
                    await self.tick()
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        logger.info("Stopping %d watcher(s)", len(self.watchers))
        results = await asyncio.gather(*(w.stop(self.grace) for w in self.watchers), return_exceptions=True)
        for w, res in zip(self.watchers, results):
            if isinstance(res, Exception):
                w.log.warning("Error during shutdown: %s", res)

"""
Snapshot Poller — the poll channel.

Fetches a full session snapshot on a fixed interval, independent of how
long each fetch takes. At most one fetch is in flight: a tick that fires
while the previous fetch is still outstanding is skipped, so snapshots
can never overlap. poll_now() requests an out-of-band fetch (after a
realtime reconnect, or after a command whose effect only shows up in
the next snapshot).
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

from linkstate.channels.base import Channel
from linkstate.contracts import SnapshotUpdate
from linkstate.core.metrics import metrics
from linkstate.errors import CommandFailed

logger = logging.getLogger(__name__)

SnapshotFetcher = Callable[[], Awaitable[SnapshotUpdate]]


class SnapshotPoller(Channel):
    name = "poll"

    def __init__(self, fetch: SnapshotFetcher, interval: float) -> None:
        super().__init__()
        self._fetch = fetch
        self._interval = interval
        self._loop_task: asyncio.Task | None = None
        self._inflight: asyncio.Task | None = None

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._tick_loop(), name="linkstate-poller")
        logger.info("Poller started (interval=%.1fs)", self._interval)

    async def stop(self) -> None:
        self._running = False
        for task in (self._loop_task, self._inflight):
            if task and not task.done():
                task.cancel()
        for task in (self._loop_task, self._inflight):
            if task:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._loop_task = None
        self._inflight = None
        logger.info("Poller stopped")

    @property
    def busy(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def poll_now(self) -> bool:
        """Start a fetch unless one is already in flight. Returns True if started."""
        if not self._running:
            return False
        if self.busy:
            metrics.inc("poller.ticks.skipped")
            logger.debug("Poll skipped: previous fetch still in flight")
            return False
        self._inflight = asyncio.create_task(self._fetch_once(), name="linkstate-poll-fetch")
        return True

    async def _tick_loop(self) -> None:
        while self._running:
            self.poll_now()
            await asyncio.sleep(self._interval)

    async def _fetch_once(self) -> None:
        started = time.time()
        try:
            snapshot = await self._fetch()
        except CommandFailed as e:
            metrics.inc("poller.fetch.failed")
            logger.warning("Session snapshot fetch failed: %s", e.reason)
            return
        metrics.observe("poller.fetch_ms", (time.time() - started) * 1000)
        self._emit(snapshot)

"""
Realtime Channel — websocket client for pushed session events.

Connects to the collaborator's event socket, decodes each frame with the
wire codec and hands the resulting SessionEvent to the engine. The
connection is re-established automatically with exponential backoff.
Every connect/disconnect is reported as a ChannelStatus update; a drop
is never a session error, and reconnecting never resets local state.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

import websockets
from websockets.exceptions import WebSocketException

from linkstate.channels.base import Channel
from linkstate.channels.codec import decode_frame
from linkstate.contracts import ChannelStatus
from linkstate.core.metrics import metrics
from linkstate.errors import MalformedUpdate

logger = logging.getLogger(__name__)


class RealtimeChannel(Channel):
    name = "realtime"

    def __init__(
        self,
        url: str,
        reconnect_attempts: int = 0,
        reconnect_delay: float = 1.0,
        reconnect_max_delay: float = 30.0,
        connect: Callable[[str], Any] = websockets.connect,
    ) -> None:
        super().__init__()
        self._url = url
        self._reconnect_attempts = reconnect_attempts  # 0 = forever
        self._reconnect_delay = reconnect_delay
        self._reconnect_max_delay = reconnect_max_delay
        self._connect = connect
        self._task: asyncio.Task | None = None
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run(), name="linkstate-realtime")

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._connected = False
        logger.info("Realtime channel stopped")

    async def _run(self) -> None:
        failures = 0
        while self._running:
            reason = "closed by server"
            try:
                async with self._connect(self._url) as ws:
                    self._connected = True
                    failures = 0
                    logger.info("Realtime channel connected: %s", self._url)
                    self._emit(ChannelStatus(self.name, connected=True))
                    async for raw in ws:
                        self._handle_frame(raw)
            except (OSError, WebSocketException) as e:
                reason = str(e) or type(e).__name__

            was_connected = self._connected
            self._connected = False
            if was_connected:
                self._emit(ChannelStatus(self.name, connected=False, reason=reason))
            if not self._running:
                return

            failures += 1
            metrics.inc("realtime.reconnects")
            if self._reconnect_attempts and failures > self._reconnect_attempts:
                logger.error(
                    "Realtime channel giving up after %d attempts: %s", failures - 1, reason
                )
                self._emit(ChannelStatus(self.name, connected=False, reason=reason))
                self._running = False
                return

            delay = min(
                self._reconnect_delay * (2 ** (failures - 1)), self._reconnect_max_delay
            )
            logger.warning(
                "Realtime channel down (%s), reconnecting in %.1fs", reason, delay,
                extra={"channel": self.name},
            )
            await asyncio.sleep(delay)

    def _handle_frame(self, raw: str | bytes) -> None:
        try:
            event = decode_frame(raw)
        except MalformedUpdate as e:
            metrics.inc("realtime.frames.malformed")
            logger.warning("Dropping realtime frame: %s", e)
            return
        if event is not None:
            self._emit(event)

"""
Base Channel — abstract base class for inbound update sources.

A channel turns a collaborator feed (realtime socket, poll timer) into
contracts and hands them to the engine through the update callback.
Channels never mutate state themselves.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional

from linkstate.contracts import Update

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[Update], None]


class Channel(ABC):
    """Base class for the realtime and poll channels."""

    # Channel name - must be unique per engine
    name: str = "base"

    def __init__(self) -> None:
        self._update_callback: Optional[UpdateCallback] = None
        self._running = False

    @abstractmethod
    async def start(self) -> None:
        """Begin consuming the collaborator feed."""

    @abstractmethod
    async def stop(self) -> None:
        """Stop consuming and release connections."""

    def on_update(self, callback: UpdateCallback) -> None:
        """Set the callback that receives every decoded update."""
        self._update_callback = callback

    def _emit(self, update: Update) -> None:
        if self._update_callback is None:
            logger.warning("%s produced an update with no consumer attached", self.name)
            return
        try:
            self._update_callback(update)
        except Exception as e:
            logger.error("Error delivering update from %s: %s", self.name, e, exc_info=True)

    @property
    def is_running(self) -> bool:
        return self._running

    def __repr__(self) -> str:
        return f"<{self.name} Channel>"

"""
Event Bus — fan-out of StateDeltas to presentation code.

Two topic shapes:

    sessions               every delta, in sequence order
    session.<session_id>   only the deltas that carry that session_id

Each subscriber owns a bounded asyncio.Queue. Publishing never awaits, so
the engine can emit from inside a synchronous apply(); a subscriber that
falls behind loses deltas (counted as ``bus.dropped``) rather than
stalling the engine. close() pushes an end marker so ``listen`` loops
finish on teardown.

    queue = bus.subscribe(session_topic("s1"))
    async for delta in bus.listen(queue):
        render(delta)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator

from linkstate.contracts import StateDelta
from linkstate.core.metrics import metrics

logger = logging.getLogger(__name__)

SESSIONS_TOPIC = "sessions"
DEFAULT_QUEUE_SIZE = 1000

_END = object()


def session_topic(session_id: str) -> str:
    return f"session.{session_id}"


def topics_for(delta: StateDelta) -> list[str]:
    """Topics a delta is routed to."""
    if delta.session_id:
        return [SESSIONS_TOPIC, session_topic(delta.session_id)]
    return [SESSIONS_TOPIC]


class EventBus:
    def __init__(self) -> None:
        self._topics: dict[str, list[asyncio.Queue]] = {}

    def subscribe(self, topic: str, maxsize: int = DEFAULT_QUEUE_SIZE) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._topics.setdefault(topic, []).append(queue)
        logger.debug("New subscriber on %s (%d now)", topic, self.subscriber_count(topic))
        return queue

    def unsubscribe(self, topic: str, queue: asyncio.Queue) -> None:
        """Detach a queue. Unknown queues are ignored."""
        queues = self._topics.get(topic)
        if not queues or queue not in queues:
            return
        queues.remove(queue)
        if not queues:
            self._topics.pop(topic)

    def subscriber_count(self, topic: str) -> int:
        return len(self._topics.get(topic, ()))

    def publish(self, topic: str, event: Any) -> int:
        """Offer ``event`` to every queue on ``topic``; returns how many took it."""
        accepted = 0
        for queue in self._topics.get(topic, ()):
            if queue.full():
                metrics.inc("bus.dropped", labels={"topic": topic.split(".", 1)[0]})
                logger.warning("Subscriber on %s is full, dropping event", topic)
                continue
            queue.put_nowait(event)
            accepted += 1
        return accepted

    def publish_delta(self, delta: StateDelta) -> None:
        for topic in topics_for(delta):
            self.publish(topic, delta)

    async def listen(self, queue: asyncio.Queue) -> AsyncIterator[Any]:
        """Iterate a subscription until its topic is ended."""
        item = await queue.get()
        while item is not _END:
            yield item
            item = await queue.get()

    def end_topic(self, topic: str) -> None:
        for queue in self._topics.pop(topic, []):
            if queue.full():
                # The end marker must fit; sacrifice the oldest pending event
                queue.get_nowait()
            queue.put_nowait(_END)

    def close(self) -> None:
        for topic in list(self._topics):
            self.end_topic(topic)

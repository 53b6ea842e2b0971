"""
Conversation Models — messages exchanged through a session.

A message's identity is server-assigned when the collaborator provides
one; otherwise a surrogate id is synthesized locally. Optimistic local
sends are additionally marked pending until a copy from a channel
confirms them.
"""

from __future__ import annotations

import math
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from linkstate.errors import MalformedUpdate


class Direction(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class DeliveryStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


# Statuses only move forward; a failed local send can still be confirmed later
STATUS_RANK: dict[DeliveryStatus, int] = {
    DeliveryStatus.FAILED: 0,
    DeliveryStatus.SENT: 1,
    DeliveryStatus.DELIVERED: 2,
    DeliveryStatus.READ: 3,
}


def surrogate_id(prefix: str = "local") -> str:
    return f"{prefix}-{uuid.uuid4().hex}"


@dataclass(frozen=True)
class Message:
    """One entry in a session's conversation log."""

    session_id: str
    direction: Direction
    counterparty_id: str
    body: str
    timestamp: float  # epoch seconds
    message_id: str = field(default_factory=surrogate_id)
    delivery_status: DeliveryStatus = DeliveryStatus.SENT
    surrogate: bool = False  # message_id was synthesized locally
    pending: bool = False  # optimistic send, not yet seen on any channel
    sequence: int = 0  # insertion order, assigned by the store

    @property
    def sort_key(self) -> tuple[float, int]:
        return (self.timestamp, self.sequence)

    @property
    def content_key(self) -> tuple[str, str, str]:
        return (self.direction.value, self.counterparty_id, self.body)

    @classmethod
    def local(
        cls,
        session_id: str,
        counterparty_id: str,
        body: str,
        timestamp: float | None = None,
    ) -> Message:
        """An optimistic outgoing message for a send that is still in flight."""
        return cls(
            session_id=session_id,
            direction=Direction.OUTGOING,
            counterparty_id=counterparty_id,
            body=body,
            timestamp=timestamp if timestamp is not None else time.time(),
            message_id=surrogate_id("local"),
            surrogate=True,
            pending=True,
        )

    @classmethod
    def from_wire(
        cls,
        session_id: str,
        data: dict[str, Any],
        now: float | None = None,
    ) -> Message:
        """Decode a collaborator message (realtime payload or history entry).

        Accepts both from/to and from_number/to_number endpoint names.
        Incoming messages must carry their own timestamp; outgoing ones
        fall back to `now` when the collaborator omits it.
        """
        try:
            direction = Direction(str(data.get("direction", "")).lower())
        except ValueError:
            raise MalformedUpdate(f"unknown message direction: {data.get('direction')!r}")

        sender = data.get("from") or data.get("from_number") or ""
        recipient = data.get("to") or data.get("to_number") or ""
        counterparty = sender if direction == Direction.INCOMING else recipient
        if not counterparty:
            raise MalformedUpdate("message without counterparty")

        timestamp = parse_timestamp(data.get("timestamp"))
        if timestamp is None:
            if direction == Direction.INCOMING or now is None:
                raise MalformedUpdate("message without timestamp")
            timestamp = now

        server_id = data.get("message_id") or data.get("id")
        status = _parse_status(data.get("status"))

        return cls(
            session_id=session_id,
            direction=direction,
            counterparty_id=str(counterparty),
            body=str(data.get("body") or ""),
            timestamp=timestamp,
            message_id=str(server_id) if server_id else surrogate_id("rt"),
            delivery_status=status,
            surrogate=not server_id,
        )

    def to_dict(self) -> dict:
        return {
            "message_id": self.message_id,
            "session_id": self.session_id,
            "direction": self.direction.value,
            "counterparty_id": self.counterparty_id,
            "body": self.body,
            "timestamp": self.timestamp,
            "delivery_status": self.delivery_status.value,
            "pending": self.pending,
        }


def parse_timestamp(value: Any) -> float | None:
    """Epoch seconds from a number, a numeric string, or ISO-8601."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise MalformedUpdate(f"boolean is not a timestamp: {value!r}")
    if isinstance(value, (int, float)):
        ts = float(value)
        if not math.isfinite(ts):
            raise MalformedUpdate(f"non-finite timestamp: {value!r}")
        # Millisecond epochs show up from JS collaborators
        return ts / 1000.0 if ts > 1e11 else ts
    text = str(value).strip()
    try:
        return parse_timestamp(float(text))
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).timestamp()
    except ValueError:
        raise MalformedUpdate(f"unparseable timestamp: {value!r}")


def _parse_status(value: Any) -> DeliveryStatus:
    try:
        return DeliveryStatus(str(value).lower()) if value else DeliveryStatus.SENT
    except ValueError:
        return DeliveryStatus.SENT

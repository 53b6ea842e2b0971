"""
Session Models — data structures for linked-device session state.

  Session → Contact

A Session is one linked device/account. Its connection_state follows the
state machine in linkstate.sessions.state. Contacts are owned by the
session that discovered them and never shared across sessions.

All models are frozen dataclasses — create new instances for modifications.
The registry swaps whole records so a reader never sees a half-updated one.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import Enum


class ConnectionState(str, Enum):
    """Lifecycle state of a session connection."""

    IDLE = "idle"  # Registered, never connected
    PAIRING_WAIT = "pairing-wait"  # Waiting for the pairing code to be scanned
    AUTHENTICATING = "authenticating"  # Handshake in progress, payload spent
    CONNECTED = "connected"  # Phone number known, usable
    DISCONNECTED = "disconnected"  # Was connected, now not
    ERROR = "error"  # Terminal until an explicit reconnect


# Progress rank used to resolve poll/realtime conflicts
STATE_RANK: dict[ConnectionState, int] = {
    ConnectionState.IDLE: 0,
    ConnectionState.PAIRING_WAIT: 1,
    ConnectionState.AUTHENTICATING: 2,
    ConnectionState.CONNECTED: 3,
    ConnectionState.DISCONNECTED: 0,
    ConnectionState.ERROR: 0,
}


def rank(state: ConnectionState) -> int:
    return STATE_RANK[state]


@dataclass(frozen=True)
class Session:
    """
    A linked-device session as seen by the presentation layer.

    last_realtime_at is engine-clock time (not epoch) of the last
    transition driven by a realtime event; None if the session has only
    ever been seen through poll snapshots.
    """

    session_id: str
    name: str = ""
    phone_number: str | None = None
    state: ConnectionState = ConnectionState.IDLE
    error_reason: str | None = None
    last_connected_at: float | None = None  # epoch seconds
    updated_at: float = field(default_factory=time.time)
    last_realtime_at: float | None = None

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    def with_state(
        self,
        state: ConnectionState,
        *,
        error_reason: str | None = None,
        realtime_at: float | None = None,
    ) -> Session:
        """Return a copy in a new state. error_reason is kept only for ERROR."""
        return replace(
            self,
            state=state,
            error_reason=error_reason if state == ConnectionState.ERROR else None,
            updated_at=time.time(),
            last_realtime_at=(
                realtime_at if realtime_at is not None else self.last_realtime_at
            ),
        )

    def with_connection(self, phone_number: str | None, connected_at: float) -> Session:
        """Return a copy stamped with a new connection cycle's details."""
        last = self.last_connected_at
        return replace(
            self,
            phone_number=phone_number or self.phone_number,
            last_connected_at=max(last, connected_at) if last else connected_at,
            updated_at=time.time(),
        )

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "name": self.name,
            "phone_number": self.phone_number,
            "state": self.state.value,
            "error_reason": self.error_reason,
            "last_connected_at": self.last_connected_at,
            "is_connected": self.is_connected,
        }


@dataclass(frozen=True)
class Contact:
    """A counterparty discovered by one session."""

    contact_id: str
    display_name: str = ""
    phone_number: str | None = None


@dataclass(frozen=True)
class SessionSnapshot:
    """One session's entry in a poll snapshot."""

    session_id: str
    state: ConnectionState
    name: str | None = None
    phone_number: str | None = None
    last_connected_at: float | None = None
    error_reason: str | None = None

"""
Connection state machine.

Each realtime event kind moves a session to one target state, but only
from the states listed for it. Anything else is an out-of-order or
duplicate event and is ignored by the caller.

    idle|disconnected|error ──pairing / connect ack──▶ pairing-wait
    pairing-wait ──pairing──▶ pairing-wait (artifact superseded)
    pairing-wait|authenticating ──auth progress──▶ authenticating
    pairing-wait|authenticating|idle|disconnected ──ready──▶ connected
    connected|pairing-wait|authenticating ──lost──▶ disconnected
    any ──error──▶ error

error is left only through a pairing event or a connect ack. A pairing
frame that reaches an authenticating or connected session is stale and
ignored. ready from idle|disconnected covers sessions restored from
stored credentials, which the collaborator reports as connected without
a new pairing round; lost from the pairing states covers a handshake
that the collaborator abandons.
"""

from __future__ import annotations

from enum import Enum

from linkstate.sessions.models import ConnectionState

S = ConnectionState


class EventKind(str, Enum):
    """Kinds of single-session updates."""

    PAIRING_PAYLOAD = "pairing-payload-available"
    AUTH_PROGRESS = "authentication-progress"
    CONNECTION_READY = "connection-ready"
    CONNECTION_LOST = "connection-lost"
    CONNECTION_ERROR = "connection-error"
    MESSAGE = "message"
    # Acknowledgement of a connect command from the API collaborator
    CONNECT_ACK = "connect-acknowledged"


_ALL = frozenset(S)

TRANSITIONS: dict[EventKind, tuple[frozenset[ConnectionState], ConnectionState]] = {
    EventKind.PAIRING_PAYLOAD: (
        frozenset({S.IDLE, S.DISCONNECTED, S.ERROR, S.PAIRING_WAIT}),
        S.PAIRING_WAIT,
    ),
    EventKind.CONNECT_ACK: (
        frozenset({S.IDLE, S.DISCONNECTED, S.ERROR, S.PAIRING_WAIT}),
        S.PAIRING_WAIT,
    ),
    EventKind.AUTH_PROGRESS: (
        frozenset({S.PAIRING_WAIT, S.AUTHENTICATING}),
        S.AUTHENTICATING,
    ),
    # Stored credentials let a session come back without pairing again
    EventKind.CONNECTION_READY: (
        frozenset({S.PAIRING_WAIT, S.AUTHENTICATING, S.IDLE, S.DISCONNECTED}),
        S.CONNECTED,
    ),
    EventKind.CONNECTION_LOST: (
        frozenset({S.CONNECTED, S.PAIRING_WAIT, S.AUTHENTICATING}),
        S.DISCONNECTED,
    ),
    EventKind.CONNECTION_ERROR: (_ALL, S.ERROR),
}


def next_state(current: ConnectionState, kind: EventKind) -> ConnectionState | None:
    """Target state for an event, or None if the event is not valid here."""
    rule = TRANSITIONS.get(kind)
    if rule is None:
        return None
    allowed, target = rule
    if current not in allowed:
        return None
    return target


# Wire status strings (poll snapshots, legacy status events) → state
_STATUS_ALIASES: dict[str, ConnectionState] = {
    "idle": S.IDLE,
    "created": S.IDLE,
    "initializing": S.IDLE,
    "qr": S.PAIRING_WAIT,
    "pairing": S.PAIRING_WAIT,
    "pairing-wait": S.PAIRING_WAIT,
    "authenticated": S.AUTHENTICATING,
    "authenticating": S.AUTHENTICATING,
    "connected": S.CONNECTED,
    "ready": S.CONNECTED,
    "disconnected": S.DISCONNECTED,
    "error": S.ERROR,
    "failed": S.ERROR,
}


def parse_status(status: str | None, is_connected: bool = False) -> ConnectionState:
    """Map a collaborator status string onto a ConnectionState.

    Unknown strings fall back to idle, or connected when the collaborator
    also flags the session as connected.
    """
    state = _STATUS_ALIASES.get((status or "").strip().lower())
    if state is None:
        return S.CONNECTED if is_connected else S.IDLE
    return state

"""
Sessions — linked-device session state.

Key components:
- Session / Contact / SessionSnapshot: frozen records
- ConnectionState + state machine (linkstate.sessions.state)
- SessionRegistry: the authoritative session_id → Session mapping
"""

from linkstate.sessions.models import (
    ConnectionState,
    Contact,
    Session,
    SessionSnapshot,
    rank,
)
from linkstate.sessions.registry import SessionRegistry, Transition
from linkstate.sessions.state import EventKind, next_state, parse_status

__all__ = [
    "ConnectionState",
    "Contact",
    "Session",
    "SessionSnapshot",
    "SessionRegistry",
    "Transition",
    "EventKind",
    "next_state",
    "parse_status",
    "rank",
]

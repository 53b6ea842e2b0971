"""
Contracts — the updates the engine consumes and the deltas it emits.

These contracts define the interface between:
- Channels (realtime events, poll snapshots) and command tasks (acks)
- The ReconciliationEngine (single consumer of all updates)
- The presentation layer (subscribes to StateDelta streams)

All contracts are immutable (frozen dataclasses).
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from linkstate.conversation.models import Message
from linkstate.sessions.models import SessionSnapshot
from linkstate.sessions.state import EventKind


@dataclass(frozen=True)
class SessionEvent:
    """
    A discrete single-session update from the realtime channel (or a
    command acknowledgement that behaves like one).
    """

    kind: EventKind
    session_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def pairing_payload(cls, session_id: str, raw_payload: str) -> "SessionEvent":
        return cls(EventKind.PAIRING_PAYLOAD, session_id, {"raw_payload": raw_payload})

    @classmethod
    def auth_progress(cls, session_id: str) -> "SessionEvent":
        return cls(EventKind.AUTH_PROGRESS, session_id)

    @classmethod
    def ready(cls, session_id: str, phone_number: str | None) -> "SessionEvent":
        return cls(
            EventKind.CONNECTION_READY, session_id, {"phone_number": phone_number}
        )

    @classmethod
    def lost(cls, session_id: str) -> "SessionEvent":
        return cls(EventKind.CONNECTION_LOST, session_id)

    @classmethod
    def error(cls, session_id: str, reason: str) -> "SessionEvent":
        return cls(EventKind.CONNECTION_ERROR, session_id, {"reason": reason})

    @classmethod
    def connect_ack(cls, session_id: str) -> "SessionEvent":
        return cls(EventKind.CONNECT_ACK, session_id)

    @classmethod
    def message(
        cls,
        session_id: str,
        direction: str,
        sender: str,
        recipient: str,
        body: str,
        timestamp: float | None,
        message_id: str | None = None,
        status: str | None = None,
    ) -> "SessionEvent":
        """Create an inbound/outbound message event."""
        return cls(
            EventKind.MESSAGE,
            session_id,
            {
                "direction": direction,
                "from": sender,
                "to": recipient,
                "body": body,
                "timestamp": timestamp,
                "message_id": message_id,
                "status": status,
            },
        )


@dataclass(frozen=True)
class SnapshotUpdate:
    """A full-state poll response covering all sessions at one instant."""

    sessions: tuple[SessionSnapshot, ...]
    fetched_at: float = 0.0


class CommandKind(str, Enum):
    """Commands forwarded to the API collaborator."""

    CREATE = "create_session"
    CONNECT = "connect_session"
    DISCONNECT = "disconnect_session"
    DELETE = "delete_session"
    SEND = "send_message"
    FETCH_CONTACTS = "fetch_contacts"
    FETCH_HISTORY = "fetch_history"


@dataclass(frozen=True)
class CommandResult:
    """
    Outcome of a fire-and-forget command, fed back into the inbound queue.

    payload carries command-specific data: the created session for CREATE,
    {"local_id", "message_id"} for SEND, {"contacts": [...]} for
    FETCH_CONTACTS and {"messages": [...]} for FETCH_HISTORY.
    """

    command: CommandKind
    session_id: str | None
    payload: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class EncoderResult:
    """Outcome of encoding one raw pairing payload."""

    session_id: str
    raw_payload: str
    encoded: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class OutboundMessage:
    """An optimistic local send, logged before the API has seen it."""

    message: Message


@dataclass(frozen=True)
class ChannelStatus:
    """Connectivity change of the realtime channel."""

    channel: str
    connected: bool
    reason: str | None = None


Update = Union[
    SessionEvent,
    SnapshotUpdate,
    CommandResult,
    EncoderResult,
    OutboundMessage,
    ChannelStatus,
]


class DeltaKind(str, Enum):
    """What changed, from the presentation layer's point of view."""

    SESSION_UPDATED = "session_updated"
    SESSION_REMOVED = "session_removed"
    ARTIFACT_ISSUED = "artifact_issued"
    ARTIFACT_ENCODED = "artifact_encoded"
    ARTIFACT_CLEARED = "artifact_cleared"
    MESSAGE_ADDED = "message_added"
    MESSAGE_UPDATED = "message_updated"
    CONTACTS_UPDATED = "contacts_updated"
    FAILURE = "failure"


class FailureKind(str, Enum):
    """Reported failures that are not (only) session state."""

    ENCODING_FAILURE = "encoding_failure"
    CONNECTION_ERROR = "connection_error"
    CHANNEL_DISRUPTION = "channel_disruption"
    COMMAND_FAILED = "command_failed"


@dataclass(frozen=True)
class StateDelta:
    """
    A readable change produced by one accepted update.

    sequence is monotonic per engine so consumers can order deltas that
    reach them through different topics.
    """

    kind: DeltaKind
    session_id: str | None
    payload: dict[str, Any] = field(default_factory=dict)
    sequence: int = 0

    @classmethod
    def failure(
        cls,
        failure: FailureKind,
        session_id: str | None,
        reason: str,
        **extra: Any,
    ) -> "StateDelta":
        """Create a failure delta."""
        return cls(
            kind=DeltaKind.FAILURE,
            session_id=session_id,
            payload={"failure": failure.value, "reason": reason, **extra},
        )

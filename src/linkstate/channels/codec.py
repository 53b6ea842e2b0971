"""
Wire codec — collaborator JSON ↔ linkstate contracts.

Realtime frames are JSON objects {"event": name, "data": {...}} (also
accepted: "type"/"payload" keys, or a two-element [name, data] array).
Canonical event names:

    pairing-payload-available  {sessionId, rawPayload}
    authentication-progress    {sessionId}
    connection-ready           {sessionId, phoneNumber}
    connection-lost            {sessionId}
    connection-error           {sessionId, reason}
    message                    {sessionId, direction, from, to, body, timestamp}

The collaborator's older names (whatsapp:qr, whatsapp:status,
whatsapp:message) and field spellings (session_id, qr, from_number, ...)
decode to the same events. Anything else raises MalformedUpdate.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from linkstate.contracts import SessionEvent, SnapshotUpdate
from linkstate.conversation.models import parse_timestamp
from linkstate.errors import MalformedUpdate
from linkstate.sessions.models import ConnectionState, Contact, SessionSnapshot
from linkstate.sessions.state import parse_status

logger = logging.getLogger(__name__)


def _first(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _session_id(data: dict[str, Any]) -> str:
    session_id = _first(data, "sessionId", "session_id")
    if not session_id:
        raise MalformedUpdate("frame without sessionId")
    return str(session_id)


def _split_frame(frame: Any) -> tuple[str, dict[str, Any]]:
    if isinstance(frame, list) and len(frame) == 2:
        name, data = frame
    elif isinstance(frame, dict):
        name = _first(frame, "event", "type")
        data = frame.get("data", frame.get("payload", {}))
    else:
        raise MalformedUpdate(f"unsupported frame shape: {type(frame).__name__}")
    if not isinstance(name, str) or not isinstance(data, dict):
        raise MalformedUpdate("frame without event name or data object")
    return name, data


def decode_frame(raw: str | bytes) -> SessionEvent | None:
    """Decode one realtime frame.

    Returns None for frames that carry nothing for the engine (e.g. a
    status ping with no state change); raises MalformedUpdate for garbage.
    """
    try:
        frame = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MalformedUpdate(f"invalid JSON frame: {e}")

    name, data = _split_frame(frame)
    name = name.strip().lower()

    if name in ("pairing-payload-available", "whatsapp:qr", "qr"):
        raw_payload = _first(data, "rawPayload", "raw_payload", "qr")
        if not raw_payload:
            raise MalformedUpdate("pairing frame without payload")
        return SessionEvent.pairing_payload(_session_id(data), str(raw_payload))

    if name == "authentication-progress":
        return SessionEvent.auth_progress(_session_id(data))

    if name == "connection-ready":
        return SessionEvent.ready(
            _session_id(data), _first(data, "phoneNumber", "phone_number")
        )

    if name == "connection-lost":
        return SessionEvent.lost(_session_id(data))

    if name == "connection-error":
        reason = _first(data, "reason", "error", "message") or "unknown error"
        return SessionEvent.error(_session_id(data), str(reason))

    if name == "whatsapp:status":
        return _decode_status(data)

    if name in ("message", "inbound-message", "outbound-message", "whatsapp:message"):
        direction = data.get("direction")
        if not direction and name != "message" and "-" in name:
            direction = "incoming" if name.startswith("inbound") else "outgoing"
        return SessionEvent.message(
            _session_id(data),
            direction=str(direction or ""),
            sender=str(_first(data, "from", "from_number") or ""),
            recipient=str(_first(data, "to", "to_number") or ""),
            body=str(data.get("body") or ""),
            timestamp=data.get("timestamp"),
            message_id=_first(data, "messageId", "message_id", "id"),
            status=data.get("status"),
        )

    raise MalformedUpdate(f"unknown event: {name}")


def _decode_status(data: dict[str, Any]) -> SessionEvent | None:
    """Legacy catch-all status event → the matching typed event."""
    session_id = _session_id(data)
    state = parse_status(data.get("status"), bool(data.get("isConnected")))

    if state == ConnectionState.AUTHENTICATING:
        return SessionEvent.auth_progress(session_id)
    if state == ConnectionState.CONNECTED:
        return SessionEvent.ready(session_id, _first(data, "phoneNumber", "phone_number"))
    if state == ConnectionState.DISCONNECTED:
        return SessionEvent.lost(session_id)
    if state == ConnectionState.ERROR:
        reason = _first(data, "reason", "error", "message") or "unknown error"
        return SessionEvent.error(session_id, str(reason))
    # "qr" without a payload: the payload itself arrives as its own frame
    logger.debug("Status frame without effect: %s", data.get("status"))
    return None


def decode_session(entry: dict[str, Any]) -> SessionSnapshot:
    """Decode one session from a poll response."""
    status = _first(entry, "status", "state")
    last_connected = _first(entry, "lastConnected", "lastConnectedAt", "last_connected_at")
    return SessionSnapshot(
        session_id=_session_id(entry),
        state=parse_status(status, bool(entry.get("isConnected"))),
        name=_first(entry, "name"),
        phone_number=_first(entry, "phoneNumber", "phone_number"),
        last_connected_at=parse_timestamp(last_connected),
        error_reason=_first(entry, "reason", "error"),
    )


def decode_snapshot(body: Any, fetched_at: float = 0.0) -> SnapshotUpdate:
    """Decode a full poll response. Malformed entries are skipped."""
    entries = body.get("sessions", []) if isinstance(body, dict) else body
    if not isinstance(entries, list):
        raise MalformedUpdate("snapshot without a sessions list")

    sessions: list[SessionSnapshot] = []
    for entry in entries:
        try:
            sessions.append(decode_session(entry))
        except (MalformedUpdate, AttributeError) as e:
            logger.warning("Skipping malformed snapshot entry: %s", e)
    return SnapshotUpdate(sessions=tuple(sessions), fetched_at=fetched_at)


def decode_contact(entry: dict[str, Any]) -> Contact:
    contact_id = _first(entry, "contactId", "contact_id", "id", "number")
    if not contact_id:
        raise MalformedUpdate("contact without id")
    return Contact(
        contact_id=str(contact_id),
        display_name=str(_first(entry, "displayName", "display_name", "name") or contact_id),
        phone_number=_first(entry, "phoneNumber", "phone_number", "number"),
    )

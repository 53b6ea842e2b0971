"""
Session Registry — authoritative session_id → Session mapping.

Applies updates from both channels:
- apply_event(): one realtime event, one session, state machine rules
- upsert_from_snapshot(): bulk merge of a poll snapshot, rank rule

Poll vs realtime conflicts are settled by state rank. A snapshot may not
regress a state that a realtime event reached less than grace_window
seconds ago, nor lift a session out of disconnected or error that
realtime put there; after the window the snapshot is authoritative, which
repairs drift from events the realtime channel silently dropped.

Records are frozen and replaced whole, so readers never see a torn one.
Only the ReconciliationEngine writes to the registry.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Callable, Iterable

from linkstate.core.metrics import metrics
from linkstate.sessions.models import (
    ConnectionState,
    Contact,
    Session,
    SessionSnapshot,
    rank,
)
from linkstate.sessions.state import EventKind, next_state

if TYPE_CHECKING:
    from linkstate.contracts import SessionEvent

logger = logging.getLogger(__name__)

# States a snapshot cannot override while the grace window is open
_REALTIME_HELD = frozenset({ConnectionState.DISCONNECTED, ConnectionState.ERROR})

RemoveHook = Callable[[str], None]


@dataclass(frozen=True)
class Transition:
    """Result of applying one update to one session."""

    before: Session | None  # None on first sight
    after: Session
    accepted: bool = True

    @property
    def changed(self) -> bool:
        return self.before is None or self.before.to_dict() != self.after.to_dict()

    @property
    def state_changed(self) -> bool:
        return self.before is None or self.before.state != self.after.state


class SessionRegistry:
    """In-memory session state, one record per session identity."""

    def __init__(
        self,
        grace_window: float,
        clock: Callable[[], float] = time.monotonic,
        on_remove: Iterable[RemoveHook] = (),
    ) -> None:
        self._grace_window = grace_window
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._contacts: dict[str, dict[str, Contact]] = {}
        self._on_remove: list[RemoveHook] = list(on_remove)

    def add_remove_hook(self, hook: RemoveHook) -> None:
        """Register a callback that purges another component's data for a session."""
        self._on_remove.append(hook)

    # ─── Reads ────────────────────────────────────────────────────

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def list(self) -> list[Session]:
        return list(self._sessions.values())

    def contacts(self, session_id: str) -> list[Contact]:
        return list(self._contacts.get(session_id, {}).values())

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    # ─── Realtime ─────────────────────────────────────────────────

    def ensure(self, session_id: str) -> Transition:
        """Return the session, registering it as idle on first sight."""
        current = self._sessions.get(session_id)
        if current is not None:
            return Transition(current, current, accepted=False)
        session = Session(session_id=session_id, name=session_id)
        self._sessions[session_id] = session
        logger.info("Session first seen: %s", session_id, extra={"session_id": session_id})
        return Transition(None, session)

    def apply_event(self, event: SessionEvent) -> Transition:
        """Apply one realtime event through the state machine.

        Events that are not valid from the current state are ignored
        (accepted=False); the session is still registered on first sight.
        """
        seen = self.ensure(event.session_id)
        current = seen.after
        before = seen.before

        target = next_state(current.state, event.kind)
        if target is None:
            logger.debug(
                "Ignoring %s for %s in state %s",
                event.kind.value,
                event.session_id,
                current.state.value,
                extra={"session_id": event.session_id, "event": event.kind.value},
            )
            metrics.inc("registry.events.ignored", labels={"kind": event.kind.value})
            return Transition(before, current, accepted=False)

        now = self._clock()
        reason = event.payload.get("reason") or None
        if target == ConnectionState.ERROR:
            reason = reason or "unknown error"
        updated = current.with_state(target, error_reason=reason, realtime_at=now)

        if event.kind == EventKind.CONNECTION_READY and current.state != target:
            updated = updated.with_connection(
                event.payload.get("phone_number"),
                event.payload.get("connected_at") or time.time(),
            )

        self._sessions[event.session_id] = updated
        if current.state != updated.state:
            logger.info(
                "Session %s: %s → %s",
                event.session_id,
                current.state.value,
                updated.state.value,
                extra={"session_id": event.session_id, "state": updated.state.value},
            )
        return Transition(before, updated)

    # ─── Poll ─────────────────────────────────────────────────────

    def upsert_from_snapshot(self, snapshots: Iterable[SessionSnapshot]) -> list[Transition]:
        """Merge a poll snapshot by session identity.

        Sessions missing from the snapshot are left untouched; deletion
        is an explicit command. Returns only the sessions that changed,
        so re-applying an identical snapshot returns an empty list.
        """
        now = self._clock()
        changes: list[Transition] = []

        for snap in snapshots:
            current = self._sessions.get(snap.session_id)
            if current is None:
                session = Session(
                    session_id=snap.session_id,
                    name=snap.name or snap.session_id,
                    phone_number=snap.phone_number,
                    state=snap.state,
                    error_reason=self._snapshot_reason(snap, None),
                    last_connected_at=snap.last_connected_at,
                )
                self._sessions[snap.session_id] = session
                changes.append(Transition(None, session))
                continue

            updated = current
            if snap.state != current.state:
                if self._snapshot_may_set(current, snap.state, now):
                    updated = updated.with_state(
                        snap.state, error_reason=self._snapshot_reason(snap, current)
                    )
                else:
                    metrics.inc("registry.snapshot.held")
                    logger.debug(
                        "Holding %s for %s: snapshot reports %s inside grace window",
                        current.state.value,
                        snap.session_id,
                        snap.state.value,
                        extra={"session_id": snap.session_id, "state": current.state.value},
                    )

            if snap.name and snap.name != updated.name:
                updated = replace(updated, name=snap.name)

            entered_connected = (
                updated.state == ConnectionState.CONNECTED
                and current.state != ConnectionState.CONNECTED
            )
            if snap.phone_number and (updated.phone_number is None or entered_connected):
                updated = replace(updated, phone_number=snap.phone_number)

            if snap.last_connected_at is not None and (
                updated.last_connected_at is None
                or snap.last_connected_at > updated.last_connected_at
            ):
                updated = replace(updated, last_connected_at=snap.last_connected_at)

            transition = Transition(current, updated)
            if transition.changed:
                self._sessions[snap.session_id] = updated
                changes.append(transition)

        return changes

    def _snapshot_may_set(
        self, current: Session, reported: ConnectionState, now: float
    ) -> bool:
        """Rank rule for a snapshot state that differs from the current one."""
        if current.last_realtime_at is None:
            return True
        if now - current.last_realtime_at >= self._grace_window:
            return True
        # Inside the window a snapshot may only carry the pairing handshake
        # forward. disconnected and error were reported by realtime after
        # anything the snapshot could reflect, so they hold until it expires.
        if current.state in _REALTIME_HELD:
            return False
        return rank(reported) > rank(current.state)

    @staticmethod
    def _snapshot_reason(snap: SessionSnapshot, current: Session | None) -> str | None:
        if snap.state != ConnectionState.ERROR:
            return None
        if snap.error_reason:
            return snap.error_reason
        if current is not None and current.error_reason:
            return current.error_reason
        return "reported by poll snapshot"

    # ─── Contacts ─────────────────────────────────────────────────

    def set_contacts(self, session_id: str, contacts: Iterable[Contact]) -> bool:
        """Replace the session's contact list. Returns True if it changed."""
        fresh = {c.contact_id: c for c in contacts}
        known = self._contacts.get(session_id, {})
        # Keep implicitly discovered counterparts the collaborator doesn't list
        merged = {**known, **fresh}
        if merged == known:
            return False
        self._contacts[session_id] = merged
        return True

    def discover_contact(self, session_id: str, contact_id: str) -> Contact | None:
        """Record a counterparty seen in a message. Returns it if new."""
        if not contact_id:
            return None
        known = self._contacts.setdefault(session_id, {})
        if contact_id in known:
            return None
        contact = Contact(contact_id=contact_id, display_name=contact_id)
        known[contact_id] = contact
        return contact

    # ─── Deletion / teardown ──────────────────────────────────────

    def remove(self, session_id: str) -> Session | None:
        """Delete a session and purge its data from the other components."""
        session = self._sessions.pop(session_id, None)
        self._contacts.pop(session_id, None)
        for hook in self._on_remove:
            hook(session_id)
        if session is not None:
            logger.info("Session removed: %s", session_id, extra={"session_id": session_id})
        return session

    def clear(self) -> None:
        """Forget everything. The next start begins from an empty registry."""
        self._sessions.clear()
        self._contacts.clear()

"""
Conversation Store — per-session ordered message logs with de-duplication.

Each session's log is kept sorted by (timestamp, sequence) and is unique
by message_id. Copies of the same logical message can arrive from three
places (optimistic local send, realtime channel, history fetch) in any
order; they are merged into one entry rather than appended twice.

Merge rules on append():
1. Same message_id as an existing entry → merge into it.
2. Same (direction, counterparty, body) within the timestamp tolerance,
   where either side has a surrogate id → merge. A pending or surrogate
   entry adopts the authoritative copy's id and timestamp in place.
3. Otherwise → append.

Merging never lowers delivery status.
"""

from __future__ import annotations

import bisect
import itertools
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterable, Iterator

from linkstate.conversation.models import (
    STATUS_RANK,
    DeliveryStatus,
    Message,
)
from linkstate.core.metrics import metrics

logger = logging.getLogger(__name__)


class AppendOutcome(str, Enum):
    ADDED = "added"
    REPLACED = "replaced"  # entry adopted a new (authoritative) id
    MERGED = "merged"  # same id, fields updated
    ABSORBED = "absorbed"  # entry folded into another that already had its new id
    UNCHANGED = "unchanged"  # duplicate, nothing new


@dataclass(frozen=True)
class AppendResult:
    outcome: AppendOutcome
    message: Message
    previous_id: str | None = None

    @property
    def changed(self) -> bool:
        return self.outcome != AppendOutcome.UNCHANGED


class ConversationView:
    """Lazy, finite, restartable view over one session's log.

    The log is looked up each time iteration starts, so a view taken
    before the first message (or before a purge) still sees later ones.
    """

    def __init__(
        self, store: "ConversationStore", session_id: str, contact_id: str | None = None
    ) -> None:
        self._store = store
        self._session_id = session_id
        self._contact_id = contact_id

    def __iter__(self) -> Iterator[Message]:
        log = self._store._logs.get(self._session_id)
        if log is None:
            return
        for message in tuple(log.entries):
            if self._contact_id is None or message.counterparty_id == self._contact_id:
                yield message


class _SessionLog:
    """One session's entries plus lookup indexes."""

    def __init__(self) -> None:
        self.entries: list[Message] = []
        self.by_id: dict[str, Message] = {}
        self.by_content: dict[tuple[str, str, str], list[str]] = {}

    def insert(self, message: Message) -> None:
        keys = [m.sort_key for m in self.entries]
        self.entries.insert(bisect.bisect_right(keys, message.sort_key), message)
        self.by_id[message.message_id] = message
        self.by_content.setdefault(message.content_key, []).append(message.message_id)

    def discard(self, message: Message) -> None:
        self.entries.remove(message)
        del self.by_id[message.message_id]
        ids = self.by_content.get(message.content_key, [])
        if message.message_id in ids:
            ids.remove(message.message_id)


class ConversationStore:
    """All sessions' message logs. Written only by the ReconciliationEngine."""

    def __init__(self, granularity: float = 1.0, tolerance: float = 2.0) -> None:
        self._granularity = granularity
        self._tolerance = tolerance
        self._logs: dict[str, _SessionLog] = {}
        self._sequence = itertools.count(1)

    def dedup_key(self, message: Message) -> tuple:
        """Content key with the timestamp bucketed to the channel granularity."""
        bucket = int(message.timestamp // self._granularity) if self._granularity else message.timestamp
        return (message.session_id, *message.content_key, bucket)

    # ─── Reads ────────────────────────────────────────────────────

    def list(self, session_id: str, contact_id: str | None = None) -> ConversationView:
        return ConversationView(self, session_id, contact_id)

    def get(self, session_id: str, message_id: str) -> Message | None:
        log = self._logs.get(session_id)
        return log.by_id.get(message_id) if log else None

    def count(self, session_id: str) -> int:
        log = self._logs.get(session_id)
        return len(log.entries) if log else 0

    # ─── Writes ───────────────────────────────────────────────────

    def append(self, session_id: str, message: Message) -> AppendResult:
        """Add a message, merging it into an existing copy when there is one."""
        log = self._logs.setdefault(session_id, _SessionLog())
        if message.session_id != session_id:
            message = replace(message, session_id=session_id)

        existing = log.by_id.get(message.message_id)
        if existing is None:
            existing = self._find_copy(log, message)
        if existing is not None:
            return self._merge(log, existing, message)

        stored = replace(message, sequence=next(self._sequence))
        log.insert(stored)
        return AppendResult(AppendOutcome.ADDED, stored)

    def replace_all(self, session_id: str, messages: Iterable[Message]) -> list[AppendResult]:
        """Bulk load a history fetch.

        Entries are merged one by one with the append rules, so optimistic
        and realtime entries the history does not (yet) contain survive.
        """
        results = [
            self.append(session_id, m)
            for m in sorted(messages, key=lambda m: m.timestamp)
        ]
        added = sum(1 for r in results if r.outcome == AppendOutcome.ADDED)
        logger.debug(
            "History for %s: %d messages, %d new",
            session_id,
            len(results),
            added,
            extra={"session_id": session_id},
        )
        return results

    def confirm(self, session_id: str, local_id: str, server_id: str | None) -> AppendResult | None:
        """Settle an optimistic send with the id the API returned for it.

        If a channel copy already holds server_id (its echo landed outside
        the dedup tolerance), the local entry is folded into that copy and
        dropped, keeping ids unique.
        """
        log = self._logs.get(session_id)
        entry = log.by_id.get(local_id) if log else None
        if entry is None:
            return None
        if not server_id:
            return self._merge(log, entry, replace(entry, pending=False))

        confirmed = replace(entry, message_id=server_id, surrogate=False, pending=False)
        echo = log.by_id.get(server_id)
        if echo is None or echo is entry:
            return self._merge(log, entry, confirmed)

        log.discard(entry)
        merged = self._merge(log, echo, confirmed)
        metrics.inc("conversation.absorbed")
        return AppendResult(AppendOutcome.ABSORBED, merged.message, previous_id=local_id)

    def mark_failed(self, session_id: str, message_id: str) -> Message | None:
        """Flag an optimistic send whose command failed. No-op once confirmed."""
        log = self._logs.get(session_id)
        entry = log.by_id.get(message_id) if log else None
        if entry is None or not entry.pending:
            return None
        failed = replace(entry, delivery_status=DeliveryStatus.FAILED, pending=False)
        log.discard(entry)
        log.insert(failed)
        return failed

    def purge(self, session_id: str) -> None:
        self._logs.pop(session_id, None)

    def clear(self) -> None:
        self._logs.clear()

    # ─── Internal ─────────────────────────────────────────────────

    def _find_copy(self, log: _SessionLog, message: Message) -> Message | None:
        """Nearest same-content entry that may be another copy of `message`."""
        best: Message | None = None
        key = self.dedup_key(message)
        for message_id in log.by_content.get(message.content_key, ()):
            candidate = log.by_id[message_id]
            # Two distinct server ids are two distinct messages
            if not (candidate.surrogate or message.surrogate):
                continue
            skew = abs(candidate.timestamp - message.timestamp)
            if skew > self._tolerance and self.dedup_key(candidate) != key:
                continue
            if best is None or skew < abs(best.timestamp - message.timestamp):
                best = candidate
        return best

    def _merge(self, log: _SessionLog, existing: Message, incoming: Message) -> AppendResult:
        status = max(
            existing.delivery_status,
            incoming.delivery_status,
            key=lambda s: STATUS_RANK[s],
        )
        merged = replace(existing, delivery_status=status)

        if (existing.surrogate or existing.pending) and not incoming.surrogate:
            merged = replace(
                merged,
                message_id=incoming.message_id,
                timestamp=incoming.timestamp,
                surrogate=False,
                pending=False,
            )
        elif existing.pending and not incoming.pending:
            # A channel copy without an id still confirms the send
            merged = replace(merged, timestamp=incoming.timestamp, pending=False)

        if merged == existing:
            metrics.inc("conversation.duplicates")
            return AppendResult(AppendOutcome.UNCHANGED, existing)

        # Same sequence keeps the entry's place among equal timestamps
        log.discard(existing)
        log.insert(merged)
        metrics.inc("conversation.merges")
        if merged.message_id != existing.message_id:
            return AppendResult(AppendOutcome.REPLACED, merged, previous_id=existing.message_id)
        return AppendResult(AppendOutcome.MERGED, merged)

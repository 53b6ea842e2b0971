"""
Pairing Artifact Manager — one live pairing artifact per session.

Lifecycle:
    issue(raw) → pending (raw payload only)
    attach_encoded() → ready to show (encoded artifact attached)
    consume() on successful connection / clear() on any other exit

A new raw payload supersedes the old one, which is discarded (not
queued). There is no expiry timer here: the collaborator signals expiry
by issuing a fresh payload or by an error event.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Callable, Protocol

from linkstate.errors import StaleArtifact

logger = logging.getLogger(__name__)


class ArtifactEncoder(Protocol):
    """Turns a raw pairing payload into a displayable artifact (e.g. a QR image).

    Raises EncodingFailure when the payload cannot be rendered.
    """

    async def encode(self, raw_payload: str) -> str: ...


@dataclass(frozen=True)
class PairingArtifact:
    """The one-shot code a user presents on another device."""

    session_id: str
    raw_payload: str
    issued_at: float
    encoded_artifact: str | None = None
    consumed_at: float | None = None
    expired_at: float | None = None

    @property
    def is_encoded(self) -> bool:
        return self.encoded_artifact is not None

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "raw_payload": self.raw_payload,
            "encoded_artifact": self.encoded_artifact,
            "issued_at": self.issued_at,
            "consumed_at": self.consumed_at,
            "expired_at": self.expired_at,
        }


class PairingArtifactManager:
    """Owns the live pairing artifact of each session in pairing-wait."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._live: dict[str, PairingArtifact] = {}

    def get(self, session_id: str) -> PairingArtifact | None:
        return self._live.get(session_id)

    def issue(self, session_id: str, raw_payload: str) -> PairingArtifact:
        """Store a fresh raw payload, discarding any prior artifact.

        Re-issuing the payload that is already live is a duplicate
        delivery and returns the existing artifact unchanged.
        """
        current = self._live.get(session_id)
        if current is not None and current.raw_payload == raw_payload:
            return current

        if current is not None:
            logger.debug(
                "Pairing payload superseded for %s",
                session_id,
                extra={"session_id": session_id},
            )
        artifact = PairingArtifact(
            session_id=session_id,
            raw_payload=raw_payload,
            issued_at=self._clock(),
        )
        self._live[session_id] = artifact
        return artifact

    def attach_encoded(
        self, session_id: str, encoded_artifact: str, raw_payload: str
    ) -> PairingArtifact:
        """Attach the encoder's output to the artifact it was made from.

        Raises StaleArtifact if raw_payload is no longer the live payload
        (superseded, or the session has left pairing-wait).
        """
        current = self._live.get(session_id)
        if current is None or current.raw_payload != raw_payload:
            raise StaleArtifact(session_id, raw_payload)
        updated = replace(current, encoded_artifact=encoded_artifact)
        self._live[session_id] = updated
        return updated

    def consume(self, session_id: str) -> PairingArtifact | None:
        """Retire the artifact after a successful pairing."""
        artifact = self._live.pop(session_id, None)
        if artifact is None:
            return None
        return replace(artifact, consumed_at=self._clock())

    def clear(self, session_id: str) -> PairingArtifact | None:
        """Retire the artifact because the session left pairing-wait otherwise."""
        artifact = self._live.pop(session_id, None)
        if artifact is None:
            return None
        return replace(artifact, expired_at=self._clock())

    def clear_all(self) -> int:
        """Release every pending artifact (teardown). Returns how many."""
        count = len(self._live)
        self._live.clear()
        return count

    def __len__(self) -> int:
        return len(self._live)

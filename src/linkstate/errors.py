"""
Error taxonomy.

Every failure the core can observe is either representable as session
state or reported to the presentation layer as a discrete failure delta.
None of these are fatal to the process.
"""

from __future__ import annotations


class LinkstateError(Exception):
    """Base class for all linkstate errors."""


class StaleArtifact(LinkstateError):
    """An artifact operation referenced a superseded or cleared payload."""

    def __init__(self, session_id: str, raw_payload: str | None = None):
        self.session_id = session_id
        self.raw_payload = raw_payload
        super().__init__(f"Stale pairing artifact for session {session_id}")


class EncodingFailure(LinkstateError):
    """The encoder collaborator could not render a pairing payload."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class CommandFailed(LinkstateError):
    """A command forwarded to the API collaborator did not succeed."""

    def __init__(self, command: str, reason: str, session_id: str | None = None):
        self.command = command
        self.reason = reason
        self.session_id = session_id
        super().__init__(f"{command} failed: {reason}")


class MalformedUpdate(LinkstateError):
    """An inbound frame or snapshot entry could not be decoded."""

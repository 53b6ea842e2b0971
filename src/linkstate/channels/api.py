"""SessionApiClient — thin async wrapper around the collaborator's REST API.

Serves both the poll channel (fetch_sessions) and the commands the
presentation layer issues. Every HTTP or transport failure surfaces as
CommandFailed; deciding what a failure means is the engine's job.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

import linkstate.core.config as config_module
from linkstate.channels.codec import decode_contact, decode_snapshot
from linkstate.contracts import SnapshotUpdate
from linkstate.conversation.models import Message
from linkstate.core.metrics import metrics
from linkstate.errors import CommandFailed, MalformedUpdate
from linkstate.sessions.models import Contact

logger = logging.getLogger(__name__)


class SessionApiClient:
    """Async client for /api/sessions, /api/messages and /api/contacts."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        channels = config_module.config.channels
        self._base = (base_url or channels.api_url).rstrip("/")
        self._timeout = timeout if timeout is not None else channels.request_timeout
        self._transport = transport
        self.client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        if self.client:
            return  # Already started
        self.client = httpx.AsyncClient(
            base_url=self._base,
            timeout=httpx.Timeout(self._timeout),
            headers={"Content-Type": "application/json"},
            transport=self._transport,
        )
        logger.info("API client ready (base=%s)", self._base)

    async def stop(self) -> None:
        if self.client:
            await self.client.aclose()
            self.client = None

    # ─── Poll ─────────────────────────────────────────────────────

    async def fetch_sessions(self) -> SnapshotUpdate:
        """Full snapshot of every session the collaborator knows."""
        body = await self._request("GET", "/api/sessions", "fetch_sessions")
        try:
            return decode_snapshot(body, fetched_at=time.time())
        except MalformedUpdate as e:
            raise CommandFailed("fetch_sessions", str(e))

    # ─── Commands ─────────────────────────────────────────────────

    async def create_session(self, name: str) -> dict[str, Any]:
        body = await self._request(
            "POST", "/api/sessions", "create_session", json={"name": name}
        )
        return body.get("session", body) if isinstance(body, dict) else {}

    async def connect(self, session_id: str) -> None:
        await self._request(
            "POST", f"/api/sessions/{session_id}/connect", "connect_session", session_id
        )

    async def disconnect(self, session_id: str) -> None:
        await self._request(
            "POST",
            f"/api/sessions/{session_id}/disconnect",
            "disconnect_session",
            session_id,
        )

    async def delete(self, session_id: str) -> None:
        await self._request(
            "DELETE", f"/api/sessions/{session_id}", "delete_session", session_id
        )

    async def send_message(self, session_id: str, to: str, body: str) -> str | None:
        """Send a text message. Returns the server message id when the API gives one."""
        resp = await self._request(
            "POST",
            "/api/messages/send",
            "send_message",
            session_id,
            json={"sessionId": session_id, "to": to, "message": body},
        )
        if not isinstance(resp, dict):
            return None
        message = resp.get("message") if isinstance(resp.get("message"), dict) else resp
        server_id = message.get("messageId") or message.get("message_id") or message.get("id")
        return str(server_id) if server_id else None

    async def fetch_contacts(self, session_id: str) -> list[Contact]:
        body = await self._request(
            "GET", f"/api/contacts/{session_id}", "fetch_contacts", session_id
        )
        entries = (body.get("contacts") if isinstance(body, dict) else body) or []
        contacts: list[Contact] = []
        for entry in entries:
            try:
                contacts.append(decode_contact(entry))
            except (MalformedUpdate, AttributeError) as e:
                logger.warning("Skipping malformed contact for %s: %s", session_id, e)
        return contacts

    async def fetch_messages(self, session_id: str) -> list[Message]:
        body = await self._request(
            "GET", f"/api/messages/{session_id}", "fetch_history", session_id
        )
        entries = (body.get("messages") if isinstance(body, dict) else body) or []
        messages: list[Message] = []
        for entry in entries:
            try:
                messages.append(Message.from_wire(session_id, entry))
            except (MalformedUpdate, AttributeError) as e:
                logger.warning("Skipping malformed message for %s: %s", session_id, e)
        return messages

    # ─── Internal ─────────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        command: str,
        session_id: str | None = None,
        **kwargs: Any,
    ) -> Any:
        if not self.client:
            raise RuntimeError("SessionApiClient not started")

        try:
            with metrics.timer("api.latency_ms", labels={"command": command}):
                resp = await self.client.request(method, path, **kwargs)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            metrics.inc("api.requests.failed", labels={"command": command})
            raise CommandFailed(
                command, f"HTTP {e.response.status_code}", session_id
            ) from e
        except httpx.HTTPError as e:
            metrics.inc("api.requests.failed", labels={"command": command})
            raise CommandFailed(command, str(e) or type(e).__name__, session_id) from e

        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            return {}

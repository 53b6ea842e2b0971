"""
Reconciliation Engine — the single writer of all session state.

Both update sources (realtime events, poll snapshots) and every command
acknowledgement feed one inbound asyncio.Queue. One consumer task takes
updates off it and applies each one to completion with plain synchronous
code, so no two handlers ever interleave and readers only ever see
settled state between updates.

Per update the engine decides which stores change:
- SessionEvent    → SessionRegistry (state machine), PairingArtifactManager,
                    ConversationStore (messages)
- SnapshotUpdate  → SessionRegistry (rank rule)
- CommandResult   → whichever store the command's effect lands in
- EncoderResult   → PairingArtifactManager
- ChannelStatus   → reported; a reconnect triggers a fresh poll

Every accepted change is published on the EventBus as a StateDelta.

Commands are fire-and-forget: each one runs as a background task against
the API collaborator and reports back through the inbound queue. There
is no command timeout; a command that never produces an event leaves
the session in its last known state.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import replace
from typing import Any, Awaitable, Callable

import linkstate.core.config as config_module
from linkstate.channels.api import SessionApiClient
from linkstate.channels.base import Channel
from linkstate.channels.poller import SnapshotPoller
from linkstate.contracts import (
    ChannelStatus,
    CommandKind,
    CommandResult,
    DeltaKind,
    EncoderResult,
    FailureKind,
    OutboundMessage,
    SessionEvent,
    SnapshotUpdate,
    StateDelta,
    Update,
)
from linkstate.conversation.models import Message
from linkstate.conversation.store import AppendOutcome, AppendResult, ConversationStore
from linkstate.core.metrics import metrics
from linkstate.engine.event_bus import EventBus
from linkstate.errors import (
    CommandFailed,
    EncodingFailure,
    MalformedUpdate,
    StaleArtifact,
)
from linkstate.pairing.manager import ArtifactEncoder, PairingArtifact, PairingArtifactManager
from linkstate.sessions.models import ConnectionState, Contact, Session
from linkstate.sessions.registry import SessionRegistry, Transition
from linkstate.sessions.state import EventKind

logger = logging.getLogger(__name__)


class ReconciliationEngine:
    """
    Merges realtime events and poll snapshots into one per-session view.

    Reads (sessions(), messages(), artifact(), contacts()) are safe at any
    time from the same event loop. Writes happen only inside apply().
    """

    def __init__(
        self,
        api: SessionApiClient | None = None,
        encoder: ArtifactEncoder | None = None,
        *,
        bus: EventBus | None = None,
        clock: Callable[[], float] = time.monotonic,
        grace_window: float | None = None,
        history_on_connect: bool | None = None,
    ) -> None:
        cfg = config_module.config
        self._api = api
        self._encoder = encoder
        self._history_on_connect = (
            cfg.engine.history_on_connect
            if history_on_connect is None
            else history_on_connect
        )

        self.bus = bus or EventBus()
        self.pairing = PairingArtifactManager()
        self.conversations = ConversationStore(
            granularity=cfg.engine.timestamp_granularity,
            tolerance=cfg.engine.dedup_tolerance,
        )
        self.registry = SessionRegistry(
            grace_window=grace_window if grace_window is not None else cfg.grace_window,
            clock=clock,
            on_remove=[self.pairing.clear, self.conversations.purge],
        )

        self._inbound: asyncio.Queue[Update] = asyncio.Queue(
            maxsize=cfg.engine.inbound_queue_limit
        )
        self._channels: dict[str, Channel] = {}
        self._tasks: set[asyncio.Task] = set()
        self._consumer: asyncio.Task | None = None
        self._sequence = itertools.count(1)
        self._channel_down = False
        self._running = False

    # ─── Lifecycle ────────────────────────────────────────────────

    def register_channel(self, channel: Channel) -> None:
        """Attach an update source. Its updates go through submit()."""
        if channel.name in self._channels:
            logger.warning("Channel %s already registered, replacing", channel.name)
        channel.on_update(self.submit)
        self._channels[channel.name] = channel

    async def start(self) -> None:
        """Start the consumer first, then the API client and channels."""
        if self._running:
            return
        self._running = True
        self._consumer = asyncio.create_task(self._consume(), name="linkstate-engine")
        if self._api is not None:
            await self._api.start()
        for name, channel in self._channels.items():
            try:
                await channel.start()
            except Exception as e:
                logger.error("Failed to start channel %s: %s", name, e, exc_info=True)
        logger.info("Engine started (channels=%s)", list(self._channels))

    async def stop(self) -> None:
        """Tear down: stop both channels, cancel commands, drop all state."""
        self._running = False
        for name, channel in self._channels.items():
            try:
                await channel.stop()
            except Exception as e:
                logger.error("Error stopping channel %s: %s", name, e)

        pending = [t for t in (self._consumer, *self._tasks) if t and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._consumer = None
        self._tasks.clear()

        while not self._inbound.empty():
            self._inbound.get_nowait()

        released = self.pairing.clear_all()
        self.registry.clear()
        self.conversations.clear()
        self.bus.close()
        if self._api is not None:
            await self._api.stop()
        logger.info("Engine stopped (released %d pending artifacts)", released)

    # ─── Inbound ──────────────────────────────────────────────────

    def submit(self, update: Update) -> bool:
        """Queue an update for the consumer. Never blocks the producer."""
        try:
            self._inbound.put_nowait(update)
        except asyncio.QueueFull:
            metrics.inc("engine.inbound.dropped")
            logger.warning("Inbound queue full, dropping %s", type(update).__name__)
            return False
        metrics.gauge_set("engine.inbound.depth", self._inbound.qsize())
        return True

    async def _consume(self) -> None:
        while True:
            update = await self._inbound.get()
            self.apply(update)

    def apply(self, update: Update) -> list[StateDelta]:
        """Apply one update to completion and publish its deltas.

        A failure while handling one update is logged and does not stop
        the engine; other sessions' updates keep flowing.
        """
        kind = type(update).__name__
        try:
            if isinstance(update, SessionEvent):
                deltas = self._on_session_event(update)
            elif isinstance(update, SnapshotUpdate):
                deltas = self._on_snapshot(update)
            elif isinstance(update, CommandResult):
                deltas = self._on_command_result(update)
            elif isinstance(update, EncoderResult):
                deltas = self._on_encoder_result(update)
            elif isinstance(update, OutboundMessage):
                deltas = self._on_outbound(update)
            elif isinstance(update, ChannelStatus):
                deltas = self._on_channel_status(update)
            else:
                logger.warning("Unknown update type: %s", kind)
                return []
        except Exception as e:
            metrics.inc("engine.updates.failed", labels={"kind": kind})
            logger.error("Error applying %s: %s", kind, e, exc_info=True)
            return []

        metrics.inc("engine.updates.applied", labels={"kind": kind})
        return self._publish(deltas)

    def _publish(self, deltas: list[StateDelta]) -> list[StateDelta]:
        published = []
        for delta in deltas:
            delta = replace(delta, sequence=next(self._sequence))
            self.bus.publish_delta(delta)
            published.append(delta)
        return published

    # ─── Session events ───────────────────────────────────────────

    def _on_session_event(self, event: SessionEvent) -> list[StateDelta]:
        if event.kind == EventKind.MESSAGE:
            return self._on_message(event)

        transition = self.registry.apply_event(event)
        deltas = self._session_deltas(transition)
        if not transition.accepted:
            return deltas

        session_id = event.session_id
        if event.kind == EventKind.PAIRING_PAYLOAD:
            previous = self.pairing.get(session_id)
            artifact = self.pairing.issue(session_id, event.payload["raw_payload"])
            if artifact is not previous:
                deltas.append(self._artifact_delta(DeltaKind.ARTIFACT_ISSUED, artifact))
                self._encode(artifact)
        elif event.kind == EventKind.CONNECTION_ERROR:
            reason = transition.after.error_reason or "unknown error"
            logger.warning(
                "Session %s error: %s", session_id, reason,
                extra={"session_id": session_id, "state": "error"},
            )
            deltas.append(
                StateDelta.failure(FailureKind.CONNECTION_ERROR, session_id, reason)
            )
        return deltas

    def _on_message(self, event: SessionEvent) -> list[StateDelta]:
        seen = self.registry.ensure(event.session_id)
        deltas = self._session_deltas(seen)
        try:
            message = Message.from_wire(event.session_id, event.payload, now=time.time())
        except MalformedUpdate as e:
            logger.warning("Dropping message for %s: %s", event.session_id, e)
            return deltas
        result = self.conversations.append(event.session_id, message)
        deltas.extend(self._message_deltas(event.session_id, [result]))
        return deltas

    # ─── Snapshots ────────────────────────────────────────────────

    def _on_snapshot(self, update: SnapshotUpdate) -> list[StateDelta]:
        deltas: list[StateDelta] = []
        for transition in self.registry.upsert_from_snapshot(update.sessions):
            deltas.extend(self._session_deltas(transition))
        return deltas

    # ─── Shared session bookkeeping ───────────────────────────────

    def _session_deltas(self, transition: Transition) -> list[StateDelta]:
        """Deltas for a registry change, plus its knock-on effects.

        Leaving pairing-wait retires the live artifact (consumed when the
        handshake went ahead, expired otherwise), and
        entering connected optionally pulls the session's history.
        """
        if not transition.changed:
            return []
        session = transition.after
        deltas = [
            StateDelta(DeltaKind.SESSION_UPDATED, session.session_id, session.to_dict())
        ]
        if not transition.state_changed:
            return deltas

        if session.state != ConnectionState.PAIRING_WAIT:
            if session.state in (ConnectionState.AUTHENTICATING, ConnectionState.CONNECTED):
                retired = self.pairing.consume(session.session_id)
            else:
                retired = self.pairing.clear(session.session_id)
            if retired is not None:
                deltas.append(self._artifact_delta(DeltaKind.ARTIFACT_CLEARED, retired))

        if (
            session.state == ConnectionState.CONNECTED
            and self._history_on_connect
            and self._api is not None
        ):
            self.fetch_history(session.session_id)
        return deltas

    @staticmethod
    def _artifact_delta(kind: DeltaKind, artifact: PairingArtifact) -> StateDelta:
        return StateDelta(kind, artifact.session_id, artifact.to_dict())

    def _message_deltas(
        self, session_id: str, results: list[AppendResult]
    ) -> list[StateDelta]:
        deltas: list[StateDelta] = []
        for result in results:
            if result.outcome == AppendOutcome.UNCHANGED:
                continue
            kind = (
                DeltaKind.MESSAGE_ADDED
                if result.outcome == AppendOutcome.ADDED
                else DeltaKind.MESSAGE_UPDATED
            )
            payload = result.message.to_dict()
            if result.previous_id:
                # The entry under previous_id is gone; this message stands in for it
                payload["previous_id"] = result.previous_id
            deltas.append(StateDelta(kind, session_id, payload))

            contact = self.registry.discover_contact(
                session_id, result.message.counterparty_id
            )
            if contact is not None:
                deltas.append(self._contacts_delta(session_id))
        return deltas

    def _contacts_delta(self, session_id: str) -> StateDelta:
        return StateDelta(
            DeltaKind.CONTACTS_UPDATED,
            session_id,
            {"contacts": [c.contact_id for c in self.registry.contacts(session_id)]},
        )

    # ─── Pairing artifact encoding ────────────────────────────────

    def _encode(self, artifact: PairingArtifact) -> None:
        if self._encoder is None:
            return
        encoder = self._encoder

        async def run() -> None:
            try:
                encoded = await encoder.encode(artifact.raw_payload)
            except EncodingFailure as e:
                self.submit(
                    EncoderResult(artifact.session_id, artifact.raw_payload, error=e.reason)
                )
                return
            except Exception as e:
                logger.error(
                    "Encoder crashed for %s: %s", artifact.session_id, e, exc_info=True,
                    extra={"session_id": artifact.session_id},
                )
                self.submit(
                    EncoderResult(
                        artifact.session_id,
                        artifact.raw_payload,
                        error=str(e) or type(e).__name__,
                    )
                )
                return
            self.submit(EncoderResult(artifact.session_id, artifact.raw_payload, encoded))

        self._track(asyncio.create_task(run(), name="linkstate-encode"))

    def _on_encoder_result(self, result: EncoderResult) -> list[StateDelta]:
        session_id = result.session_id
        if result.error is None:
            try:
                artifact = self.pairing.attach_encoded(
                    session_id, result.encoded or "", result.raw_payload
                )
            except StaleArtifact:
                metrics.inc("pairing.stale")
                logger.info(
                    "Discarding encoded artifact for superseded payload (%s)",
                    session_id,
                    extra={"session_id": session_id},
                )
                return []
            return [self._artifact_delta(DeltaKind.ARTIFACT_ENCODED, artifact)]

        live = self.pairing.get(session_id)
        if live is None or live.raw_payload != result.raw_payload:
            metrics.inc("pairing.stale")
            logger.info("Ignoring encoding failure for superseded payload (%s)", session_id)
            return []
        logger.warning("Pairing artifact encoding failed for %s: %s", session_id, result.error)
        return [
            StateDelta.failure(FailureKind.ENCODING_FAILURE, session_id, result.error or "")
        ]

    # ─── Channel status ───────────────────────────────────────────

    def _on_channel_status(self, status: ChannelStatus) -> list[StateDelta]:
        if status.connected:
            if self._channel_down:
                self._channel_down = False
                logger.info("%s channel back, requesting snapshot", status.channel)
                self._request_poll()
            return []
        self._channel_down = True
        return [
            StateDelta.failure(
                FailureKind.CHANNEL_DISRUPTION,
                None,
                status.reason or "connection lost",
                channel=status.channel,
            )
        ]

    def _request_poll(self) -> None:
        poller = self._channels.get(SnapshotPoller.name)
        if isinstance(poller, SnapshotPoller):
            poller.poll_now()

    # ─── Commands ─────────────────────────────────────────────────

    def create_session(self, name: str) -> None:
        self._command(
            CommandKind.CREATE,
            None,
            lambda api: api.create_session(name),
            lambda session: {"session": session},
        )

    def connect_session(self, session_id: str) -> None:
        self._command(CommandKind.CONNECT, session_id, lambda api: api.connect(session_id))

    def disconnect_session(self, session_id: str) -> None:
        self._command(
            CommandKind.DISCONNECT, session_id, lambda api: api.disconnect(session_id)
        )

    def delete_session(self, session_id: str) -> None:
        self._command(CommandKind.DELETE, session_id, lambda api: api.delete(session_id))

    def send_message(self, session_id: str, counterparty_id: str, body: str) -> str | None:
        """Log an optimistic copy now and send it. Returns its local id.

        Returns None without sending when the inbound queue is full, so a
        send never goes out without its local entry.
        """
        message = Message.local(session_id, counterparty_id, body, timestamp=time.time())
        if not self.submit(OutboundMessage(message)):
            logger.warning(
                "Not sending to %s for %s: inbound queue full", counterparty_id, session_id,
                extra={"command": CommandKind.SEND.value, "session_id": session_id},
            )
            return None
        self._command(
            CommandKind.SEND,
            session_id,
            lambda api: api.send_message(session_id, counterparty_id, body),
            lambda server_id: {"message_id": server_id},
            local_id=message.message_id,
        )
        return message.message_id

    def fetch_contacts(self, session_id: str) -> None:
        self._command(
            CommandKind.FETCH_CONTACTS,
            session_id,
            lambda api: api.fetch_contacts(session_id),
            lambda contacts: {"contacts": contacts},
        )

    def fetch_history(self, session_id: str) -> None:
        self._command(
            CommandKind.FETCH_HISTORY,
            session_id,
            lambda api: api.fetch_messages(session_id),
            lambda messages: {"messages": messages},
        )

    def _command(
        self,
        command: CommandKind,
        session_id: str | None,
        call: Callable[[SessionApiClient], Awaitable[Any]],
        on_ok: Callable[[Any], dict[str, Any]] | None = None,
        **context: Any,
    ) -> None:
        """Run a command in the background and feed its outcome back in."""
        if self._api is None:
            raise RuntimeError("No API client configured")
        api = self._api

        async def run() -> None:
            try:
                result = await call(api)
            except CommandFailed as e:
                metrics.inc("engine.commands.failed", labels={"command": command.value})
                self.submit(CommandResult(command, session_id, context, error=e.reason))
                return
            except Exception as e:
                logger.error(
                    "Command %s crashed: %s", command.value, e, exc_info=True,
                    extra={"command": command.value, "session_id": session_id},
                )
                metrics.inc("engine.commands.failed", labels={"command": command.value})
                self.submit(
                    CommandResult(command, session_id, context, error=str(e) or type(e).__name__)
                )
                return
            payload = {**context, **(on_ok(result) if on_ok else {})}
            self.submit(CommandResult(command, session_id, payload))

        logger.debug(
            "Command %s (%s)", command.value, session_id,
            extra={"command": command.value, "session_id": session_id},
        )
        self._track(asyncio.create_task(run(), name=f"linkstate-{command.value}"))

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_outbound(self, update: OutboundMessage) -> list[StateDelta]:
        message = update.message
        seen = self.registry.ensure(message.session_id)
        deltas = self._session_deltas(seen)
        result = self.conversations.append(message.session_id, message)
        deltas.extend(self._message_deltas(message.session_id, [result]))
        return deltas

    def _on_command_result(self, result: CommandResult) -> list[StateDelta]:
        session_id = result.session_id
        command = result.command

        if not result.ok:
            logger.warning(
                "Command %s failed for %s: %s", command.value, session_id, result.error,
                extra={"command": command.value, "session_id": session_id},
            )
            deltas: list[StateDelta] = []
            if command == CommandKind.SEND and session_id:
                failed = self.conversations.mark_failed(session_id, result.payload["local_id"])
                if failed is not None:
                    deltas.append(
                        StateDelta(DeltaKind.MESSAGE_UPDATED, session_id, failed.to_dict())
                    )
            deltas.append(
                StateDelta.failure(
                    FailureKind.COMMAND_FAILED,
                    session_id,
                    result.error or "",
                    command=command.value,
                )
            )
            return deltas

        if command in (CommandKind.CREATE, CommandKind.DISCONNECT):
            # Effect shows up in the next snapshot / realtime event
            self._request_poll()
            return []

        if session_id is None:
            return []

        if command == CommandKind.CONNECT:
            return self._on_session_event(SessionEvent.connect_ack(session_id))

        if command == CommandKind.DELETE:
            removed = self.registry.remove(session_id)
            if removed is None:
                return []
            return [StateDelta(DeltaKind.SESSION_REMOVED, session_id, {})]

        # Results for a session deleted meanwhile are dropped
        if session_id not in self.registry:
            logger.debug("Dropping %s result for unknown session %s", command.value, session_id)
            return []

        if command == CommandKind.SEND:
            confirmed = self.conversations.confirm(
                session_id, result.payload["local_id"], result.payload.get("message_id")
            )
            return self._message_deltas(session_id, [confirmed] if confirmed else [])

        if command == CommandKind.FETCH_CONTACTS:
            contacts: list[Contact] = result.payload.get("contacts", [])
            if not self.registry.set_contacts(session_id, contacts):
                return []
            return [self._contacts_delta(session_id)]

        if command == CommandKind.FETCH_HISTORY:
            messages: list[Message] = result.payload.get("messages", [])
            return self._message_deltas(
                session_id, self.conversations.replace_all(session_id, messages)
            )

        return []

    # ─── Reads ────────────────────────────────────────────────────

    def sessions(self) -> list[Session]:
        return self.registry.list()

    def session(self, session_id: str) -> Session | None:
        return self.registry.get(session_id)

    def artifact(self, session_id: str) -> PairingArtifact | None:
        return self.pairing.get(session_id)

    def contacts(self, session_id: str) -> list[Contact]:
        return self.registry.contacts(session_id)

    def messages(self, session_id: str, contact_id: str | None = None):
        return self.conversations.list(session_id, contact_id)

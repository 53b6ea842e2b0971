"""Tests for ReconciliationEngine — both channels, commands, teardown."""

import asyncio
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from linkstate.channels.api import SessionApiClient
from linkstate.channels.poller import SnapshotPoller
from linkstate.contracts import (
    ChannelStatus,
    CommandKind,
    CommandResult,
    DeltaKind,
    OutboundMessage,
    SessionEvent,
    SnapshotUpdate,
)
from linkstate.conversation.models import DeliveryStatus, Direction, Message
from linkstate.core.metrics import metrics
from linkstate.engine.event_bus import SESSIONS_TOPIC, session_topic
from linkstate.engine.reconciler import ReconciliationEngine
from linkstate.errors import CommandFailed, EncodingFailure
from linkstate.sessions.models import ConnectionState as S
from linkstate.sessions.models import Contact, SessionSnapshot

T0 = 1_700_000_000.0
GRACE = 10.0


class FakeEncoder:
    """Encoder whose calls can be held open per payload."""

    def __init__(self):
        self.hold = False
        self.gates: dict[str, asyncio.Event] = {}
        self.failing: set[str] = set()
        self.crashing: set[str] = set()

    def release(self, raw_payload):
        self.gates.setdefault(raw_payload, asyncio.Event()).set()

    async def encode(self, raw_payload: str) -> str:
        if self.hold:
            await self.gates.setdefault(raw_payload, asyncio.Event()).wait()
        if raw_payload in self.failing:
            raise EncodingFailure("unrenderable payload")
        if raw_payload in self.crashing:
            raise ValueError("bad qr data")
        return f"png:{raw_payload}"


class FakePoller(SnapshotPoller):
    """Poll channel that only counts poll requests."""

    def __init__(self):
        super().__init__(fetch=AsyncMock(), interval=3600)
        self.requests = 0

    async def start(self):
        self._running = True

    async def stop(self):
        self._running = False

    def poll_now(self) -> bool:
        self.requests += 1
        return True


@pytest.fixture
def api():
    api = AsyncMock(spec=SessionApiClient)
    api.fetch_messages.return_value = []
    api.fetch_contacts.return_value = []
    api.send_message.return_value = None
    api.create_session.return_value = {}
    return api


@pytest.fixture
def encoder():
    return FakeEncoder()


@pytest_asyncio.fixture
async def engine(api, encoder, clock):
    engine = ReconciliationEngine(
        api, encoder, clock=clock, grace_window=GRACE, history_on_connect=False
    )
    await engine.start()
    yield engine
    await engine.stop()


async def settle():
    """Let command tasks and the consumer run to quiescence."""
    for _ in range(10):
        await asyncio.sleep(0)


def drain(queue):
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


def kinds(deltas):
    return [d.kind for d in deltas]


def message_event(body, ts, message_id=None, direction="incoming", counterparty="+1999"):
    return SessionEvent.message(
        "s1",
        direction=direction,
        sender=counterparty if direction == "incoming" else "+1000",
        recipient="+1000" if direction == "incoming" else counterparty,
        body=body,
        timestamp=ts,
        message_id=message_id,
    )


# ─── Pairing flow ────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_pairing_through_to_connected(engine):
    queue = engine.bus.subscribe(session_topic("s1"))

    engine.submit(SessionEvent.pairing_payload("s1", "RAW"))
    await settle()
    assert engine.session("s1").state == S.PAIRING_WAIT
    assert engine.artifact("s1").encoded_artifact == "png:RAW"

    engine.submit(SessionEvent.auth_progress("s1"))
    engine.submit(SessionEvent.ready("s1", "+15550001"))
    await settle()

    session = engine.session("s1")
    assert session.state == S.CONNECTED
    assert session.phone_number == "+15550001"
    assert session.last_connected_at is not None
    assert engine.artifact("s1") is None

    deltas = drain(queue)
    assert kinds(deltas) == [
        DeltaKind.SESSION_UPDATED,
        DeltaKind.ARTIFACT_ISSUED,
        DeltaKind.ARTIFACT_ENCODED,
        DeltaKind.SESSION_UPDATED,
        DeltaKind.ARTIFACT_CLEARED,
        DeltaKind.SESSION_UPDATED,
    ]
    assert deltas[4].payload["consumed_at"] is not None
    sequences = [d.sequence for d in deltas]
    assert sequences == sorted(sequences)


@pytest.mark.asyncio
async def test_second_payload_supersedes_first_then_connects(engine):
    engine.apply(SessionEvent.pairing_payload("s1", "AB"))
    assert engine.session("s1").state == S.PAIRING_WAIT
    assert engine.artifact("s1").raw_payload == "AB"

    engine.apply(SessionEvent.pairing_payload("s1", "CD"))
    assert engine.artifact("s1").raw_payload == "CD"

    engine.apply(SessionEvent.ready("s1", "5511999"))
    assert engine.session("s1").state == S.CONNECTED
    assert engine.session("s1").phone_number == "5511999"
    assert engine.artifact("s1") is None


@pytest.mark.asyncio
async def test_superseded_payload_encoding_is_discarded(engine, encoder):
    encoder.hold = True
    engine.submit(SessionEvent.pairing_payload("s1", "RAW-1"))
    engine.submit(SessionEvent.pairing_payload("s1", "RAW-2"))
    await settle()

    encoder.release("RAW-1")
    await settle()
    assert engine.artifact("s1").raw_payload == "RAW-2"
    assert engine.artifact("s1").encoded_artifact is None
    assert metrics.counter("pairing.stale") == 1

    encoder.release("RAW-2")
    await settle()
    assert engine.artifact("s1").encoded_artifact == "png:RAW-2"


@pytest.mark.asyncio
async def test_duplicate_payload_is_encoded_once(engine):
    queue = engine.bus.subscribe(SESSIONS_TOPIC)
    engine.submit(SessionEvent.pairing_payload("s1", "RAW"))
    engine.submit(SessionEvent.pairing_payload("s1", "RAW"))
    await settle()

    deltas = drain(queue)
    assert kinds(deltas).count(DeltaKind.ARTIFACT_ISSUED) == 1
    assert kinds(deltas).count(DeltaKind.ARTIFACT_ENCODED) == 1


@pytest.mark.asyncio
async def test_encoding_failure_is_reported_without_state_change(engine, encoder):
    encoder.failing.add("BAD")
    queue = engine.bus.subscribe(SESSIONS_TOPIC)

    engine.submit(SessionEvent.pairing_payload("s1", "BAD"))
    await settle()

    failures = [d for d in drain(queue) if d.kind == DeltaKind.FAILURE]
    assert failures[0].payload["failure"] == "encoding_failure"
    assert engine.session("s1").state == S.PAIRING_WAIT
    assert engine.artifact("s1").raw_payload == "BAD"


@pytest.mark.asyncio
async def test_encoder_crash_is_reported_as_encoding_failure(engine, encoder):
    encoder.crashing.add("RAW")
    queue = engine.bus.subscribe(SESSIONS_TOPIC)

    engine.submit(SessionEvent.pairing_payload("s1", "RAW"))
    await settle()

    failures = [d for d in drain(queue) if d.kind == DeltaKind.FAILURE]
    assert failures[0].payload == {"failure": "encoding_failure", "reason": "bad qr data"}
    assert engine.session("s1").state == S.PAIRING_WAIT
    assert engine.artifact("s1").encoded_artifact is None


@pytest.mark.asyncio
async def test_error_clears_artifact_and_reports(engine):
    engine.apply(SessionEvent.pairing_payload("s1", "RAW"))

    deltas = engine.apply(SessionEvent.error("s1", "logged out"))

    assert engine.session("s1").state == S.ERROR
    assert engine.session("s1").error_reason == "logged out"
    assert engine.artifact("s1") is None
    assert DeltaKind.ARTIFACT_CLEARED in kinds(deltas)
    failure = deltas[-1]
    assert failure.payload == {"failure": "connection_error", "reason": "logged out"}


@pytest.mark.asyncio
async def test_works_without_encoder(api, clock):
    engine = ReconciliationEngine(api, clock=clock, history_on_connect=False)
    deltas = engine.apply(SessionEvent.pairing_payload("s1", "RAW"))
    assert DeltaKind.ARTIFACT_ISSUED in kinds(deltas)
    assert engine.artifact("s1").encoded_artifact is None


# ─── Channel reconciliation ──────────────────────────────────────


@pytest.mark.asyncio
async def test_stale_snapshot_does_not_regress_realtime_state(engine, clock):
    engine.apply(SessionEvent.ready("s1", "+1"))
    clock.advance(GRACE / 2)

    deltas = engine.apply(SnapshotUpdate((SessionSnapshot("s1", S.PAIRING_WAIT),)))

    assert deltas == []
    assert engine.session("s1").state == S.CONNECTED


@pytest.mark.asyncio
async def test_snapshot_repairs_drift_after_grace_window(engine, clock):
    engine.apply(SessionEvent.ready("s1", "+1"))
    clock.advance(GRACE * 2)

    engine.apply(SnapshotUpdate((SessionSnapshot("s1", S.DISCONNECTED),)))
    assert engine.session("s1").state == S.DISCONNECTED


@pytest.mark.asyncio
@pytest.mark.parametrize("snapshot_first", [True, False])
async def test_event_and_snapshot_order_independent(api, clock, snapshot_first):
    engine = ReconciliationEngine(api, clock=clock, grace_window=GRACE, history_on_connect=False)
    snapshot = SnapshotUpdate((SessionSnapshot("s1", S.PAIRING_WAIT, name="Work"),))
    event = SessionEvent.ready("s1", "+1")

    for update in ([snapshot, event] if snapshot_first else [event, snapshot]):
        engine.apply(update)

    session = engine.session("s1")
    assert session.state == S.CONNECTED
    assert session.name == "Work"
    assert session.phone_number == "+1"


PAIRED = SessionEvent.pairing_payload("s1", "RAW")
READY = SessionEvent.ready("s1", "+1")

# (realtime history, realtime event, stale snapshot state, expected final state)
CROSS_CHANNEL_CASES = {
    "lost-vs-connected": ([PAIRED, READY], SessionEvent.lost("s1"), S.CONNECTED, S.DISCONNECTED),
    "lost-vs-pairing": ([PAIRED, READY], SessionEvent.lost("s1"), S.PAIRING_WAIT, S.DISCONNECTED),
    "error-vs-connected": (
        [PAIRED, READY], SessionEvent.error("s1", "logged out"), S.CONNECTED, S.ERROR
    ),
    "error-vs-authenticating": (
        [PAIRED], SessionEvent.error("s1", "logged out"), S.AUTHENTICATING, S.ERROR
    ),
    "fresh-payload-vs-connected": (
        [PAIRED], SessionEvent.pairing_payload("s1", "ZZ"), S.CONNECTED, S.CONNECTED
    ),
    "auth-vs-connected": ([PAIRED], SessionEvent.auth_progress("s1"), S.CONNECTED, S.CONNECTED),
}


@pytest.mark.asyncio
@pytest.mark.parametrize("snapshot_first", [True, False], ids=["snapshot-first", "event-first"])
@pytest.mark.parametrize("case", list(CROSS_CHANNEL_CASES))
async def test_cross_channel_order_does_not_change_outcome(api, clock, case, snapshot_first):
    history, event, reported, expected = CROSS_CHANNEL_CASES[case]
    engine = ReconciliationEngine(api, clock=clock, grace_window=GRACE, history_on_connect=False)
    for update in history:
        engine.apply(update)
    clock.advance(1)

    snapshot = SnapshotUpdate((SessionSnapshot("s1", reported),))
    order = [snapshot, event] if snapshot_first else [event, snapshot]
    engine.apply(order[0])
    clock.advance(1)
    engine.apply(order[1])

    assert engine.session("s1").state == expected


@pytest.mark.asyncio
async def test_stale_snapshot_after_lost_publishes_nothing(engine, clock):
    engine.apply(SessionEvent.ready("s1", "+1"))
    engine.apply(SessionEvent.lost("s1"))
    clock.advance(1)

    assert engine.apply(SnapshotUpdate((SessionSnapshot("s1", S.CONNECTED),))) == []
    assert engine.session("s1").state == S.DISCONNECTED


@pytest.mark.asyncio
async def test_late_pairing_frame_does_not_regress_connected(engine):
    engine.apply(PAIRED)
    engine.apply(READY)

    assert engine.apply(SessionEvent.pairing_payload("s1", "ZZ")) == []
    assert engine.session("s1").state == S.CONNECTED
    assert engine.artifact("s1") is None


@pytest.mark.asyncio
async def test_identical_snapshot_yields_no_deltas(engine):
    snapshot = SnapshotUpdate((SessionSnapshot("s1", S.CONNECTED, phone_number="+1"),))
    assert kinds(engine.apply(snapshot)) == [DeltaKind.SESSION_UPDATED]
    assert engine.apply(snapshot) == []


@pytest.mark.asyncio
async def test_sessions_are_independent(engine):
    engine.apply(SessionEvent.ready("s1", "+1"))
    engine.apply(SessionEvent.error("s2", "boom"))

    assert engine.session("s1").state == S.CONNECTED
    assert engine.session("s2").state == S.ERROR
    assert {s.session_id for s in engine.sessions()} == {"s1", "s2"}


@pytest.mark.asyncio
async def test_channel_drop_is_reported_not_a_session_error(engine):
    poller = FakePoller()
    engine.register_channel(poller)
    engine.apply(SessionEvent.ready("s1", "+1"))

    deltas = engine.apply(ChannelStatus("realtime", connected=False, reason="EOF"))

    assert deltas[0].payload["failure"] == "channel_disruption"
    assert deltas[0].payload["channel"] == "realtime"
    assert deltas[0].session_id is None
    assert engine.session("s1").state == S.CONNECTED

    engine.apply(ChannelStatus("realtime", connected=True))
    assert poller.requests == 1
    # Only a connect that follows a drop asks for a fresh snapshot
    engine.apply(ChannelStatus("realtime", connected=True))
    assert poller.requests == 1


# ─── Conversations ───────────────────────────────────────────────


@pytest.mark.asyncio
async def test_message_registers_session_and_contact(engine):
    deltas = engine.apply(message_event("hi", T0, "m-1"))

    assert kinds(deltas) == [
        DeltaKind.SESSION_UPDATED,
        DeltaKind.MESSAGE_ADDED,
        DeltaKind.CONTACTS_UPDATED,
    ]
    assert engine.session("s1").state == S.IDLE
    assert [c.contact_id for c in engine.contacts("s1")] == ["+1999"]


@pytest.mark.asyncio
async def test_realtime_and_history_copies_are_merged(engine):
    engine.apply(message_event("where are you", T0))
    engine.apply(
        CommandResult(
            CommandKind.FETCH_HISTORY,
            "s1",
            {
                "messages": [
                    Message("s1", Direction.INCOMING, "+1999", "where are you", T0 + 1, "m-42")
                ]
            },
        )
    )

    assert [m.message_id for m in engine.messages("s1")] == ["m-42"]


@pytest.mark.asyncio
async def test_optimistic_send_matched_by_history(engine):
    engine.apply(OutboundMessage(Message.local("s1", "C1", "hi", timestamp=100.0)))
    engine.apply(
        CommandResult(
            CommandKind.FETCH_HISTORY,
            "s1",
            {"messages": [Message("s1", Direction.OUTGOING, "C1", "hi", 100.0, "m-42")]},
        )
    )

    [message] = engine.messages("s1")
    assert message.message_id == "m-42"
    assert not message.pending


@pytest.mark.asyncio
async def test_malformed_message_is_dropped(engine):
    engine.apply(message_event("no time", None))
    assert list(engine.messages("s1")) == []


@pytest.mark.asyncio
async def test_send_message_optimistic_then_confirmed(engine, api):
    api.send_message.return_value = "m-42"
    engine.apply(SessionEvent.ready("s1", "+1000"))

    local_id = engine.send_message("s1", "+1999", "on my way")
    await settle()

    [message] = engine.messages("s1")
    assert message.message_id == "m-42"
    assert not message.pending
    api.send_message.assert_awaited_once_with("s1", "+1999", "on my way")

    # The realtime echo of the same send does not add a second entry
    engine.apply(message_event("on my way", message.timestamp + 1, "m-42", direction="outgoing"))
    assert [m.message_id for m in engine.messages("s1")] == ["m-42"]
    assert local_id.startswith("local-")


@pytest.mark.asyncio
async def test_send_message_echo_before_ack(engine, api):
    gate = asyncio.Event()

    async def slow_send(session_id, to, body):
        await gate.wait()
        return "m-42"

    api.send_message.side_effect = slow_send
    engine.send_message("s1", "+1999", "hello")
    await settle()

    [pending] = engine.messages("s1")
    assert pending.pending
    engine.apply(message_event("hello", pending.timestamp, "m-42", direction="outgoing"))

    gate.set()
    await settle()

    [message] = engine.messages("s1")
    assert message.message_id == "m-42"
    assert not message.pending


@pytest.mark.asyncio
async def test_send_message_failure_marks_message_failed(engine, api):
    api.send_message.side_effect = CommandFailed("send_message", "HTTP 500", "s1")
    queue = engine.bus.subscribe(SESSIONS_TOPIC)

    engine.send_message("s1", "+1999", "hello")
    await settle()

    [message] = engine.messages("s1")
    assert message.delivery_status == DeliveryStatus.FAILED
    failures = [d for d in drain(queue) if d.kind == DeltaKind.FAILURE]
    assert failures[0].payload == {
        "failure": "command_failed",
        "reason": "HTTP 500",
        "command": "send_message",
    }


@pytest.mark.asyncio
async def test_unexpected_send_error_marks_message_failed(engine, api):
    api.send_message.side_effect = TypeError("'NoneType' object is not iterable")
    queue = engine.bus.subscribe(SESSIONS_TOPIC)

    engine.send_message("s1", "+1999", "hello")
    await settle()

    [message] = engine.messages("s1")
    assert message.delivery_status == DeliveryStatus.FAILED
    assert not message.pending
    failures = [d for d in drain(queue) if d.kind == DeltaKind.FAILURE]
    assert failures[0].payload["failure"] == "command_failed"
    assert failures[0].payload["command"] == "send_message"
    assert metrics.counter("engine.commands.failed", labels={"command": "send_message"}) == 1


@pytest.mark.asyncio
async def test_send_skipped_when_optimistic_copy_cannot_be_queued(api, clock, monkeypatch):
    engine = ReconciliationEngine(api, clock=clock, history_on_connect=False)
    monkeypatch.setattr(engine, "_inbound", asyncio.Queue(maxsize=1))
    engine.submit(SessionEvent.lost("s1"))

    assert engine.send_message("s1", "+1999", "hello") is None
    await settle()

    api.send_message.assert_not_awaited()


@pytest.mark.asyncio
async def test_ack_after_late_echo_leaves_one_entry(engine, api):
    gate = asyncio.Event()

    async def slow_send(session_id, to, body):
        await gate.wait()
        return "m-42"

    api.send_message.side_effect = slow_send
    local_id = engine.send_message("s1", "+1999", "hi")
    await settle()
    [pending] = engine.messages("s1")

    # Server clock is ahead: the echo lands well outside the dedup tolerance
    engine.apply(message_event("hi", pending.timestamp + 30, "m-42", direction="outgoing"))
    assert len(list(engine.messages("s1"))) == 2

    queue = engine.bus.subscribe(SESSIONS_TOPIC)
    gate.set()
    await settle()

    assert [m.message_id for m in engine.messages("s1")] == ["m-42"]
    [update] = [d for d in drain(queue) if d.kind == DeltaKind.MESSAGE_UPDATED]
    assert update.payload["message_id"] == "m-42"
    assert update.payload["previous_id"] == local_id


@pytest.mark.asyncio
async def test_fetch_contacts(engine, api):
    api.fetch_contacts.return_value = [Contact("+1888", "Bob")]
    engine.apply(SessionEvent.ready("s1", "+1"))

    engine.fetch_contacts("s1")
    await settle()

    assert [c.display_name for c in engine.contacts("s1")] == ["Bob"]


@pytest.mark.asyncio
async def test_history_fetched_when_session_connects(api, clock):
    engine = ReconciliationEngine(api, clock=clock, history_on_connect=True)
    await engine.start()
    try:
        engine.apply(SessionEvent.ready("s1", "+1"))
        await settle()
        api.fetch_messages.assert_awaited_once_with("s1")
    finally:
        await engine.stop()


# ─── Commands ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_connect_ack_enters_pairing_wait(engine, api):
    engine.apply(SnapshotUpdate((SessionSnapshot("s1", S.IDLE),)))

    engine.connect_session("s1")
    await settle()

    api.connect.assert_awaited_once_with("s1")
    assert engine.session("s1").state == S.PAIRING_WAIT


@pytest.mark.asyncio
async def test_connect_failure_leaves_state(engine, api):
    api.connect.side_effect = CommandFailed("connect_session", "HTTP 404", "s1")
    engine.apply(SnapshotUpdate((SessionSnapshot("s1", S.DISCONNECTED),)))
    queue = engine.bus.subscribe(session_topic("s1"))

    engine.connect_session("s1")
    await settle()

    assert engine.session("s1").state == S.DISCONNECTED
    [delta] = drain(queue)
    assert delta.payload["command"] == "connect_session"
    assert metrics.counter("engine.commands.failed", labels={"command": "connect_session"}) == 1


@pytest.mark.asyncio
async def test_create_and_disconnect_request_a_poll(engine, api):
    poller = FakePoller()
    engine.register_channel(poller)

    engine.create_session("Support")
    engine.disconnect_session("s1")
    await settle()

    api.create_session.assert_awaited_once_with("Support")
    api.disconnect.assert_awaited_once_with("s1")
    assert poller.requests == 2


@pytest.mark.asyncio
async def test_delete_purges_everything(engine, encoder):
    encoder.hold = True
    engine.apply(SessionEvent.pairing_payload("s1", "RAW"))
    engine.apply(message_event("hi", T0, "m-1"))
    queue = engine.bus.subscribe(session_topic("s1"))

    engine.delete_session("s1")
    await settle()

    assert engine.session("s1") is None
    assert engine.artifact("s1") is None
    assert list(engine.messages("s1")) == []
    assert engine.contacts("s1") == []
    assert kinds(drain(queue)) == [DeltaKind.SESSION_REMOVED]


@pytest.mark.asyncio
async def test_late_history_for_deleted_session_is_dropped(engine):
    engine.apply(SessionEvent.ready("s1", "+1"))
    engine.apply(CommandResult(CommandKind.DELETE, "s1"))

    deltas = engine.apply(
        CommandResult(
            CommandKind.FETCH_HISTORY,
            "s1",
            {"messages": [Message("s1", Direction.INCOMING, "+1", "late", T0, "m-1")]},
        )
    )

    assert deltas == []
    assert engine.session("s1") is None
    assert list(engine.messages("s1")) == []


@pytest.mark.asyncio
async def test_commands_without_api_raise(clock):
    engine = ReconciliationEngine(clock=clock)
    with pytest.raises(RuntimeError):
        engine.connect_session("s1")


# ─── Robustness / lifecycle ──────────────────────────────────────


@pytest.mark.asyncio
async def test_handler_error_does_not_stop_engine(engine, monkeypatch):
    def explode(snapshots):
        raise ValueError("boom")

    monkeypatch.setattr(engine.registry, "upsert_from_snapshot", explode)
    assert engine.apply(SnapshotUpdate(())) == []
    assert metrics.counter("engine.updates.failed", labels={"kind": "SnapshotUpdate"}) == 1

    engine.submit(SessionEvent.ready("s1", "+1"))
    await settle()
    assert engine.session("s1").state == S.CONNECTED


@pytest.mark.asyncio
async def test_submit_drops_when_queue_full(api, clock, monkeypatch):
    engine = ReconciliationEngine(api, clock=clock)
    monkeypatch.setattr(engine, "_inbound", asyncio.Queue(maxsize=1))

    assert engine.submit(SessionEvent.lost("s1")) is True
    assert engine.submit(SessionEvent.lost("s1")) is False
    assert metrics.counter("engine.inbound.dropped") == 1


@pytest.mark.asyncio
async def test_stop_releases_artifacts_and_state(api, encoder, clock):
    engine = ReconciliationEngine(api, encoder, clock=clock, history_on_connect=False)
    poller = FakePoller()
    engine.register_channel(poller)
    await engine.start()
    queue = engine.bus.subscribe(SESSIONS_TOPIC)

    engine.apply(SessionEvent.pairing_payload("s1", "RAW"))
    engine.apply(message_event("hi", T0, "m-1"))
    await engine.stop()

    assert not poller.is_running
    assert engine.sessions() == []
    assert engine.artifact("s1") is None
    assert list(engine.messages("s1")) == []
    # Subscribers see the end of the stream
    events = [e async for e in engine.bus.listen(queue)]
    assert events and all(e.kind for e in events)
    api.stop.assert_awaited_once()

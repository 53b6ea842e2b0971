"""
Linkstate — reconciled view of linked-device messaging sessions.

Wires the default channels (realtime websocket + REST snapshot poller)
into a ReconciliationEngine and prints every StateDelta it publishes.

Run: linkstate --api-url http://localhost:5000 --realtime-url ws://localhost:5000/ws
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging

import linkstate.core.config as config_module
from linkstate.channels.api import SessionApiClient
from linkstate.channels.poller import SnapshotPoller
from linkstate.channels.realtime import RealtimeChannel
from linkstate.contracts import StateDelta
from linkstate.core.logging import setup_logging
from linkstate.core.metrics import metrics
from linkstate.engine.event_bus import SESSIONS_TOPIC
from linkstate.engine.reconciler import ReconciliationEngine
from linkstate.pairing.manager import ArtifactEncoder

logger = logging.getLogger("linkstate")


def build_engine(
    api_url: str | None = None,
    realtime_url: str | None = None,
    encoder: ArtifactEncoder | None = None,
) -> ReconciliationEngine:
    """Engine with the default API client and both update channels registered."""
    channels = config_module.config.channels
    api = SessionApiClient(base_url=api_url)
    engine = ReconciliationEngine(api, encoder)
    engine.register_channel(
        RealtimeChannel(
            realtime_url or channels.realtime_url,
            reconnect_attempts=channels.reconnect_attempts,
            reconnect_delay=channels.reconnect_delay,
            reconnect_max_delay=channels.reconnect_max_delay,
        )
    )
    engine.register_channel(SnapshotPoller(api.fetch_sessions, channels.poll_interval))
    return engine


def _render(delta: StateDelta, as_json: bool) -> str:
    if as_json:
        return json.dumps(
            {
                "sequence": delta.sequence,
                "kind": delta.kind.value,
                "session_id": delta.session_id,
                "payload": delta.payload,
            },
            default=str,
        )
    return f"#{delta.sequence} {delta.kind.value} {delta.session_id or '-'} {delta.payload}"


async def run(engine: ReconciliationEngine, as_json: bool = False) -> None:
    queue = engine.bus.subscribe(SESSIONS_TOPIC)
    await engine.start()
    try:
        async for delta in engine.bus.listen(queue):
            print(_render(delta, as_json), flush=True)
    finally:
        await engine.stop()
        logger.info("Metrics at shutdown: %s", json.dumps(metrics.snapshot(), default=str))


def main():
    parser = argparse.ArgumentParser(description="Linkstate session monitor")
    parser.add_argument("--api-url", default=None, help="Collaborator REST base URL")
    parser.add_argument("--realtime-url", default=None, help="Collaborator websocket URL")
    parser.add_argument("--json", action="store_true", help="Print deltas as JSON lines")
    args = parser.parse_args()

    setup_logging()
    engine = build_engine(args.api_url, args.realtime_url)
    try:
        asyncio.run(run(engine, as_json=args.json))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")


if __name__ == "__main__":
    main()

"""
Channels — default adapters for the collaborator's update feeds and API.

- RealtimeChannel: websocket client for pushed events (websockets)
- SnapshotPoller: fixed-interval snapshot fetches (poll channel)
- SessionApiClient: REST commands and fetches (httpx)
- codec: wire JSON → contracts

The engine depends only on the Channel interface; these can be swapped
for other transports.
"""

from linkstate.channels.api import SessionApiClient
from linkstate.channels.base import Channel
from linkstate.channels.codec import decode_frame, decode_snapshot
from linkstate.channels.poller import SnapshotPoller
from linkstate.channels.realtime import RealtimeChannel

__all__ = [
    "Channel",
    "RealtimeChannel",
    "SnapshotPoller",
    "SessionApiClient",
    "decode_frame",
    "decode_snapshot",
]

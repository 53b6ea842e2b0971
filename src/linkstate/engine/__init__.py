"""
Engine — reconciliation of both update channels into one session view.

- ReconciliationEngine: single consumer and sole writer of all state
- EventBus: StateDelta fan-out to the presentation layer
"""

from linkstate.engine.event_bus import SESSIONS_TOPIC, EventBus, session_topic
from linkstate.engine.reconciler import ReconciliationEngine

__all__ = [
    "ReconciliationEngine",
    "EventBus",
    "SESSIONS_TOPIC",
    "session_topic",
]

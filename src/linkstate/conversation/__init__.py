"""
Conversation — per-session message logs.

Key components:
- Message: one log entry (server id or local surrogate)
- ConversationStore: ordered, de-duplicated logs keyed by session
"""

from linkstate.conversation.models import (
    DeliveryStatus,
    Direction,
    Message,
    parse_timestamp,
)
from linkstate.conversation.store import (
    AppendOutcome,
    AppendResult,
    ConversationStore,
    ConversationView,
)

__all__ = [
    "Message",
    "Direction",
    "DeliveryStatus",
    "parse_timestamp",
    "ConversationStore",
    "ConversationView",
    "AppendOutcome",
    "AppendResult",
]

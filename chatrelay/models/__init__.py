from .relay import (
    Complete,
    CompletionResult,
    Failed,
    Fragment,
    RelayEvent,
    RelayRequest,
    StreamOutcome,
)
from .session import (
    Message,
    Role,
    Session,
    SessionSummary,
    StoreStats,
    generate_message_id,
    generate_session_id,
)

__all__ = [
    "Complete",
    "CompletionResult",
    "Failed",
    "Fragment",
    "Message",
    "RelayEvent",
    "RelayRequest",
    "Role",
    "Session",
    "SessionSummary",
    "StoreStats",
    "StreamOutcome",
    "generate_message_id",
    "generate_session_id",
]

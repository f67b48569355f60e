from __future__ import annotations

import time
import uuid
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


def generate_message_id(now: float | None = None) -> str:
    ts = now if now is not None else time.time()
    return f"msg_{int(ts * 1000)}_{uuid.uuid4().hex[:9]}"


def generate_session_id(now: float | None = None) -> str:
    ts = now if now is not None else time.time()
    return f"conv_{int(ts * 1000)}_{uuid.uuid4().hex[:12]}"


class Message(BaseModel):
    """
    A single conversation entry. Immutable once appended to a session.
    """

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    id: str = Field(..., description="Unique message id")
    role: Role = Field(..., description="system / user / assistant")
    content: str = Field(..., description="Message text")
    timestamp: float = Field(..., description="Append time (epoch seconds)")

    def as_prompt(self) -> dict[str, str]:
        """Shape used by the upstream chat completions payload."""
        return {"role": str(self.role), "content": self.content}


class Session(BaseModel):
    """
    Read-only snapshot of a conversation held by the session store.
    """

    session_id: str = Field(..., description="Conversation id")
    messages: list[Message] = Field(default_factory=list)
    created_at: float = Field(..., description="Creation timestamp (epoch seconds)")
    last_accessed: float = Field(..., description="Last access timestamp (epoch seconds)")

    @property
    def message_count(self) -> int:
        return len(self.messages)


class SessionSummary(BaseModel):
    session_id: str
    message_count: int = Field(..., ge=0)
    created_at: float
    last_accessed: float
    recent_messages: list[Message] = Field(default_factory=list)


class StoreStats(BaseModel):
    session_count: int = Field(0, ge=0)
    total_messages: int = Field(0, ge=0)


__all__ = [
    "Message",
    "Role",
    "Session",
    "SessionSummary",
    "StoreStats",
    "generate_message_id",
    "generate_session_id",
]

"""
In-memory conversation store with bounded history and TTL expiry.

The store is the only owner of live session records. Every public method
returns snapshots (pydantic models built under the lock), so callers never
hold a reference to mutable internals. All state is volatile and is lost on
process restart.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional

from chatrelay.logging_config import logger
from chatrelay.models import (
    Message,
    Role,
    Session,
    SessionSummary,
    StoreStats,
    generate_message_id,
)

from .ttl import Clock, is_expired, system_clock


@dataclass
class _SessionRecord:
    session_id: str
    messages: Deque[Message]
    created_at: float
    last_accessed: float = field(default=0.0)

    def snapshot(self) -> Session:
        return Session(
            session_id=self.session_id,
            messages=list(self.messages),
            created_at=self.created_at,
            last_accessed=self.last_accessed,
        )


class SessionStore:
    """
    Thread-safe map of session id -> ordered, bounded message history.

    Args:
        max_messages: per-session cap; the oldest messages are dropped first.
        ttl_seconds: idle time after which a session is considered expired.
        clock: returns the current time in seconds; injectable for tests.
    """

    def __init__(
        self,
        *,
        max_messages: int = 50,
        ttl_seconds: float = 30 * 60,
        clock: Clock = system_clock,
    ) -> None:
        if max_messages < 1:
            raise ValueError("max_messages must be >= 1")
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        self.max_messages = max_messages
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._sessions: Dict[str, _SessionRecord] = {}
        self._lock = threading.Lock()

    def _now(self) -> float:
        return self._clock()

    def _is_live(self, record: _SessionRecord, now: float) -> bool:
        return not is_expired(record.last_accessed, now, self.ttl_seconds)

    def _get_or_create_locked(self, session_id: str, now: float) -> _SessionRecord:
        record = self._sessions.get(session_id)
        if record is not None and self._is_live(record, now):
            return record
        if record is not None:
            logger.info("Replacing expired conversation %s", session_id)
        record = _SessionRecord(
            session_id=session_id,
            messages=deque(maxlen=self.max_messages),
            created_at=now,
            last_accessed=now,
        )
        self._sessions[session_id] = record
        logger.info("Created new conversation: %s", session_id)
        return record

    def create(self, session_id: str) -> Session:
        """
        Idempotent create: an existing live session is returned unchanged.
        """
        now = self._now()
        with self._lock:
            return self._get_or_create_locked(session_id, now).snapshot()

    def get(self, session_id: str) -> Optional[Session]:
        """
        Return a snapshot and refresh last_accessed, or None when the id is
        unknown or already idle past the TTL.
        """
        now = self._now()
        with self._lock:
            record = self._sessions.get(session_id)
            if record is None or not self._is_live(record, now):
                return None
            record.last_accessed = now
            return record.snapshot()

    def exists(self, session_id: str) -> bool:
        now = self._now()
        with self._lock:
            record = self._sessions.get(session_id)
            return record is not None and self._is_live(record, now)

    def history(self, session_id: str, limit: int | None = None) -> List[Message]:
        """
        Most recent `limit` messages in order, without touching the session.
        """
        now = self._now()
        with self._lock:
            record = self._sessions.get(session_id)
            if record is None or not self._is_live(record, now):
                return []
            messages = list(record.messages)
        if limit is None:
            return messages
        if limit <= 0:
            return []
        return messages[-limit:]

    def append(self, session_id: str, role: Role | str, content: str) -> Message:
        """
        Append a message, creating the session on demand.
        """
        now = self._now()
        message = Message(
            id=generate_message_id(now),
            role=role,
            content=content,
            timestamp=now,
        )
        with self._lock:
            record = self._get_or_create_locked(session_id, now)
            # deque(maxlen=...) drops from the left once full.
            record.messages.append(message)
            record.last_accessed = now
        logger.debug("Added %s message to conversation %s", message.role, session_id)
        return message

    def append_exchange(
        self, session_id: str, user_content: str, assistant_content: str
    ) -> tuple[Message, Message]:
        """
        Append a user message and its assistant reply as one atomic step, so
        no reader observes the user turn without the reply.
        """
        now = self._now()
        user_msg = Message(
            id=generate_message_id(now),
            role=Role.USER,
            content=user_content,
            timestamp=now,
        )
        assistant_msg = Message(
            id=generate_message_id(now),
            role=Role.ASSISTANT,
            content=assistant_content,
            timestamp=now,
        )
        with self._lock:
            record = self._get_or_create_locked(session_id, now)
            record.messages.append(user_msg)
            record.messages.append(assistant_msg)
            record.last_accessed = now
        return user_msg, assistant_msg

    def delete(self, session_id: str) -> bool:
        with self._lock:
            removed = self._sessions.pop(session_id, None) is not None
        if removed:
            logger.info("Deleted conversation: %s", session_id)
        return removed

    def sweep(self) -> int:
        """
        Remove every session idle for longer than the TTL.

        Candidates are collected from a snapshot of the map and re-checked one
        by one under the lock, so a session created or touched while the pass
        runs is only removed if it independently qualifies.
        """
        now = self._now()
        with self._lock:
            candidates = [
                sid
                for sid, record in self._sessions.items()
                if not self._is_live(record, now)
            ]

        removed = 0
        for sid in candidates:
            with self._lock:
                record = self._sessions.get(sid)
                if record is None or self._is_live(record, now):
                    continue
                del self._sessions[sid]
                removed += 1

        if removed:
            logger.info("Cleaned up %d expired conversations", removed)
        return removed

    def stats(self) -> StoreStats:
        with self._lock:
            return StoreStats(
                session_count=len(self._sessions),
                total_messages=sum(len(r.messages) for r in self._sessions.values()),
            )

    def list_sessions(self, preview: int = 5) -> List[SessionSummary]:
        """
        Admin/debug listing with the last `preview` messages of each session.
        """
        with self._lock:
            records = list(self._sessions.values())
            summaries = [
                SessionSummary(
                    session_id=r.session_id,
                    message_count=len(r.messages),
                    created_at=r.created_at,
                    last_accessed=r.last_accessed,
                    recent_messages=list(r.messages)[-preview:] if preview > 0 else [],
                )
                for r in records
            ]
        return summaries

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


__all__ = ["SessionStore"]

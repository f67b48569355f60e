"""
Boundary between the transports (HTTP, SSE, WebSocket) and the relay core.

The orchestrator resolves conversation ids, turns inbound events into
RelayRequests, and returns transport-neutral results. Relay errors are
propagated unchanged; mapping them to status codes or event payloads is the
transport's job.
"""

from __future__ import annotations

import base64
import binascii
import threading
from typing import AsyncIterator, Dict, List, Optional, Tuple

from chatrelay.logging_config import logger
from chatrelay.models import (
    RelayEvent,
    RelayRequest,
    Session,
    SessionSummary,
    StoreStats,
    StreamOutcome,
    generate_session_id,
)
from chatrelay.relay.engine import RelayEngine
from chatrelay.relay.exceptions import InvalidRequest
from chatrelay.relay.sinks import LoggingSink, RelaySink
from chatrelay.schemas import AudioChunkAck, AudioReply, ChatReply
from chatrelay.session.store import SessionStore
from chatrelay.transcription import (
    Transcriber,
    check_audio_format,
    decode_audio_payload,
)


def resolve_session_id(session_id: Optional[str]) -> str:
    """
    Use the caller's id when given, otherwise allocate a fresh one.
    """
    if session_id is not None and session_id.strip():
        return session_id.strip()
    return generate_session_id()


def _relay_request(
    session_id: str, message: object, system_prompt: Optional[str], *, stream: bool
) -> RelayRequest:
    # Socket frames are untyped JSON; reject non-text before pydantic sees it.
    if not isinstance(message, str):
        raise InvalidRequest("Message is required and must be a non-empty string")
    return RelayRequest(
        session_id=session_id,
        message=message,
        system_prompt=system_prompt,
        stream=stream,
    )


class Orchestrator:
    def __init__(
        self,
        store: SessionStore,
        engine: RelayEngine,
        transcriber: Transcriber,
        *,
        max_audio_bytes: int = 10 * 1024 * 1024,
        supported_audio_formats: Optional[List[str]] = None,
    ) -> None:
        self.store = store
        self.engine = engine
        self.transcriber = transcriber
        self.max_audio_bytes = max_audio_bytes
        self.supported_audio_formats = supported_audio_formats or ["mp3", "wav", "m4a", "ogg"]
        self._audio_buffers: Dict[str, bytearray] = {}
        self._audio_lock = threading.Lock()

    # Text messages -----------------------------------------------------

    async def send_message(
        self,
        message: str,
        *,
        conversation_id: Optional[str] = None,
        system_prompt: Optional[str] = None,
    ) -> ChatReply:
        session_id = resolve_session_id(conversation_id)
        request = _relay_request(session_id, message, system_prompt, stream=False)
        logger.info("Processing chat message for %s: %s", session_id, message[:100])
        result = await self.engine.complete(request)
        return ChatReply(
            response=result.text,
            conversation_id=session_id,
            usage=result.usage,
            model=result.model,
        )

    def open_stream(
        self,
        message: str,
        *,
        conversation_id: Optional[str] = None,
        system_prompt: Optional[str] = None,
    ) -> Tuple[str, AsyncIterator[RelayEvent]]:
        """
        Start a streamed relay and return its conversation id and event iterator.

        Invalid input and busy conversations raise here, before any event.
        """
        session_id = resolve_session_id(conversation_id)
        request = _relay_request(session_id, message, system_prompt, stream=True)
        events = self.engine.events(request, LoggingSink(session_id))
        return session_id, events

    async def stream_message(
        self,
        message: str,
        *sinks: RelaySink,
        conversation_id: Optional[str] = None,
        system_prompt: Optional[str] = None,
    ) -> StreamOutcome:
        """
        Relay a streamed reply straight into the given sinks.
        """
        session_id = resolve_session_id(conversation_id)
        request = _relay_request(session_id, message, system_prompt, stream=True)
        return await self.engine.stream(request, *sinks, LoggingSink(session_id))

    # Audio -------------------------------------------------------------

    async def process_audio(
        self,
        audio_data: str,
        *,
        session_id: Optional[str] = None,
        audio_format: Optional[str] = None,
        system_prompt: Optional[str] = None,
    ) -> AudioReply:
        check_audio_format(audio_format, self.supported_audio_formats)
        audio = decode_audio_payload(audio_data, max_bytes=self.max_audio_bytes)
        return await self._reply_to_audio(audio, session_id, system_prompt)

    async def _reply_to_audio(
        self, audio: bytes, session_id: Optional[str], system_prompt: Optional[str]
    ) -> AudioReply:
        resolved = resolve_session_id(session_id)
        logger.info("Processing audio for %s, bytes=%d", resolved, len(audio))
        transcribed = await self.transcriber.transcribe(audio)
        reply = await self.send_message(
            transcribed, conversation_id=resolved, system_prompt=system_prompt
        )
        return AudioReply(
            response=reply.response,
            transcribed_text=transcribed,
            conversation_id=resolved,
        )

    def buffer_audio_chunk(self, session_id: str, chunk: Optional[str]) -> int:
        """
        Append one base64 chunk to the session's pending audio. Returns the
        buffered size; an oversized buffer is discarded and rejected.
        """
        data = b""
        if chunk:
            try:
                data = base64.b64decode(chunk, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise InvalidRequest("Audio chunk is not valid base64") from exc
        with self._audio_lock:
            buffer = self._audio_buffers.setdefault(session_id, bytearray())
            if len(buffer) + len(data) > self.max_audio_bytes:
                self._audio_buffers.pop(session_id, None)
                raise InvalidRequest(
                    "Audio stream too large",
                    details={"maxBytes": self.max_audio_bytes},
                )
            buffer.extend(data)
            return len(buffer)

    async def feed_audio_chunk(
        self,
        chunk: Optional[str],
        *,
        session_id: Optional[str] = None,
        is_final: bool = False,
    ) -> Tuple[AudioChunkAck, Optional[AudioReply]]:
        resolved = resolve_session_id(session_id)
        size = self.buffer_audio_chunk(resolved, chunk)
        ack = AudioChunkAck(session_id=resolved, is_final=is_final, buffered_bytes=size)
        if not is_final:
            return ack, None
        with self._audio_lock:
            audio = bytes(self._audio_buffers.pop(resolved, b""))
        if not audio:
            raise InvalidRequest("No audio received before the final chunk")
        reply = await self._reply_to_audio(audio, resolved, None)
        return ack, reply

    def discard_audio(self, session_id: str) -> None:
        with self._audio_lock:
            self._audio_buffers.pop(session_id, None)

    # Session admin -----------------------------------------------------

    def get_session(self, session_id: str) -> Optional[Session]:
        return self.store.get(session_id)

    def delete_session(self, session_id: str) -> bool:
        self.engine.cancel(session_id)
        self.discard_audio(session_id)
        return self.store.delete(session_id)

    def cancel(self, session_id: str) -> bool:
        return self.engine.cancel(session_id)

    def list_sessions(self, preview: int = 5) -> List[SessionSummary]:
        return self.store.list_sessions(preview=preview)

    def stats(self) -> StoreStats:
        return self.store.stats()


__all__ = ["Orchestrator", "resolve_session_id"]

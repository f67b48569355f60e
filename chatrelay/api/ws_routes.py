"""WebSocket endpoint for chat and streamed audio."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, Optional, Set

from fastapi import APIRouter, WebSocket, status
from starlette.websockets import WebSocketDisconnect, WebSocketState

from chatrelay.auth import websocket_api_key_is_valid
from chatrelay.logging_config import logger
from chatrelay.models import generate_message_id
from chatrelay.orchestrator import Orchestrator, resolve_session_id
from chatrelay.relay.exceptions import InvalidRequest, RelayError
from chatrelay.schemas import utc_timestamp

router = APIRouter()


class SocketTaskFailed(RelayError):
    code = "INTERNAL_ERROR"


class SocketSink:
    """
    Relay sink that forwards a streamed reply to one socket as
    `chat_fragment` events and a final `chat_response` or `error`.
    """

    def __init__(self, connection: "SocketConnection", conversation_id: str, message_id: str) -> None:
        self.connection = connection
        self.conversation_id = conversation_id
        self.message_id = message_id

    async def on_fragment(self, text: str) -> None:
        await self.connection.send(
            {
                "type": "chat_fragment",
                "conversationId": self.conversation_id,
                "messageId": self.message_id,
                "text": text,
            }
        )

    async def on_complete(self, full_text: str) -> None:
        await self.connection.send(
            {
                "type": "chat_response",
                "response": full_text,
                "conversationId": self.conversation_id,
                "messageId": self.message_id,
                "timestamp": utc_timestamp(),
            }
        )

    async def on_error(self, error: RelayError) -> None:
        await self.connection.send_error(
            error, conversation_id=self.conversation_id, message_id=self.message_id
        )


class SocketConnection:
    """
    Dispatches frames for a single client socket.

    Chat and audio work runs in background tasks so `cancel` frames are
    still read while a reply is streaming. Every task still running when
    the socket goes away is cancelled.
    """

    def __init__(self, websocket: WebSocket, orchestrator: Orchestrator) -> None:
        self.websocket = websocket
        self.orchestrator = orchestrator
        self.client_id = (
            f"{websocket.client.host}:{websocket.client.port}" if websocket.client else "-"
        )
        self.closed = False
        self._tasks: Set[asyncio.Task] = set()
        self._send_lock = asyncio.Lock()
        self._audio_sessions: Set[str] = set()

    async def run(self) -> None:
        logger.info("Client connected: %s", self.client_id)
        try:
            while True:
                try:
                    raw = await self.websocket.receive_text()
                except WebSocketDisconnect:
                    break
                await self.dispatch(raw)
        finally:
            await self.close()
            logger.info("Client disconnected: %s", self.client_id)

    async def dispatch(self, raw: str) -> None:
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            await self.send_error(InvalidRequest("Payload must be JSON"))
            return
        if not isinstance(payload, dict):
            await self.send_error(InvalidRequest("Payload must be a JSON object"))
            return

        message_type = payload.get("type")
        if message_type == "chat_message":
            self._spawn(self.handle_chat_message(payload), name="ws-chat")
        elif message_type == "audio_stream":
            self._spawn(self.handle_audio_stream(payload), name="ws-audio")
        elif message_type == "cancel":
            await self.handle_cancel(payload)
        else:
            await self.send_error(
                InvalidRequest(f"Unsupported message type: {message_type!r}")
            )

    def _spawn(self, coro, *, name: str) -> None:
        task = asyncio.get_running_loop().create_task(
            self._guarded(coro, name), name=f"{name}-{self.client_id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guarded(self, coro, name: str) -> None:
        # Handlers report RelayErrors themselves; anything else is a bug.
        try:
            await coro
        except Exception:
            logger.exception("WebSocket %s task failed for %s", name, self.client_id)
            await self.send_error(SocketTaskFailed("Internal server error"))

    async def handle_chat_message(self, payload: Dict[str, Any]) -> None:
        message = payload.get("message")
        conversation_id = resolve_session_id(_optional_str(payload.get("conversationId")))
        message_id = _optional_str(payload.get("messageId")) or generate_message_id()
        system_prompt = _optional_str(payload.get("systemPrompt"))

        logger.info("Chat message from %s for %s", self.client_id, conversation_id)
        await self.send(
            {
                "type": "processing_start",
                "conversationId": conversation_id,
                "messageId": message_id,
                "timestamp": utc_timestamp(),
            }
        )
        try:
            if payload.get("stream"):
                await self.orchestrator.stream_message(
                    message,
                    SocketSink(self, conversation_id, message_id),
                    conversation_id=conversation_id,
                    system_prompt=system_prompt,
                )
                return
            reply = await self.orchestrator.send_message(
                message, conversation_id=conversation_id, system_prompt=system_prompt
            )
        except RelayError as exc:
            await self.send_error(exc, conversation_id=conversation_id, message_id=message_id)
            return

        await self.send(
            {
                "type": "chat_response",
                "response": reply.response,
                "conversationId": reply.conversation_id,
                "messageId": message_id,
                "usage": reply.usage,
                "model": reply.model,
                "timestamp": reply.timestamp,
            }
        )

    async def handle_audio_stream(self, payload: Dict[str, Any]) -> None:
        session_id = resolve_session_id(_optional_str(payload.get("sessionId")))
        self._audio_sessions.add(session_id)
        try:
            ack, reply = await self.orchestrator.feed_audio_chunk(
                payload.get("audioChunk"),
                session_id=session_id,
                is_final=bool(payload.get("isFinal")),
            )
        except RelayError as exc:
            self.orchestrator.discard_audio(session_id)
            await self.send_error(exc, conversation_id=session_id)
            return

        await self.send({"type": "audio_processed", **ack.model_dump(by_alias=True)})
        if reply is not None:
            self._audio_sessions.discard(session_id)
            await self.send({"type": "audio_response", **reply.model_dump(by_alias=True)})

    async def handle_cancel(self, payload: Dict[str, Any]) -> None:
        conversation_id = _optional_str(payload.get("conversationId"))
        if not conversation_id:
            await self.send_error(InvalidRequest("conversationId is required to cancel"))
            return
        cancelled = self.orchestrator.cancel(conversation_id)
        await self.send(
            {
                "type": "cancel_ack",
                "conversationId": conversation_id,
                "cancelled": cancelled,
            }
        )

    async def send(self, payload: Dict[str, Any]) -> None:
        if self.closed:
            return
        async with self._send_lock:
            if self.websocket.application_state != WebSocketState.CONNECTED:
                return
            try:
                await self.websocket.send_text(json.dumps(payload, ensure_ascii=False))
            except (WebSocketDisconnect, RuntimeError):
                # The peer went away between the state check and the send.
                self.closed = True

    async def send_error(
        self,
        error: RelayError,
        *,
        conversation_id: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> None:
        payload: Dict[str, Any] = {
            "type": "error",
            "error": error.message,
            "code": error.code,
            "timestamp": utc_timestamp(),
        }
        if conversation_id is not None:
            payload["conversationId"] = conversation_id
        if message_id is not None:
            payload["messageId"] = message_id
        await self.send(payload)

    async def close(self) -> None:
        self.closed = True
        tasks = [task for task in self._tasks if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Cancelled %d pending task(s) for %s", len(tasks), self.client_id)
        for session_id in self._audio_sessions:
            self.orchestrator.discard_audio(session_id)
        self._audio_sessions.clear()


def _optional_str(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


@router.websocket("/ws")
async def relay_socket(websocket: WebSocket) -> None:
    if not websocket_api_key_is_valid(websocket):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await websocket.accept()
    connection = SocketConnection(websocket, websocket.app.state.orchestrator)
    await connection.run()


__all__ = ["SocketConnection", "SocketSink", "router"]

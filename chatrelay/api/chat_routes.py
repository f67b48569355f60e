from __future__ import annotations

import json
from contextlib import aclosing
from typing import Any, AsyncIterator

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from chatrelay.auth import require_api_key
from chatrelay.deps import get_orchestrator, get_upstream
from chatrelay.logging_config import logger
from chatrelay.models import Complete, RelayEvent
from chatrelay.orchestrator import Orchestrator
from chatrelay.relay.upstream import OpenRouterClient
from chatrelay.schemas import ChatMessageRequest, ChatMessageResponse

router = APIRouter(
    tags=["chat"],
    dependencies=[Depends(require_api_key)],
)


def encode_sse_event(*, event_type: str, data: Any) -> bytes:
    """
    Encode a single SSE frame: `event: <type>` followed by one JSON `data:` line.
    """
    payload = json.dumps(data, ensure_ascii=False)
    return f"event: {event_type}\ndata: {payload}\n\n".encode("utf-8")


def _event_payload(event: RelayEvent, conversation_id: str) -> dict[str, Any]:
    payload = event.model_dump()
    if isinstance(event, Complete):
        payload["conversationId"] = conversation_id
    return payload


@router.get("/api/info")
async def service_info(
    upstream: OpenRouterClient = Depends(get_upstream),
) -> dict[str, Any]:
    return {"success": True, "data": upstream.info()}


@router.post("/api/v1/chat/message", response_model=ChatMessageResponse)
async def send_chat_message(
    body: ChatMessageRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> ChatMessageResponse:
    reply = await orchestrator.send_message(
        body.message,
        conversation_id=body.conversation_id,
        system_prompt=body.system_prompt,
    )
    return ChatMessageResponse(data=reply)


@router.post("/api/v1/chat/stream")
async def stream_chat_message(
    body: ChatMessageRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> StreamingResponse:
    """
    Relay the reply as Server-Sent Events.

    Invalid and busy requests raise before the response starts, so they
    still get a regular JSON error body. Once streaming, failures arrive as
    an `error` event and a client disconnect cancels the relay.
    """
    conversation_id, events = orchestrator.open_stream(
        body.message,
        conversation_id=body.conversation_id,
        system_prompt=body.system_prompt,
    )

    async def _stream_generator() -> AsyncIterator[bytes]:
        async with aclosing(events) as iterator:
            async for event in iterator:
                yield encode_sse_event(
                    event_type=event.type,
                    data=_event_payload(event, conversation_id),
                )
        logger.debug("chat_routes: SSE stream for %s closed", conversation_id)

    return StreamingResponse(
        _stream_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
            "X-Conversation-Id": conversation_id,
        },
    )


@router.get("/api/v1/models")
async def list_models(
    upstream: OpenRouterClient = Depends(get_upstream),
) -> dict[str, Any]:
    models = await upstream.list_models()
    return {"success": True, "data": models}


__all__ = ["encode_sse_event", "router"]

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import Response

from chatrelay.auth import require_api_key
from chatrelay.deps import get_engine, get_orchestrator, get_store
from chatrelay.errors import not_found
from chatrelay.models import Session
from chatrelay.orchestrator import Orchestrator
from chatrelay.relay.engine import RelayEngine
from chatrelay.session.store import SessionStore

router = APIRouter(
    prefix="/api/v1/sessions",
    tags=["sessions"],
    dependencies=[Depends(require_api_key)],
)


@router.get("/stats")
async def session_stats(
    store: SessionStore = Depends(get_store),
    engine: RelayEngine = Depends(get_engine),
) -> dict[str, Any]:
    stats = store.stats()
    return {
        "success": True,
        "data": {
            "totalConversations": stats.session_count,
            "totalMessages": stats.total_messages,
            "inFlight": len(engine.in_flight_sessions()),
        },
    }


@router.get("")
async def list_sessions(
    preview: int = Query(5, ge=0, le=50),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """
    Debug listing of live and not-yet-swept conversations.
    """
    summaries = orchestrator.list_sessions(preview=preview)
    return {
        "success": True,
        "data": [summary.model_dump() for summary in summaries],
    }


@router.get("/{conversation_id}", response_model=Session)
async def get_session_endpoint(
    conversation_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> Session:
    sess = orchestrator.get_session(conversation_id)
    if sess is None:
        raise not_found(f"Conversation '{conversation_id}' not found")
    return sess


@router.delete(
    "/{conversation_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def delete_session_endpoint(
    conversation_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> Response:
    """
    Delete a conversation, cancelling any stream still running for it.
    """
    existed = orchestrator.delete_session(conversation_id)
    if not existed:
        raise not_found(f"Conversation '{conversation_id}' not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{conversation_id}/cancel")
async def cancel_stream_endpoint(
    conversation_id: str,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    cancelled = orchestrator.cancel(conversation_id)
    return {
        "success": True,
        "data": {"conversationId": conversation_id, "cancelled": cancelled},
    }


__all__ = ["router"]

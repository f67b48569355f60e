from typing import Any

from fastapi import APIRouter, Depends

from chatrelay.auth import require_api_key
from chatrelay.deps import get_orchestrator, get_settings
from chatrelay.orchestrator import Orchestrator
from chatrelay.schemas import AudioProcessRequest, AudioProcessResponse, utc_timestamp
from chatrelay.settings import Settings

router = APIRouter(
    prefix="/api/v1/audio",
    tags=["audio"],
    dependencies=[Depends(require_api_key)],
)


@router.post("/process", response_model=AudioProcessResponse)
async def process_audio(
    body: AudioProcessRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> AudioProcessResponse:
    """
    Transcribe a base64 audio clip and relay the transcription as a chat turn.
    """
    reply = await orchestrator.process_audio(
        body.audio_data,
        session_id=body.session_id,
        audio_format=body.format,
        system_prompt=body.system_prompt,
    )
    return AudioProcessResponse(data=reply)


@router.get("/health")
async def audio_health(app_settings: Settings = Depends(get_settings)) -> dict[str, Any]:
    return {
        "success": True,
        "data": {
            "status": "healthy",
            "service": "audio-processing",
            "supportedFormats": app_settings.get_supported_audio_formats(),
            "maxBytes": app_settings.max_audio_bytes,
            "timestamp": utc_timestamp(),
        },
    }


__all__ = ["router"]

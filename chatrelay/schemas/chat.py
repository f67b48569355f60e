from __future__ import annotations

import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_timestamp() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat(timespec="milliseconds")


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ChatMessageRequest(_CamelModel):
    message: str = Field(..., description="User message text")
    conversation_id: Optional[str] = Field(
        default=None,
        alias="conversationId",
        description="Existing conversation id; a new one is generated when omitted",
    )
    system_prompt: Optional[str] = Field(default=None, alias="systemPrompt")


class ChatReply(_CamelModel):
    response: str
    conversation_id: str = Field(..., alias="conversationId")
    usage: Optional[dict[str, Any]] = None
    model: Optional[str] = None
    timestamp: str = Field(default_factory=utc_timestamp)


class AudioProcessRequest(_CamelModel):
    audio_data: str = Field(..., alias="audioData", description="Base64 encoded audio")
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    format: Optional[str] = Field(default=None, description="mp3 / wav / m4a / ogg")
    system_prompt: Optional[str] = Field(default=None, alias="systemPrompt")


class AudioReply(_CamelModel):
    response: str
    transcribed_text: str = Field(..., alias="transcribedText")
    conversation_id: str = Field(..., alias="conversationId")
    timestamp: str = Field(default_factory=utc_timestamp)


class ChatMessageResponse(_CamelModel):
    success: bool = True
    data: ChatReply


class AudioProcessResponse(_CamelModel):
    success: bool = True
    data: AudioReply


class AudioChunkAck(_CamelModel):
    session_id: str = Field(..., alias="sessionId")
    processed: bool = True
    is_final: bool = Field(False, alias="isFinal")
    buffered_bytes: int = Field(0, alias="bufferedBytes")
    timestamp: str = Field(default_factory=utc_timestamp)


__all__ = [
    "AudioChunkAck",
    "AudioProcessResponse",
    "AudioProcessRequest",
    "AudioReply",
    "ChatMessageRequest",
    "ChatMessageResponse",
    "ChatReply",
    "utc_timestamp",
]

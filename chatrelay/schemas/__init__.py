from .chat import (
    AudioChunkAck,
    AudioProcessResponse,
    AudioProcessRequest,
    AudioReply,
    ChatMessageRequest,
    ChatMessageResponse,
    ChatReply,
    utc_timestamp,
)

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

from .engine import DEFAULT_SYSTEM_PROMPT, RelayEngine
from .exceptions import (
    InvalidRequest,
    RelayError,
    SessionBusy,
    SinkDetached,
    StreamCancelled,
    StreamTransportError,
    TranscriptionFailed,
    UpstreamError,
    UpstreamRateLimited,
    UpstreamTimeout,
    UpstreamUnauthorized,
    UpstreamUnavailable,
)
from .sinks import CallbackSink, LoggingSink, QueueSink, RelaySink
from .upstream import CompletionUpstream, OpenRouterClient

__all__ = [
    "DEFAULT_SYSTEM_PROMPT",
    "CallbackSink",
    "CompletionUpstream",
    "InvalidRequest",
    "LoggingSink",
    "OpenRouterClient",
    "QueueSink",
    "RelayEngine",
    "RelayError",
    "RelaySink",
    "SessionBusy",
    "SinkDetached",
    "StreamCancelled",
    "StreamTransportError",
    "TranscriptionFailed",
    "UpstreamError",
    "UpstreamRateLimited",
    "UpstreamTimeout",
    "UpstreamUnauthorized",
    "UpstreamUnavailable",
]

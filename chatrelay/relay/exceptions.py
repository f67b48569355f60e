"""
Error taxonomy surfaced by the relay engine and its collaborators.

Nothing here is retried internally; each error carries enough information
(code, HTTP status, retryability) for the transport layer to map it.
"""

from __future__ import annotations

from typing import Any, Optional


class RelayError(Exception):
    code = "RELAY_ERROR"
    status_code = 500
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class InvalidRequest(RelayError):
    """Empty, oversized or otherwise malformed input. Caller's fault."""

    code = "INVALID_REQUEST"
    status_code = 400


class SessionBusy(RelayError):
    """Another relay call is already in flight for this session."""

    code = "SESSION_BUSY"
    status_code = 409
    retryable = True

    def __init__(self, session_id: str) -> None:
        super().__init__(
            f"Conversation '{session_id}' already has a request in flight",
            details={"conversationId": session_id},
        )
        self.session_id = session_id


class UpstreamError(RelayError):
    """Upstream rejected or failed the request in a way not classified below."""

    code = "UPSTREAM_ERROR"
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        upstream_status: Optional[int] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details=details)
        self.upstream_status = upstream_status


class UpstreamUnauthorized(UpstreamError):
    """Credential missing or rejected; a configuration fault."""

    code = "UPSTREAM_UNAUTHORIZED"
    status_code = 401


class UpstreamRateLimited(UpstreamError):
    code = "UPSTREAM_RATE_LIMITED"
    status_code = 429
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        retry_after: Optional[float] = None,
        upstream_status: Optional[int] = 429,
    ) -> None:
        details = {"retryAfter": retry_after} if retry_after is not None else None
        super().__init__(message, upstream_status=upstream_status, details=details)
        self.retry_after = retry_after


class UpstreamTimeout(UpstreamError):
    code = "UPSTREAM_TIMEOUT"
    status_code = 504
    retryable = True


class UpstreamUnavailable(UpstreamError):
    """5xx-class failures, connection errors and unusable responses."""

    code = "UPSTREAM_UNAVAILABLE"
    status_code = 502
    retryable = True


class StreamTransportError(UpstreamError):
    """Failure after the upstream stream started; terminal for that stream."""

    code = "STREAM_TRANSPORT_ERROR"
    status_code = 502
    retryable = True


class StreamCancelled(RelayError):
    code = "STREAM_CANCELLED"
    status_code = 499


class SinkDetached(RelayError):
    """Delivered to a sink whose own callback raised; the stream goes on without it."""

    code = "SINK_DETACHED"
    status_code = 500


class TranscriptionFailed(RelayError):
    code = "AUDIO_PROCESSING_ERROR"
    status_code = 500


__all__ = [
    "InvalidRequest",
    "RelayError",
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

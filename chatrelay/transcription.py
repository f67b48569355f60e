"""
Speech-to-text step.

Only a simulated transcriber exists: it validates the payload, waits a
configurable delay and returns one of a few canned phrases. Anything with
an async `transcribe(audio: bytes) -> str` can replace it.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import random
from typing import Optional, Protocol, Sequence

from chatrelay.logging_config import logger
from chatrelay.relay.exceptions import InvalidRequest, TranscriptionFailed

SIMULATED_PHRASES: Sequence[str] = (
    "Hello! How can I help you today?",
    "I understand you're looking for assistance.",
    "That's an interesting question. Let me think about it.",
    "I'd be happy to help with that!",
    "Could you please provide more details about your request?",
)


class Transcriber(Protocol):
    async def transcribe(self, audio: bytes) -> str: ...


def decode_audio_payload(data: str, *, max_bytes: int) -> bytes:
    """
    Decode a base64 audio payload, optionally given as a `data:` URL.
    """
    if not isinstance(data, str) or not data.strip():
        raise InvalidRequest("Audio data is required and must be a base64 string")
    raw = data.strip()
    if raw.startswith("data:") and "," in raw:
        raw = raw.split(",", 1)[1]
    # base64 grows data by 4/3; reject early before decoding huge payloads.
    if len(raw) > (max_bytes * 4) // 3 + 4:
        raise InvalidRequest(
            "Audio payload too large",
            details={"maxBytes": max_bytes},
        )
    try:
        audio = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidRequest("Audio data is not valid base64") from exc
    if not audio:
        raise InvalidRequest("Audio data is empty")
    if len(audio) > max_bytes:
        raise InvalidRequest("Audio payload too large", details={"maxBytes": max_bytes})
    return audio


def check_audio_format(audio_format: Optional[str], supported: Sequence[str]) -> None:
    if audio_format is None:
        return
    if audio_format.strip().lower().lstrip(".") not in supported:
        raise InvalidRequest(
            f"Unsupported audio format '{audio_format}'",
            details={"supported": list(supported)},
        )


class SimulatedTranscriber:
    def __init__(
        self,
        *,
        delay_seconds: float = 1.0,
        max_bytes: int = 10 * 1024 * 1024,
        phrases: Sequence[str] = SIMULATED_PHRASES,
        rng: Optional[random.Random] = None,
    ) -> None:
        if not phrases:
            raise ValueError("phrases must not be empty")
        self.delay_seconds = delay_seconds
        self.max_bytes = max_bytes
        self.phrases = tuple(phrases)
        self._rng = rng or random.Random()

    async def transcribe(self, audio: bytes) -> str:
        if not audio:
            raise TranscriptionFailed("No audio to transcribe")
        if len(audio) > self.max_bytes:
            raise TranscriptionFailed("Audio payload too large")
        logger.info("Transcribing %d bytes of audio (simulated)", len(audio))
        if self.delay_seconds > 0:
            await asyncio.sleep(self.delay_seconds)
        return self._rng.choice(self.phrases)


__all__ = [
    "SIMULATED_PHRASES",
    "SimulatedTranscriber",
    "Transcriber",
    "check_audio_format",
    "decode_audio_payload",
]

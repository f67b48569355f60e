"""
Shared pytest configuration.

This file ensures the project root is on sys.path so that `import chatrelay`
works consistently in all tests, and provides fakes for the upstream
completion API and the wall clock.
"""

import asyncio
import json
import random
import sys
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import pytest


# Ensure project root is importable for test modules.
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from chatrelay.models import CompletionResult  # noqa: E402
from chatrelay.settings import Settings  # noqa: E402
from chatrelay.transcription import SimulatedTranscriber  # noqa: E402


def sse_chunk(text: str) -> bytes:
    """One OpenAI-style stream record carrying `text`."""
    payload = {"choices": [{"delta": {"content": text}}]}
    return f"data: {json.dumps(payload)}\n\n".encode("utf-8")


SSE_DONE = b"data: [DONE]\n\n"


class FakeClock:
    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class Pause:
    """Stream script step: block until the test releases the gate."""

    def __init__(self) -> None:
        self.reached = asyncio.Event()
        self.release = asyncio.Event()


StreamStep = Union[bytes, Exception, Pause]


class FakeUpstream:
    """
    Scripted stand-in for OpenRouterClient.

    `stream_script` is replayed by every stream() call: bytes are yielded,
    exceptions raised, and Pause steps block until released.
    """

    def __init__(
        self,
        *,
        reply: str = "Hello from the model",
        stream_script: Optional[List[StreamStep]] = None,
        complete_error: Optional[Exception] = None,
        complete_delay: float = 0.0,
    ) -> None:
        self.reply = reply
        self.stream_script = (
            stream_script
            if stream_script is not None
            else [sse_chunk("Hello "), sse_chunk("world"), SSE_DONE]
        )
        self.complete_error = complete_error
        self.complete_delay = complete_delay
        self.calls: List[List[Dict[str, str]]] = []
        self.stream_closed = 0
        self.models = [{"id": "test-model", "name": "Test Model"}]

    async def complete(self, messages, *, model=None, max_tokens=None, temperature=None):
        self.calls.append(list(messages))
        if self.complete_delay:
            await asyncio.sleep(self.complete_delay)
        if self.complete_error is not None:
            raise self.complete_error
        return CompletionResult(
            text=self.reply,
            usage={"prompt_tokens": 3, "completion_tokens": 4, "total_tokens": 7},
            model="test-model",
        )

    async def stream(
        self, messages, *, model=None, max_tokens=None, temperature=None
    ) -> AsyncIterator[bytes]:
        self.calls.append(list(messages))
        try:
            for step in self.stream_script:
                if isinstance(step, Pause):
                    step.reached.set()
                    await step.release.wait()
                elif isinstance(step, Exception):
                    raise step
                else:
                    yield step
        finally:
            self.stream_closed += 1

    async def list_models(self) -> List[Dict[str, Any]]:
        return list(self.models)

    def info(self) -> Dict[str, Any]:
        return {
            "service": "Fake Upstream",
            "model": "test-model",
            "status": "active",
            "features": ["chat", "streaming"],
        }


class RecordingSink:
    def __init__(self) -> None:
        self.fragments: List[str] = []
        self.completed: List[str] = []
        self.errors: List[Any] = []

    def on_fragment(self, text: str) -> None:
        self.fragments.append(text)

    def on_complete(self, full_text: str) -> None:
        self.completed.append(full_text)

    def on_error(self, error) -> None:
        self.errors.append(error)

    @property
    def terminal_count(self) -> int:
        return len(self.completed) + len(self.errors)


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = {
        "environment": "test",
        "openrouter_api_key": "test-key",
        "transcription_delay_seconds": 0.0,
        "valid_api_keys_raw": None,
    }
    values.update(overrides)
    return Settings(**values)


def instant_transcriber() -> SimulatedTranscriber:
    return SimulatedTranscriber(delay_seconds=0.0, rng=random.Random(0))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def test_settings() -> Settings:
    return make_settings()


@pytest.fixture
def app(test_settings, fake_upstream, clock):
    from chatrelay.routes import create_app

    return create_app(
        test_settings,
        upstream=fake_upstream,
        transcriber=instant_transcriber(),
        clock=clock,
    )


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient

    with TestClient(app) as test_client:
        yield test_client

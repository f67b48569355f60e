"""
Downstream consumers of a relayed stream.

A sink receives every fragment in order and then exactly one terminal
callback: `on_complete` with the full text, or `on_error` with the relay
error. Callbacks may be plain functions or coroutines.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

from chatrelay.logging_config import logger
from chatrelay.models import Complete, Failed, Fragment, RelayEvent

from .exceptions import RelayError

MaybeAwaitable = Union[None, Awaitable[None]]


class RelaySink(Protocol):
    def on_fragment(self, text: str) -> MaybeAwaitable: ...

    def on_complete(self, full_text: str) -> MaybeAwaitable: ...

    def on_error(self, error: RelayError) -> MaybeAwaitable: ...


async def call_sink(callback: Callable[..., Any], *args: Any) -> None:
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class CallbackSink:
    """
    Adapts three loose callables to the sink interface.
    """

    def __init__(
        self,
        *,
        on_fragment: Optional[Callable[[str], MaybeAwaitable]] = None,
        on_complete: Optional[Callable[[str], MaybeAwaitable]] = None,
        on_error: Optional[Callable[[RelayError], MaybeAwaitable]] = None,
    ) -> None:
        self._on_fragment = on_fragment
        self._on_complete = on_complete
        self._on_error = on_error

    async def on_fragment(self, text: str) -> None:
        if self._on_fragment is not None:
            await call_sink(self._on_fragment, text)

    async def on_complete(self, full_text: str) -> None:
        if self._on_complete is not None:
            await call_sink(self._on_complete, full_text)

    async def on_error(self, error: RelayError) -> None:
        if self._on_error is not None:
            await call_sink(self._on_error, error)


class QueueSink:
    """
    Turns callbacks into tagged events on an asyncio.Queue, for consumers
    that prefer iterating over `Fragment | Complete | Failed`.
    """

    def __init__(self, queue: Optional[asyncio.Queue] = None) -> None:
        self.queue: asyncio.Queue[RelayEvent] = queue or asyncio.Queue()

    def on_fragment(self, text: str) -> None:
        self.queue.put_nowait(Fragment(text=text))

    def on_complete(self, full_text: str) -> None:
        self.queue.put_nowait(Complete(text=full_text))

    def on_error(self, error: RelayError) -> None:
        self.queue.put_nowait(Failed(code=error.code, reason=error.message))


class LoggingSink:
    """
    Passive listener that records stream progress in the application log.
    """

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self.fragments = 0

    def on_fragment(self, text: str) -> None:
        self.fragments += 1
        if self.fragments == 1:
            logger.info("relay[%s]: first fragment received", self.session_id)

    def on_complete(self, full_text: str) -> None:
        logger.info(
            "relay[%s]: stream completed, fragments=%d chars=%d",
            self.session_id,
            self.fragments,
            len(full_text),
        )

    def on_error(self, error: RelayError) -> None:
        logger.warning(
            "relay[%s]: stream failed after %d fragments: %s (%s)",
            self.session_id,
            self.fragments,
            error.message,
            error.code,
        )


__all__ = ["CallbackSink", "LoggingSink", "QueueSink", "RelaySink", "call_sink"]

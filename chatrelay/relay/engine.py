"""
Relay engine: one upstream completion per request, with history bookkeeping
and fan-out of streamed fragments to any number of sinks.

Per session the engine is either IDLE or IN_FLIGHT. A request for a session
that is already IN_FLIGHT is rejected with SessionBusy rather than queued, so
assistant replies are always appended in request order. History changes only
on success: the user message and the assistant reply are appended together.
"""

from __future__ import annotations

import asyncio
import threading
import time
from contextlib import aclosing, suppress
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Iterable, List, Optional

from chatrelay.logging_config import logger
from chatrelay.models import (
    CompletionResult,
    Fragment,
    RelayEvent,
    RelayRequest,
    StreamOutcome,
)
from chatrelay.session.store import SessionStore

from .exceptions import (
    InvalidRequest,
    RelayError,
    SessionBusy,
    SinkDetached,
    StreamCancelled,
    StreamTransportError,
    UpstreamTimeout,
    UpstreamUnavailable,
)
from .sinks import QueueSink, RelaySink, call_sink
from .sse import SseRecord, SseRecordDecoder
from .upstream import CompletionUpstream

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant. Provide clear, concise, and helpful responses."
)


@dataclass
class _InFlight:
    session_id: str
    streaming: bool
    started_at: float = field(default_factory=time.monotonic)
    task: Optional[asyncio.Task] = None
    cancel_requested: bool = False
    # Set once the upstream stream has ended; the commit and completion
    # fan-out that follow are no longer cancellable.
    finishing: bool = False
    outcome: Optional[StreamOutcome] = None


class _StreamEnded(Exception):
    """Internal signal: the terminal sentinel was seen."""


class RelayEngine:
    def __init__(
        self,
        store: SessionStore,
        upstream: CompletionUpstream,
        *,
        history_window: int = 10,
        max_message_length: int = 4000,
        request_timeout: float = 30.0,
        default_system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    ) -> None:
        self.store = store
        self.upstream = upstream
        # Never forward more history than a session can hold.
        self.history_window = max(0, min(history_window, store.max_messages))
        self.max_message_length = max_message_length
        self.request_timeout = request_timeout
        self.default_system_prompt = default_system_prompt
        self._in_flight: Dict[str, _InFlight] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # In-flight bookkeeping
    # ------------------------------------------------------------------

    def is_in_flight(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._in_flight

    def in_flight_sessions(self) -> List[str]:
        with self._lock:
            return list(self._in_flight)

    def _acquire(self, session_id: str, *, streaming: bool) -> _InFlight:
        with self._lock:
            if session_id in self._in_flight:
                raise SessionBusy(session_id)
            entry = _InFlight(session_id=session_id, streaming=streaming)
            self._in_flight[session_id] = entry
        logger.debug("relay[%s]: IDLE -> IN_FLIGHT (streaming=%s)", session_id, streaming)
        return entry

    def _release(self, entry: _InFlight) -> None:
        with self._lock:
            if self._in_flight.get(entry.session_id) is entry:
                del self._in_flight[entry.session_id]
        logger.debug(
            "relay[%s]: IN_FLIGHT -> IDLE after %.3fs",
            entry.session_id,
            time.monotonic() - entry.started_at,
        )

    def cancel(self, session_id: str) -> bool:
        """
        Cancel the in-flight stream of a session. Returns False when there is
        nothing streaming to cancel.
        """
        with self._lock:
            entry = self._in_flight.get(session_id)
        if entry is None or not entry.streaming or entry.task is None:
            return False
        if entry.finishing:
            return False
        if entry.task.done():
            return False
        entry.cancel_requested = True
        entry.task.cancel()
        logger.info("relay[%s]: cancellation requested", session_id)
        return True

    # ------------------------------------------------------------------
    # Request shaping
    # ------------------------------------------------------------------

    def validate(self, request: RelayRequest) -> None:
        message = request.message
        if not isinstance(message, str) or not message.strip():
            raise InvalidRequest("Message is required and must be a non-empty string")
        if len(message) > self.max_message_length:
            raise InvalidRequest(
                f"Message too long. Maximum {self.max_message_length} characters allowed.",
                details={"maxLength": self.max_message_length, "length": len(message)},
            )
        if request.system_prompt is not None and len(request.system_prompt) > self.max_message_length:
            raise InvalidRequest(
                f"System prompt too long. Maximum {self.max_message_length} characters allowed."
            )

    def build_messages(self, request: RelayRequest) -> List[Dict[str, str]]:
        """
        System prompt, then the most recent history, then the new user turn.
        """
        messages: List[Dict[str, str]] = [
            {"role": "system", "content": request.system_prompt or self.default_system_prompt}
        ]
        # Reading the session counts as use and extends its life.
        session = self.store.get(request.session_id)
        if session is not None and self.history_window > 0:
            for msg in session.messages[-self.history_window:]:
                messages.append(msg.as_prompt())
        messages.append({"role": "user", "content": request.message})
        return messages

    def _begin(self, request: RelayRequest, *, streaming: bool) -> _InFlight:
        self.validate(request)
        return self._acquire(request.session_id, streaming=streaming)

    # ------------------------------------------------------------------
    # Non-streaming
    # ------------------------------------------------------------------

    async def complete(self, request: RelayRequest) -> CompletionResult:
        entry = self._begin(request, streaming=False)
        try:
            messages = self.build_messages(request)
            logger.info(
                "relay[%s]: sending completion (history=%d)",
                request.session_id,
                len(messages) - 2,
            )
            try:
                result = await asyncio.wait_for(
                    self.upstream.complete(messages), timeout=self.request_timeout
                )
            except asyncio.TimeoutError as exc:
                logger.warning(
                    "relay[%s]: upstream timeout after %ss",
                    request.session_id,
                    self.request_timeout,
                )
                raise UpstreamTimeout("Upstream request timeout") from exc
            except RelayError as exc:
                logger.warning(
                    "relay[%s]: completion failed: %s (%s)",
                    request.session_id,
                    exc.message,
                    exc.code,
                )
                raise

            self.store.append_exchange(request.session_id, request.message, result.text)
            logger.info(
                "relay[%s]: completion received (chars=%d, model=%s)",
                request.session_id,
                len(result.text),
                result.model,
            )
            return result
        finally:
            self._release(entry)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def stream(self, request: RelayRequest, *sinks: RelaySink) -> StreamOutcome:
        """
        Relay one streamed completion to every sink.

        InvalidRequest and SessionBusy are raised before any sink is called.
        Once accepted, each sink sees the fragments in order followed by
        exactly one of on_complete / on_error, and this returns the outcome.
        """
        entry = self._begin(request, streaming=True)
        return await self._drive(entry, request, list(sinks))

    def events(self, request: RelayRequest, *sinks: RelaySink) -> AsyncIterator[RelayEvent]:
        """
        Same relay as `stream`, exposed as an iterator of tagged events.

        Validation and the busy check happen immediately; the upstream call
        starts right away in a background task. Closing the iterator before
        the terminal event cancels the relay.
        """
        entry = self._begin(request, streaming=True)
        queue_sink = QueueSink()
        try:
            task = asyncio.get_running_loop().create_task(
                self._drive(entry, request, [queue_sink, *sinks]),
                name=f"relay-stream-{request.session_id}",
            )
        except RuntimeError:
            self._release(entry)
            raise
        entry.task = task
        return self._drain(entry, queue_sink, task)

    async def _drain(
        self, entry: _InFlight, queue_sink: QueueSink, task: asyncio.Task
    ) -> AsyncIterator[RelayEvent]:
        terminal_seen = False
        try:
            while True:
                event = await queue_sink.queue.get()
                if not isinstance(event, Fragment):
                    terminal_seen = True
                yield event
                if terminal_seen:
                    return
        finally:
            # After the terminal event the task only has other sinks left to
            # notify; let it finish instead of cutting them off.
            if not terminal_seen and not task.done():
                entry.cancel_requested = True
                task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    async def _drive(
        self, entry: _InFlight, request: RelayRequest, sinks: List[RelaySink]
    ) -> StreamOutcome:
        if entry.task is None:
            entry.task = asyncio.current_task()
        try:
            return await self._pump(entry, request, sinks)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            caller_cancelled = current is not None and current.cancelling() > 1
            if entry.cancel_requested and not caller_cancelled and entry.outcome is not None:
                # Cancelled through RelayEngine.cancel(); the caller itself
                # was not cancelled, so report the outcome normally.
                if current is not None:
                    current.uncancel()
                return entry.outcome
            raise
        finally:
            self._release(entry)

    async def _pump(
        self, entry: _InFlight, request: RelayRequest, sinks: List[RelaySink]
    ) -> StreamOutcome:
        session_id = request.session_id
        active: List[RelaySink] = list(sinks)
        fragments: List[str] = []
        decoder = SseRecordDecoder()

        async def handle(records: Iterable[SseRecord]) -> None:
            for record in records:
                if record.kind == "error":
                    raise StreamTransportError(f"Upstream stream error: {record.error}")
                if record.kind == "done":
                    raise _StreamEnded()
                fragments.append(record.text)
                await self._fan_out(active, record.text)

        messages = self.build_messages(request)
        logger.info(
            "relay[%s]: opening stream (sinks=%d, history=%d)",
            session_id,
            len(active),
            len(messages) - 2,
        )
        try:
            try:
                async with aclosing(self.upstream.stream(messages)) as chunks:
                    async for chunk in chunks:
                        await handle(decoder.feed(chunk))
                await handle(decoder.finish())
            except _StreamEnded:
                pass
        except asyncio.CancelledError:
            error = StreamCancelled("Stream cancelled by caller")
            entry.outcome = self._failed_outcome(session_id, fragments, error)
            logger.info(
                "relay[%s]: stream cancelled after %d fragments", session_id, len(fragments)
            )
            await self._terminate(active, error)
            raise
        except RelayError as exc:
            logger.warning(
                "relay[%s]: stream failed after %d fragments: %s (%s)",
                session_id,
                len(fragments),
                exc.message,
                exc.code,
            )
            await self._terminate(active, exc)
            entry.outcome = self._failed_outcome(session_id, fragments, exc)
            return entry.outcome
        except Exception as exc:
            logger.exception("relay[%s]: unexpected upstream stream failure", session_id)
            error = UpstreamUnavailable(f"Upstream stream failed: {exc}")
            await self._terminate(active, error)
            entry.outcome = self._failed_outcome(session_id, fragments, error)
            return entry.outcome

        entry.finishing = True
        full_text = "".join(fragments)
        self.store.append_exchange(session_id, request.message, full_text)
        entry.outcome = StreamOutcome(
            session_id=session_id,
            completed=True,
            text=full_text,
            fragment_count=len(fragments),
        )
        logger.info(
            "relay[%s]: stream completed (fragments=%d, chars=%d)",
            session_id,
            len(fragments),
            len(full_text),
        )

        # History is committed, so every remaining sink still gets on_complete
        # even if the task is cancelled meanwhile; the cancellation is
        # re-raised once they all have been told.
        interrupted = False
        for sink in list(active):
            try:
                await call_sink(sink.on_complete, full_text)
            except asyncio.CancelledError:
                interrupted = True
                logger.info(
                    "relay[%s]: cancelled during completion fan-out; finishing sinks",
                    session_id,
                )
            except Exception:
                logger.exception("relay[%s]: sink on_complete failed", session_id)
        if interrupted:
            raise asyncio.CancelledError()
        return entry.outcome

    async def _fan_out(self, active: List[RelaySink], text: str) -> None:
        for sink in list(active):
            try:
                await call_sink(sink.on_fragment, text)
            except Exception as exc:
                logger.exception("Detaching relay sink %r after on_fragment failure", sink)
                active.remove(sink)
                await self._notify_error(sink, SinkDetached(f"Sink failed: {exc}"))

    async def _terminate(self, active: List[RelaySink], error: RelayError) -> None:
        for sink in list(active):
            await self._notify_error(sink, error)

    async def _notify_error(self, sink: RelaySink, error: RelayError) -> None:
        try:
            await call_sink(sink.on_error, error)
        except Exception:
            logger.exception("Relay sink %r failed in on_error", sink)

    @staticmethod
    def _failed_outcome(
        session_id: str, fragments: List[str], error: RelayError
    ) -> StreamOutcome:
        return StreamOutcome(
            session_id=session_id,
            completed=False,
            text="".join(fragments),
            fragment_count=len(fragments),
            error_code=error.code,
            error_message=error.message,
        )


__all__ = ["DEFAULT_SYSTEM_PROMPT", "RelayEngine"]

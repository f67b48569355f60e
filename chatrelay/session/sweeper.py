from __future__ import annotations

import asyncio
from contextlib import suppress
from typing import Optional

from chatrelay.logging_config import logger

from .store import SessionStore


class SweepScheduler:
    """
    Periodic timer that evicts expired sessions from a SessionStore.

    Owned by whoever builds the store (the FastAPI lifespan in production).
    Each tick runs the sweep in a worker thread; a tick that fires while the
    previous sweep is still running is skipped, never queued.
    """

    def __init__(self, store: SessionStore, *, interval_seconds: float = 300.0) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.store = store
        self.interval_seconds = interval_seconds
        self._timer: Optional[asyncio.Task] = None
        self._current: Optional[asyncio.Task] = None
        self.sweeps_completed = 0
        self.ticks_skipped = 0

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def sweep_in_progress(self) -> bool:
        return self._current is not None and not self._current.done()

    def start(self) -> None:
        if self.running:
            return
        self._timer = asyncio.get_running_loop().create_task(
            self._run(), name="session-sweep-timer"
        )
        logger.info(
            "Session sweep scheduler started (interval=%ss, ttl=%ss)",
            self.interval_seconds,
            self.store.ttl_seconds,
        )

    async def stop(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
            with suppress(asyncio.CancelledError):
                await timer
        current, self._current = self._current, None
        if current is not None and not current.done():
            # The worker thread cannot be interrupted; wait for it to finish.
            with suppress(asyncio.CancelledError):
                await current
        logger.info("Session sweep scheduler stopped")

    def tick(self) -> bool:
        """
        Launch one sweep unless one is already running.
        Returns True when a sweep was started.
        """
        if self.sweep_in_progress:
            self.ticks_skipped += 1
            logger.warning("Previous session sweep still running; skipping tick")
            return False
        self._current = asyncio.get_running_loop().create_task(self._sweep_once())
        return True

    async def _sweep_once(self) -> int:
        try:
            removed = await asyncio.to_thread(self.store.sweep)
        except Exception:
            # Nobody awaits background sweeps; the next tick retries.
            logger.exception("Session sweep failed")
            return 0
        self.sweeps_completed += 1
        logger.debug("Session sweep finished, removed=%d", removed)
        return removed

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            self.tick()


__all__ = ["SweepScheduler"]

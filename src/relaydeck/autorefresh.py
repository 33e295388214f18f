"""Timer-driven repetition of dashboard refreshes."""
from __future__ import annotations

import asyncio
from enum import Enum
from typing import Awaitable, Callable, Optional

from .logging_utils import get_logger

log = get_logger(__name__)

AUTO_REFRESH_INTERVAL = 2.0


class LoopState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


class AutoRefreshLoop:
    """Invoke ``refresh`` every ``interval`` seconds while running.

    Ticks are chained: the next one is scheduled only after the previous
    refresh settled, so a slow fetch never causes overlapping ticks. Every
    scheduled callback carries the generation it was scheduled under;
    :meth:`start` and :meth:`stop` move to a new generation, which turns
    any callback still in flight into a no-op.
    """

    def __init__(
        self,
        refresh: Callable[[], Awaitable[object]],
        *,
        interval: float = AUTO_REFRESH_INTERVAL,
    ) -> None:
        if interval <= 0:
            raise ValueError("Auto refresh interval must be positive")
        self._refresh = refresh
        self._interval = interval
        self._state = LoopState.STOPPED
        self._generation = 0
        self._handle: Optional[asyncio.TimerHandle] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._tick_task: Optional[asyncio.Task[None]] = None

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state is LoopState.RUNNING

    @property
    def pending(self) -> bool:
        """``True`` while a tick is scheduled but has not fired yet."""

        return self._handle is not None

    @property
    def interval(self) -> float:
        return self._interval

    def start(self) -> None:
        """Begin ticking; restarting cleanly if already running."""

        if self._state is LoopState.RUNNING:
            self.stop()
        self._loop = asyncio.get_running_loop()
        self._state = LoopState.RUNNING
        self._generation += 1
        log.info("Auto refresh started (every %.1fs)", self._interval)
        self._schedule(self._generation)

    def stop(self) -> None:
        """Stop ticking and cancel the scheduled tick. A refresh already in flight completes."""

        if self._state is LoopState.STOPPED and self._handle is None:
            return
        self._state = LoopState.STOPPED
        self._generation += 1
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        log.info("Auto refresh stopped")

    def _schedule(self, generation: int) -> None:
        assert self._loop is not None
        self._handle = self._loop.call_later(self._interval, self._fire, generation)

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation and self._state is LoopState.RUNNING

    def _fire(self, generation: int) -> None:
        if not self._is_current(generation):
            return
        self._handle = None
        assert self._loop is not None
        self._tick_task = self._loop.create_task(self._tick(generation))

    async def _tick(self, generation: int) -> None:
        if not self._is_current(generation):
            return
        try:
            await self._refresh()
        except Exception as exc:
            log.warning("Auto refresh failed: %s", exc)
        finally:
            if self._is_current(generation):
                self._schedule(generation)


__all__ = ["AUTO_REFRESH_INTERVAL", "AutoRefreshLoop", "LoopState"]

"""
Time source and scheduled events.

Debounce and pacing delays go through a Clock so tests can substitute a
manual clock and step time deterministically.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Optional


class TimerHandle:
    """Cancellable handle for a scheduled callback."""

    def __init__(self, handle: Optional[asyncio.TimerHandle] = None) -> None:
        self._handle = handle
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True
        if self._handle is not None:
            self._handle.cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class Clock:
    """Wall/monotonic time plus event-loop based sleep and call_later."""

    def time(self) -> float:
        return time.time()

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(max(0.0, delay))

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> TimerHandle:
        loop = asyncio.get_running_loop()
        return TimerHandle(loop.call_later(max(0.0, delay), callback, *args))


class Debouncer:
    """Single pending scheduled event; rescheduling replaces the pending one."""

    def __init__(self, clock: Clock) -> None:
        self._clock = clock
        self._handle: Optional[TimerHandle] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None and not self._handle.cancelled

    def schedule(self, delay: float, callback: Callable[[], None]) -> None:
        self.cancel()
        handle_box: dict = {}

        def _fire() -> None:
            if self._handle is handle_box.get("handle"):
                self._handle = None
            callback()

        handle = self._clock.call_later(delay, _fire)
        handle_box["handle"] = handle
        self._handle = handle

    def cancel(self) -> bool:
        """Drop the pending event. Returns True if one was pending."""
        if self._handle is None:
            return False
        was_pending = not self._handle.cancelled
        self._handle.cancel()
        self._handle = None
        return was_pending


_default_clock = Clock()


def default_clock() -> Clock:
    return _default_clock

"""One-shot timers owned by the object that armed them."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any


class ScopedTimer:
    """
    A ``loop.call_later`` handle that is disarmed exactly once.

    The timer is disarmed either by firing or by ``cancel()``; whichever
    happens first wins and the other becomes a no-op. ``disarm_count``
    therefore never exceeds one.

    Must be created while an event loop is running.
    """

    def __init__(
        self,
        delay: float,
        callback: Callable[..., Any],
        *args: Any,
        name: str = "timer",
    ):
        self.name = name
        self.delay = delay
        self._loop = asyncio.get_running_loop()
        self._callback = callback
        self._args = args
        self.deadline = self._loop.time() + delay
        self._handle: asyncio.TimerHandle | None = self._loop.call_later(delay, self._fire)
        self.fired = False
        self.cancelled = False
        self.disarm_count = 0

    @property
    def active(self) -> bool:
        return not (self.fired or self.cancelled)

    @property
    def remaining(self) -> float:
        if not self.active:
            return 0.0
        return max(0.0, self.deadline - self._loop.time())

    def cancel(self) -> bool:
        """Disarm; True if this call stopped a live timer."""
        if not self.active:
            return False
        self.cancelled = True
        self.disarm_count += 1
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        return True

    def _fire(self) -> None:
        if not self.active:
            return
        self.fired = True
        self.disarm_count += 1
        self._handle = None
        self._callback(*self._args)

    def __repr__(self) -> str:
        state = "fired" if self.fired else "cancelled" if self.cancelled else "armed"
        return f"ScopedTimer({self.name!r}, delay={self.delay}, {state})"

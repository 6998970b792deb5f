"""Cooperative cancellation tokens.

A ``CancellationToken`` is handed to a request by whoever owns its
lifetime. Cancelling the token makes the lifecycle controller abandon the
request (cancelling the underlying task, which aborts an in-flight httpx
call) and discard any result that arrives afterwards.

Example:
    >>> async with CancellationScope() as token:
    ...     await controller.run("recipes.get_all", backend.get_all, token=token)
    ... # leaving the scope cancels anything still running under ``token``
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

from mealsync.core.errors import RequestCancelled
from mealsync.core.logging import get_logger

log = get_logger(__name__)


class CancellationToken:
    """Set-once cancellation flag with callbacks."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[], None]] = []
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> bool:
        """Cancel; True if this call did it, False if already cancelled."""
        if self.cancelled:
            return False
        self.reason = reason
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                log.warning("cancel_callback_error", error=str(e))
        return True

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run ``callback`` on cancellation (immediately if already cancelled)."""
        if self.cancelled:
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def remove() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return remove

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RequestCancelled(f"Request {self.reason or 'cancelled'}")

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled})"


class CancellationScope:
    """Ties a token to a block: the token is cancelled when the block exits."""

    def __init__(self, token: CancellationToken | None = None, reason: str = "scope_closed"):
        self.token = token or CancellationToken()
        self._reason = reason

    async def __aenter__(self) -> CancellationToken:
        return self.token

    async def __aexit__(self, *args: object) -> None:
        self.token.cancel(self._reason)

"""Request Lifecycle Controller: cancellation, time bounds and deduplication.

WHY
───
Every backend call made on behalf of an optimistic update, or a read,
passes through ``RequestLifecycleController.run``. That single choke
point guarantees three things:

* **Time bound:** the call finishes or raises ``RequestTimeout`` within
  its timeout (``asyncio.timeout`` cancels the underlying task).
* **Cancellation:** a cancelled ``CancellationToken`` abandons the call
  and its result is discarded, even if it arrived in the meantime.
* **Deduplication:** concurrent calls with the same key are joined,
  rejected, or the older one is replaced.

ARCHITECTURE
────────────
::

    run(key, operation, token=, timeout=, dedupe=)
      │
      ├── key in flight? ── JOIN    → share the running task
      │                   ├ REJECT  → DuplicateRequestError
      │                   └ REPLACE → cancel the old task, start anew
      ▼
    _InFlight(task, waiters)
      │   task = asyncio.timeout(timeout) { await operation() }
      ▼
    _wait: first of (task done, token cancelled)
      ├── token cancelled → RequestCancelled, last waiter cancels task
      └── task done       → result / exception

Related modules:
    cancellation.py: CancellationToken, CancellationScope
    ../store.py    : uses run() for every backend call
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from mealsync.core.errors import DuplicateRequestError, RequestCancelled, RequestTimeout
from mealsync.core.logging import get_logger
from mealsync.lifecycle.cancellation import CancellationToken

log = get_logger(__name__)

T = TypeVar("T")


class DedupePolicy(str, Enum):
    """What to do when a request's key is already in flight."""

    JOIN = "join"  # share the in-flight result
    REJECT = "reject"  # raise DuplicateRequestError
    REPLACE = "replace"  # cancel the older request, run this one


@dataclass
class _InFlight:
    """Internal record of a running request."""

    key: str | None
    task: asyncio.Task
    started_at: float
    waiters: int = 1
    replaced: bool = field(default=False)


class RequestLifecycleController:
    """Runs backend operations under a timeout, a token and a dedupe policy."""

    def __init__(self, *, default_timeout: float = 30.0):
        self.default_timeout = default_timeout
        self._inflight: dict[str, _InFlight] = {}

    async def run(
        self,
        key: str | None,
        operation: Callable[[], Awaitable[T]],
        *,
        token: CancellationToken | None = None,
        timeout: float | None = None,
        dedupe: DedupePolicy = DedupePolicy.REPLACE,
    ) -> T:
        """Run ``operation`` and return its result.

        Raises:
            RequestTimeout: ``operation`` did not finish within ``timeout``.
            RequestCancelled: ``token`` was cancelled, or a newer request
                replaced this one.
            DuplicateRequestError: ``key`` is in flight and ``dedupe`` is REJECT.
        """
        if token is not None:
            token.raise_if_cancelled()

        existing = self._inflight.get(key) if key is not None else None
        if existing is not None and not existing.task.done():
            if dedupe is DedupePolicy.JOIN:
                existing.waiters += 1
                log.debug("request_joined", key=key, waiters=existing.waiters)
                return await self._wait(existing, token)
            if dedupe is DedupePolicy.REJECT:
                raise DuplicateRequestError(key)
            existing.replaced = True
            existing.task.cancel()
            log.debug("request_replaced", key=key)

        entry = self._start(key, operation, timeout if timeout is not None else self.default_timeout)
        return await self._wait(entry, token)

    def _start(
        self,
        key: str | None,
        operation: Callable[[], Awaitable[Any]],
        timeout: float,
    ) -> _InFlight:
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._execute(key, operation, timeout))
        entry = _InFlight(key=key, task=task, started_at=loop.time())
        if key is not None:
            self._inflight[key] = entry
        task.add_done_callback(lambda t: self._finished(entry, t))
        return entry

    async def _execute(
        self,
        key: str | None,
        operation: Callable[[], Awaitable[Any]],
        timeout: float,
    ) -> Any:
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            async with asyncio.timeout(timeout):
                return await operation()
        except TimeoutError as e:
            elapsed = loop.time() - started
            log.warning("request_timeout", key=key, timeout=timeout, elapsed=round(elapsed, 3))
            raise RequestTimeout(
                f"Request {key or 'anonymous'} timed out after {timeout}s",
                timeout=timeout,
                elapsed=elapsed,
                cause=e,
            ) from e

    async def _wait(self, entry: _InFlight, token: CancellationToken | None) -> Any:
        try:
            if token is None:
                await asyncio.wait({entry.task})
            else:
                cancelled = asyncio.ensure_future(token.wait())
                try:
                    await asyncio.wait({entry.task, cancelled}, return_when=asyncio.FIRST_COMPLETED)
                finally:
                    cancelled.cancel()
        except asyncio.CancelledError:
            self._release(entry)
            raise

        if token is not None and token.cancelled:
            self._release(entry)
            log.debug("request_cancelled", key=entry.key, reason=token.reason)
            raise RequestCancelled(f"Request {entry.key or 'anonymous'} {token.reason}")

        self._release(entry)
        if entry.task.cancelled():
            reason = "superseded" if entry.replaced else "cancelled"
            raise RequestCancelled(f"Request {entry.key or 'anonymous'} {reason}")
        return entry.task.result()

    def _release(self, entry: _InFlight) -> None:
        entry.waiters -= 1
        if entry.waiters <= 0 and not entry.task.done():
            entry.task.cancel()

    def _finished(self, entry: _InFlight, task: asyncio.Task) -> None:
        if entry.key is not None and self._inflight.get(entry.key) is entry:
            del self._inflight[entry.key]
        if not task.cancelled():
            # Mark the exception retrieved; waiters that left early never will.
            task.exception()

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def cancel(self, key: str) -> bool:
        """Cancel the in-flight request for ``key``; False if none."""
        entry = self._inflight.get(key)
        if entry is None or entry.task.done():
            return False
        entry.task.cancel()
        log.debug("request_cancel_requested", key=key)
        return True

    def cancel_all(self) -> int:
        count = 0
        for key in list(self._inflight):
            if self.cancel(key):
                count += 1
        return count

    def is_active(self, key: str) -> bool:
        entry = self._inflight.get(key)
        return entry is not None and not entry.task.done()

    @property
    def active_count(self) -> int:
        return sum(1 for entry in self._inflight.values() if not entry.task.done())

    @property
    def active_keys(self) -> list[str]:
        return [key for key, entry in self._inflight.items() if not entry.task.done()]

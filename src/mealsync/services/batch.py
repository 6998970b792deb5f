"""Dispatching many optimistic updates without tripping the pending limit."""

from __future__ import annotations

from collections import deque
from collections.abc import Callable, Iterable

from mealsync.core.errors import PendingLimitExceeded
from mealsync.core.logging import get_logger
from mealsync.store import DispatchHandle

logger = get_logger(__name__)


async def dispatch_batch(calls: Iterable[Callable[[], DispatchHandle]]) -> list[DispatchHandle]:
    """Run each dispatch call in order and return the handles.

    When the manager refuses a dispatch because too many updates are in
    flight, the oldest handle from this batch is awaited and the call is
    tried again. With nothing of our own left to wait for the error
    propagates.
    """
    handles: list[DispatchHandle] = []
    outstanding: deque[DispatchHandle] = deque()
    for call in calls:
        while True:
            try:
                handle = call()
            except PendingLimitExceeded:
                while outstanding and outstanding[0].done:
                    outstanding.popleft()
                if not outstanding:
                    raise
                logger.debug("batch_waiting_for_slot", waiting_on=outstanding[0].update_id)
                await outstanding.popleft().settled()
                continue
            handles.append(handle)
            outstanding.append(handle)
            break
    return handles


async def settle_all(handles: Iterable[DispatchHandle]) -> None:
    for handle in handles:
        await handle.settled()

"""
Update notification channel.

Listeners are plain callables ``listener(event_type, update)`` invoked
synchronously, in subscription order, before the publishing call returns.
A listener that raises is logged and skipped; delivery to the others
continues and the exception never reaches the publisher.

Tags:
    events, observer, in-process
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from mealsync.core.logging import get_logger

if TYPE_CHECKING:
    from mealsync.optimistic.models import PendingUpdate

log = get_logger(__name__)


class UpdateEventType(str, Enum):
    CREATED = "created"
    SUCCESS = "success"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    RETRYING = "retrying"
    CLEARED = "all_updates_cleared"


UpdateListener = Callable[[UpdateEventType, "PendingUpdate | None"], None]


@dataclass
class Subscription:
    """Internal subscription record."""

    id: str
    listener: UpdateListener


class UpdateChannel:
    """Synchronous fan-out of update events."""

    def __init__(self) -> None:
        self._subscriptions: dict[str, Subscription] = {}
        self.published = 0

    def subscribe(self, listener: UpdateListener) -> Callable[[], None]:
        """Register ``listener``; returns a function that unsubscribes it."""
        sub_id = f"sub_{uuid.uuid4().hex[:12]}"
        self._subscriptions[sub_id] = Subscription(id=sub_id, listener=listener)

        def unsubscribe() -> None:
            self._subscriptions.pop(sub_id, None)

        return unsubscribe

    def publish(self, event_type: UpdateEventType, update: PendingUpdate | None) -> None:
        self.published += 1
        for sub in list(self._subscriptions.values()):
            try:
                sub.listener(event_type, update)
            except Exception as e:
                log.warning(
                    "listener_error",
                    subscription_id=sub.id,
                    event_type=event_type.value,
                    update_id=getattr(update, "id", None),
                    error=str(e),
                )

    def clear(self) -> None:
        self._subscriptions.clear()

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

"""Optimistic update records and their state machine.

WHY
───
An optimistic update shows the user the expected result of a mutation
before the backend has answered. The record below tracks that guess from
dispatch until it is either confirmed (``success``) or undone
(``rolled_back``); every status change is checked against
``UPDATE_VALID_TRANSITIONS``.

Valid transition graph::

    PENDING     → RETRYING | SUCCESS | FAILED | ROLLED_BACK
    RETRYING    → PENDING (backoff) | SUCCESS | FAILED | ROLLED_BACK
    FAILED      → ROLLED_BACK
    SUCCESS     → (terminal)
    ROLLED_BACK → (terminal)

Related modules:
    manager.py: OptimisticUpdateManager drives these transitions
    timers.py : ScopedTimer backs ``rollback_timer``
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from mealsync.core.errors import InvalidTransitionError
from mealsync.core.timestamps import to_iso8601, utc_now
from mealsync.optimistic.timers import ScopedTimer
from mealsync.schema import Entity


class UpdateKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class UpdateStatus(str, Enum):
    """Lifecycle status of a ``PendingUpdate``."""

    PENDING = "pending"  # Dispatched, backend call in flight
    RETRYING = "retrying"  # A retry attempt is in flight
    SUCCESS = "success"  # Confirmed; evicted after the grace period
    FAILED = "failed"  # Backend failed; rollback follows immediately
    ROLLED_BACK = "rolled_back"  # Original value restored

    @property
    def is_live(self) -> bool:
        """True while the optimistic payload is the visible value."""
        return self in (UpdateStatus.PENDING, UpdateStatus.RETRYING)

    @property
    def is_terminal(self) -> bool:
        return self in (UpdateStatus.SUCCESS, UpdateStatus.ROLLED_BACK)


UPDATE_VALID_TRANSITIONS: dict[UpdateStatus, frozenset[UpdateStatus]] = {
    UpdateStatus.PENDING: frozenset({
        UpdateStatus.RETRYING,
        UpdateStatus.SUCCESS,
        UpdateStatus.FAILED,
        UpdateStatus.ROLLED_BACK,  # rollback timer, cancellation
    }),
    UpdateStatus.RETRYING: frozenset({
        UpdateStatus.PENDING,  # waiting out the backoff delay
        UpdateStatus.SUCCESS,
        UpdateStatus.FAILED,
        UpdateStatus.ROLLED_BACK,
    }),
    UpdateStatus.FAILED: frozenset({UpdateStatus.ROLLED_BACK}),
    UpdateStatus.SUCCESS: frozenset(),  # terminal
    UpdateStatus.ROLLED_BACK: frozenset(),  # terminal
}


def validate_update_transition(current: UpdateStatus, target: UpdateStatus) -> None:
    """Raise ``InvalidTransitionError`` if *current → target* is illegal.

    Example:
        >>> validate_update_transition(UpdateStatus.PENDING, UpdateStatus.SUCCESS)
        >>> validate_update_transition(UpdateStatus.SUCCESS, UpdateStatus.PENDING)
        Traceback (most recent call last):
        ...
        InvalidTransitionError: Invalid update transition: success -> pending
    """
    if target not in UPDATE_VALID_TRANSITIONS[current]:
        raise InvalidTransitionError(current.value, target.value)


class FailureReason:
    """Reason strings recorded on failed and rolled-back updates."""

    SERVICE_ERROR = "service_error"
    NETWORK_ERROR = "network_error"
    REQUEST_TIMEOUT = "request_timeout"
    TIMEOUT = "timeout"  # rollback timer fired
    MAX_RETRIES_EXCEEDED = "max_retries_exceeded"
    CANCELLED = "cancelled"
    NOT_AUTHENTICATED = "not_authenticated"
    CLEARED = "cleared"


@dataclass
class PendingUpdate:
    """One in-flight optimistic mutation.

    ``optimistic_payload`` is ``None`` for a delete (tombstone).
    ``original_payload`` is the authoritative value at dispatch time, or
    ``None`` when it was unknown. For an update built from a partial payload,
    ``changes`` holds the normalized delta; readers apply it to the current
    value instead of using the dispatch-time snapshot.
    """

    id: str
    kind: UpdateKind
    entity_type: str
    entity_id: Any
    optimistic_payload: Entity | None
    original_payload: Entity | None
    sequence: int
    status: UpdateStatus = UpdateStatus.PENDING
    retry_count: int = 0
    created_at: str = field(default_factory=lambda: to_iso8601(utc_now()))
    settled_at: str | None = None
    rollback_timer: ScopedTimer | None = field(default=None, repr=False)
    actual_payload: Entity | None = None
    resolved_entity_id: Any = None
    failure_reason: str | None = None
    error: BaseException | None = field(default=None, repr=False)
    retry_delays: list[float] = field(default_factory=list)
    changes: Entity | None = None

    def transition(self, target: UpdateStatus) -> None:
        validate_update_transition(self.status, target)
        self.status = target
        if target.is_terminal or target is UpdateStatus.FAILED:
            self.settled_at = self.settled_at or to_iso8601(utc_now())

    def disarm(self) -> bool:
        """Cancel the rollback timer; a second call is a no-op."""
        if self.rollback_timer is None:
            return False
        return self.rollback_timer.cancel()

    @property
    def key(self) -> tuple[str, Any]:
        return (self.entity_type, self.entity_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "failure_reason": self.failure_reason,
            "created_at": self.created_at,
            "settled_at": self.settled_at,
        }


@dataclass(frozen=True)
class UpdateHistoryEntry:
    """Immutable record of how an update ended."""

    update_id: str
    kind: UpdateKind
    entity_type: str
    entity_id: Any
    status: UpdateStatus
    reason: str | None
    retry_count: int
    created_at: str
    settled_at: str | None
    error: str | None = None

    @classmethod
    def from_update(cls, update: PendingUpdate) -> UpdateHistoryEntry:
        return cls(
            update_id=update.id,
            kind=update.kind,
            entity_type=update.entity_type,
            entity_id=update.resolved_entity_id if update.resolved_entity_id is not None else update.entity_id,
            status=update.status,
            reason=update.failure_reason,
            retry_count=update.retry_count,
            created_at=update.created_at,
            settled_at=update.settled_at,
            error=str(update.error) if update.error is not None else None,
        )

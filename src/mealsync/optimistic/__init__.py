"""Optimistic updates: records, state machine, notification and the manager."""

from mealsync.optimistic.channel import UpdateChannel, UpdateEventType, UpdateListener
from mealsync.optimistic.manager import OptimisticUpdateManager
from mealsync.optimistic.models import (
    UPDATE_VALID_TRANSITIONS,
    FailureReason,
    PendingUpdate,
    UpdateHistoryEntry,
    UpdateKind,
    UpdateStatus,
    validate_update_transition,
)
from mealsync.optimistic.timers import ScopedTimer

__all__ = [
    "UPDATE_VALID_TRANSITIONS",
    "FailureReason",
    "OptimisticUpdateManager",
    "PendingUpdate",
    "ScopedTimer",
    "UpdateChannel",
    "UpdateEventType",
    "UpdateHistoryEntry",
    "UpdateKind",
    "UpdateListener",
    "UpdateStatus",
    "validate_update_transition",
]

"""Optimistic Update Manager: the reconciliation state machine.

WHY
───
A mutation is shown to the user the moment it is dispatched. The manager
keeps two layers per ``(entity_type, entity_id)``:

* the **authoritative** layer: the last value a backend confirmed, and
* the **speculative** overlay: the live updates applied, in dispatch
  order, on top of the authoritative value.

Readers see the overlay while an update is live and the authoritative
value otherwise. Success promotes the backend's answer to the
authoritative layer; failure drops the overlay, which republishes the
original value.

ARCHITECTURE
────────────
::

    create() ──► PENDING ──────────────┬──► SUCCESS ──(grace)──► evicted
       │           │   ▲               │
       │ rollback  │   │ backoff       ├──► FAILED ──► ROLLED_BACK
       │ timer     ▼   │               │
       │        RETRYING ──────────────┘
       └─(fires)──────────────────────────► ROLLED_BACK (reason=timeout)

Related modules:
    models.py : PendingUpdate, transition table, history entries
    channel.py: synchronous listener fan-out
    ../store.py: drives the manager from real backend calls
"""

from __future__ import annotations

import asyncio
import copy
import functools
import itertools
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from mealsync.core.errors import (
    PendingLimitExceeded,
    RequestCancelled,
    failure_reason_for,
    is_retryable,
)
from mealsync.core.logging import get_logger
from mealsync.core.settings import MealsyncSettings
from mealsync.core.timestamps import generate_update_id
from mealsync.lifecycle.retry import ExponentialBackoff, RetryStrategy
from mealsync.optimistic.channel import UpdateChannel, UpdateEventType, UpdateListener
from mealsync.optimistic.models import (
    FailureReason,
    PendingUpdate,
    UpdateHistoryEntry,
    UpdateKind,
    UpdateStatus,
)
from mealsync.optimistic.timers import ScopedTimer
from mealsync.schema import Entity, EntityFamily, validate

log = get_logger(__name__)

EntityKey = tuple[str, Any]


class OptimisticUpdateManager:
    """
    Tracks every optimistic update from dispatch to settlement.

    All methods must be called from the event loop thread. Listeners run
    synchronously inside the call that produced the event; a listener that
    calls back into ``mark_success``, ``mark_failed`` or ``rollback`` has
    that call deferred to the next loop iteration.
    """

    def __init__(
        self,
        *,
        rollback_timeout: float = 30.0,
        success_grace: float = 0.3,
        max_pending: int = 10,
        history_limit: int = 50,
        backoff: RetryStrategy | None = None,
    ):
        self.rollback_timeout = rollback_timeout
        self.success_grace = success_grace
        self.max_pending = max_pending
        self.backoff = backoff or ExponentialBackoff()
        self._active: dict[str, PendingUpdate] = {}
        self._authoritative: dict[EntityKey, Entity] = {}
        self._history: deque[UpdateHistoryEntry] = deque(maxlen=history_limit)
        self._channel = UpdateChannel()
        self._sequence = itertools.count(1)
        self._notifying = 0
        self._evictions: dict[str, asyncio.TimerHandle] = {}

    @classmethod
    def from_settings(cls, settings: MealsyncSettings) -> OptimisticUpdateManager:
        return cls(
            rollback_timeout=settings.rollback_timeout,
            success_grace=settings.success_grace,
            max_pending=settings.max_pending_updates,
            history_limit=settings.history_limit,
            backoff=ExponentialBackoff(
                max_retries=settings.max_retries,
                base_delay=settings.retry_base_delay,
                max_delay=settings.retry_max_delay,
            ),
        )

    # ------------------------------------------------------------------
    # Notification
    # ------------------------------------------------------------------

    def subscribe(self, listener: UpdateListener) -> Callable[[], None]:
        """Register ``listener(event_type, update)``; returns an unsubscribe function."""
        return self._channel.subscribe(listener)

    def _publish(self, event_type: UpdateEventType, update: PendingUpdate | None) -> None:
        self._notifying += 1
        try:
            self._channel.publish(event_type, update)
        finally:
            self._notifying -= 1

    def _defer(self, method: Callable[..., Any], *args: Any) -> bool:
        """Push a re-entrant call to the next loop iteration."""
        if not self._notifying:
            return False
        asyncio.get_running_loop().call_soon(functools.partial(method, *args))
        log.debug("update_call_deferred", method=method.__name__)
        return True

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def create(
        self,
        kind: UpdateKind | str,
        entity_type: EntityFamily | str,
        entity_id: Any,
        optimistic: Entity | None,
        original: Entity | None = None,
        *,
        changes: Entity | None = None,
    ) -> PendingUpdate:
        """Register a new update and arm its rollback timer.

        ``original`` defaults to the authoritative value currently known for
        the entity. A caller-supplied original is adopted as the
        authoritative value when none is known yet.

        ``changes`` is the delta of an update; when given, readers apply it
        on top of whatever value is current instead of ``optimistic``.
        """
        kind = UpdateKind(kind)
        entity_type = EntityFamily(entity_type).value
        live = sum(1 for u in self._active.values() if u.status.is_live)
        if live >= self.max_pending:
            raise PendingLimitExceeded(self.max_pending)

        key = (entity_type, entity_id)
        if original is None:
            original = self._authoritative.get(key)
        elif key not in self._authoritative:
            self._authoritative[key] = copy.deepcopy(original)

        update = PendingUpdate(
            id=generate_update_id(),
            kind=kind,
            entity_type=entity_type,
            entity_id=entity_id,
            optimistic_payload=copy.deepcopy(optimistic),
            original_payload=copy.deepcopy(original),
            sequence=next(self._sequence),
            changes=copy.deepcopy(changes),
        )
        update.rollback_timer = ScopedTimer(
            self.rollback_timeout,
            self._on_rollback_timeout,
            update.id,
            name=f"rollback:{update.id}",
        )
        self._active[update.id] = update
        log.info(
            "update_created",
            update_id=update.id,
            kind=kind.value,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        self._publish(UpdateEventType.CREATED, update)
        return update

    def mark_success(self, update_id: str, actual: Entity | None = None) -> PendingUpdate | None:
        """Confirm an update with the backend's answer."""
        if self._defer(self.mark_success, update_id, actual):
            return None
        update = self._live(update_id)
        if update is None:
            return None

        update.disarm()
        update.transition(UpdateStatus.SUCCESS)
        update.actual_payload = copy.deepcopy(actual)
        self._promote(update, actual)
        self._history.append(UpdateHistoryEntry.from_update(update))
        log.info(
            "update_succeeded",
            update_id=update.id,
            entity_type=update.entity_type,
            entity_id=update.resolved_entity_id or update.entity_id,
            retry_count=update.retry_count,
        )
        self._publish(UpdateEventType.SUCCESS, update)
        self._schedule_eviction(update)
        return update

    def mark_failed(
        self,
        update_id: str,
        reason: str = FailureReason.SERVICE_ERROR,
        error: BaseException | None = None,
    ) -> PendingUpdate | None:
        """Record a failure, then roll the update back."""
        if self._defer(self.mark_failed, update_id, reason, error):
            return None
        update = self._live(update_id)
        if update is None:
            return None

        update.disarm()
        update.failure_reason = reason
        update.error = error
        update.transition(UpdateStatus.FAILED)
        self._history.append(UpdateHistoryEntry.from_update(update))
        log.warning(
            "update_failed",
            update_id=update.id,
            entity_type=update.entity_type,
            entity_id=update.entity_id,
            reason=reason,
            error=str(error) if error is not None else None,
        )
        self._publish(UpdateEventType.FAILED, update)
        self._rollback(update, reason)
        return update

    def rollback(self, update_id: str, reason: str | None = None) -> PendingUpdate | None:
        """Drop the overlay and republish the original value."""
        if self._defer(self.rollback, update_id, reason):
            return None
        update = self._active.get(update_id)
        if update is None or update.status.is_terminal:
            return None
        self._rollback(update, reason)
        return update

    def _rollback(self, update: PendingUpdate, reason: str | None) -> None:
        was_failed = update.status is UpdateStatus.FAILED
        update.disarm()
        if reason and not update.failure_reason:
            update.failure_reason = reason
        update.transition(UpdateStatus.ROLLED_BACK)
        self._active.pop(update.id, None)
        if not was_failed:
            self._history.append(UpdateHistoryEntry.from_update(update))
        log.info(
            "update_rolled_back",
            update_id=update.id,
            entity_type=update.entity_type,
            entity_id=update.entity_id,
            reason=update.failure_reason,
        )
        self._publish(UpdateEventType.ROLLED_BACK, update)

    async def retry(
        self,
        update_id: str,
        retry_fn: Callable[[], Awaitable[Entity | None]],
    ) -> PendingUpdate | None:
        """Re-run a failed backend call with exponential backoff.

        Each attempt increments ``retry_count`` and publishes ``retrying``.
        Between attempts the update waits
        ``min(base_delay * 2 ** (retry_count - 1), max_delay)`` seconds.
        Once ``max_retries`` attempts have failed the update is marked
        failed with reason ``max_retries_exceeded`` and rolled back.
        """
        update = self._live(update_id)
        if update is None:
            return None

        while True:
            if not self.backoff.should_retry(update.retry_count):
                self.mark_failed(update.id, FailureReason.MAX_RETRIES_EXCEEDED, update.error)
                return update

            update.retry_count += 1
            update.transition(UpdateStatus.RETRYING)
            log.info("update_retrying", update_id=update.id, attempt=update.retry_count)
            self._publish(UpdateEventType.RETRYING, update)

            try:
                actual = await retry_fn()
            except RequestCancelled:
                self.rollback(update.id, FailureReason.CANCELLED)
                return update
            except Exception as e:
                if not update.status.is_live:
                    return update
                update.error = e
                if not is_retryable(e):
                    self.mark_failed(update.id, failure_reason_for(e), e)
                    return update
                if not self.backoff.should_retry(update.retry_count):
                    self.mark_failed(update.id, FailureReason.MAX_RETRIES_EXCEEDED, e)
                    return update
                delay = self.backoff.next_delay(update.retry_count - 1)
                update.retry_delays.append(delay)
                update.transition(UpdateStatus.PENDING)
                log.debug("update_backoff", update_id=update.id, delay=delay, error=str(e))
                await asyncio.sleep(delay)
                if not update.status.is_live:
                    return update
                continue

            if update.status.is_live:
                self.mark_success(update.id, actual)
            return update

    def _on_rollback_timeout(self, update_id: str) -> None:
        update = self._active.get(update_id)
        if update is None or not update.status.is_live:
            return
        log.warning(
            "update_rollback_timeout",
            update_id=update_id,
            timeout=self.rollback_timeout,
            status=update.status.value,
        )
        self._rollback(update, FailureReason.TIMEOUT)

    def _live(self, update_id: str) -> PendingUpdate | None:
        update = self._active.get(update_id)
        if update is None or not update.status.is_live:
            log.debug(
                "update_already_settled",
                update_id=update_id,
                status=update.status.value if update else None,
            )
            return None
        return update

    def _promote(self, update: PendingUpdate, actual: Entity | None) -> None:
        """Move the confirmed value into the authoritative layer."""
        if update.kind is UpdateKind.DELETE:
            self._authoritative.pop(update.key, None)
            return
        value = actual if actual is not None else update.optimistic_payload
        if value is None:
            return
        entity_id = update.entity_id
        if update.kind is UpdateKind.CREATE:
            entity_id = value.get("id", entity_id)
            update.resolved_entity_id = entity_id
        self._authoritative[(update.entity_type, entity_id)] = copy.deepcopy(value)

    def _schedule_eviction(self, update: PendingUpdate) -> None:
        if self.success_grace <= 0:
            self._evict(update.id)
            return
        loop = asyncio.get_running_loop()
        self._evictions[update.id] = loop.call_later(self.success_grace, self._evict, update.id)

    def _evict(self, update_id: str) -> None:
        self._evictions.pop(update_id, None)
        self._active.pop(update_id, None)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def remember_authoritative(self, entity_type: EntityFamily | str, entities: Iterable[Entity]) -> None:
        """Record values just read from a backend as the authoritative layer."""
        entity_type = EntityFamily(entity_type).value
        for entity in entities:
            if entity.get("id") is not None:
                self._authoritative[(entity_type, entity["id"])] = copy.deepcopy(entity)

    def forget_authoritative(self, entity_type: EntityFamily | str, entity_id: Any) -> None:
        self._authoritative.pop((EntityFamily(entity_type).value, entity_id), None)

    def authoritative(self, entity_type: EntityFamily | str, entity_id: Any) -> Entity | None:
        value = self._authoritative.get((EntityFamily(entity_type).value, entity_id))
        return copy.deepcopy(value)

    def _live_for(self, entity_type: str) -> dict[Any, list[PendingUpdate]]:
        """Live updates of one family grouped by entity, each group oldest first."""
        groups: dict[Any, list[PendingUpdate]] = {}
        for update in self.get_pending():
            if update.entity_type == entity_type:
                groups.setdefault(update.entity_id, []).append(update)
        return groups

    @staticmethod
    def _fold(entity_type: str, base: Entity | None, updates: list[PendingUpdate]) -> Entity | None:
        """Apply ``updates`` in dispatch order on top of ``base``."""
        value = copy.deepcopy(base)
        deleted = False
        merged = False
        for update in updates:
            if update.kind is UpdateKind.DELETE:
                value, deleted, merged = None, True, False
            elif update.kind is UpdateKind.UPDATE and update.changes is not None:
                if deleted:
                    continue
                start = value if value is not None else update.optimistic_payload
                value = {**(start or {}), **copy.deepcopy(update.changes), "id": update.entity_id}
                merged = True
            else:
                value, deleted, merged = copy.deepcopy(update.optimistic_payload), False, False
        if merged:
            # An entity never read may still lack required fields.
            result = validate(entity_type, value)
            if result.valid:
                value = result.data
        return value

    def observe(self, entity_type: EntityFamily | str, entity_id: Any) -> Entity | None:
        """The value a reader should see right now (``None`` when deleted or unknown)."""
        entity_type = EntityFamily(entity_type).value
        updates = self.get_pending_for_entity(entity_type, entity_id)
        base = self.authoritative(entity_type, entity_id)
        if not updates:
            return base
        return self._fold(entity_type, base, updates)

    def overlay(self, entity_type: EntityFamily | str, entities: list[Entity]) -> list[Entity]:
        """Apply live updates to a list read from a backend."""
        entity_type = EntityFamily(entity_type).value
        groups = self._live_for(entity_type)

        result = []
        seen = set()
        for entity in entities:
            entity_id = entity.get("id")
            seen.add(entity_id)
            updates = groups.get(entity_id)
            if not updates:
                result.append(entity)
                continue
            value = self._fold(entity_type, entity, updates)
            if value is not None:
                result.append(value)

        created = []
        for entity_id, updates in reversed(list(groups.items())):
            if entity_id in seen or updates[0].kind is not UpdateKind.CREATE:
                continue
            value = self._fold(entity_type, None, updates)
            if value is not None:
                created.append(value)
        return created + result

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get(self, update_id: str) -> PendingUpdate | None:
        return self._active.get(update_id)

    def get_pending(self) -> list[PendingUpdate]:
        """Live updates, oldest first."""
        return sorted(
            (u for u in self._active.values() if u.status.is_live),
            key=lambda u: u.sequence,
        )

    def get_pending_for_entity(self, entity_type: EntityFamily | str, entity_id: Any) -> list[PendingUpdate]:
        key = (EntityFamily(entity_type).value, entity_id)
        return [u for u in self.get_pending() if u.key == key]

    @property
    def pending_count(self) -> int:
        return len(self.get_pending())

    @property
    def active_count(self) -> int:
        """Updates still tracked, including successes inside their grace period."""
        return len(self._active)

    def get_history(self, limit: int | None = None) -> list[UpdateHistoryEntry]:
        """Settled updates, newest first."""
        entries = list(reversed(self._history))
        return entries[:limit] if limit is not None else entries

    def clear(self) -> None:
        """Disarm every timer and forget every active update."""
        for update in self._active.values():
            update.disarm()
        for handle in self._evictions.values():
            handle.cancel()
        count = len(self._active)
        self._evictions.clear()
        self._active.clear()
        log.info("updates_cleared", count=count)
        self._publish(UpdateEventType.CLEARED, None)

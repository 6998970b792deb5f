"""Tests for OptimisticUpdateManager.

Covers:
- Create / success / failure / rollback transitions and their events
- The rollback timer (timeout bound, disarmed exactly once)
- Read-side overlay: newest live update wins, update deltas stack in
  dispatch order, rollback restores
- Retry with capped, non-decreasing backoff
- Listener isolation and re-entrant calls from listeners
- History and clear()
"""

from __future__ import annotations

import asyncio

import pytest
from structlog.testing import capture_logs

from mealsync.core.errors import (
    BackendError,
    InvalidTransitionError,
    NetworkError,
    PendingLimitExceeded,
    RequestCancelled,
)
from mealsync.lifecycle import ExponentialBackoff
from mealsync.optimistic import (
    FailureReason,
    OptimisticUpdateManager,
    UpdateEventType,
    UpdateKind,
    UpdateStatus,
    validate_update_transition,
)
from tests._support.fakes import EventRecorder, make_settings

SOUP = {"id": 7, "name": "Soup", "tags": []}
STEW = {"id": 7, "name": "Stew", "tags": []}


def _manager(**kwargs) -> OptimisticUpdateManager:
    kwargs.setdefault("rollback_timeout", 1.0)
    kwargs.setdefault("success_grace", 0.01)
    kwargs.setdefault(
        "backoff", ExponentialBackoff(max_retries=3, base_delay=0.01, max_delay=0.015)
    )
    return OptimisticUpdateManager(**kwargs)


@pytest.fixture
def manager():
    return _manager()


@pytest.fixture
def events(manager):
    recorder = EventRecorder()
    manager.subscribe(recorder)
    return recorder


# =============================================================================
# Transitions
# =============================================================================


class TestTransitionTable:
    @pytest.mark.parametrize(
        "current, target",
        [
            (UpdateStatus.PENDING, UpdateStatus.SUCCESS),
            (UpdateStatus.PENDING, UpdateStatus.RETRYING),
            (UpdateStatus.RETRYING, UpdateStatus.PENDING),
            (UpdateStatus.FAILED, UpdateStatus.ROLLED_BACK),
        ],
    )
    def test_valid(self, current, target):
        validate_update_transition(current, target)

    @pytest.mark.parametrize(
        "current, target",
        [
            (UpdateStatus.SUCCESS, UpdateStatus.PENDING),
            (UpdateStatus.ROLLED_BACK, UpdateStatus.PENDING),
            (UpdateStatus.FAILED, UpdateStatus.SUCCESS),
            (UpdateStatus.SUCCESS, UpdateStatus.ROLLED_BACK),
        ],
    )
    def test_invalid(self, current, target):
        with pytest.raises(InvalidTransitionError):
            validate_update_transition(current, target)


class TestCreate:
    @pytest.mark.asyncio
    async def test_created_is_published_synchronously(self, manager, events):
        update = manager.create("update", "recipes", 7, STEW, SOUP)
        assert events.events == [("created", update.id)]
        assert update.status is UpdateStatus.PENDING
        assert update.kind is UpdateKind.UPDATE
        assert update.rollback_timer.active

    @pytest.mark.asyncio
    async def test_original_defaults_to_authoritative(self, manager):
        manager.remember_authoritative("recipes", [SOUP])
        update = manager.create("update", "recipes", 7, STEW)
        assert update.original_payload == SOUP

    @pytest.mark.asyncio
    async def test_payloads_are_copied(self, manager):
        payload = {"id": 7, "name": "Stew", "tags": ["a"]}
        update = manager.create("update", "recipes", 7, payload, SOUP)
        payload["tags"].append("b")
        assert update.optimistic_payload["tags"] == ["a"]

    @pytest.mark.asyncio
    async def test_pending_limit(self):
        manager = _manager(max_pending=2)
        manager.create("update", "recipes", 1, {"id": 1, "name": "A"})
        manager.create("update", "recipes", 2, {"id": 2, "name": "B"})
        with pytest.raises(PendingLimitExceeded):
            manager.create("update", "recipes", 3, {"id": 3, "name": "C"})

    @pytest.mark.asyncio
    async def test_settled_updates_free_slots(self):
        manager = _manager(max_pending=1, success_grace=10)
        first = manager.create("update", "recipes", 1, {"id": 1, "name": "A"})
        manager.mark_success(first.id, {"id": 1, "name": "A"})
        manager.create("update", "recipes", 2, {"id": 2, "name": "B"})

    @pytest.mark.asyncio
    async def test_from_settings(self):
        manager = OptimisticUpdateManager.from_settings(make_settings(max_retries=5, max_pending_updates=4))
        assert manager.backoff.max_retries == 5
        assert manager.max_pending == 4


class TestSuccess:
    @pytest.mark.asyncio
    async def test_success_promotes_actual(self, manager, events):
        update = manager.create("update", "recipes", 7, STEW, SOUP)
        actual = {**STEW, "updated_at": "2024-03-10T12:00:00+00:00"}
        manager.mark_success(update.id, actual)

        assert update.status is UpdateStatus.SUCCESS
        assert events.types == ["created", "success"]
        assert manager.authoritative("recipes", 7) == actual
        assert manager.observe("recipes", 7) == actual
        assert manager.pending_count == 0

    @pytest.mark.asyncio
    async def test_timer_disarmed_exactly_once(self, manager):
        update = manager.create("update", "recipes", 7, STEW, SOUP)
        manager.mark_success(update.id, STEW)
        assert update.rollback_timer.disarm_count == 1
        assert update.disarm() is False
        assert update.rollback_timer.disarm_count == 1

    @pytest.mark.asyncio
    async def test_evicted_after_grace(self, manager):
        update = manager.create("update", "recipes", 7, STEW, SOUP)
        manager.mark_success(update.id, STEW)
        assert manager.get(update.id) is update
        await asyncio.sleep(0.05)
        assert manager.get(update.id) is None
        assert manager.active_count == 0

    @pytest.mark.asyncio
    async def test_create_resolves_server_id(self, manager):
        update = manager.create("create", "recipes", "temp_1", {"id": "temp_1", "name": "Soup"})
        manager.mark_success(update.id, {"id": 42, "name": "Soup"})
        assert update.resolved_entity_id == 42
        assert manager.authoritative("recipes", 42)["name"] == "Soup"
        assert manager.observe("recipes", "temp_1") is None
        assert manager.get_history()[0].entity_id == 42

    @pytest.mark.asyncio
    async def test_delete_success_removes_authoritative(self, manager):
        manager.remember_authoritative("recipes", [SOUP])
        update = manager.create("delete", "recipes", 7, None)
        assert manager.observe("recipes", 7) is None
        manager.mark_success(update.id)
        assert manager.authoritative("recipes", 7) is None

    @pytest.mark.asyncio
    async def test_second_settlement_is_ignored(self, manager, events):
        update = manager.create("update", "recipes", 7, STEW, SOUP)
        manager.mark_success(update.id, STEW)
        assert manager.mark_failed(update.id) is None
        assert manager.rollback(update.id) is None
        assert events.types == ["created", "success"]


class TestFailureAndRollback:
    @pytest.mark.asyncio
    async def test_failure_rolls_back_to_original(self, manager, events):
        update = manager.create("update", "recipes", 7, STEW, SOUP)
        assert manager.observe("recipes", 7)["name"] == "Stew"

        error = BackendError("conflict")
        manager.mark_failed(update.id, FailureReason.SERVICE_ERROR, error)

        assert events.types == ["created", "failed", "rolled_back"]
        assert update.status is UpdateStatus.ROLLED_BACK
        assert update.failure_reason == "service_error"
        assert update.error is error
        assert manager.observe("recipes", 7) == SOUP
        assert manager.get(update.id) is None
        assert update.rollback_timer.disarm_count == 1

    @pytest.mark.asyncio
    async def test_one_history_entry_per_update(self, manager):
        failed = manager.create("update", "recipes", 7, STEW, SOUP)
        manager.mark_failed(failed.id, FailureReason.NETWORK_ERROR)
        rolled = manager.create("update", "recipes", 7, STEW, SOUP)
        manager.rollback(rolled.id, FailureReason.CANCELLED)

        history = manager.get_history()
        assert [h.update_id for h in history] == [rolled.id, failed.id]
        assert history[0].status is UpdateStatus.ROLLED_BACK
        assert history[0].reason == "cancelled"
        assert history[1].status is UpdateStatus.FAILED
        assert history[1].reason == "network_error"

    @pytest.mark.asyncio
    async def test_rollback_of_unknown_original_drops_overlay(self, manager):
        update = manager.create("update", "recipes", 99, {"id": 99, "name": "Ghost"})
        manager.rollback(update.id)
        assert manager.observe("recipes", 99) is None

    @pytest.mark.asyncio
    async def test_rollback_unknown_id(self, manager):
        assert manager.rollback("upd_missing") is None


class TestRollbackTimer:
    @pytest.mark.asyncio
    async def test_timer_forces_rollback(self, events):
        manager = _manager(rollback_timeout=0.05)
        manager.subscribe(events)
        loop = asyncio.get_running_loop()
        started = loop.time()
        update = manager.create("update", "recipes", 7, STEW, SOUP)

        while update.status.is_live and loop.time() - started < 1.0:
            await asyncio.sleep(0.01)

        assert update.status is UpdateStatus.ROLLED_BACK
        assert update.failure_reason == FailureReason.TIMEOUT
        assert events.types == ["created", "rolled_back"]
        assert update.rollback_timer.fired
        assert update.rollback_timer.disarm_count == 1
        assert manager.observe("recipes", 7) == SOUP

    @pytest.mark.asyncio
    async def test_late_success_after_timeout_is_ignored(self):
        manager = _manager(rollback_timeout=0.02)
        update = manager.create("update", "recipes", 7, STEW, SOUP)
        await asyncio.sleep(0.05)
        assert manager.mark_success(update.id, STEW) is None
        assert manager.authoritative("recipes", 7) == SOUP


# =============================================================================
# Read side
# =============================================================================


class TestOverlay:
    @pytest.mark.asyncio
    async def test_newest_live_update_wins(self, manager):
        first = manager.create("update", "recipes", 7, {"id": 7, "name": "First"}, SOUP)
        second = manager.create("update", "recipes", 7, {"id": 7, "name": "Second"})
        assert second.original_payload == SOUP
        assert manager.observe("recipes", 7)["name"] == "Second"
        assert len(manager.get_pending_for_entity("recipes", 7)) == 2

        manager.mark_failed(second.id)
        assert manager.observe("recipes", 7)["name"] == "First"
        manager.mark_failed(first.id)
        assert manager.observe("recipes", 7) == SOUP

    @pytest.mark.asyncio
    async def test_changes_apply_in_dispatch_order(self, manager):
        manager.remember_authoritative("recipes", [{**SOUP, "servings": 2}])
        first = manager.create("update", "recipes", 7, STEW, changes={"name": "Stew"})
        manager.create("update", "recipes", 7, {**SOUP, "servings": 4}, changes={"servings": 4})

        seen = manager.observe("recipes", 7)
        assert (seen["name"], seen["servings"]) == ("Stew", 4)
        assert seen["ingredients"] == []
        assert [(r["name"], r["servings"]) for r in manager.overlay("recipes", [SOUP])] == [("Stew", 4)]

        manager.mark_failed(first.id)
        seen = manager.observe("recipes", 7)
        assert (seen["name"], seen["servings"]) == ("Soup", 4)

    @pytest.mark.asyncio
    async def test_changes_after_pending_delete_stay_hidden(self, manager):
        manager.remember_authoritative("recipes", [SOUP])
        manager.create("delete", "recipes", 7, None)
        manager.create("update", "recipes", 7, STEW, changes={"name": "Stew"})
        assert manager.observe("recipes", 7) is None
        assert manager.overlay("recipes", [SOUP]) == []

    @pytest.mark.asyncio
    async def test_overlay_list(self, manager):
        rows = [{"id": 1, "name": "A"}, {"id": 2, "name": "B"}, {"id": 3, "name": "C"}]
        manager.remember_authoritative("recipes", rows)
        manager.create("update", "recipes", 1, {"id": 1, "name": "A2"})
        manager.create("delete", "recipes", 2, None)
        manager.create("create", "recipes", "temp_x", {"id": "temp_x", "name": "New"})
        manager.create("update", "weekly_plans", 3, {"id": 3, "name": "Other family"})

        result = manager.overlay("recipes", rows)
        assert [r["name"] for r in result] == ["New", "A2", "C"]

    @pytest.mark.asyncio
    async def test_get_pending_oldest_first(self, manager):
        a = manager.create("update", "recipes", 1, {"id": 1, "name": "A"})
        b = manager.create("update", "recipes", 2, {"id": 2, "name": "B"})
        assert [u.id for u in manager.get_pending()] == [a.id, b.id]


# =============================================================================
# Retry
# =============================================================================


def _flaky(failures, result=None, error=None):
    calls = []

    async def attempt():
        calls.append(1)
        if len(calls) <= failures:
            raise error or NetworkError("connection reset")
        return result

    attempt.calls = calls
    return attempt


class TestRetry:
    @pytest.mark.asyncio
    async def test_retry_until_success(self, manager, events):
        update = manager.create("update", "recipes", 7, STEW, SOUP)
        attempt = _flaky(2, result=STEW)
        await manager.retry(update.id, attempt)

        assert update.status is UpdateStatus.SUCCESS
        assert update.retry_count == 3
        assert len(attempt.calls) == 3
        assert update.retry_delays == [0.01, 0.015]
        assert events.types == ["created", "retrying", "retrying", "retrying", "success"]

    @pytest.mark.asyncio
    async def test_retry_bound(self, manager, events):
        update = manager.create("update", "recipes", 7, STEW, SOUP)
        attempt = _flaky(100)
        await manager.retry(update.id, attempt)

        assert len(attempt.calls) == 3
        assert update.retry_count == 3
        assert update.status is UpdateStatus.ROLLED_BACK
        assert update.failure_reason == FailureReason.MAX_RETRIES_EXCEEDED
        assert events.types[-2:] == ["failed", "rolled_back"]
        delays = update.retry_delays
        assert delays == sorted(delays)
        assert all(d <= 0.015 for d in delays)
        assert manager.observe("recipes", 7) == SOUP

    @pytest.mark.asyncio
    async def test_non_retryable_error_fails_immediately(self, manager):
        update = manager.create("update", "recipes", 7, STEW, SOUP)
        attempt = _flaky(100, error=BackendError("bad request"))
        await manager.retry(update.id, attempt)
        assert len(attempt.calls) == 1
        assert update.failure_reason == "service_error"

    @pytest.mark.asyncio
    async def test_cancelled_during_retry(self, manager, events):
        update = manager.create("update", "recipes", 7, STEW, SOUP)
        await manager.retry(update.id, _flaky(100, error=RequestCancelled("stop")))
        assert update.failure_reason == FailureReason.CANCELLED
        assert "failed" not in events.types

    @pytest.mark.asyncio
    async def test_no_retries_allowed(self):
        manager = _manager(backoff=ExponentialBackoff(max_retries=0))
        update = manager.create("update", "recipes", 7, STEW, SOUP)
        attempt = _flaky(0, result=STEW)
        await manager.retry(update.id, attempt)
        assert attempt.calls == []
        assert update.failure_reason == FailureReason.MAX_RETRIES_EXCEEDED

    @pytest.mark.asyncio
    async def test_rollback_during_backoff_stops_retrying(self):
        manager = _manager(backoff=ExponentialBackoff(max_retries=3, base_delay=0.05))
        update = manager.create("update", "recipes", 7, STEW, SOUP)
        attempt = _flaky(100)
        task = asyncio.create_task(manager.retry(update.id, attempt))
        await asyncio.sleep(0.02)
        manager.rollback(update.id, FailureReason.CANCELLED)
        await task
        assert len(attempt.calls) == 1
        assert update.status is UpdateStatus.ROLLED_BACK


# =============================================================================
# Listeners
# =============================================================================


class TestListeners:
    @pytest.mark.asyncio
    async def test_listener_errors_are_logged_not_raised(self, manager, events):
        def broken(event_type, update):
            raise RuntimeError("listener bug")

        manager.subscribe(broken)
        with capture_logs() as logs:
            update = manager.create("update", "recipes", 7, STEW, SOUP)
            manager.mark_success(update.id, STEW)

        assert events.types == ["created", "success"]
        errors = [log for log in logs if log["event"] == "listener_error"]
        assert len(errors) == 2
        assert errors[0]["error"] == "listener bug"

    @pytest.mark.asyncio
    async def test_unsubscribe(self, manager):
        recorder = EventRecorder()
        unsubscribe = manager.subscribe(recorder)
        unsubscribe()
        manager.create("update", "recipes", 7, STEW, SOUP)
        assert recorder.events == []

    @pytest.mark.asyncio
    async def test_reentrant_call_is_deferred(self, manager, events):
        def settle_on_create(event_type, update):
            if event_type is UpdateEventType.CREATED:
                result = manager.mark_success(update.id, update.optimistic_payload)
                assert result is None

        manager.subscribe(settle_on_create)
        update = manager.create("update", "recipes", 7, STEW, SOUP)
        assert update.status is UpdateStatus.PENDING
        assert events.types == ["created"]

        await asyncio.sleep(0)
        assert update.status is UpdateStatus.SUCCESS
        assert events.types == ["created", "success"]


# =============================================================================
# History and clear
# =============================================================================


class TestHistory:
    @pytest.mark.asyncio
    async def test_bounded_newest_first(self):
        manager = _manager(history_limit=3, success_grace=0)
        ids = []
        for n in range(5):
            update = manager.create("update", "recipes", n + 1, {"id": n + 1, "name": f"R{n}"})
            manager.mark_success(update.id, update.optimistic_payload)
            ids.append(update.id)

        history = manager.get_history()
        assert [h.update_id for h in history] == list(reversed(ids[-3:]))
        assert len(manager.get_history(limit=1)) == 1


class TestClear:
    @pytest.mark.asyncio
    async def test_clear_disarms_and_notifies(self, manager, events):
        a = manager.create("update", "recipes", 1, {"id": 1, "name": "A"})
        b = manager.create("update", "recipes", 2, {"id": 2, "name": "B"})
        manager.clear()

        assert manager.active_count == 0
        assert a.rollback_timer.cancelled and b.rollback_timer.cancelled
        assert events.events[-1] == ("all_updates_cleared", None)
        await asyncio.sleep(0)
        assert manager.observe("recipes", 1) is None

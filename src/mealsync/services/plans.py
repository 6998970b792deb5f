"""
Weekly plan operations.

At most one plan is current at a time. Saving or promoting a plan first
dispatches ``is_current=False`` updates for every other current plan, so
readers see the switch immediately and each flag change reconciles on its
own.
"""

from __future__ import annotations

from typing import Any

from mealsync.core.errors import NotFoundError
from mealsync.core.logging import get_logger
from mealsync.schema import Entity, EntityFamily
from mealsync.services.batch import dispatch_batch
from mealsync.store import DispatchHandle, OptimisticStore

logger = get_logger(__name__)

PLANS = EntityFamily.WEEKLY_PLANS


async def current_plan(store: OptimisticStore) -> Entity | None:
    """The current plan, or ``None``. Newest wins if several claim it."""
    for plan in await store.get_all(PLANS):
        if plan.get("is_current"):
            return plan
    return None


async def clear_current(store: OptimisticStore, *, keep: Any = None) -> list[DispatchHandle]:
    """Unset ``is_current`` on every current plan except ``keep``."""
    plans = await store.get_all(PLANS)
    stale = [p["id"] for p in plans if p.get("is_current") and p["id"] != keep]
    if stale:
        logger.debug("clearing_current_plans", count=len(stale))
    return await dispatch_batch(
        (lambda plan_id=plan_id: store.update(PLANS, plan_id, {"is_current": False}))
        for plan_id in stale
    )


async def save_plan(store: OptimisticStore, plan: Entity, *, set_current: bool = True) -> DispatchHandle:
    """Create a plan from ``plan`` (meals, name, notes).

    When ``set_current`` is true every other plan stops being current.
    Returns the handle of the create; its ``entity`` is visible at once.
    """
    if set_current:
        await clear_current(store)
    payload = {
        "name": plan.get("name"),
        "meals": plan.get("meals") or [],
        "notes": plan.get("notes"),
        "is_current": set_current,
    }
    return store.add(PLANS, payload)


async def set_current(store: OptimisticStore, plan_id: Any) -> DispatchHandle:
    """Make ``plan_id`` the current plan.

    Raises:
        NotFoundError: no plan with that id is visible.
    """
    plans = await store.get_all(PLANS)
    if not any(p.get("id") == plan_id for p in plans):
        raise NotFoundError(
            "Weekly plan not found",
        ).with_context(entity_type=PLANS.value, entity_id=plan_id)
    await clear_current(store, keep=plan_id)
    return store.update(PLANS, plan_id, {"is_current": True})

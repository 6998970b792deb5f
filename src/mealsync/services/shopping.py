"""
Shopping list item operations.

Checking items off, clearing checks and reordering are all optimistic
updates: each item change is its own ``PendingUpdate`` and reconciles or
rolls back independently.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from mealsync.core.logging import get_logger
from mealsync.core.timestamps import utc_now_iso
from mealsync.schema import Entity, EntityFamily
from mealsync.services.batch import dispatch_batch
from mealsync.store import DispatchHandle, OptimisticStore

logger = get_logger(__name__)

ITEMS = EntityFamily.SHOPPING_ITEMS


async def items_for_list(store: OptimisticStore, list_id: Any) -> list[Entity]:
    """Items of one shopping list ordered by ``sort_order``."""
    items = [i for i in await store.get_all(ITEMS) if i.get("shopping_list_id") == list_id]
    return sorted(items, key=lambda i: i.get("sort_order") or 0)


def toggle_checked(store: OptimisticStore, item_id: Any, checked: bool) -> DispatchHandle:
    """Check or uncheck an item; ``checked_at`` is stamped or cleared."""
    return store.update(
        ITEMS,
        item_id,
        {"checked": bool(checked), "checked_at": utc_now_iso() if checked else None},
    )


def move_to_category(
    store: OptimisticStore,
    item_id: Any,
    category: str,
    sort_order: int | None = None,
) -> DispatchHandle:
    changes: Entity = {"category": category}
    if sort_order is not None:
        changes["sort_order"] = sort_order
    return store.update(ITEMS, item_id, changes)


async def uncheck_all(store: OptimisticStore, list_id: Any) -> list[DispatchHandle]:
    """Uncheck every checked item of a list."""
    checked = [i["id"] for i in await items_for_list(store, list_id) if i.get("checked")]
    logger.debug("unchecking_items", list_id=list_id, count=len(checked))
    return await dispatch_batch(
        (lambda item_id=item_id: toggle_checked(store, item_id, False))
        for item_id in checked
    )


async def reorder(store: OptimisticStore, item_ids: Iterable[Any]) -> list[DispatchHandle]:
    """Give each item its position in ``item_ids`` as ``sort_order``."""
    return await dispatch_batch(
        (lambda item_id=item_id, position=position: store.update(ITEMS, item_id, {"sort_order": position}))
        for position, item_id in enumerate(item_ids)
    )

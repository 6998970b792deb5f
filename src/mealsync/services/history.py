"""
Meal history operations.

Logging a meal, date-window queries and the frequency statistics used to
split recipes into "regular" and "less regular" ones.

Dates are ``YYYY-MM-DD`` strings, which compare correctly as strings.
Every query takes an optional ``today`` so callers (and tests) can pin the
window.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any

from mealsync.core.errors import NotFoundError
from mealsync.core.logging import get_logger
from mealsync.core.timestamps import utc_now
from mealsync.schema import Entity, EntityFamily
from mealsync.schema.fields import coerce_date, coerce_positive_int
from mealsync.store import DispatchHandle, OptimisticStore

logger = get_logger(__name__)

HISTORY = EntityFamily.MEAL_HISTORY

REGULAR_THRESHOLD = 3


def _cutoff(weeks_back: int, today: date | None) -> str:
    today = today or utc_now().date()
    return (today - timedelta(days=weeks_back * 7)).isoformat()


@dataclass
class FrequencyBuckets:
    """Recipes split by how often they were eaten, most frequent first.

    Each recipe dict carries an extra ``frequency`` key.
    """

    regular: list[Entity] = field(default_factory=list)
    less_regular: list[Entity] = field(default_factory=list)


@dataclass
class HistoryStatistics:
    total_entries: int
    unique_recipes: int
    regular_recipes: int
    less_regular_recipes: int
    average_frequency: float


async def log_meal(
    store: OptimisticStore,
    recipe_id: Any,
    eaten_date: Any = None,
) -> DispatchHandle:
    """Record that ``recipe_id`` was eaten on ``eaten_date`` (default today).

    The week is derived from the date by the normalizer.

    Raises:
        ValidationError: ``recipe_id`` or ``eaten_date`` is malformed.
        NotFoundError: no such recipe.
    """
    recipe_id = coerce_positive_int(recipe_id, field="recipe_id")
    eaten = coerce_date(eaten_date, field="eaten_date") if eaten_date is not None else utc_now().date().isoformat()

    recipe = await store.get_by_id(EntityFamily.RECIPES, recipe_id)
    if recipe is None:
        raise NotFoundError(f"Recipe with ID {recipe_id} does not exist").with_context(
            entity_type=EntityFamily.RECIPES.value,
            entity_id=recipe_id,
        )
    return store.add(HISTORY, {"recipe_id": recipe_id, "eaten_date": eaten})


async def history_since(
    store: OptimisticStore,
    weeks_back: int = 8,
    *,
    today: date | None = None,
) -> list[Entity]:
    """Entries whose week starts within the last ``weeks_back`` weeks."""
    cutoff = _cutoff(weeks_back, today)
    return [e for e in await store.get_all(HISTORY) if (e.get("week_date") or "") >= cutoff]


async def recipe_frequency(
    store: OptimisticStore,
    weeks_back: int = 8,
    *,
    today: date | None = None,
) -> dict[int, int]:
    """``{recipe_id: times eaten}`` over the window."""
    counts = Counter(e["recipe_id"] for e in await history_since(store, weeks_back, today=today))
    return dict(counts)


async def categorize_by_frequency(
    store: OptimisticStore,
    weeks_back: int = 8,
    *,
    threshold: int = REGULAR_THRESHOLD,
    today: date | None = None,
) -> FrequencyBuckets:
    """Split every recipe by whether it was eaten ``threshold`` times or more."""
    recipes = await store.get_all(EntityFamily.RECIPES)
    frequency = await recipe_frequency(store, weeks_back, today=today)

    buckets = FrequencyBuckets()
    for recipe in recipes:
        count = frequency.get(recipe.get("id"), 0)
        entry = {**recipe, "frequency": count}
        if count >= threshold:
            buckets.regular.append(entry)
        else:
            buckets.less_regular.append(entry)

    # sort() is stable: equal counts keep the backend's order
    buckets.regular.sort(key=lambda r: r["frequency"], reverse=True)
    buckets.less_regular.sort(key=lambda r: r["frequency"], reverse=True)
    return buckets


async def recent_recipe_ids(
    store: OptimisticStore,
    weeks_back: int = 2,
    *,
    today: date | None = None,
) -> list[int]:
    """Unique recipe ids eaten in the last ``weeks_back`` weeks, newest entry first."""
    cutoff = _cutoff(weeks_back, today)
    seen: dict[int, None] = {}
    for entry in await store.get_all(HISTORY):
        if (entry.get("eaten_date") or "") >= cutoff:
            seen.setdefault(entry["recipe_id"], None)
    return list(seen)


async def statistics(
    store: OptimisticStore,
    weeks_back: int = 8,
    *,
    today: date | None = None,
) -> HistoryStatistics:
    entries = await store.get_all(HISTORY)
    frequency = await recipe_frequency(store, weeks_back, today=today)
    buckets = await categorize_by_frequency(store, weeks_back, today=today)
    return HistoryStatistics(
        total_entries=len(entries),
        unique_recipes=len(frequency),
        regular_recipes=len(buckets.regular),
        less_regular_recipes=len(buckets.less_regular),
        average_frequency=sum(frequency.values()) / len(frequency) if frequency else 0.0,
    )

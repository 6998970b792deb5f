"""
Recipe operations.

Search, tag listing and bulk import on top of the optimistic store.
Single-recipe writes go through ``store.add`` / ``store.update`` /
``store.delete`` directly; bulk import bypasses the optimistic layer and
writes straight to the selected backend in one call.
"""

from __future__ import annotations

from typing import Any

from mealsync.core.errors import ValidationError
from mealsync.core.logging import get_logger
from mealsync.schema import Entity, EntityFamily, validate
from mealsync.schema.entities import RECIPE_TAG_FIELDS
from mealsync.store import OptimisticStore

logger = get_logger(__name__)


async def search_recipes(store: OptimisticStore, query: Any) -> list[Entity]:
    """Recipes whose name or tags contain ``query`` (case-insensitive).

    A blank or non-string query matches nothing.
    """
    if not isinstance(query, str) or not query.strip():
        return []
    return await store.search(EntityFamily.RECIPES, query.strip())


async def all_tags(store: OptimisticStore, *, fields: tuple[str, ...] = ("tags",)) -> list[str]:
    """Sorted unique tags across every recipe.

    Args:
        store: The store to read from.
        fields: Which tag lists to collect; any of ``RECIPE_TAG_FIELDS``.
    """
    unknown = set(fields) - set(RECIPE_TAG_FIELDS)
    if unknown:
        raise ValueError(f"Unknown tag fields: {sorted(unknown)}")
    tags: set[str] = set()
    for recipe in await store.get_all(EntityFamily.RECIPES):
        for name in fields:
            tags.update(recipe.get(name) or [])
    return sorted(tags)


async def bulk_import(store: OptimisticStore, recipes: list[Any]) -> list[Entity]:
    """Validate every recipe, then insert them all in one backend call.

    Nothing is written when any recipe is invalid; the raised
    ``ValidationError`` lists every problem, prefixed with the row index.
    """
    rows: list[Entity] = []
    problems: list[str] = []
    for index, raw in enumerate(recipes):
        result = validate(EntityFamily.RECIPES, raw)
        if result.valid:
            data = dict(result.data)
            data.pop("id", None)
            rows.append(data)
        else:
            problems.extend(f"[{index}] {error}" for error in result.errors)
    if problems:
        raise ValidationError(
            f"{len(problems)} invalid recipe field(s) in import",
            field="recipes",
            errors=problems,
        )
    if not rows:
        return []

    backend = store.resolve_backend(EntityFamily.RECIPES)
    backend.check_access()
    created = await backend.bulk_add(rows)
    store.manager.remember_authoritative(EntityFamily.RECIPES, created)
    logger.info("recipes_imported", count=len(created), backend=backend.kind.value)
    return created

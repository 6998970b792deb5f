"""Shared behaviour for backend implementations."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from mealsync.backends.protocol import BackendKind
from mealsync.schema import Entity, EntityFamily, get_schema


def matches_query(entity: Entity, fields: tuple[str, ...], query: str) -> bool:
    """Case-insensitive substring match over string and string-list fields."""
    needle = query.strip().lower()
    if not needle:
        return True
    for name in fields:
        value = entity.get(name)
        if isinstance(value, str) and needle in value.lower():
            return True
        if isinstance(value, list) and any(
            isinstance(item, str) and needle in item.lower() for item in value
        ):
            return True
    return False


class BaseBackend(ABC):
    """
    Base class for backends of a single entity family.

    Subclasses implement the storage primitives; ``search`` and
    ``bulk_delete`` fall back to the primitives when the store has nothing
    faster.
    """

    kind: BackendKind

    def __init__(self, family: EntityFamily | str):
        self.family = EntityFamily(family)
        self.schema = get_schema(self.family)

    def check_access(self) -> None:
        return None

    @abstractmethod
    async def get_all(self) -> list[Entity]:
        ...

    @abstractmethod
    async def get_by_id(self, entity_id: Any) -> Entity | None:
        ...

    @abstractmethod
    async def add(self, entity: Entity) -> Entity:
        ...

    @abstractmethod
    async def update(self, entity_id: Any, partial: Entity) -> Entity:
        ...

    @abstractmethod
    async def delete(self, entity_id: Any) -> bool:
        ...

    @abstractmethod
    async def bulk_add(self, entities: list[Entity]) -> list[Entity]:
        ...

    async def bulk_delete(self, entity_ids: list[Any]) -> int:
        removed = 0
        for entity_id in entity_ids:
            if await self.delete(entity_id):
                removed += 1
        return removed

    async def search(self, query: str) -> list[Entity]:
        entities = await self.get_all()
        return [e for e in entities if matches_query(e, self.schema.search_fields, query)]

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(family={self.family.value})"

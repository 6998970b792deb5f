"""Backend Protocol: the single persistence interface.

Manifesto:
The optimistic store never cares whether an entity lives in the local
SQLite file or in the remote per-user store. ``Backend`` is a
``typing.Protocol``: any object with the right methods satisfies it,
no base class required (``BaseBackend`` exists for convenience).

ARCHITECTURE
────────────
::

    Backend (Protocol), one instance per entity family
      ├── .get_all()            ─ every entity, newest first
      ├── .get_by_id(id)        ─ one entity or None
      ├── .add(entity)          ─ create, returns stored entity (real id)
      ├── .update(id, partial)  ─ merge fields, returns stored entity
      ├── .delete(id)           ─ True if something was removed
      ├── .bulk_add(entities)   ─ create many in one round trip
      ├── .bulk_delete(ids)     ─ number removed
      ├── .search(query)        ─ case-insensitive match on search fields
      └── .check_access()       ─ sync; raises AuthenticationError pre-I/O

    Implementations:
      LocalBackend   ─ SQLite via asyncio.to_thread
      RemoteBackend  ─ PostgREST over httpx, filtered by user

Related modules:
    selector.py: BackendSelector picks one per call

Tags:
    backend, protocol, interface, persistence

Doc-Types:
    api-reference
"""

from enum import Enum
from typing import Any, Protocol, runtime_checkable

from mealsync.schema import Entity, EntityFamily


class BackendKind(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


@runtime_checkable
class Backend(Protocol):
    """Persistence adapter for one entity family.

    Every method returns normalized entities. Failures surface as
    ``MealsyncError`` subclasses: ``NotFoundError`` for a missing id,
    ``AuthenticationError`` when no identity is available, ``NetworkError``
    or ``RequestTimeout`` for transport failures, ``BackendError`` for
    everything the store itself rejects.
    """

    family: EntityFamily
    kind: BackendKind

    def check_access(self) -> None:
        """Raise ``AuthenticationError`` if this backend cannot act right now."""
        ...

    async def get_all(self) -> list[Entity]:
        ...

    async def get_by_id(self, entity_id: Any) -> Entity | None:
        ...

    async def add(self, entity: Entity) -> Entity:
        ...

    async def update(self, entity_id: Any, partial: Entity) -> Entity:
        ...

    async def delete(self, entity_id: Any) -> bool:
        ...

    async def bulk_add(self, entities: list[Entity]) -> list[Entity]:
        ...

    async def bulk_delete(self, entity_ids: list[Any]) -> int:
        ...

    async def search(self, query: str) -> list[Entity]:
        ...

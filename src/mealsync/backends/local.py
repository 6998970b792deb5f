"""Local backend: an embedded SQLite store.

``LocalDatabase`` owns the connection and the schema; ``LocalBackend``
adapts one table of it to the ``Backend`` protocol. SQLite calls are
blocking, so each backend operation runs in a worker thread
(``asyncio.to_thread``) and the connection is guarded by a lock.

Ids are assigned by ``INTEGER PRIMARY KEY AUTOINCREMENT``; the backend
stamps ``created_at`` and ``updated_at``.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from mealsync.backends.base import BaseBackend
from mealsync.backends.migrations import MigrationRunner
from mealsync.backends.protocol import BackendKind
from mealsync.core.errors import BackendError, ConflictError, NotFoundError
from mealsync.core.logging import get_logger
from mealsync.core.timestamps import utc_now_iso
from mealsync.schema import Entity, EntityFamily, normalize, normalize_partial

log = get_logger(__name__)

# Columns stored beside the JSON payload, per family.
INDEXED_COLUMNS: dict[EntityFamily, tuple[str, ...]] = {
    EntityFamily.RECIPES: ("name",),
    EntityFamily.WEEKLY_PLANS: ("is_current",),
    EntityFamily.MEAL_HISTORY: ("recipe_id", "eaten_date", "week_date"),
    EntityFamily.SHOPPING_ITEMS: ("shopping_list_id", "name", "category", "checked", "sort_order"),
}

_ROW_COLUMNS = ("id", "created_at", "updated_at")


class LocalDatabase:
    """
    SQLite database holding every entity family.

    Uses the built-in sqlite3 module; ``path`` may be a file or
    ``:memory:``. Pending schema migrations are applied on connect.
    """

    def __init__(self, path: str = ":memory:", *, timeout: float = 5.0):
        self.path = path
        self._timeout = timeout
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    def connect(self) -> None:
        """Connect and bring the schema up to date."""
        uri = self.path.startswith("file:")
        try:
            conn = sqlite3.connect(
                self.path,
                timeout=self._timeout,
                check_same_thread=False,
                uri=uri,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
        except sqlite3.Error as e:
            raise BackendError(
                f"Failed to open local database: {e}",
                cause=e,
            ).with_context(backend=BackendKind.LOCAL.value) from e

        result = MigrationRunner(conn).apply_pending()
        if not result.success:
            conn.close()
            name, error = next(iter(result.errors.items()))
            raise BackendError(f"Local schema migration {name} failed: {error}").with_context(
                backend=BackendKind.LOCAL.value,
            )
        self._conn = conn
        log.debug("local_database_opened", path=self.path, schema_version=result.schema_version)

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    @property
    def connected(self) -> bool:
        return self._conn is not None

    def get_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialized transaction; commits on success, rolls back on error."""
        with self._lock:
            conn = self.get_connection()
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def query(self, sql: str, params: tuple = ()) -> list[dict[str, Any]]:
        """Execute query and return results as dicts."""
        with self._lock:
            cursor = self.get_connection().execute(sql, params)
            return [dict(row) for row in cursor.fetchall()]


def _coerce_id(entity_id: Any) -> int | None:
    if isinstance(entity_id, bool):
        return None
    if isinstance(entity_id, int):
        return entity_id
    if isinstance(entity_id, str) and entity_id.strip().isdecimal():
        return int(entity_id.strip())
    return None


class LocalBackend(BaseBackend):
    """``Backend`` over one table of a ``LocalDatabase``."""

    kind = BackendKind.LOCAL

    def __init__(self, db: LocalDatabase, family: EntityFamily | str):
        super().__init__(family)
        self.db = db
        self.table = self.family.value
        self._columns = INDEXED_COLUMNS[self.family]

    # ------------------------------------------------------------------
    # Backend protocol
    # ------------------------------------------------------------------

    async def get_all(self) -> list[Entity]:
        return await asyncio.to_thread(self._run, self._get_all)

    async def get_by_id(self, entity_id: Any) -> Entity | None:
        return await asyncio.to_thread(self._run, self._get_by_id, entity_id)

    async def add(self, entity: Entity) -> Entity:
        return await asyncio.to_thread(self._run, self._add_many, [entity], single=True)

    async def update(self, entity_id: Any, partial: Entity) -> Entity:
        return await asyncio.to_thread(self._run, self._update, entity_id, partial)

    async def delete(self, entity_id: Any) -> bool:
        return await asyncio.to_thread(self._run, self._delete_many, [entity_id]) > 0

    async def bulk_add(self, entities: list[Entity]) -> list[Entity]:
        return await asyncio.to_thread(self._run, self._add_many, entities)

    async def bulk_delete(self, entity_ids: list[Any]) -> int:
        return await asyncio.to_thread(self._run, self._delete_many, entity_ids)

    # ------------------------------------------------------------------
    # Blocking implementation (runs in a worker thread)
    # ------------------------------------------------------------------

    def _run(self, func, *args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except sqlite3.IntegrityError as e:
            raise ConflictError(str(e), cause=e).with_context(
                backend=self.kind.value, entity_type=self.table,
            ) from e
        except sqlite3.Error as e:
            raise BackendError(f"Local store error: {e}", cause=e).with_context(
                backend=self.kind.value, entity_type=self.table,
            ) from e

    def _to_entity(self, row: dict[str, Any]) -> Entity:
        data = json.loads(row["data"])
        for column in _ROW_COLUMNS:
            data[column] = row[column]
        return normalize(self.family, data)

    def _row_values(self, entity: Entity) -> dict[str, Any]:
        payload = {k: v for k, v in entity.items() if k not in _ROW_COLUMNS}
        values = {column: entity.get(column) for column in self._columns}
        for column, value in values.items():
            if isinstance(value, bool):
                values[column] = int(value)
        values["data"] = json.dumps(payload, default=str)
        values["created_at"] = entity["created_at"]
        values["updated_at"] = entity["updated_at"]
        return values

    def _get_all(self) -> list[Entity]:
        rows = self.db.query(
            f"SELECT * FROM {self.table} ORDER BY created_at DESC, id DESC"
        )
        return [self._to_entity(row) for row in rows]

    def _get_by_id(self, entity_id: Any) -> Entity | None:
        key = _coerce_id(entity_id)
        if key is None:
            return None
        rows = self.db.query(f"SELECT * FROM {self.table} WHERE id = ?", (key,))
        return self._to_entity(rows[0]) if rows else None

    def _add_many(self, entities: list[Entity], single: bool = False) -> Entity | list[Entity]:
        now = utc_now_iso()
        stored = []
        with self.db.transaction() as conn:
            for raw in entities:
                entity = normalize(self.family, raw)
                entity.pop("id", None)
                entity["created_at"] = entity.get("created_at") or now
                entity["updated_at"] = now
                values = self._row_values(entity)
                columns = ", ".join(values)
                placeholders = ", ".join("?" for _ in values)
                cursor = conn.execute(
                    f"INSERT INTO {self.table} ({columns}) VALUES ({placeholders})",
                    tuple(values.values()),
                )
                stored.append({**entity, "id": cursor.lastrowid})
        log.debug("local_rows_added", table=self.table, count=len(stored))
        return stored[0] if single else stored

    def _update(self, entity_id: Any, partial: Entity) -> Entity:
        key = _coerce_id(entity_id)
        changes = normalize_partial(self.family, partial)
        with self.db.transaction() as conn:
            row = None
            if key is not None:
                row = conn.execute(
                    f"SELECT * FROM {self.table} WHERE id = ?", (key,)
                ).fetchone()
            if row is None:
                raise NotFoundError(f"{self.table} {entity_id} not found").with_context(
                    backend=self.kind.value, entity_type=self.table, entity_id=entity_id,
                )
            current = self._to_entity(dict(row))
            changes.pop("id", None)
            changes.pop("created_at", None)
            merged = normalize(self.family, {**current, **changes})
            merged["updated_at"] = utc_now_iso()
            values = self._row_values(merged)
            assignments = ", ".join(f"{column} = ?" for column in values)
            conn.execute(
                f"UPDATE {self.table} SET {assignments} WHERE id = ?",
                (*values.values(), key),
            )
        return merged

    def _delete_many(self, entity_ids: list[Any]) -> int:
        keys = [k for k in (_coerce_id(i) for i in entity_ids) if k is not None]
        if not keys:
            return 0
        placeholders = ", ".join("?" for _ in keys)
        with self.db.transaction() as conn:
            cursor = conn.execute(
                f"DELETE FROM {self.table} WHERE id IN ({placeholders})",
                tuple(keys),
            )
            return cursor.rowcount

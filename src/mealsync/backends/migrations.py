"""Schema versioning for the local store.

Each ``NNN_name.sql`` file under ``backends/schema/`` is one schema version.
The ``_migrations`` table lists the files already applied; opening a
database applies the rest in filename order, so a file written by an older
release gains the newer tables (e.g. ``shopping_list_items``) in place.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from pathlib import Path

from mealsync.core.logging import get_logger
from mealsync.core.timestamps import utc_now_iso

log = get_logger(__name__)

SCHEMA_DIR = Path(__file__).resolve().parent / "schema"

_CREATE_LEDGER = """
CREATE TABLE IF NOT EXISTS _migrations (
    name TEXT PRIMARY KEY,
    applied_at TEXT NOT NULL
)
"""


def discover_migrations(schema_dir: Path) -> list[Path]:
    """``.sql`` files of ``schema_dir`` in the order they must run."""
    if not schema_dir.is_dir():
        return []
    return sorted(schema_dir.glob("*.sql"), key=lambda p: p.name)


@dataclass
class MigrationResult:
    applied: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def schema_version(self) -> int:
        """Migrations in place once the run finished."""
        return len(self.applied) + len(self.skipped)


class MigrationRunner:
    """Brings one SQLite connection up to the newest schema version.

    A migration and its ledger row are committed together; a failing file
    is rolled back and stops the run, leaving later files pending.
    """

    def __init__(self, conn: sqlite3.Connection, schema_dir: Path | str | None = None) -> None:
        self._conn = conn
        self._schema_dir = Path(schema_dir) if schema_dir else SCHEMA_DIR
        self._conn.execute(_CREATE_LEDGER)
        self._conn.commit()

    def applied(self) -> dict[str, str]:
        """``{filename: applied_at}`` for every migration already in place."""
        rows = self._conn.execute("SELECT name, applied_at FROM _migrations ORDER BY name")
        return {name: applied_at for name, applied_at in rows}

    def get_pending(self) -> list[str]:
        done = self.applied()
        return [p.name for p in discover_migrations(self._schema_dir) if p.name not in done]

    def apply_pending(self) -> MigrationResult:
        result = MigrationResult()
        done = self.applied()
        for path in discover_migrations(self._schema_dir):
            if path.name in done:
                result.skipped.append(path.name)
                continue
            try:
                self._apply(path)
            except sqlite3.Error as e:
                result.errors[path.name] = str(e)
                log.error("migration_failed", migration=path.name, error=str(e))
                break
            result.applied.append(path.name)
            log.info("migration_applied", migration=path.name)
        return result

    def _apply(self, path: Path) -> None:
        sql = path.read_text(encoding="utf-8")
        # executescript commits first and runs in autocommit mode, so the
        # transaction is opened inside the script itself.
        try:
            self._conn.executescript(f"BEGIN;\n{sql}\n;")
            self._conn.execute(
                "INSERT INTO _migrations (name, applied_at) VALUES (?, ?)",
                (path.name, utc_now_iso()),
            )
            self._conn.commit()
        except sqlite3.Error:
            if self._conn.in_transaction:
                self._conn.rollback()
            raise

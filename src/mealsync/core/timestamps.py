"""
Timestamp and identifier helpers (stdlib-only).

- **utc_now():** Timezone-aware UTC datetime
- **utc_now_iso():** The same, serialized the way entities store it
- **generate_update_id():** Sortable id for optimistic updates
- **temporary_entity_id():** Client-side id of an entity not yet created

Tags:
    timestamps, utc, datetime, unique-id

STDLIB ONLY - NO PYDANTIC.
"""

import itertools
import time
import uuid
from datetime import UTC, date, datetime, timedelta

_sequence = itertools.count(1)


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


def utc_now_iso() -> str:
    """Current UTC time as an ISO 8601 string."""
    return to_iso8601(utc_now())


def to_iso8601(dt: datetime | None) -> str | None:
    """Convert datetime to ISO 8601 string."""
    if dt is None:
        return None
    return dt.isoformat()


def from_iso8601(s: str | None) -> datetime | None:
    """Parse ISO 8601 string to datetime."""
    if s is None:
        return None
    return datetime.fromisoformat(s)


def generate_update_id() -> str:
    """
    Generate an optimistic update id.

    Format: ``upd_<ms timestamp>_<sequence>_<random>``. Ids sort by
    creation time within a process.
    """
    return f"upd_{int(time.time() * 1000)}_{next(_sequence):06d}_{uuid.uuid4().hex[:8]}"


def temporary_entity_id() -> str:
    """Client-side id for an entity whose real id the backend has not assigned."""
    return f"temp_{uuid.uuid4().hex}"


def is_temporary_id(value: object) -> bool:
    return isinstance(value, str) and value.startswith("temp_")


def week_start(day: date) -> date:
    """Monday of the week containing ``day``."""
    return day - timedelta(days=day.weekday())

"""Tests for mealsync.core.timestamps."""

from datetime import UTC, date, datetime

from mealsync.core.timestamps import (
    from_iso8601,
    generate_update_id,
    is_temporary_id,
    temporary_entity_id,
    to_iso8601,
    utc_now,
    week_start,
)


class TestUtc:
    def test_utc_now_is_aware(self):
        assert utc_now().tzinfo is UTC

    def test_iso_round_trip(self):
        dt = datetime(2024, 3, 5, 12, 30, tzinfo=UTC)
        assert from_iso8601(to_iso8601(dt)) == dt

    def test_none_passes_through(self):
        assert to_iso8601(None) is None
        assert from_iso8601(None) is None


class TestIds:
    def test_update_ids_are_unique_and_prefixed(self):
        ids = {generate_update_id() for _ in range(100)}
        assert len(ids) == 100
        assert all(i.startswith("upd_") for i in ids)

    def test_temporary_ids(self):
        temp = temporary_entity_id()
        assert is_temporary_id(temp)
        assert not is_temporary_id(7)
        assert not is_temporary_id("7")


class TestWeekStart:
    def test_monday_is_its_own_week_start(self):
        assert week_start(date(2024, 3, 4)) == date(2024, 3, 4)

    def test_sunday_belongs_to_previous_monday(self):
        assert week_start(date(2024, 3, 10)) == date(2024, 3, 4)

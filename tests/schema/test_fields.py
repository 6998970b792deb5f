"""Tests for the field coercers."""

from datetime import date, datetime

import pytest

from mealsync.core.errors import ValidationError
from mealsync.schema.fields import (
    coerce_bool,
    coerce_date,
    coerce_int,
    coerce_number,
    coerce_positive_int,
    coerce_string,
    coerce_string_list,
    week_start_date,
)


class TestCoerceStringList:
    @pytest.mark.parametrize("value", [None, "tag", 5, {"a": 1}])
    def test_non_lists_become_empty(self, value):
        assert coerce_string_list(value) == []

    def test_keeps_trimmed_non_blank_strings(self):
        assert coerce_string_list([" a ", "", None, 1, "b"]) == ["a", "b"]


class TestCoerceNumber:
    @pytest.mark.parametrize(
        "value, expected",
        [(15, 15), (2.5, 2.5), ("15 min", 15), ("-3", None), (0, None), ("", None), (False, None)],
    )
    def test_values(self, value, expected):
        assert coerce_number(value) == expected

    def test_infinity_is_unset(self):
        assert coerce_number(float("inf")) is None


class TestCoercePositiveInt:
    @pytest.mark.parametrize("value", ["7", 7, 7.0, " 7 "])
    def test_accepts(self, value):
        assert coerce_positive_int(value, field="recipe_id") == 7

    @pytest.mark.parametrize("value", [0, -1, "x", None, True, 1.5, "²"])
    def test_rejects(self, value):
        with pytest.raises(ValidationError, match="recipe_id must be a positive integer"):
            coerce_positive_int(value, field="recipe_id")


class TestScalars:
    def test_string_default_for_none(self):
        assert coerce_string(None, field="url", default="") == ""

    def test_required_string(self):
        with pytest.raises(ValidationError, match="name is required"):
            coerce_string(" ", field="name", required=True)

    def test_int(self):
        assert coerce_int("12 items") == 12
        assert coerce_int("none", default=3) == 3
        assert coerce_int(-4) == -4

    @pytest.mark.parametrize("value, expected", [("yes", True), ("off", False), (1, True), (0, False), (None, False)])
    def test_bool(self, value, expected):
        assert coerce_bool(value) is expected


class TestDates:
    def test_date_objects(self):
        assert coerce_date(date(2024, 1, 2), field="d") == "2024-01-02"
        assert coerce_date(datetime(2024, 1, 2, 8, 30), field="d") == "2024-01-02"

    @pytest.mark.parametrize("value", ["2024-02-30", "2024/01/02", "", 20240102])
    def test_invalid_dates(self, value):
        with pytest.raises(ValidationError):
            coerce_date(value, field="eaten_date")

    def test_week_start_date(self):
        assert week_start_date("2024-03-07") == "2024-03-04"

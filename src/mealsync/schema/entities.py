"""
Entity families and their declarative field layouts.

Each family (recipes, weekly plans, meal history, shopping-list items) is
described once here as a tuple of ``FieldSpec`` entries. The normalizer,
the local store and the remote store all read the same registry, so both
backends agree on what a canonical entity looks like.

Architecture:
    ::

        ENTITY_SCHEMAS: dict[EntityFamily, EntitySchema]
        ┌───────────────────────┬────────────────────────────────────┐
        │ recipes               │ name*, url, tags..., prep_time ... │
        │ weekly_plans          │ name, meals[], notes, is_current   │
        │ meal_history          │ recipe_id*, eaten_date*, week_date │
        │ shopping_list_items   │ name*, quantity, unit, category... │
        └───────────────────────┴────────────────────────────────────┘
        (* = required)

Tags:
    schema, entities, registry
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class EntityFamily(str, Enum):
    """Entity type; also the table name in both backends."""

    RECIPES = "recipes"
    WEEKLY_PLANS = "weekly_plans"
    MEAL_HISTORY = "meal_history"
    SHOPPING_ITEMS = "shopping_list_items"


class FieldKind(str, Enum):
    """How a field's raw value is coerced."""

    ID = "id"                    # passed through untouched
    STRING = "string"            # trimmed, default when blank
    STRING_LIST = "string_list"  # list of non-blank strings
    NUMBER = "number"            # positive number or None
    INTEGER = "integer"          # any int, default when unparseable
    POSITIVE_INT = "positive_int"
    BOOLEAN = "boolean"
    DATE = "date"                # YYYY-MM-DD
    TIMESTAMP = "timestamp"      # ISO string or None
    MEALS = "meals"              # list of recipe snapshots with scaling


@dataclass(frozen=True)
class FieldSpec:
    name: str
    kind: FieldKind
    required: bool = False
    default: Any = None


@dataclass(frozen=True)
class EntitySchema:
    """Field layout of one entity family."""

    family: EntityFamily
    fields: tuple[FieldSpec, ...]
    search_fields: tuple[str, ...] = ("name",)

    def field(self, name: str) -> FieldSpec | None:
        for spec in self.fields:
            if spec.name == name:
                return spec
        return None

    @property
    def field_names(self) -> tuple[str, ...]:
        return tuple(spec.name for spec in self.fields)

    @property
    def required_fields(self) -> tuple[str, ...]:
        return tuple(spec.name for spec in self.fields if spec.required)


_ID = FieldSpec("id", FieldKind.ID)
_TIMESTAMPS = (
    FieldSpec("created_at", FieldKind.TIMESTAMP),
    FieldSpec("updated_at", FieldKind.TIMESTAMP),
)

RECIPE_TAG_FIELDS = ("tags", "cuisine_tags", "ingredient_tags", "convenience_tags")

# Recipe body, shared by recipes and the meal snapshots embedded in plans.
RECIPE_BODY = (
    FieldSpec("name", FieldKind.STRING, required=True),
    FieldSpec("url", FieldKind.STRING, default=""),
    *(FieldSpec(name, FieldKind.STRING_LIST) for name in RECIPE_TAG_FIELDS),
    FieldSpec("ingredients", FieldKind.STRING_LIST),
    FieldSpec("instructions", FieldKind.STRING_LIST),
    FieldSpec("prep_time", FieldKind.NUMBER),
    FieldSpec("cook_time", FieldKind.NUMBER),
    FieldSpec("servings", FieldKind.NUMBER),
)

RECIPES = EntitySchema(
    family=EntityFamily.RECIPES,
    fields=(_ID, *RECIPE_BODY, *_TIMESTAMPS),
    search_fields=("name", *RECIPE_TAG_FIELDS),
)

WEEKLY_PLANS = EntitySchema(
    family=EntityFamily.WEEKLY_PLANS,
    fields=(
        _ID,
        FieldSpec("name", FieldKind.STRING, default=""),
        FieldSpec("meals", FieldKind.MEALS),
        FieldSpec("notes", FieldKind.STRING, default=""),
        FieldSpec("is_current", FieldKind.BOOLEAN, default=False),
        *_TIMESTAMPS,
    ),
    search_fields=("name", "notes"),
)

MEAL_HISTORY = EntitySchema(
    family=EntityFamily.MEAL_HISTORY,
    fields=(
        _ID,
        FieldSpec("recipe_id", FieldKind.POSITIVE_INT, required=True),
        FieldSpec("eaten_date", FieldKind.DATE, required=True),
        FieldSpec("week_date", FieldKind.DATE),
        *_TIMESTAMPS,
    ),
    search_fields=("eaten_date", "week_date"),
)

SHOPPING_ITEMS = EntitySchema(
    family=EntityFamily.SHOPPING_ITEMS,
    fields=(
        _ID,
        FieldSpec("shopping_list_id", FieldKind.ID),
        FieldSpec("name", FieldKind.STRING, required=True),
        FieldSpec("quantity", FieldKind.STRING),
        FieldSpec("unit", FieldKind.STRING),
        FieldSpec("category", FieldKind.STRING, default="Other"),
        FieldSpec("notes", FieldKind.STRING),
        FieldSpec("checked", FieldKind.BOOLEAN, default=False),
        FieldSpec("checked_at", FieldKind.TIMESTAMP),
        FieldSpec("sort_order", FieldKind.INTEGER, default=0),
        FieldSpec("meal_role", FieldKind.STRING, default="general"),
        *_TIMESTAMPS,
    ),
    search_fields=("name", "category", "notes"),
)

ENTITY_SCHEMAS: dict[EntityFamily, EntitySchema] = {
    schema.family: schema
    for schema in (RECIPES, WEEKLY_PLANS, MEAL_HISTORY, SHOPPING_ITEMS)
}


def get_schema(entity_type: EntityFamily | str) -> EntitySchema:
    """Look up a family's schema; raises ``ValueError`` for unknown types."""
    return ENTITY_SCHEMAS[EntityFamily(entity_type)]

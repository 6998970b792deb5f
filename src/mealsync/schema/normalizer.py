"""
Entity normalizer.

Maps raw entity payloads of any family onto their canonical shape so that
both backends, and the optimistic overlay, hand the same structure to
consumers.

Manifesto:
    - **Pure:** ``normalize`` depends only on its input. It never stamps
      "now"; timestamps are assigned by the backend that persists the entity.
    - **Idempotent:** ``normalize(normalize(x)) == normalize(x)``
    - **Lenient where safe:** list fields become ``[]``, bad numbers become
      ``None``, unknown fields pass through untouched.
    - **Strict where it matters:** a required field that is empty after
      trimming raises ``ValidationError`` before any update is dispatched.

Examples:
    >>> normalize("recipes", {"name": " Soup ", "tags": None, "servings": "4"})["servings"]
    4
    >>> validate("recipes", {"name": ""}).errors
    ['name is required']

Tags:
    normalization, validation, schema
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from mealsync.core.errors import ValidationError
from mealsync.schema.entities import (
    RECIPE_BODY,
    EntityFamily,
    EntitySchema,
    FieldKind,
    FieldSpec,
    get_schema,
)
from mealsync.schema.fields import (
    coerce_bool,
    coerce_date,
    coerce_int,
    coerce_number,
    coerce_positive_int,
    coerce_string,
    coerce_string_list,
    coerce_timestamp,
    week_start_date,
)

MAX_PLAN_MEALS = 7

Entity = dict[str, Any]


@dataclass
class ValidationResult:
    """Outcome of ``validate``: every problem found, and the normalized data when valid."""

    valid: bool
    errors: list[str] = field(default_factory=list)
    data: Entity | None = None

    def raise_for_errors(self) -> Entity:
        if not self.valid:
            raise ValidationError(self.errors[0], errors=self.errors)
        return self.data


def _coerce_field(spec: FieldSpec, value: Any, name: str) -> Any:
    kind = spec.kind
    if kind is FieldKind.ID:
        return value
    if kind is FieldKind.STRING:
        return coerce_string(value, field=name, required=spec.required, default=spec.default)
    if kind is FieldKind.STRING_LIST:
        return coerce_string_list(value)
    if kind is FieldKind.NUMBER:
        return coerce_number(value)
    if kind is FieldKind.INTEGER:
        return coerce_int(value, default=spec.default or 0)
    if kind is FieldKind.POSITIVE_INT:
        if value is None and not spec.required:
            return None
        return coerce_positive_int(value, field=name)
    if kind is FieldKind.BOOLEAN:
        return coerce_bool(value) if value is not None else bool(spec.default)
    if kind is FieldKind.DATE:
        if value is None or value == "":
            if spec.required:
                raise ValidationError(f"{name} is required", field=name)
            return None
        return coerce_date(value, field=name)
    if kind is FieldKind.TIMESTAMP:
        return coerce_timestamp(value)
    if kind is FieldKind.MEALS:
        return _coerce_meals(value, name)
    raise ValueError(f"Unhandled field kind: {kind}")


_MEAL_FIELDS = (
    FieldSpec("id", FieldKind.POSITIVE_INT, required=True),
    *RECIPE_BODY,
)


def _coerce_meals(value: Any, name: str) -> list[Entity]:
    if not isinstance(value, (list, tuple)):
        return []
    if len(value) > MAX_PLAN_MEALS:
        raise ValidationError(
            f"{name} cannot hold more than {MAX_PLAN_MEALS} meals",
            field=name,
            value=len(value),
        )
    meals = []
    for index, meal in enumerate(value):
        label = f"{name}[{index}]"
        if not isinstance(meal, Mapping):
            raise ValidationError(f"{label} must be an object", field=label)
        normalized = dict(meal)
        for spec in _MEAL_FIELDS:
            normalized[spec.name] = _coerce_field(spec, meal.get(spec.name), f"{label}.{spec.name}")
        normalized["scaling"] = coerce_number(meal.get("scaling")) or 1
        meals.append(normalized)
    return meals


def _apply_derived(schema: EntitySchema, entity: Entity, keys: set[str] | None) -> None:
    if schema.family is EntityFamily.MEAL_HISTORY:
        touched = keys is None or "eaten_date" in keys
        if touched and entity.get("eaten_date") and not entity.get("week_date"):
            entity["week_date"] = week_start_date(entity["eaten_date"])


def _normalize(
    schema: EntitySchema,
    raw: Any,
    *,
    partial: bool,
) -> tuple[Entity, list[ValidationError]]:
    if raw is None or not isinstance(raw, Mapping):
        return {}, [ValidationError(f"{schema.family.value} payload must be an object", value=raw)]

    entity: Entity = dict(raw)
    failures: list[ValidationError] = []
    keys = set(raw) if partial else None
    for spec in schema.fields:
        if partial and spec.name not in raw:
            continue
        try:
            entity[spec.name] = _coerce_field(spec, raw.get(spec.name), spec.name)
        except ValidationError as e:
            failures.append(e)
    if not failures:
        _apply_derived(schema, entity, keys)
    return entity, failures


def _raise(failures: list[ValidationError]) -> None:
    first = failures[0]
    raise ValidationError(
        first.message,
        field=first.field,
        value=first.value,
        errors=[f.message for f in failures],
    )


def normalize(entity_type: EntityFamily | str, raw: Any) -> Entity:
    """
    Canonical form of a full entity of ``entity_type``.

    Raises:
        ValidationError: a required field is missing or empty, or a field
            with a fixed format (dates, foreign keys) cannot be coerced.
    """
    entity, failures = _normalize(get_schema(entity_type), raw, partial=False)
    if failures:
        _raise(failures)
    return entity


def normalize_partial(entity_type: EntityFamily | str, partial: Any) -> Entity:
    """Coerce only the fields present in ``partial`` (the payload of an update)."""
    entity, failures = _normalize(get_schema(entity_type), partial, partial=True)
    if failures:
        _raise(failures)
    return entity


def validate(entity_type: EntityFamily | str, raw: Any, *, partial: bool = False) -> ValidationResult:
    """Collect every validation problem instead of stopping at the first."""
    entity, failures = _normalize(get_schema(entity_type), raw, partial=partial)
    if failures:
        return ValidationResult(valid=False, errors=[f.message for f in failures])
    return ValidationResult(valid=True, data=entity)


def normalize_many(entity_type: EntityFamily | str, rows: list[Any]) -> list[Entity]:
    return [normalize(entity_type, row) for row in rows]

"""Entity families, field layouts and the normalizer."""

from mealsync.schema.entities import (
    ENTITY_SCHEMAS,
    EntityFamily,
    EntitySchema,
    FieldKind,
    FieldSpec,
    get_schema,
)
from mealsync.schema.normalizer import (
    MAX_PLAN_MEALS,
    Entity,
    ValidationResult,
    normalize,
    normalize_many,
    normalize_partial,
    validate,
)

__all__ = [
    "ENTITY_SCHEMAS",
    "Entity",
    "EntityFamily",
    "EntitySchema",
    "FieldKind",
    "FieldSpec",
    "MAX_PLAN_MEALS",
    "ValidationResult",
    "get_schema",
    "normalize",
    "normalize_many",
    "normalize_partial",
    "validate",
]

"""
Mealsync - optimistic updates and reconciliation for meal-planner data.

- mealsync.schema: Entity families and the normalizer
- mealsync.backends: Local SQLite and remote PostgREST backends, selector
- mealsync.optimistic: Optimistic update manager
- mealsync.lifecycle: Cancellation, timeouts, deduplication, backoff
- mealsync.services: Recipes, weekly plans, meal history, shopping items
"""

__version__ = "0.1.0"

from mealsync.core.errors import MealsyncError
from mealsync.core.settings import MealsyncSettings, get_settings
from mealsync.optimistic import UpdateEventType, UpdateKind, UpdateStatus
from mealsync.schema import EntityFamily
from mealsync.store import DispatchHandle, OptimisticStore, create_store

__all__ = [
    "DispatchHandle",
    "EntityFamily",
    "MealsyncError",
    "MealsyncSettings",
    "OptimisticStore",
    "UpdateEventType",
    "UpdateKind",
    "UpdateStatus",
    "create_store",
    "get_settings",
]

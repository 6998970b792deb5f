"""Meal-planner operations routed through the optimistic store.

Each module is a set of plain functions taking the ``OptimisticStore`` as
their first argument: ``recipes``, ``plans``, ``history``, ``shopping``.
"""

from mealsync.services import history, plans, recipes, shopping
from mealsync.services.batch import dispatch_batch, settle_all

__all__ = ["dispatch_batch", "history", "plans", "recipes", "settle_all", "shopping"]

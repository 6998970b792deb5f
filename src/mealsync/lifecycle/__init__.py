"""Request lifecycle: cancellation, time bounds, deduplication and retry delays."""

from mealsync.lifecycle.cancellation import CancellationScope, CancellationToken
from mealsync.lifecycle.controller import DedupePolicy, RequestLifecycleController
from mealsync.lifecycle.retry import ExponentialBackoff, NoRetry, RetryStrategy

__all__ = [
    "CancellationScope",
    "CancellationToken",
    "DedupePolicy",
    "ExponentialBackoff",
    "NoRetry",
    "RequestLifecycleController",
    "RetryStrategy",
]

"""
Structured error types for mealsync.

Every failure that crosses a component boundary is one of the typed errors
below. Each error carries:

- **Category:** What kind of error (network, validation, auth, backend, ...)
- **Retryable:** Whether the optimistic manager may retry the operation
- **Retry-after:** Optional hint in seconds before retrying
- **Context:** Entity type, entity id, backend, update id and HTTP details
- **Cause:** Chained underlying exception

Manifesto:
    - **Typed Error Hierarchy:** Validation and auth failures are raised
      synchronously at dispatch; network, timeout and backend failures are
      routed into the update state machine.
    - **Explicit Retry Semantics:** Each error knows if it's retryable
    - **Error Chaining:** Preserve original exceptions as ``cause``

Architecture:
    ::

        ┌─────────────────────────────────────────────────────────────┐
        │                       MealsyncError                          │
        │  (category, retryable, retry_after, context, cause)          │
        ├─────────────────────────────────────────────────────────────┤
        │  ValidationError     AuthenticationError   ConfigError       │
        │  (VALIDATION)        (AUTH)                (CONFIG)          │
        │                                                              │
        │  TransientError      BackendError          RequestCancelled  │
        │  (retryable=True)    (BACKEND)             (CANCELLED)       │
        │       │                   │                                  │
        │  NetworkError        NotFoundError         DuplicateRequest  │
        │  RequestTimeout      ConflictError         PendingLimit      │
        │                                            InvalidTransition │
        └─────────────────────────────────────────────────────────────┘

Examples:
    >>> error = NetworkError("connection reset")
    >>> error.retryable
    True
    >>> BackendError("conflict").with_context(entity_type="recipes", entity_id=7)
    BackendError('conflict', category=BACKEND)

Tags:
    error-handling, exception-hierarchy, retry-logic, error-context

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """
    Standard error categories for classification and routing.

    Attributes:
        NETWORK: Connection, DNS and transport errors
        TIMEOUT: Request exceeded its time budget
        BACKEND: Remote or local store rejected the operation
        VALIDATION: Payload failed normalization or validation
        AUTH: No authenticated identity, or identity rejected
        CANCELLED: Request cancelled by its caller
        CONFIG: Missing or invalid settings
        CLIENT: Misuse of the client API (duplicates, limits, transitions)
        INTERNAL: Bugs, unexpected state
        UNKNOWN: Uncategorized errors
    """

    # Infrastructure errors (usually transient)
    NETWORK = "NETWORK"
    TIMEOUT = "TIMEOUT"
    BACKEND = "BACKEND"

    # Caller errors (never retryable)
    VALIDATION = "VALIDATION"
    AUTH = "AUTH"
    CANCELLED = "CANCELLED"
    CONFIG = "CONFIG"
    CLIENT = "CLIENT"

    # Internal errors
    INTERNAL = "INTERNAL"
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """
    Structured metadata context for errors.

    Typed fields cover what the update pipeline knows about a failure;
    anything else goes in ``metadata``. ``to_dict()`` serializes non-None
    fields for logging.

    Examples:
        >>> ErrorContext(entity_type="recipes", entity_id=7).to_dict()
        {'entity_type': 'recipes', 'entity_id': 7}
    """

    # Entity context
    entity_type: str | None = None
    entity_id: Any = None
    operation: str | None = None

    # Pipeline context
    backend: str | None = None
    update_id: str | None = None

    # Request context
    url: str | None = None
    http_status: int | None = None

    # Additional metadata
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["entity_type", "entity_id", "operation", "backend",
                    "update_id", "url", "http_status"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class MealsyncError(Exception):
    """
    Base exception for all mealsync errors.

    Subclasses set ``default_category`` and ``default_retryable``; callers
    may override either per instance (a 5xx ``BackendError`` is retryable,
    a 409 is not).

    Examples:
        >>> error = MealsyncError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.to_dict()["retryable"]
        False
    """

    # Default category for this error type
    default_category: ErrorCategory = ErrorCategory.INTERNAL
    # Default retryable setting
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: float | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> MealsyncError:
        """
        Add context to this error (fluent API).

        Usage:
            raise BackendError("conflict").with_context(
                entity_type="recipes",
                entity_id=7,
            )
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# VALIDATION ERRORS
# =============================================================================


class ValidationError(MealsyncError):
    """
    Payload rejected by the normalizer.

    Never retryable - the payload must be fixed. ``errors`` lists every
    problem found, ``field`` names the first offending field.
    """

    default_category = ErrorCategory.VALIDATION
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        value: Any = None,
        errors: list[str] | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.field = field
        self.value = value
        self.errors = list(errors) if errors else [message]

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.field:
            result["field"] = self.field
        if self.value is not None:
            result["value"] = repr(self.value)
        result["errors"] = list(self.errors)
        return result


# =============================================================================
# AUTHENTICATION / CONFIGURATION ERRORS
# =============================================================================


class AuthenticationError(MealsyncError):
    """No authenticated identity, or the backend rejected it."""

    default_category = ErrorCategory.AUTH
    default_retryable = False


class ConfigError(MealsyncError):
    """Missing or invalid configuration."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


# =============================================================================
# TRANSIENT ERRORS (Usually Retryable)
# =============================================================================


class TransientError(MealsyncError):
    """
    Temporary error that may succeed on retry.

    The optimistic manager retries these with exponential backoff before
    giving up and rolling back.
    """

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class NetworkError(TransientError):
    """Transport-level failure (connection refused, reset, DNS)."""

    default_category = ErrorCategory.NETWORK


class RequestTimeout(TransientError):
    """
    Request exceeded its time budget.

    Carries the configured ``timeout`` and the observed ``elapsed`` seconds.
    """

    default_category = ErrorCategory.TIMEOUT

    def __init__(
        self,
        message: str = "Request timed out",
        *,
        timeout: float | None = None,
        elapsed: float | None = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.timeout = timeout
        self.elapsed = elapsed


# =============================================================================
# BACKEND ERRORS
# =============================================================================


class BackendError(MealsyncError):
    """
    The store rejected the operation.

    Not retryable by default; the remote backend marks 5xx responses
    retryable explicitly.
    """

    default_category = ErrorCategory.BACKEND
    default_retryable = False


class NotFoundError(BackendError):
    """Entity does not exist (or belongs to another user)."""

    pass


class ConflictError(BackendError):
    """Write conflicted with the stored state."""

    pass


# =============================================================================
# CLIENT / LIFECYCLE ERRORS
# =============================================================================


class RequestCancelled(MealsyncError):
    """The caller cancelled the request; its result is discarded."""

    default_category = ErrorCategory.CANCELLED
    default_retryable = False


class DuplicateRequestError(MealsyncError):
    """A request with the same key is already in flight."""

    default_category = ErrorCategory.CLIENT
    default_retryable = False

    def __init__(self, key: str, message: str | None = None):
        self.key = key
        super().__init__(message or f"Request already in flight: {key}")


class PendingLimitExceeded(MealsyncError):
    """Too many optimistic updates are in flight."""

    default_category = ErrorCategory.CLIENT
    default_retryable = False

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Pending update limit reached ({limit})")


class InvalidTransitionError(MealsyncError, ValueError):
    """Raised when an update status transition is not permitted."""

    default_category = ErrorCategory.INTERNAL
    default_retryable = False

    def __init__(self, current: str, target: str, entity: str = "update"):
        self.current = current
        self.target = target
        super().__init__(f"Invalid {entity} transition: {current} -> {target}")


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, MealsyncError):
        return error.retryable
    return isinstance(error, (ConnectionError, TimeoutError))


def categorize_error(error: BaseException) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, MealsyncError):
        return error.category
    if isinstance(error, TimeoutError):
        return ErrorCategory.TIMEOUT
    if isinstance(error, (ConnectionError, OSError)):
        return ErrorCategory.NETWORK
    if isinstance(error, ValueError):
        return ErrorCategory.VALIDATION
    return ErrorCategory.UNKNOWN


# Failure reasons recorded on rolled-back updates, keyed by category.
_REASON_BY_CATEGORY = {
    ErrorCategory.NETWORK: "network_error",
    ErrorCategory.TIMEOUT: "request_timeout",
    ErrorCategory.AUTH: "not_authenticated",
    ErrorCategory.CANCELLED: "cancelled",
}


def failure_reason_for(error: BaseException) -> str:
    """Map an error to the reason string recorded on a failed update."""
    return _REASON_BY_CATEGORY.get(categorize_error(error), "service_error")


__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "MealsyncError",
    "ValidationError",
    "AuthenticationError",
    "ConfigError",
    "TransientError",
    "NetworkError",
    "RequestTimeout",
    "BackendError",
    "NotFoundError",
    "ConflictError",
    "RequestCancelled",
    "DuplicateRequestError",
    "PendingLimitExceeded",
    "InvalidTransitionError",
    "is_retryable",
    "categorize_error",
    "failure_reason_for",
]

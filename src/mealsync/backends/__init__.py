"""Persistence backends and the selector that picks between them."""

from mealsync.backends.auth import AuthService, AuthSession
from mealsync.backends.base import BaseBackend
from mealsync.backends.local import LocalBackend, LocalDatabase
from mealsync.backends.protocol import Backend, BackendKind
from mealsync.backends.remote import RemoteBackend, RemoteClient
from mealsync.backends.selector import BackendSelector, select_backend_kind

__all__ = [
    "AuthService",
    "AuthSession",
    "Backend",
    "BackendKind",
    "BackendSelector",
    "BaseBackend",
    "LocalBackend",
    "LocalDatabase",
    "RemoteBackend",
    "RemoteClient",
    "select_backend_kind",
]

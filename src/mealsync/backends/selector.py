"""Backend selection.

The remote store is used iff it is configured AND a user is signed in;
otherwise the local store is used. The decision is recomputed on every
call, so signing in or out switches backends for the next operation
without restarting anything.
"""

from __future__ import annotations

from collections.abc import Callable

from mealsync.backends.auth import AuthService
from mealsync.backends.local import LocalBackend, LocalDatabase
from mealsync.backends.protocol import Backend, BackendKind
from mealsync.backends.remote import RemoteBackend, RemoteClient
from mealsync.core.logging import get_logger
from mealsync.core.settings import MealsyncSettings
from mealsync.schema import EntityFamily

log = get_logger(__name__)


def select_backend_kind(remote_configured: bool, authenticated: bool) -> BackendKind:
    """Pure selection rule."""
    if remote_configured and authenticated:
        return BackendKind.REMOTE
    return BackendKind.LOCAL


class BackendSelector:
    """
    Resolves the backend for an entity family at call time.

    Backend adapters hold no per-call state, so one is built per
    ``(kind, family)`` and reused; only the choice between them is live.
    """

    def __init__(
        self,
        settings: MealsyncSettings,
        auth: AuthService,
        *,
        local_db: LocalDatabase,
        remote_client: RemoteClient,
        settings_provider: Callable[[], MealsyncSettings] | None = None,
    ):
        self._settings_provider = settings_provider or (lambda: settings)
        self.auth = auth
        self.local_db = local_db
        self.remote_client = remote_client
        self._backends: dict[tuple[BackendKind, EntityFamily], Backend] = {}
        self._last_kind: BackendKind | None = None

    def current_kind(self) -> BackendKind:
        settings = self._settings_provider()
        return select_backend_kind(settings.remote_configured, self.auth.is_authenticated)

    def resolve(self, family: EntityFamily | str) -> Backend:
        family = EntityFamily(family)
        kind = self.current_kind()
        if kind is not self._last_kind:
            log.info("backend_selected", backend=kind.value, previous=getattr(self._last_kind, "value", None))
            self._last_kind = kind
        key = (kind, family)
        backend = self._backends.get(key)
        if backend is None:
            if kind is BackendKind.REMOTE:
                backend = RemoteBackend(self.remote_client, family)
            else:
                backend = LocalBackend(self.local_db, family)
            self._backends[key] = backend
        return backend

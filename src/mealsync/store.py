"""
Optimistic store: the consumer-facing composition root.

``OptimisticStore`` wires the backend selector, the normalizer, the
optimistic update manager and the request lifecycle controller into one
API. ``create_store`` builds a fully wired instance from settings.

Write path::

    dispatch(family, kind, payload)
      ├── selector.resolve(family)            (per call)
      ├── normalize / validate payload        ValidationError raised here
      ├── backend.check_access()              AuthenticationError raised here
      ├── manager.create(...)                 "created" published, returns
      └── task: controller.run(backend call)
                ├── ok          → manager.mark_success
                ├── retryable   → manager.retry (backoff)
                ├── cancelled   → manager.rollback(reason="cancelled")
                └── other error → manager.mark_failed → rolled_back

Read path::

    get_all / get_by_id / search
      └── controller.run(..., dedupe=JOIN) → normalize → remember → overlay

Examples:
    >>> store = create_store(MealsyncSettings(local_db_path=":memory:"))
    >>> handle = store.dispatch("recipes", "update", {"name": "Soup"}, entity_id=7)
    >>> handle.entity["name"]
    'Soup'
    >>> await handle.settled()

Tags:
    composition-root, facade, optimistic-ui
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from mealsync.backends import (
    AuthService,
    Backend,
    BackendKind,
    BackendSelector,
    LocalDatabase,
    RemoteClient,
)
from mealsync.backends.base import matches_query
from mealsync.core.errors import (
    MealsyncError,
    RequestCancelled,
    ValidationError,
    failure_reason_for,
)
from mealsync.core.logging import LogContext, get_logger
from mealsync.core.settings import MealsyncSettings, get_settings
from mealsync.core.timestamps import temporary_entity_id
from mealsync.lifecycle import CancellationToken, DedupePolicy, RequestLifecycleController
from mealsync.optimistic import (
    FailureReason,
    OptimisticUpdateManager,
    PendingUpdate,
    UpdateEventType,
    UpdateKind,
    UpdateListener,
)
from mealsync.schema import Entity, EntityFamily, normalize, normalize_partial, validate

log = get_logger(__name__)


@dataclass
class DispatchHandle:
    """Returned synchronously by ``dispatch``; the real outcome arrives as events."""

    update: PendingUpdate
    entity: Entity | None
    token: CancellationToken
    _task: asyncio.Task = field(repr=False)

    @property
    def update_id(self) -> str:
        return self.update.id

    @property
    def done(self) -> bool:
        return self._task.done()

    def cancel(self, reason: str = "cancelled") -> bool:
        """Abandon the backend call; the update is rolled back."""
        return self.token.cancel(reason)

    async def settled(self) -> PendingUpdate:
        """Wait until the backend call, and any retries, have finished."""
        await asyncio.shield(self._task)
        return self.update


class OptimisticStore:
    """One logical data source over the local and remote backends."""

    def __init__(
        self,
        settings: MealsyncSettings,
        *,
        selector: BackendSelector,
        manager: OptimisticUpdateManager,
        controller: RequestLifecycleController,
    ):
        self.settings = settings
        self.selector = selector
        self.manager = manager
        self.controller = controller
        self._tokens: dict[str, CancellationToken] = {}
        self._tasks: set[asyncio.Task] = set()
        self._unsubscribe_internal = manager.subscribe(self._on_update_event)

    # ------------------------------------------------------------------
    # Backends and auth
    # ------------------------------------------------------------------

    @property
    def auth(self) -> AuthService:
        return self.selector.auth

    @property
    def backend_kind(self) -> BackendKind:
        return self.selector.current_kind()

    def resolve_backend(self, family: EntityFamily | str) -> Backend:
        return self.selector.resolve(family)

    def subscribe(self, listener: UpdateListener) -> Callable[[], None]:
        return self.manager.subscribe(listener)

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def dispatch(
        self,
        family: EntityFamily | str,
        kind: UpdateKind | str,
        payload: Entity | None = None,
        *,
        entity_id: Any = None,
        original: Entity | None = None,
        token: CancellationToken | None = None,
    ) -> DispatchHandle:
        """Apply a mutation optimistically and start the real backend call.

        Must be called from a running event loop. Returns before any I/O.

        Raises:
            ValidationError: the payload is invalid; no update is created.
            AuthenticationError: the selected backend has no identity.
            PendingLimitExceeded: too many updates are already in flight.
        """
        family = EntityFamily(family)
        kind = UpdateKind(kind)
        loop = asyncio.get_running_loop()
        backend = self.resolve_backend(family)

        changes = None
        if kind is UpdateKind.CREATE:
            data = validate(family, payload).raise_for_errors()
            entity_id = temporary_entity_id()
            optimistic = {**data, "id": entity_id}
            operation = self._operation(backend.add, data)
        else:
            if entity_id is None:
                raise ValidationError(f"entity_id is required for {kind.value}", field="id")
            if kind is UpdateKind.UPDATE:
                changes = normalize_partial(family, payload or {})
                changes.pop("id", None)
                # Earlier live updates to the same entity stay applied underneath.
                current = self.manager.observe(family, entity_id)
                if current is None:
                    current = original
                merged = {**(current or {}), **changes, "id": entity_id}
                optimistic = normalize(family, merged) if current is not None else merged
                operation = self._operation(backend.update, entity_id, changes)
            else:
                optimistic = None
                operation = self._operation(backend.delete, entity_id)

        backend.check_access()

        token = token or CancellationToken()
        update = self.manager.create(kind, family, entity_id, optimistic, original, changes=changes)
        self._tokens[update.id] = token
        remove_callback = token.on_cancel(
            lambda: self.manager.rollback(update.id, FailureReason.CANCELLED)
        )
        task = loop.create_task(
            self._execute(update, backend, operation, token, remove_callback),
            name=f"mealsync:{update.id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return DispatchHandle(update=update, entity=optimistic, token=token, _task=task)

    @staticmethod
    def _operation(method: Callable[..., Awaitable[Any]], *args: Any) -> Callable[[], Awaitable[Any]]:
        async def call() -> Any:
            return await method(*args)
        return call

    async def _execute(
        self,
        update: PendingUpdate,
        backend: Backend,
        operation: Callable[[], Awaitable[Any]],
        token: CancellationToken,
        remove_callback: Callable[[], None],
    ) -> None:
        key = f"{update.entity_type}:{update.kind.value}:{update.id}"

        async def attempt() -> Any:
            result = await self.controller.run(
                key,
                operation,
                token=token,
                timeout=self.settings.request_timeout,
            )
            return None if update.kind is UpdateKind.DELETE else result

        try:
            async with LogContext(update_id=update.id, backend=backend.kind.value):
                try:
                    actual = await attempt()
                except RequestCancelled:
                    self.manager.rollback(update.id, FailureReason.CANCELLED)
                except MealsyncError as e:
                    if e.retryable and self.manager.backoff.max_retries > 0:
                        update.error = e
                        await self.manager.retry(update.id, attempt)
                    else:
                        self.manager.mark_failed(update.id, failure_reason_for(e), e)
                except Exception as e:
                    log.error("dispatch_unexpected_error", error=str(e), exc_info=True)
                    self.manager.mark_failed(update.id, FailureReason.SERVICE_ERROR, e)
                else:
                    self.manager.mark_success(update.id, actual)
        finally:
            remove_callback()
            self._tokens.pop(update.id, None)

    def add(self, family: EntityFamily | str, entity: Entity, **kwargs: Any) -> DispatchHandle:
        return self.dispatch(family, UpdateKind.CREATE, entity, **kwargs)

    def update(self, family: EntityFamily | str, entity_id: Any, changes: Entity, **kwargs: Any) -> DispatchHandle:
        return self.dispatch(family, UpdateKind.UPDATE, changes, entity_id=entity_id, **kwargs)

    def delete(self, family: EntityFamily | str, entity_id: Any, **kwargs: Any) -> DispatchHandle:
        return self.dispatch(family, UpdateKind.DELETE, None, entity_id=entity_id, **kwargs)

    def _on_update_event(self, event_type: UpdateEventType, update: PendingUpdate | None) -> None:
        if event_type is UpdateEventType.CLEARED:
            for token in list(self._tokens.values()):
                token.cancel(FailureReason.CLEARED)
        elif event_type is UpdateEventType.ROLLED_BACK and update is not None:
            if update.failure_reason == FailureReason.TIMEOUT:
                token = self._tokens.get(update.id)
                if token is not None:
                    token.cancel(FailureReason.TIMEOUT)

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def _read(
        self,
        backend: Backend,
        name: str,
        operation: Callable[[], Awaitable[Any]],
        token: CancellationToken | None,
    ) -> Any:
        backend.check_access()
        return await self.controller.run(
            f"{backend.kind.value}:{backend.family.value}:{name}",
            operation,
            token=token,
            timeout=self.settings.request_timeout,
            dedupe=DedupePolicy.JOIN,
        )

    async def get_all(
        self,
        family: EntityFamily | str,
        *,
        token: CancellationToken | None = None,
    ) -> list[Entity]:
        """Every entity of ``family`` with live optimistic updates applied."""
        backend = self.resolve_backend(family)
        rows = await self._read(backend, "get_all", backend.get_all, token)
        self.manager.remember_authoritative(backend.family, rows)
        return self.manager.overlay(backend.family, rows)

    async def get_by_id(
        self,
        family: EntityFamily | str,
        entity_id: Any,
        *,
        token: CancellationToken | None = None,
    ) -> Entity | None:
        backend = self.resolve_backend(family)
        row = await self._read(
            backend, f"get_by_id:{entity_id}", self._operation(backend.get_by_id, entity_id), token,
        )
        if row is not None:
            self.manager.remember_authoritative(backend.family, [row])
        else:
            self.manager.forget_authoritative(backend.family, entity_id)
        return self.manager.observe(backend.family, entity_id)

    async def search(
        self,
        family: EntityFamily | str,
        query: str,
        *,
        token: CancellationToken | None = None,
    ) -> list[Entity]:
        backend = self.resolve_backend(family)
        rows = await self._read(
            backend, f"search:{query.strip().lower()}", self._operation(backend.search, query), token,
        )
        self.manager.remember_authoritative(backend.family, rows)
        visible = self.manager.overlay(backend.family, rows)
        # Live updates whose stored row does not match (yet) may match optimistically.
        seen = {entity.get("id") for entity in visible}
        for update in self.manager.get_pending():
            if update.entity_type != backend.family.value or update.entity_id in seen:
                continue
            seen.add(update.entity_id)
            entity = self.manager.observe(backend.family, update.entity_id)
            if entity is not None:
                visible.append(entity)
        fields = backend.schema.search_fields
        return [entity for entity in visible if matches_query(entity, fields, query)]

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def wait_idle(self) -> None:
        """Wait for every dispatched backend call to finish."""
        pending = [t for t in self._tasks if not t.done()]
        while pending:
            await asyncio.gather(*pending, return_exceptions=True)
            pending = [t for t in self._tasks if not t.done()]

    async def aclose(self) -> None:
        for token in list(self._tokens.values()):
            token.cancel("store_closed")
        self.controller.cancel_all()
        await self.wait_idle()
        self.manager.clear()
        self._unsubscribe_internal()
        await self.selector.remote_client.aclose()
        self.selector.local_db.close()


def create_store(
    settings: MealsyncSettings | None = None,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> OptimisticStore:
    """Build a fully wired ``OptimisticStore``."""
    settings = settings or get_settings()
    http = http_client or httpx.AsyncClient(timeout=settings.remote_timeout)
    auth = AuthService(settings, client=http)
    selector = BackendSelector(
        settings,
        auth,
        local_db=LocalDatabase(settings.local_db_path),
        remote_client=RemoteClient(settings, auth, client=http),
    )
    return OptimisticStore(
        settings,
        selector=selector,
        manager=OptimisticUpdateManager.from_settings(settings),
        controller=RequestLifecycleController(default_timeout=settings.request_timeout),
    )

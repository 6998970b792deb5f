"""Remote backend: a per-user PostgREST store over HTTP.

Every table lives at ``{remote_url}/rest/v1/{family}`` and every query is
scoped to the signed-in user with ``user_id=eq.<uid>``. Responses are
mapped onto the error taxonomy:

    ┌──────────────────────────────┬──────────────────────────────────┐
    │ httpx.TimeoutException       │ RequestTimeout     (retryable)   │
    │ httpx.TransportError         │ NetworkError       (retryable)   │
    │ 401 / 403                    │ AuthenticationError              │
    │ 404 / PGRST116               │ NotFoundError                    │
    │ 409                          │ ConflictError                    │
    │ 429 / 5xx                    │ BackendError       (retryable)   │
    │ other 4xx                    │ BackendError                     │
    └──────────────────────────────┴──────────────────────────────────┘
"""

from __future__ import annotations

from typing import Any

import httpx

from mealsync.backends.auth import AuthService
from mealsync.backends.base import BaseBackend
from mealsync.backends.protocol import BackendKind
from mealsync.core.errors import (
    AuthenticationError,
    BackendError,
    ConfigError,
    ConflictError,
    ErrorContext,
    MealsyncError,
    NetworkError,
    NotFoundError,
    RequestTimeout,
)
from mealsync.core.logging import get_logger
from mealsync.core.settings import MealsyncSettings
from mealsync.core.timestamps import utc_now_iso
from mealsync.schema import Entity, EntityFamily, normalize, normalize_partial

log = get_logger(__name__)

NO_ROWS_CODE = "PGRST116"
SINGLE_OBJECT = "application/vnd.pgrst.object+json"
_SERVER_COLUMNS = ("id", "user_id")


def error_for_response(response: httpx.Response) -> MealsyncError | None:
    """The typed error for a failed response, or None for a 2xx/3xx."""
    status = response.status_code
    if status < 400:
        return None
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    message = body.get("message") or response.reason_phrase or f"HTTP {status}"
    context = ErrorContext(url=str(response.request.url), http_status=status)
    if body.get("code"):
        context.metadata["code"] = body["code"]

    if status in (401, 403):
        return AuthenticationError(message, context=context)
    if status == 404 or body.get("code") == NO_ROWS_CODE:
        return NotFoundError(message, context=context)
    if status == 409:
        return ConflictError(message, context=context)
    if status == 429 or status >= 500:
        retry_after = response.headers.get("Retry-After")
        return BackendError(
            message,
            retryable=True,
            retry_after=float(retry_after) if retry_after and retry_after.isdecimal() else None,
            context=context,
        )
    return BackendError(message, context=context)


class RemoteClient:
    """
    Thin PostgREST client.

    Adds the project key and the user's bearer token to every request and
    turns transport failures and error responses into typed errors.
    """

    def __init__(
        self,
        settings: MealsyncSettings,
        auth: AuthService,
        *,
        client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings
        self.auth = auth
        self._client = client

    @property
    def http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.settings.remote_timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    def table_url(self, table: str) -> str:
        if not self.settings.remote_configured:
            raise ConfigError("Remote store is not configured")
        return f"{self.settings.remote_url}/rest/v1/{table}"

    def headers(self, *, prefer: str | None = None, accept: str | None = None) -> dict[str, str]:
        session = self.auth.require_session()
        headers = {
            "apikey": self.settings.remote_anon_key,
            "Authorization": f"Bearer {session.access_token}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        if accept:
            headers["Accept"] = accept
        return headers

    async def request(
        self,
        method: str,
        table: str,
        *,
        params: dict[str, str] | None = None,
        json: Any = None,
        prefer: str | None = None,
        accept: str | None = None,
    ) -> Any:
        url = self.table_url(table)
        headers = self.headers(prefer=prefer, accept=accept)
        try:
            response = await self.http.request(method, url, params=params, json=json, headers=headers)
        except httpx.TimeoutException as e:
            raise RequestTimeout(
                f"{method} {table} timed out",
                timeout=self.settings.remote_timeout,
                cause=e,
            ).with_context(url=url, backend=BackendKind.REMOTE.value) from e
        except httpx.TransportError as e:
            raise NetworkError(f"{method} {table} failed: {e}", cause=e).with_context(
                url=url, backend=BackendKind.REMOTE.value,
            ) from e

        error = error_for_response(response)
        if error is not None:
            log.debug(
                "remote_request_failed",
                method=method,
                table=table,
                status=response.status_code,
                error_type=type(error).__name__,
            )
            raise error.with_context(backend=BackendKind.REMOTE.value, entity_type=table)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()


class RemoteBackend(BaseBackend):
    """``Backend`` over one PostgREST table, scoped to the signed-in user."""

    kind = BackendKind.REMOTE

    def __init__(self, client: RemoteClient, family: EntityFamily | str):
        super().__init__(family)
        self.client = client
        self.table = self.family.value

    def check_access(self) -> None:
        self.client.auth.require_session()

    def _scope(self, **filters: str) -> dict[str, str]:
        user_id = self.client.auth.require_session().user_id
        return {"user_id": f"eq.{user_id}", **filters}

    def _to_entity(self, row: dict[str, Any]) -> Entity:
        row = dict(row)
        row.pop("user_id", None)
        return normalize(self.family, row)

    def _to_row(self, entity: Entity, now: str) -> dict[str, Any]:
        row = {k: v for k, v in normalize(self.family, entity).items() if k not in _SERVER_COLUMNS}
        row["user_id"] = self.client.auth.require_session().user_id
        row["created_at"] = row.get("created_at") or now
        row["updated_at"] = now
        return row

    async def get_all(self) -> list[Entity]:
        rows = await self.client.request(
            "GET",
            self.table,
            params=self._scope(select="*", order="created_at.desc"),
        )
        return [self._to_entity(row) for row in rows or []]

    async def get_by_id(self, entity_id: Any) -> Entity | None:
        try:
            row = await self.client.request(
                "GET",
                self.table,
                params=self._scope(select="*", id=f"eq.{entity_id}"),
                accept=SINGLE_OBJECT,
            )
        except NotFoundError:
            return None
        return self._to_entity(row) if row else None

    async def add(self, entity: Entity) -> Entity:
        stored = await self.bulk_add([entity])
        if not stored:
            raise BackendError(f"{self.table} insert returned no row")
        return stored[0]

    async def bulk_add(self, entities: list[Entity]) -> list[Entity]:
        if not entities:
            return []
        now = utc_now_iso()
        rows = await self.client.request(
            "POST",
            self.table,
            json=[self._to_row(entity, now) for entity in entities],
            prefer="return=representation",
        )
        return [self._to_entity(row) for row in rows or []]

    async def update(self, entity_id: Any, partial: Entity) -> Entity:
        changes = {
            k: v for k, v in normalize_partial(self.family, partial).items()
            if k not in (*_SERVER_COLUMNS, "created_at")
        }
        changes["updated_at"] = utc_now_iso()
        rows = await self.client.request(
            "PATCH",
            self.table,
            params=self._scope(id=f"eq.{entity_id}"),
            json=changes,
            prefer="return=representation",
        )
        if not rows:
            raise NotFoundError(f"{self.table} {entity_id} not found").with_context(
                backend=self.kind.value, entity_type=self.table, entity_id=entity_id,
            )
        return self._to_entity(rows[0])

    async def delete(self, entity_id: Any) -> bool:
        return await self.bulk_delete([entity_id]) > 0

    async def bulk_delete(self, entity_ids: list[Any]) -> int:
        if not entity_ids:
            return 0
        ids = ",".join(str(i) for i in entity_ids)
        rows = await self.client.request(
            "DELETE",
            self.table,
            params=self._scope(id=f"in.({ids})"),
            prefer="return=representation",
        )
        return len(rows or [])

"""Tests for the PostgREST remote backend.

All HTTP goes through ``httpx.MockTransport`` backed by FakePostgrest.
"""

import httpx
import pytest

from mealsync.backends import AuthService, BackendKind, RemoteBackend, RemoteClient
from mealsync.backends.remote import error_for_response
from mealsync.core.errors import (
    AuthenticationError,
    BackendError,
    ConfigError,
    ConflictError,
    NetworkError,
    NotFoundError,
    RequestTimeout,
)
from mealsync.schema import EntityFamily
from tests._support.fakes import ANON_KEY, USER_ID, make_settings, signed_in_session


@pytest.fixture
def auth(remote_settings):
    auth = AuthService(remote_settings)
    auth.set_session(signed_in_session())
    return auth


@pytest.fixture
def client(remote_settings, auth, postgrest):
    return RemoteClient(remote_settings, auth, client=httpx.AsyncClient(transport=postgrest.transport))


@pytest.fixture
def recipes(client):
    return RemoteBackend(client, EntityFamily.RECIPES)


def _response(status, body=None, headers=None):
    request = httpx.Request("GET", "https://project.example.test/rest/v1/recipes")
    return httpx.Response(status, json=body or {}, headers=headers, request=request)


class TestErrorMapping:
    def test_success_has_no_error(self):
        assert error_for_response(_response(200)) is None

    @pytest.mark.parametrize(
        "status, body, expected",
        [
            (401, {"message": "JWT expired"}, AuthenticationError),
            (403, {}, AuthenticationError),
            (404, {}, NotFoundError),
            (406, {"code": "PGRST116", "message": "no rows"}, NotFoundError),
            (409, {"code": "23505"}, ConflictError),
            (400, {"message": "bad filter"}, BackendError),
        ],
    )
    def test_status_mapping(self, status, body, expected):
        error = error_for_response(_response(status, body))
        assert type(error) is expected
        assert error.context.http_status == status
        assert error.retryable is False

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_server_errors_are_retryable(self, status):
        error = error_for_response(_response(status, headers={"Retry-After": "3"}))
        assert type(error) is BackendError
        assert error.retryable is True
        assert error.retry_after == 3.0

    def test_message_from_body(self):
        assert error_for_response(_response(400, {"message": "bad filter"})).message == "bad filter"


class TestRemoteClient:
    @pytest.mark.asyncio
    async def test_headers_carry_key_and_token(self, client, postgrest):
        await client.request("GET", "recipes", params={"user_id": f"eq.{USER_ID}"})
        request = postgrest.requests[-1]
        assert request.headers["apikey"] == ANON_KEY
        assert request.headers["Authorization"] == "Bearer token-1"

    def test_unconfigured_remote(self, auth):
        client = RemoteClient(make_settings(), auth)
        with pytest.raises(ConfigError):
            client.table_url("recipes")

    @pytest.mark.asyncio
    async def test_requires_session(self, remote_settings, postgrest):
        client = RemoteClient(
            remote_settings,
            AuthService(remote_settings),
            client=httpx.AsyncClient(transport=postgrest.transport),
        )
        with pytest.raises(AuthenticationError, match="User not authenticated"):
            await client.request("GET", "recipes")
        assert postgrest.requests == []

    @pytest.mark.asyncio
    async def test_transport_timeout(self, client, postgrest):
        postgrest.fail_next(error=httpx.ReadTimeout("slow"))
        with pytest.raises(RequestTimeout):
            await client.request("GET", "recipes")

    @pytest.mark.asyncio
    async def test_transport_error(self, client, postgrest):
        postgrest.fail_next(error=httpx.ConnectError("refused"))
        with pytest.raises(NetworkError) as exc_info:
            await client.request("GET", "recipes")
        assert exc_info.value.retryable is True
        assert exc_info.value.context.backend == "remote"


class TestRemoteBackendCrud:
    def test_kind(self, recipes):
        assert recipes.kind is BackendKind.REMOTE

    @pytest.mark.asyncio
    async def test_add_scopes_to_user(self, recipes, postgrest):
        stored = await recipes.add({"id": "temp_1", "name": " Soup "})
        assert stored["id"] == 1
        assert stored["name"] == "Soup"
        assert "user_id" not in stored
        row = postgrest.tables["recipes"][1]
        assert row["user_id"] == USER_ID
        assert row["created_at"] is not None
        assert postgrest.requests[-1].headers["Prefer"] == "return=representation"

    @pytest.mark.asyncio
    async def test_get_all_only_sees_own_rows(self, recipes, postgrest):
        postgrest.seed("recipes", {"name": "Mine"})
        postgrest.seed("recipes", {"name": "Theirs"}, user_id="user-2")
        assert [r["name"] for r in await recipes.get_all()] == ["Mine"]
        params = postgrest.requests[-1].url.params
        assert params["user_id"] == f"eq.{USER_ID}"
        assert params["order"] == "created_at.desc"

    @pytest.mark.asyncio
    async def test_get_by_id(self, recipes, postgrest):
        row = postgrest.seed("recipes", {"name": "Soup"})
        assert (await recipes.get_by_id(row["id"]))["name"] == "Soup"
        assert await recipes.get_by_id(999) is None

    @pytest.mark.asyncio
    async def test_update(self, recipes, postgrest):
        row = postgrest.seed("recipes", {"name": "Soup", "tags": ["quick"]})
        updated = await recipes.update(row["id"], {"name": "Stew", "user_id": "attacker"})
        assert updated["name"] == "Stew"
        assert updated["tags"] == ["quick"]
        assert postgrest.tables["recipes"][row["id"]]["user_id"] == USER_ID

    @pytest.mark.asyncio
    async def test_update_missing_row(self, recipes):
        with pytest.raises(NotFoundError):
            await recipes.update(999, {"name": "Nope"})

    @pytest.mark.asyncio
    async def test_delete_and_bulk_delete(self, recipes, postgrest):
        a = postgrest.seed("recipes", {"name": "A"})
        b = postgrest.seed("recipes", {"name": "B"})
        c = postgrest.seed("recipes", {"name": "C"})
        assert await recipes.delete(a["id"]) is True
        assert await recipes.delete(a["id"]) is False
        assert await recipes.bulk_delete([b["id"], c["id"]]) == 2
        assert postgrest.requests[-1].url.params["id"] == f"in.({b['id']},{c['id']})"

    @pytest.mark.asyncio
    async def test_bulk_add_single_request(self, recipes, postgrest):
        stored = await recipes.bulk_add([{"name": "A"}, {"name": "B"}])
        assert [r["name"] for r in stored] == ["A", "B"]
        assert len(postgrest.requests) == 1

    @pytest.mark.asyncio
    async def test_conflict_surfaces(self, recipes, postgrest):
        postgrest.fail_next(409, {"code": "23505", "message": "duplicate key"})
        with pytest.raises(ConflictError, match="duplicate key"):
            await recipes.add({"name": "Soup"})

    def test_check_access_without_session(self, remote_settings, postgrest):
        backend = RemoteBackend(RemoteClient(remote_settings, AuthService(remote_settings)), "recipes")
        with pytest.raises(AuthenticationError):
            backend.check_access()

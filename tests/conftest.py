"""
Shared pytest fixtures for mealsync tests.

This module provides:
- Fast settings (short timers, tiny backoff delays)
- An in-memory local database
- A fake PostgREST server served through ``httpx.MockTransport``
- Fully wired stores over the local and the remote backend
"""

import httpx
import pytest
import pytest_asyncio

from mealsync.backends import LocalDatabase
from mealsync.core.settings import MealsyncSettings
from mealsync.store import OptimisticStore, create_store
from tests._support.fakes import (
    ANON_KEY,
    REMOTE_URL,
    EventRecorder,
    FakePostgrest,
    make_settings,
    signed_in_session,
)


@pytest.fixture
def settings() -> MealsyncSettings:
    return make_settings()


@pytest.fixture
def remote_settings() -> MealsyncSettings:
    return make_settings(remote_url=REMOTE_URL, remote_anon_key=ANON_KEY)


@pytest.fixture
def local_db():
    db = LocalDatabase(":memory:")
    db.connect()
    yield db
    db.close()


@pytest.fixture
def postgrest() -> FakePostgrest:
    return FakePostgrest()


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


# =============================================================================
# Stores
# =============================================================================


@pytest_asyncio.fixture
async def store(settings) -> OptimisticStore:
    store = create_store(settings)
    yield store
    await store.aclose()


@pytest_asyncio.fixture
async def remote_store(remote_settings, postgrest) -> OptimisticStore:
    client = httpx.AsyncClient(transport=postgrest.transport)
    store = create_store(remote_settings, http_client=client)
    store.auth.set_session(signed_in_session())
    yield store
    await store.aclose()

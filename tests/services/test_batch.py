"""Tests for dispatch_batch under the pending-update limit."""

import asyncio

import pytest

from mealsync.core.errors import PendingLimitExceeded
from mealsync.optimistic import UpdateStatus
from mealsync.services import dispatch_batch, settle_all
from mealsync.store import create_store
from tests._support.fakes import make_settings


@pytest.fixture
def small_store():
    return create_store(make_settings(max_pending_updates=2))


class TestDispatchBatch:
    @pytest.mark.asyncio
    async def test_waits_for_free_slots(self, small_store):
        try:
            handles = await dispatch_batch(
                (lambda n=n: small_store.add("recipes", {"name": f"Recipe {n}"}))
                for n in range(5)
            )
            assert len(handles) == 5
            assert small_store.manager.pending_count <= 2
            await settle_all(handles)
            assert all(h.update.status is UpdateStatus.SUCCESS for h in handles)
            assert len(await small_store.get_all("recipes")) == 5
        finally:
            await small_store.aclose()

    @pytest.mark.asyncio
    async def test_raises_when_limit_held_by_others(self, small_store):
        backend = small_store.resolve_backend("recipes")
        release = asyncio.Event()
        add = backend.add

        async def held(entity):
            await release.wait()
            return await add(entity)

        backend.add = held
        try:
            others = [small_store.add("recipes", {"name": "A"}), small_store.add("recipes", {"name": "B"})]
            with pytest.raises(PendingLimitExceeded):
                await dispatch_batch([lambda: small_store.add("recipes", {"name": "C"})])
            release.set()
            await settle_all(others)
        finally:
            await small_store.aclose()

    @pytest.mark.asyncio
    async def test_empty(self):
        assert await dispatch_batch([]) == []

from __future__ import annotations

import asyncio

import pytest
import sqlalchemy as sa

from sqla_evolve import Executor, Registry


pytestmark = pytest.mark.anyio


async def _wait_held(executor: Executor, count: int) -> None:
    for _ in range(100):
        if executor.held() >= count:
            return
        await asyncio.sleep(0)

    raise AssertionError(f"expected {count} held statement groups, got {executor.held()}")


class TestSyncHold:
    async def test_held_queries_flush_in_submission_order(self, synced: Registry) -> None:
        executor = synced.executor
        assert executor is not None
        users = synced["users"]

        async with executor.syncing(["users"]):
            first = asyncio.create_task(users.insert({"name": "first"}).execute())
            second = asyncio.create_task(users.insert({"name": "second"}).execute())
            await _wait_held(executor, 2)

            assert executor.held("users") == 2
            assert not first.done()
            assert await users.find().bypass() == []

        assert executor.held() == 0
        assert (await first)["id"] == 1
        assert (await second)["id"] == 2

    async def test_other_tables_are_not_held(self, synced: Registry) -> None:
        executor = synced.executor
        assert executor is not None

        async with executor.syncing(["users"]):
            book = await synced["books"].insert({"title": "Dune"})

        assert book["id"] == 1
        assert executor.held() == 0

    async def test_failure_reaches_its_caller_only(self, synced: Registry) -> None:
        executor = synced.executor
        assert executor is not None
        books = synced["books"]

        async with executor.syncing(["books"]):
            ok = asyncio.create_task(books.insert({"id": 1, "title": "Dune"}).execute())
            clash = asyncio.create_task(books.insert({"id": 1, "title": "Emma"}).execute())
            await _wait_held(executor, 2)

        assert (await ok)["title"] == "Dune"
        with pytest.raises(sa.exc.IntegrityError):
            await clash

    async def test_sync_holds_concurrent_queries(self, registry: Registry) -> None:
        executor = registry.executor
        assert executor is not None
        await registry.sync()

        evolved = registry.register({"name": "tags", "schema": {"id": {"type": "serial", "primaryKey": True}}})
        sync = asyncio.create_task(evolved.sync())
        await asyncio.sleep(0)
        rows = await evolved["users"].find()

        await sync
        assert rows == []
        assert executor.held() == 0

from __future__ import annotations

import pytest
import sqlalchemy as sa

from sqla_evolve import Registry, TransactionNotBegunError


pytestmark = pytest.mark.anyio


async def _names(registry: Registry) -> list[str]:
    return [row["name"] for row in await registry["users"].find(order="id")]


class TestTransaction:
    async def test_savepoint_rollback(self, synced: Registry) -> None:
        users = synced["users"]
        tx = await synced.transaction().begin()

        await tx.query(users.insert({"name": "dave"}))
        await tx.save("after_dave")
        await tx.query(users.insert({"name": "erin"}))
        await tx.rollback_to("after_dave")
        await tx.commit()

        assert await _names(synced) == ["dave"]
        assert not tx.is_active

    async def test_abort_discards_everything(self, synced: Registry) -> None:
        tx = await synced.transaction().begin()
        await tx.query(synced["users"].insert({"name": "dave"}))
        await tx.abort()

        assert await _names(synced) == []

    async def test_query_applies_result_transforms(self, synced: Registry) -> None:
        async with synced.transaction() as tx:
            row = await tx.query(synced["users"].insert({"name": "dave"}))
            rows = await tx.query("SELECT name FROM users WHERE id = :id", {"id": row["id"]})

        assert row["name"] == "dave"
        assert rows == [{"name": "dave"}]

    async def test_failure_rolls_back_and_ends_transaction(
        self, synced: Registry, seed_data: dict[str, list[dict]]
    ) -> None:
        users = synced["users"]
        tx = await synced.transaction().begin()
        await tx.query(users.insert({"name": "dave"}))

        with pytest.raises(sa.exc.IntegrityError):
            await tx.query(users.insert({"id": 1, "name": "duplicate"}))

        assert not tx.is_active
        with pytest.raises(TransactionNotBegunError):
            await tx.commit()
        assert await _names(synced) == ["alice", "bob", "carol"]

    async def test_context_manager_aborts_on_error(self, synced: Registry) -> None:
        with pytest.raises(RuntimeError, match="boom"):
            async with synced.transaction() as tx:
                await tx.query(synced["users"].insert({"name": "dave"}))
                raise RuntimeError("boom")

        assert await _names(synced) == []

    async def test_operations_before_begin(self, synced: Registry) -> None:
        tx = synced.transaction()

        with pytest.raises(TransactionNotBegunError):
            await tx.query("SELECT 1")
        with pytest.raises(TransactionNotBegunError):
            await tx.save("sp")

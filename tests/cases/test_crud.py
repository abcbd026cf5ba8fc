from __future__ import annotations

import pytest

from sqla_evolve import Excluded, Registry


pytestmark = pytest.mark.anyio


class TestFind:
    async def test_find_by_primary_key(self, synced: Registry, seed_data: dict[str, list[dict]]) -> None:
        bob = await synced["users"].find_one(2)

        assert bob == {"id": 2, "name": "bob", "active": True}

    async def test_find_one_without_match(self, synced: Registry, seed_data: dict[str, list[dict]]) -> None:
        assert await synced["users"].find_one(99) is None

    async def test_operators_order_limit(self, synced: Registry, seed_data: dict[str, list[dict]]) -> None:
        rows = await synced["users"].find({"id": {"$gt": 1}}, order="-id", limit=1)

        assert [row["name"] for row in rows] == ["carol"]

    async def test_or_and_in(self, synced: Registry, seed_data: dict[str, list[dict]]) -> None:
        rows = await synced["groups"].find(
            {"$or": [{"uid": None}, {"label": ["viewers", "missing"]}]}, order="id", columns=["label"]
        )

        assert rows == [{"label": "viewers"}, {"label": "orphans"}]

    async def test_raw_with_values(self, synced: Registry, seed_data: dict[str, list[dict]]) -> None:
        rows = await synced.raw("SELECT name FROM users WHERE id = :id", {"id": 3})

        assert rows == [{"name": "carol"}]


class TestWrite:
    async def test_insert_returns_the_row(self, synced: Registry) -> None:
        row = await synced["users"].insert({"name": "dave"})

        assert row == {"id": 1, "name": "dave", "active": True}

    async def test_update_many(self, synced: Registry, seed_data: dict[str, list[dict]]) -> None:
        rows = await synced["groups"].update({"uid": 1}, {"uid": 2})

        assert sorted(row["label"] for row in rows) == ["admins", "editors"]
        assert len(await synced["groups"].find({"uid": 2})) == 3

    async def test_remove(self, synced: Registry, seed_data: dict[str, list[dict]]) -> None:
        removed = await synced["groups"].remove(4)

        assert removed["label"] == "orphans"
        assert await synced["groups"].find_one(4) is None

    async def test_upsert_updates_conflicting_row(
        self, synced: Registry, seed_data: dict[str, list[dict]]
    ) -> None:
        row = await synced["books"].upsert("id", {"id": 1, "title": "Dune Messiah"})

        assert row == {"id": 1, "title": "Dune Messiah"}
        assert len(await synced["books"].find()) == 2

    async def test_upsert_with_explicit_update(
        self, synced: Registry, seed_data: dict[str, list[dict]]
    ) -> None:
        await synced["books"].upsert("id", {"id": 2, "title": "ignored"}, update={"title": Excluded("title")})

        assert (await synced["books"].find_one(2))["title"] == "ignored"

    async def test_upsert_target_only_keeps_row(
        self, synced: Registry, seed_data: dict[str, list[dict]]
    ) -> None:
        await synced["books"].upsert("id", [{"id": 1}])

        assert (await synced["books"].find_one(1))["title"] == "Dune"

    async def test_result_transform(self, synced: Registry, seed_data: dict[str, list[dict]]) -> None:
        names = await synced["users"].find(order="id").after(lambda rows: [row["name"] for row in rows])

        assert names == ["alice", "bob", "carol"]

"""Basic sqla-evolve usage examples.

Demonstrates registration, syncing, CRUD, relation directives,
transforms, schema evolution and transactions.

Run with ``python examples/basic_usage.py`` (needs ``aiosqlite``).
"""

from __future__ import annotations

import asyncio
from typing import Any

from sqlalchemy.ext.asyncio import create_async_engine

from sqla_evolve import Registry


USERS: dict[str, Any] = {
    "name": "users",
    "schema": {
        "id": {"type": "serial", "primaryKey": True},
        "name": {"type": "text"},
        "active": {"type": "boolean", "default": "true"},
    },
}

POSTS: dict[str, Any] = {
    "name": "posts",
    "schema": {
        "id": {"type": "serial", "primaryKey": True},
        "title": {"type": "text"},
        "author_id": {"type": "int", "references": "users"},
    },
}


# ── 1. Register once at startup ──────────────────────────────────────

engine = create_async_engine("sqlite+aiosqlite:///:memory:")
registry = Registry(engine).register(USERS, POSTS)


async def setup() -> None:
    # Creates missing tables and records version 1 of every schema
    await registry.sync()


# ── 2. CRUD ──────────────────────────────────────────────────────────


async def crud() -> None:
    users, posts = registry["users"], registry["posts"]

    ada = await users.insert({"name": "Ada"})
    await posts.insert([
        {"title": "Notes", "author_id": ada["id"]},
        {"title": "Engines", "author_id": ada["id"]},
    ])
    await users.update(ada["id"], {"active": False})
    await posts.upsert("id", {"id": 1, "title": "Notes, revised"})
    print(await users.find({"name": {"$like": "A%"}}, order="-id", limit=10))


# ── 3. Relation directives ───────────────────────────────────────────


async def relations() -> None:
    # Each user with a list of their posts
    print(await registry["users"].find(many="posts"))

    # Each post with its author embedded (None when absent)
    print(await registry["posts"].find(one={"table": "users", "alias": "author"}))

    # Only the titles
    print(await registry["users"].find_one(1, pluck={"table": "posts", "column": "title"}))

    # Author columns joined into the post row
    print(await registry["posts"].find(mixin={"table": "users", "columns": ["name"]}))


# ── 4. Transforms ────────────────────────────────────────────────────


async def transforms() -> None:
    active_only = registry.before(
        lambda query: query.where(active=True) if query.ast.table == "users" else query
    )
    names = await active_only["users"].find().after(lambda rows: [row["name"] for row in rows])
    print(names)


# ── 5. Evolving the schema ───────────────────────────────────────────


async def evolve() -> None:
    users = {**USERS, "schema": {**USERS["schema"], "email": {"type": "text", "unique": True}}}
    evolved = registry.register(users)

    plan = await evolved.sync()
    print(plan.version, [alter.table for alter in plan.alters])


# ── 6. Transactions ──────────────────────────────────────────────────


async def transaction() -> None:
    async with registry.transaction() as tx:
        await tx.query(registry["users"].insert({"name": "Grace"}))
        await tx.save("before_post")
        await tx.query(registry["posts"].insert({"title": "Draft", "author_id": 2}))
        await tx.rollback_to("before_post")


async def main() -> None:
    await setup()
    await crud()
    await relations()
    await transforms()
    await evolve()
    await transaction()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())

from __future__ import annotations

import os
from collections.abc import AsyncIterator, Iterator
from pathlib import Path

import pytest
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from sqla_evolve import Registry, relations_cache_clear

from .models import ALL_TABLES


pytestmark = pytest.mark.anyio


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--db",
        default="sqlite",
        choices=["sqlite", "postgres"],
        help="Database backend to test against",
    )


@pytest.fixture(scope="session")
def db_backend(request: pytest.FixtureRequest) -> str:
    value: str = request.config.getoption("--db")

    return value


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    # The executor's sync hold is built on asyncio futures.
    return "asyncio"


@pytest.fixture(scope="session")
def postgres_dsn(db_backend: str) -> Iterator[str | None]:
    if db_backend != "postgres":
        yield None
        return

    from testcontainers.postgres import PostgresContainer

    pg = PostgresContainer(image="postgres:latest")
    if os.name == "nt":
        pg.get_container_host_ip = lambda: "127.0.0.1"
    with pg:
        host = pg.get_container_host_ip()
        yield (
            f"postgresql+asyncpg://{pg.username}:{pg.password}"
            f"@{host}:{pg.get_exposed_port(pg.port)}/{pg.dbname}"
        )


@pytest.fixture
async def engine(postgres_dsn: str | None, tmp_path: Path) -> AsyncIterator[AsyncEngine]:
    """A fresh, empty database per test."""
    if postgres_dsn is None:
        eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db")
        yield eng
        await eng.dispose()
        return

    eng = create_async_engine(postgres_dsn)
    yield eng
    async with eng.begin() as conn:
        await conn.execute(sa.text("DROP SCHEMA public CASCADE"))
        await conn.execute(sa.text("CREATE SCHEMA public"))
    await eng.dispose()


@pytest.fixture
def registry(engine: AsyncEngine) -> Registry:
    return Registry(engine).register(*ALL_TABLES)


@pytest.fixture
async def synced(registry: Registry) -> Registry:
    await registry.sync()
    return registry


@pytest.fixture
async def seed_data(synced: Registry) -> dict[str, list[dict]]:
    users = await synced["users"].insert([{"name": "alice"}, {"name": "bob"}, {"name": "carol"}])
    books = await synced["books"].insert([{"title": "Dune"}, {"title": "Emma"}])
    user_books = await synced["user_books"].insert([
        {"user_id": 1, "book_id": 1},
        {"user_id": 1, "book_id": 2},
        {"user_id": 2, "book_id": 2},
    ])
    groups = await synced["groups"].insert([
        {"label": "admins", "uid": 1},
        {"label": "editors", "uid": 1},
        {"label": "viewers", "uid": 2},
        {"label": "orphans", "uid": None},
    ])

    return {"users": users, "books": books, "user_books": user_books, "groups": groups}


@pytest.fixture
def offline() -> Registry:
    """A registry without an engine, for AST and SQL assertions."""
    return Registry().register(*ALL_TABLES)


@pytest.fixture(autouse=True)
def clear_lru_caches() -> Iterator[None]:
    yield
    relations_cache_clear()

from __future__ import annotations

import asyncio
import itertools
from collections import Counter, deque
from collections.abc import AsyncIterator, Iterable, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

import sqlalchemy as sa
import structlog
from sqlalchemy.engine import Dialect
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from sqlalchemy.sql.base import Executable


logger = structlog.get_logger(__name__)

Row = dict[str, Any]


async def run_statements(
    connection: AsyncConnection,
    statements: Sequence[Executable],
    *,
    debug: bool = False,
) -> list[Row]:
    """Execute *statements* in order on *connection*.

    Returns:
        Rows of the last statement that returned any, as plain dicts. When a
        row carries the same column name twice the later value wins.
    """
    rows: list[Row] = []
    for statement in statements:
        if debug:
            logger.debug("executor.statement", sql=str(statement.compile(dialect=connection.dialect)))

        result = await connection.execute(statement)
        if result.returns_rows:
            keys = list(result.keys())
            rows = [dict(zip(keys, row)) for row in result.all()]

    return rows


@dataclass(slots=True)
class _Held:
    sequence: int
    table: str
    statements: Sequence[Executable]
    future: asyncio.Future[list[Row]] = field(repr=False)


class Executor:
    """Runs compiled statements on an ``AsyncEngine``.

    Every call checks one connection out of the engine's pool and runs its
    statement group in a single transaction.

    While :meth:`syncing` is active for a table, statements addressed to it are
    held instead of executed and are flushed in submission order when the
    sync ends. ``bypass=True`` skips the hold; the migrator uses it for its own
    statements.
    """

    __slots__ = ("_held", "_sequence", "_syncing", "debug", "engine")

    def __init__(self, engine: AsyncEngine, *, debug: bool = False) -> None:
        self.engine = engine
        self.debug = debug
        self._syncing: Counter[str] = Counter()
        self._held: dict[str, deque[_Held]] = {}
        self._sequence = itertools.count()

    def __repr__(self) -> str:
        return f"<Executor {self.engine.url.render_as_string(hide_password=True)!r}>"

    @property
    def dialect(self) -> Dialect:
        return self.engine.dialect

    def is_syncing(self, table: str) -> bool:
        return self._syncing[table] > 0

    def held(self, table: str | None = None) -> int:
        """Number of statement groups waiting (for *table*, or in total)."""
        if table is not None:
            return len(self._held.get(table, ()))

        return sum(len(queue) for queue in self._held.values())

    async def execute(
        self,
        statements: Sequence[Executable],
        *,
        table: str | None = None,
        bypass: bool = False,
    ) -> list[Row]:
        """Run *statements* on one connection inside one transaction.

        Args:
            statements: Executables to run in order.
            table: Table the statements address; used by the sync hold.
            bypass: Run immediately even while *table* is syncing.

        Returns:
            Rows of the last row-returning statement.
        """
        if table is not None and not bypass and self.is_syncing(table):
            return await self._hold(table, statements)

        return await self._run(statements)

    async def raw(self, sql: str, values: Mapping[str, Any] | None = None) -> list[Row]:
        """Run one textual statement with named bind *values*."""
        statement = sa.text(sql)
        if values:
            statement = statement.bindparams(**values)

        return await self._run([statement])

    async def _run(self, statements: Sequence[Executable]) -> list[Row]:
        async with self.engine.begin() as connection:
            return await run_statements(connection, statements, debug=self.debug)

    async def _hold(self, table: str, statements: Sequence[Executable]) -> list[Row]:
        held = _Held(
            sequence=next(self._sequence),
            table=table,
            statements=statements,
            future=asyncio.get_running_loop().create_future(),
        )
        self._held.setdefault(table, deque()).append(held)
        logger.debug("executor.held", table=table, sequence=held.sequence)

        return await held.future

    @asynccontextmanager
    async def syncing(self, tables: Iterable[str]) -> AsyncIterator[None]:
        """Hold statements addressed to *tables* for the duration of the block."""
        tables = tuple(dict.fromkeys(tables))
        self._syncing.update(tables)
        try:
            yield
        finally:
            released = [table for table in tables if self._syncing[table] == 1]
            try:
                await self._flush(released)
            finally:
                self._syncing.subtract(tables)
                for table in tables:
                    if self._syncing[table] <= 0:
                        del self._syncing[table]

    async def _flush(self, tables: Sequence[str]) -> None:
        flushed = 0
        # Statements held while flushing join the queue, so loop until drained.
        while batch := self._take(tables):
            for held in batch:
                if held.future.cancelled():
                    continue

                try:
                    rows = await self._run(held.statements)
                except Exception as exc:
                    if not held.future.done():
                        held.future.set_exception(exc)
                else:
                    if not held.future.done():
                        held.future.set_result(rows)
                flushed += 1

        if flushed:
            logger.info("executor.flushed", tables=list(tables), count=flushed)

    def _take(self, tables: Sequence[str]) -> list[_Held]:
        batch = [held for table in tables for held in self._held.pop(table, ())]
        return sorted(batch, key=lambda held: held.sequence)

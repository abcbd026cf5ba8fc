from __future__ import annotations

import sys
from collections.abc import Mapping
from types import TracebackType
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
import structlog
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncTransaction
from sqlalchemy.sql.base import Executable

from .errors import TransactionNotBegunError
from .executor import Row, run_statements
from .query import Query


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

if TYPE_CHECKING:
    from .compiler import Compiler
    from .executor import Executor


logger = structlog.get_logger(__name__)


class Transaction:
    """A sequence of statements on one dedicated connection.

    ``begin()`` checks a connection out and opens the transaction;
    ``commit()`` / ``abort()`` end it and return the connection exactly once.
    Any operation outside that window raises
    :class:`~sqla_evolve.errors.TransactionNotBegunError`. A failing
    statement rolls back, returns the connection and re-raises, leaving the
    transaction unusable.

    Example:
        >>> async with registry.transaction() as tx:
        ...     await tx.query(users.insert({"name": "Ada"}))
        ...     await tx.save("before_books")
        ...     await tx.query(books.insert({"name": "Notes"}))
        ...     await tx.rollback_to("before_books")
    """

    __slots__ = ("_connection", "_transaction", "compiler", "executor")

    def __init__(self, executor: Executor, compiler: Compiler) -> None:
        self.executor = executor
        self.compiler = compiler
        self._connection: AsyncConnection | None = None
        self._transaction: AsyncTransaction | None = None

    @property
    def is_active(self) -> bool:
        return self._connection is not None

    async def __aenter__(self) -> Self:
        return await self.begin()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if not self.is_active:
            return

        if exc_type is None:
            await self.commit()
        else:
            await self.abort()

    def _require(self, action: str) -> AsyncConnection:
        if self._connection is None:
            raise TransactionNotBegunError(action)

        return self._connection

    async def begin(self) -> Self:
        if self._connection is not None:
            raise RuntimeError("Transaction has already begun")

        self._connection = await self.executor.engine.connect()
        try:
            self._transaction = await self._connection.begin()
        except BaseException:
            await self._release()
            raise

        logger.debug("transaction.begin")
        return self

    async def query(
        self,
        query: Query | str | Executable,
        values: Mapping[str, Any] | None = None,
    ) -> Any:
        """Run a :class:`Query`, a SQL string (with named *values*) or an executable.

        Query transforms and result transforms of a ``Query`` apply as they
        would outside the transaction; the sync hold does not.
        """
        connection = self._require("query")

        if isinstance(query, Query):
            transformed = query.get_transformed_query()
            statements = self.compiler.compile(transformed.ast, connection.dialect)
        elif isinstance(query, str):
            text = sa.text(query)
            statements = [text.bindparams(**values) if values else text]
        else:
            statements = [query]

        try:
            rows: list[Row] = await run_statements(connection, statements, debug=self.executor.debug)
        except BaseException:
            await self._rollback_and_release()
            raise

        return query.get_transformed_result(rows) if isinstance(query, Query) else rows

    async def save(self, name: str) -> None:
        """Create savepoint *name*."""
        await self._savepoint("save", "SAVEPOINT {}", name)

    async def rollback_to(self, name: str) -> None:
        """Undo everything after savepoint *name*; the transaction stays open."""
        await self._savepoint("rollback", "ROLLBACK TO SAVEPOINT {}", name)

    async def release(self, name: str) -> None:
        """Forget savepoint *name*, keeping its changes."""
        await self._savepoint("release", "RELEASE SAVEPOINT {}", name)

    async def _savepoint(self, action: str, template: str, name: str) -> None:
        connection = self._require(action)
        quoted = connection.dialect.identifier_preparer.quote(name)
        try:
            await connection.execute(sa.text(template.format(quoted)))
        except BaseException:
            await self._rollback_and_release()
            raise

    async def commit(self) -> None:
        self._require("commit")
        assert self._transaction is not None
        try:
            await self._transaction.commit()
        finally:
            await self._release()
        logger.debug("transaction.commit")

    async def abort(self) -> None:
        self._require("abort")
        await self._rollback_and_release()
        logger.debug("transaction.abort")

    async def _rollback_and_release(self) -> None:
        try:
            if self._transaction is not None and self._transaction.is_active:
                await self._transaction.rollback()
        finally:
            await self._release()

    async def _release(self) -> None:
        connection, self._connection, self._transaction = self._connection, None, None
        if connection is not None:
            await connection.close()

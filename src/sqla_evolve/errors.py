"""Exception taxonomy.

Every error raised by the package derives from :class:`SqlaEvolveError`.
Backend failures (``sqlalchemy.exc.DBAPIError`` and friends) are never
wrapped: they reach the caller exactly as the driver raised them.
"""

from __future__ import annotations

from collections.abc import Iterable


class SqlaEvolveError(Exception):
    """Base class for all package errors."""


class SchemaDefinitionError(SqlaEvolveError, ValueError):
    """A table definition is malformed or references an unknown table."""


class CyclicDependencyError(SqlaEvolveError):
    """The foreign-key graph contains a cycle, so no creation order exists."""

    def __init__(self, tables: Iterable[str]) -> None:
        self.tables: tuple[str, ...] = tuple(tables)
        super().__init__(f"Dependency tree is cyclic: {', '.join(self.tables)}")


class RelationResolutionError(SqlaEvolveError):
    """A relation directive cannot be correlated to its source table."""

    def __init__(self, source: str, target: str) -> None:
        self.source = source
        self.target = target
        super().__init__(f"Must specify how to relate table `{source}` to target `{target}`")


class InvalidTransformError(SqlaEvolveError, TypeError):
    """A value that is neither callable nor a transform was registered."""

    def __init__(self, expected: str | None = None) -> None:
        if expected is None:
            super().__init__("Invalid Transform type")
        else:
            super().__init__(f'Transform must be either a "Callable" or "{expected}"')


class TransactionNotBegunError(SqlaEvolveError, RuntimeError):
    """A transaction operation was used outside ``begin()`` ... ``commit()/abort()``."""

    def __init__(self, action: str) -> None:
        self.action = action
        super().__init__(
            f"Cannot {action} the transaction because it has not yet begun. "
            "Call tx.begin() first."
        )


class MissingPoolError(SqlaEvolveError, RuntimeError):
    """A query or table was executed without an engine to run on."""

    def __init__(self, what: str = "query") -> None:
        super().__init__(f"Cannot execute {what} without an engine; pass `engine=` to Registry")

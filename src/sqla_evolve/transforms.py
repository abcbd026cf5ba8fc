from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any, Final

from .errors import InvalidTransformError


if TYPE_CHECKING:
    from .query import Query

Rows = Any


class QueryTransform:
    """Pre-execution step: receives a query, returns the query to run.

    A handler returning ``None`` leaves the query unchanged, which lets
    handlers written against ``Query.mutate`` skip the explicit return.
    """

    __slots__ = ("handler",)

    def __init__(self, handler: Callable[[Query], Query | None]) -> None:
        if not callable(handler):
            raise InvalidTransformError("QueryTransform")
        self.handler = handler

    @classmethod
    def create(cls, handler: Callable[[Query], Query | None]) -> QueryTransform:
        return cls(handler)

    def __call__(self, query: Query) -> Query:
        result = self.handler(query)
        return query if result is None else result

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {getattr(self.handler, '__name__', self.handler)!r}>"


class ResultTransform:
    """Post-execution step: receives the rows (or a previous transform's output)."""

    __slots__ = ("handler",)

    def __init__(self, handler: Callable[[Rows], Rows]) -> None:
        if not callable(handler):
            raise InvalidTransformError("ResultTransform")
        self.handler = handler

    @classmethod
    def create(cls, handler: Callable[[Rows], Rows]) -> ResultTransform:
        return cls(handler)

    def __call__(self, rows: Rows) -> Rows:
        return self.handler(rows)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {getattr(self.handler, '__name__', self.handler)!r}>"


def _first_row(rows: Sequence[Any]) -> Any:
    return rows[0] if rows else None


first_row: Final[ResultTransform] = ResultTransform(_first_row)


def as_query_transform(value: Any) -> QueryTransform:
    """Wrap a callable, pass a ``QueryTransform`` through, reject anything else."""
    if isinstance(value, QueryTransform):
        return value

    if isinstance(value, ResultTransform) or not callable(value):
        raise InvalidTransformError("QueryTransform")

    return QueryTransform(value)


def as_result_transform(value: Any) -> ResultTransform:
    """Wrap a callable, pass a ``ResultTransform`` through, reject anything else."""
    if isinstance(value, ResultTransform):
        return value

    if isinstance(value, QueryTransform) or not callable(value):
        raise InvalidTransformError("ResultTransform")

    return ResultTransform(value)

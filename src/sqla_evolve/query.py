from __future__ import annotations

from collections.abc import Callable, Generator, Mapping, Sequence
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from sqlalchemy.engine import Dialect

from .compiler import CompiledQuery, Compiler
from .datastructures import freeze, frozendict
from .errors import InvalidTransformError, MissingPoolError
from .statements import (
    Insert,
    RelationDirective,
    RelationKind,
    Select,
    Statement,
    Update,
)
from .transforms import QueryTransform, ResultTransform, as_query_transform, as_result_transform


if TYPE_CHECKING:
    from .executor import Executor


TransformArg = Any


class Query:
    """An immutable statement AST plus its query and result transform pipelines.

    Every builder method returns a new ``Query``; the receiver is left as it
    was. Inside :meth:`mutate` the builders change the receiver in place
    instead, which saves the clones when many fields are set at once::

        query = users.find().mutate(lambda q: q.where(active=True).limit(10).order("-id"))

    Awaiting a query (or calling :meth:`execute`) runs the query transforms,
    compiles the result for the executor's dialect, executes it and folds the
    result transforms over the returned rows.
    """

    __slots__ = (
        "_ast",
        "_bypass",
        "_compiler",
        "_executor",
        "_expander",
        "_immutable",
        "_query_transforms",
        "_result_transforms",
    )

    def __init__(
        self,
        ast: Statement,
        *,
        compiler: Compiler | None = None,
        executor: Executor | None = None,
        query_transforms: Sequence[QueryTransform] = (),
        result_transforms: Sequence[ResultTransform] = (),
        expander: QueryTransform | None = None,
        bypass: bool = False,
    ) -> None:
        self._ast = ast
        self._compiler = compiler
        self._executor = executor
        self._query_transforms: tuple[QueryTransform, ...] = tuple(query_transforms)
        self._result_transforms: tuple[ResultTransform, ...] = tuple(result_transforms)
        self._expander = expander
        self._bypass = bypass
        self._immutable = True

    def __repr__(self) -> str:
        return (
            f"<Query {self._ast.kind} {self._ast.table!r} "
            f"before={len(self._query_transforms)} after={len(self._result_transforms)}>"
        )

    def __await__(self) -> Generator[Any, None, Any]:
        return self.execute().__await__()

    @property
    def ast(self) -> Statement:
        return self._ast

    @property
    def query_transforms(self) -> tuple[QueryTransform, ...]:
        return self._query_transforms

    @property
    def result_transforms(self) -> tuple[ResultTransform, ...]:
        return self._result_transforms

    @property
    def is_bypassing(self) -> bool:
        return self._bypass

    # -- immutability -------------------------------------------------------

    def clone(self) -> Query:
        return Query(
            self._ast,
            compiler=self._compiler,
            executor=self._executor,
            query_transforms=self._query_transforms,
            result_transforms=self._result_transforms,
            expander=self._expander,
            bypass=self._bypass,
        )

    def _instance(self) -> Query:
        return self.clone() if self._immutable else self

    def mutate(self, fn: Callable[[Query], Any]) -> Query:
        """Run *fn* with builders mutating this query in place, then freeze it again."""
        self._immutable = False
        try:
            fn(self)
        finally:
            self._immutable = True

        return self

    def with_ast(self, ast: Statement) -> Query:
        query = self._instance()
        query._ast = ast
        return query

    def _replace(self, **changes: Any) -> Query:
        return self.with_ast(replace(self._ast, **changes))  # type: ignore[arg-type]

    def _require(self, method: str, *kinds: type) -> None:
        if not isinstance(self._ast, kinds):
            raise TypeError(f"{method}() is not available on {self._ast.kind} queries")

    # -- builders -----------------------------------------------------------

    def where(self, where: Mapping[str, Any] | None = None, /, **conditions: Any) -> Query:
        """Add conditions; keys already present are replaced."""
        current: frozendict[str, Any] = getattr(self._ast, "where", None)  # type: ignore[assignment]
        if current is None:
            raise TypeError(f"where() is not available on {self._ast.kind} queries")

        return self._replace(where=current.merge(freeze({**(where or {}), **conditions})))

    def columns(self, *columns: Any) -> Query:
        self._require("columns", Select)
        return self._replace(columns=_flatten(columns))

    def returning(self, *columns: Any) -> Query:
        if isinstance(self._ast, Select) or not hasattr(self._ast, "returning"):
            raise TypeError(f"returning() is not available on {self._ast.kind} queries")

        return self._replace(returning=_flatten(columns))

    def values(self, values: Mapping[str, Any] | Sequence[Mapping[str, Any]]) -> Query:
        self._require("values", Insert)
        return self._replace(values=freeze(values))

    def updates(self, updates: Mapping[str, Any] | None = None, /, **changes: Any) -> Query:
        self._require("updates", Update)
        return self._replace(updates=freeze({**(updates or {}), **changes}))

    def with_(self, name: str, query: Query | Select) -> Query:
        """Attach a common table expression named *name*."""
        current: frozendict[str, Select] | None = getattr(self._ast, "with_", None)
        if current is None:
            raise TypeError(f"with_() is not available on {self._ast.kind} queries")

        ast = query.get_transformed_query().ast if isinstance(query, Query) else query
        return self._replace(with_=current.merge({name: ast}))

    def order(self, *entries: str) -> Query:
        self._require("order", Select)
        return self._replace(order=_flatten(entries))

    def group_by(self, *columns: str) -> Query:
        self._require("group_by", Select)
        return self._replace(group_by=_flatten(columns))

    def limit(self, limit: int | None) -> Query:
        self._require("limit", Select)
        return self._replace(limit=limit)

    def offset(self, offset: int | None) -> Query:
        self._require("offset", Select)
        return self._replace(offset=offset)

    def distinct(self, distinct: bool = True) -> Query:
        self._require("distinct", Select)
        return self._replace(distinct=distinct)

    def alias(self, alias: str) -> Query:
        self._require("alias", Select)
        return self._replace(alias=alias)

    def _relate(self, kind: RelationKind, directives: Any, kw: Mapping[str, Any]) -> Query:
        relations = getattr(self._ast, "relations", None)
        if relations is None:
            raise TypeError(f"{kind}() is not available on {self._ast.kind} queries")

        if isinstance(directives, (str, Mapping, RelationDirective)):
            directives = (directives,)
        for directive in directives:
            relations = relations.add(kind, RelationDirective.create(directive, **kw))

        return self._replace(relations=relations)

    def one(self, directive: Any, **kw: Any) -> Query:
        """Embed the single related row of ``directive.table`` (``None`` when absent)."""
        return self._relate("one", directive, kw)

    def many(self, directive: Any, **kw: Any) -> Query:
        """Embed every related row of ``directive.table`` as a list."""
        return self._relate("many", directive, kw)

    def pluck(self, directive: Any, **kw: Any) -> Query:
        """Embed one column of every related row as a list of scalars."""
        return self._relate("pluck", directive, kw)

    def mixin(self, directive: Any, **kw: Any) -> Query:
        """Join the related row's columns into the outer row."""
        return self._relate("mixin", directive, kw)

    def bypass(self) -> Query:
        """Run immediately even while a sync holds this query's table."""
        query = self._instance()
        query._bypass = True
        return query

    # -- transforms ---------------------------------------------------------

    def before(self, transforms: TransformArg) -> Query:
        """Append one query transform or a sequence of them."""
        query = self._instance()
        query._query_transforms = (
            *self._query_transforms,
            *(as_query_transform(t) for t in transform_list(transforms)),
        )
        return query

    def after(self, transforms: TransformArg) -> Query:
        """Append one result transform or a sequence of them."""
        query = self._instance()
        query._result_transforms = (
            *self._result_transforms,
            *(as_result_transform(t) for t in transform_list(transforms)),
        )
        return query

    def use(self, transform: Any) -> Query:
        """Install a transform by type, or call a plain callable with this query.

        Raises:
            InvalidTransformError: When *transform* is neither a transform nor callable.
        """
        if isinstance(transform, QueryTransform):
            return self.before(transform)

        if isinstance(transform, ResultTransform):
            return self.after(transform)

        if callable(transform):
            result = transform(self)
            return self if result is None else result

        raise InvalidTransformError()

    def get_transformed_query(self) -> Query:
        """Fold the query transforms left to right over a transform-free clone.

        Relation directives are expanded last, after every transform had the
        chance to add some.
        """
        query = self.clone()
        query._query_transforms = ()
        query._result_transforms = ()
        query._expander = None

        for transform in self._query_transforms:
            query = transform(query)

        if self._expander is not None:
            query = self._expander(query)

        return query

    def get_transformed_result(self, rows: Any) -> Any:
        for transform in self._result_transforms:
            rows = transform(rows)

        return rows

    # -- execution ----------------------------------------------------------

    def to_sql(self, dialect: str | Dialect | None = None) -> CompiledQuery:
        """Compile the transformed query; the executor's dialect is used by default."""
        if dialect is None and self._executor is not None:
            dialect = self._executor.dialect

        return (self._compiler or Compiler()).to_sql(self.get_transformed_query().ast, dialect)

    async def execute(self) -> Any:
        """Run the query and return the transformed result.

        Raises:
            MissingPoolError: When the query has no executor.
        """
        if self._executor is None:
            raise MissingPoolError("query")

        transformed = self.get_transformed_query()
        compiler = self._compiler or Compiler()
        rows = await self._executor.execute(
            compiler.compile(transformed.ast, self._executor.dialect),
            table=transformed.ast.table,
            bypass=self._bypass,
        )

        return self.get_transformed_result(rows)


def _flatten(values: Sequence[Any]) -> tuple[Any, ...]:
    if len(values) == 1 and isinstance(values[0], (list, tuple)):
        return tuple(values[0])

    return tuple(values)


def transform_list(transforms: TransformArg) -> Sequence[Any]:
    if isinstance(transforms, (list, tuple)):
        return transforms

    return (transforms,)


from __future__ import annotations

import sys
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import replace
from typing import Any

import sqlalchemy as sa
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from .compiler import Compiler
from .config import Options, OptionsType, make_options
from .errors import InvalidTransformError, MissingPoolError
from .executor import Executor, Row
from .graph import SchemaGraph, build_graph
from .migration import MigrationPlan, Migrator, SnapshotRecord, history_table, plan_migration
from .query import Query, TransformArg, transform_list
from .relationships import RelationshipsTransform, expand_relations
from .schema import TableSchema, define_table, schemas_from_metadata
from .sequencer import creation_order
from .statements import Select, Statement
from .strategies import DiffStrategies, default_strategies
from .table import Table
from .transaction import Transaction
from .transforms import QueryTransform, ResultTransform, as_query_transform, as_result_transform


if sys.version_info >= (3, 11):
    from typing import Unpack
else:
    from typing_extensions import Unpack


logger = structlog.get_logger(__name__)

Definition = Mapping[str, Any] | TableSchema


class Registry:
    """Registered tables plus everything derived from them.

    A registry is a value: :meth:`register`, :meth:`before`, :meth:`after`
    and :meth:`use` return a new registry and leave the receiver untouched, so
    independent registries can live side by side in one process. The
    executor (and the engine behind it) is shared between a registry and the
    registries derived from it.

    The migration-history table is always registered first.

    Example:
        >>> registry = Registry(engine).register(
        ...     {"name": "users", "schema": {"id": {"type": "serial", "primaryKey": True}, "name": "text"}},
        ...     {"name": "groups", "schema": {"id": {"type": "serial", "primaryKey": True}, "uid": {"type": "int", "references": "users"}}},
        ... )
        >>> await registry.sync()
        >>> await registry["users"].find(many="groups")
    """

    __slots__ = (
        "_after",
        "_before",
        "_relationships",
        "compiler",
        "executor",
        "graph",
        "options",
        "strategies",
        "tables",
    )

    def __init__(
        self,
        engine: AsyncEngine | Executor | None = None,
        *,
        strategies: DiffStrategies | None = None,
        **options: Unpack[OptionsType],
    ) -> None:
        self.options: Options = make_options(**options)
        if isinstance(engine, AsyncEngine):
            self.executor: Executor | None = Executor(engine, debug=self.options.debug)
        else:
            self.executor = engine
        self.strategies = strategies or default_strategies()
        self._before: tuple[QueryTransform, ...] = ()
        self._after: tuple[ResultTransform, ...] = ()
        self._rebuild({self.options.history_table: history_table(self.options.history_table)})

    def __repr__(self) -> str:
        return f"<Registry {list(self.tables)!r}>"

    def __contains__(self, name: object) -> bool:
        return name in self.tables

    def __iter__(self) -> Iterator[str]:
        return iter(self.tables)

    def __getitem__(self, name: str) -> Table:
        return self.table(name)

    def _rebuild(self, tables: Mapping[str, TableSchema]) -> None:
        graph = build_graph(tables)
        marker = self.options.relation_alias

        # View queries are stored with their relation directives already expanded.
        self.tables: dict[str, TableSchema] = {
            name: (
                replace(schema, query=expand_relations(graph, schema.query, alias_marker=marker))
                if schema.is_view and schema.query is not None
                else schema
            )
            for name, schema in tables.items()
        }
        self.graph: SchemaGraph = graph
        self.compiler = Compiler(self.tables)
        self._relationships = RelationshipsTransform(graph, alias_marker=marker)

    def _copy(self) -> Registry:
        clone = object.__new__(Registry)
        clone.options = self.options
        clone.executor = self.executor
        clone.strategies = self.strategies
        clone._before = self._before
        clone._after = self._after
        clone.tables = self.tables
        clone.graph = self.graph
        clone.compiler = self.compiler
        clone._relationships = self._relationships
        return clone

    # -- registration -------------------------------------------------------

    def register(self, *definitions: Definition | Iterable[Definition]) -> Registry:
        """Return a new registry with *definitions* added (or replaced by name).

        Accepts definition mappings, :class:`TableSchema` values, or iterables
        of either. A view's ``query`` may be a :class:`Query`.

        Raises:
            SchemaDefinitionError: On a malformed definition.
        """
        tables = dict(self.tables)
        for definition in _iter_definitions(definitions):
            if isinstance(definition, Mapping) and isinstance(definition.get("query"), Query):
                definition = {**definition, "query": definition["query"].get_transformed_query().ast}
            schema = define_table(definition, reference_column=self.options.reference_column)
            tables[schema.name] = schema
            logger.debug("registry.register", table=schema.name, kind=schema.kind.value)

        clone = self._copy()
        clone._rebuild(tables)
        return clone

    def register_metadata(self, metadata: sa.MetaData | Any) -> Registry:
        """Register every table of a SQLAlchemy ``MetaData`` or declarative base."""
        return self.register(list(schemas_from_metadata(metadata).values()))

    # -- transforms ---------------------------------------------------------

    def before(self, transforms: TransformArg) -> Registry:
        """Return a registry whose queries run *transforms* before compiling."""
        clone = self._copy()
        clone._before = (*self._before, *(as_query_transform(t) for t in transform_list(transforms)))
        return clone

    def after(self, transforms: TransformArg) -> Registry:
        """Return a registry whose queries run *transforms* over their results."""
        clone = self._copy()
        clone._after = (*self._after, *(as_result_transform(t) for t in transform_list(transforms)))
        return clone

    def use(self, transform: Any) -> Registry:
        if isinstance(transform, QueryTransform):
            return self.before(transform)

        if isinstance(transform, ResultTransform):
            return self.after(transform)

        if callable(transform):
            result = transform(self)
            return self if result is None else result

        raise InvalidTransformError()

    # -- queries ------------------------------------------------------------

    def table(self, name: str) -> Table:
        try:
            return Table(self.tables[name], self)
        except KeyError:
            raise KeyError(f"Table `{name}` is not registered") from None

    def query(self, ast: Statement) -> Query:
        """Wrap *ast* in a :class:`Query` carrying this registry's transforms."""
        return Query(
            ast,
            compiler=self.compiler,
            executor=self.executor,
            query_transforms=self._before,
            result_transforms=self._after,
            expander=self._relationships,
        )

    def find(self, table: str, where: Mapping[str, Any] | None = None, **options: Any) -> Query:
        return self.table(table).find(where, **options)

    async def raw(self, sql: str, values: Mapping[str, Any] | None = None) -> list[Row]:
        """Run literal SQL with named *values* (``:name`` placeholders)."""
        if self.executor is None:
            raise MissingPoolError("raw query")

        return await self.executor.raw(sql, values)

    def transaction(self) -> Transaction:
        if self.executor is None:
            raise MissingPoolError("transaction")

        return Transaction(self.executor, self.compiler)

    # -- schema -------------------------------------------------------------

    def creation_order(self, *, include_history: bool = False) -> tuple[str, ...]:
        """Base tables in dependency order, then views in registration order.

        Raises:
            CyclicDependencyError: When base tables reference each other in a cycle.
        """
        base = {name: schema for name, schema in self.tables.items() if not schema.is_view}
        order = creation_order(build_graph(base))
        views = tuple(name for name, schema in self.tables.items() if schema.is_view)
        if not include_history:
            order = tuple(name for name in order if name != self.options.history_table)

        return (*order, *views)

    def serialize(self, schema: TableSchema) -> dict[str, Any]:
        """Snapshot form of *schema*; views carry their defining SQL."""
        expression = (
            self.compiler.serialize_expression(schema.query)
            if schema.is_view and isinstance(schema.query, Select)
            else None
        )
        return schema.to_dict(expression=expression)

    def plan(self, snapshots: Mapping[str, SnapshotRecord] | None = None) -> MigrationPlan:
        """Plan a sync against *snapshots* without touching the database."""
        return plan_migration(
            self.tables,
            snapshots or {},
            strategies=self.strategies,
            serialize=self.serialize,
        )

    async def sync(self, *, force: bool = False) -> MigrationPlan:
        """Create and alter tables to match the registry; see :class:`Migrator`."""
        return await Migrator(self).sync(force=force)


def _iter_definitions(definitions: Iterable[Any]) -> Iterator[Definition]:
    for definition in definitions:
        if isinstance(definition, (Mapping, TableSchema)):
            yield definition
        else:
            yield from _iter_definitions(definition)

"""Schema versioning.

Every successful sync stores one snapshot row per registered table in the
history table, all sharing the sync's version number. The next sync diffs the
registered schemas against the latest snapshot of each table and applies
only additive, non-destructive changes.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Final

import structlog

from .config import DEFAULT_HISTORY_TABLE
from .errors import MissingPoolError, SchemaDefinitionError
from .graph import build_graph
from .schema import TableSchema, define_table
from .sequencer import creation_order
from .statements import AlterTable, CreateTable, CreateView, Statement
from .strategies import AddColumn, AlterAction, DiffStrategies


if TYPE_CHECKING:
    from .registry import Registry


logger = structlog.get_logger(__name__)

HISTORY_COLUMNS: Final[dict[str, dict[str, Any]]] = {
    "id": {"type": "serial", "primary_key": True},
    "table_name": {"type": "text"},
    "schema": {"type": "json"},
    "version": {"type": "int"},
    "created_at": {"type": "timestamp", "default": "CURRENT_TIMESTAMP"},
}


def history_table(name: str = DEFAULT_HISTORY_TABLE) -> TableSchema:
    """Schema of the migration-history table."""
    return define_table({"name": name, "schema": HISTORY_COLUMNS})


@dataclass(slots=True, frozen=True)
class SnapshotRecord:
    """One table's serialized schema at one version."""

    table_name: str
    schema: Mapping[str, Any]
    version: int

    def to_row(self) -> dict[str, Any]:
        return {"table_name": self.table_name, "schema": dict(self.schema), "version": self.version}


@dataclass(slots=True, frozen=True)
class MigrationPlan:
    """Everything one sync applies, in execution order.

    Attributes:
        version: Version the snapshots are stored under.
        order: Base tables in creation order.
        creates: ``CREATE TABLE IF NOT EXISTS`` for tables without a snapshot.
        views: View (re)creations, in registration order, run after the alters.
        alters: One ``ALTER TABLE`` per table with differences.
        snapshots: Records to persist once every statement succeeded.
        changed: Whether any serialized schema differs from its snapshot.
    """

    version: int
    order: tuple[str, ...] = ()
    creates: tuple[CreateTable, ...] = ()
    views: tuple[CreateView, ...] = ()
    alters: tuple[AlterTable, ...] = ()
    snapshots: tuple[SnapshotRecord, ...] = ()
    changed: bool = False

    @property
    def statements(self) -> tuple[Statement, ...]:
        return (*self.creates, *self.alters, *self.views)

    @property
    def actions(self) -> tuple[AlterAction, ...]:
        return tuple(action for alter in self.alters for action in alter.actions)

    @property
    def is_noop(self) -> bool:
        """Nothing to execute and nothing new to record."""
        return not self.statements and not self.changed


def validate_references(tables: Mapping[str, TableSchema]) -> None:
    """Reject references to tables that are not registered.

    Raises:
        SchemaDefinitionError: Naming the first offending column.
    """
    for name, schema in tables.items():
        for column, ref in schema.references():
            if ref.table not in tables:
                raise SchemaDefinitionError(
                    f"Column `{name}.{column}` references unregistered table `{ref.table}`"
                )


def latest_snapshots(rows: Iterable[Mapping[str, Any]]) -> dict[str, SnapshotRecord]:
    """Keep the highest-version record per table out of history rows."""
    latest: dict[str, SnapshotRecord] = {}
    for row in rows:
        record = SnapshotRecord(
            table_name=row["table_name"], schema=row["schema"], version=int(row["version"])
        )
        current = latest.get(record.table_name)
        if current is None or record.version > current.version:
            latest[record.table_name] = record

    return latest


def diff_table(
    new: TableSchema,
    old: TableSchema,
    strategies: DiffStrategies,
) -> list[AlterAction]:
    """Actions bringing *old* up to *new*: added columns, then per-attribute strategies.

    Columns missing from *new* produce nothing.
    """
    actions: list[AlterAction] = []
    for name, spec in new.columns.items():
        if name not in old.columns:
            actions.append(AddColumn(name=name, spec=spec))
        else:
            actions.extend(strategies.diff_column(name, spec, old.columns[name], new, old))

    return actions


def plan_migration(
    tables: Mapping[str, TableSchema],
    snapshots: Mapping[str, SnapshotRecord],
    *,
    strategies: DiffStrategies,
    serialize: Callable[[TableSchema], dict[str, Any]],
) -> MigrationPlan:
    """Plan a sync of *tables* against their latest *snapshots*.

    Pure: nothing is executed. *serialize* produces the stored form of a
    schema (views include their compiled defining SQL, which is how changed
    views are detected).

    Args:
        tables: Registered schemas in registration order, history table included.
        snapshots: Latest snapshot per table name.
        strategies: Column diff rules.
        serialize: Schema to snapshot dict.

    Raises:
        SchemaDefinitionError: A column references an unregistered table.
        CyclicDependencyError: The base tables reference each other in a cycle.
    """
    validate_references(tables)

    base = {name: schema for name, schema in tables.items() if not schema.is_view}
    order = creation_order(build_graph(base))
    serialized = {name: serialize(schema) for name, schema in tables.items()}

    creates: list[CreateTable] = []
    alters: list[AlterTable] = []
    for name in order:
        if (snapshot := snapshots.get(name)) is None:
            creates.append(CreateTable(table=name, definition=base[name].columns))
            continue

        old = TableSchema.from_dict(snapshot.schema)
        if actions := diff_table(base[name], old, strategies):
            alters.append(AlterTable(table=name, actions=tuple(actions)))

    views: list[CreateView] = []
    for name, schema in tables.items():
        if not schema.is_view:
            continue

        snapshot = snapshots.get(name)
        if snapshot is None or snapshot.schema.get("expression") != serialized[name].get("expression"):
            assert schema.query is not None
            views.append(
                CreateView(table=name, query=schema.query, or_replace=True, materialized=schema.materialized)
            )

    version = max((s.version for s in snapshots.values()), default=0) + 1
    changed = any(
        name not in snapshots or dict(snapshots[name].schema) != serialized[name] for name in tables
    )

    return MigrationPlan(
        version=version,
        order=order,
        creates=tuple(creates),
        views=tuple(views),
        alters=tuple(alters),
        snapshots=tuple(
            SnapshotRecord(table_name=name, schema=serialized[name], version=version)
            for name in tables
        ),
        changed=changed,
    )


@dataclass(slots=True)
class Migrator:
    """Applies a registry's :class:`MigrationPlan` to its database."""

    registry: Registry
    executed: list[Statement] = field(default_factory=list)

    async def sync(self, *, force: bool = False) -> MigrationPlan:
        """Bring the database in line with the registry.

        Queries against registered tables issued while this runs are held and
        flushed, in submission order, once it finishes.

        Args:
            force: Drop every managed table first (the history table too when
                ``drop_history`` is set) and rebuild from scratch.

        Raises:
            MissingPoolError: The registry has no engine.
            SchemaDefinitionError: A column references an unregistered table.
            CyclicDependencyError: Tables reference each other in a cycle.
        """
        registry = self.registry
        executor = registry.executor
        if executor is None:
            raise MissingPoolError("sync")

        validate_references(registry.tables)
        history = registry.table(registry.options.history_table)

        async with executor.syncing(registry.tables):
            await self._apply(history.create().ast)

            if force:
                await self._drop_all()

            rows = await history.find(columns=["table_name", "schema", "version"]).bypass()
            snapshots = latest_snapshots(rows)
            if force:
                # Only the history table survived the drop.
                snapshots = {k: v for k, v in snapshots.items() if k == history.name}
            plan = registry.plan(snapshots)
            logger.info(
                "migration.plan",
                version=plan.version,
                creates=[s.table for s in plan.creates],
                views=[s.table for s in plan.views],
                alters=[s.table for s in plan.alters],
                changed=plan.changed,
            )

            for statement in plan.statements:
                # Already created above.
                if isinstance(statement, CreateTable) and statement.table == history.name:
                    continue
                await self._apply(statement)

            if plan.is_noop:
                logger.info("migration.unchanged", version=plan.version - 1)
            else:
                await history.insert([record.to_row() for record in plan.snapshots]).bypass()
                logger.info("migration.recorded", version=plan.version, tables=len(plan.snapshots))

        return plan

    async def _apply(self, statement: Statement) -> None:
        registry = self.registry
        assert registry.executor is not None
        logger.info("migration.step", kind=statement.kind, table=statement.table)
        await registry.executor.execute(
            registry.compiler.compile(statement, registry.executor.dialect),
            table=statement.table,
            bypass=True,
        )
        self.executed.append(statement)

    async def _drop_all(self) -> None:
        registry = self.registry
        history = registry.options.history_table
        keep_history = not registry.options.drop_history

        # Views come last in creation order, so they are dropped first.
        for name in reversed(registry.creation_order(include_history=True)):
            if name == history and keep_history:
                continue
            await self._apply(registry.table(name).drop(cascade=True).ast)

        if not keep_history:
            await self._apply(registry.table(history).create().ast)

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from typing import Final, Literal, final

import structlog

from .datastructures import frozendict
from .schema import TableSchema


logger = structlog.get_logger(__name__)

PivotMap = frozendict[str, str]
EdgeMap = frozendict[str, PivotMap]
Direction = Literal["dependents", "dependencies"]


@dataclass(slots=True, frozen=True)
class GraphEntry:
    """Edges of one table.

    ``dependencies[other][local_col] == other_col`` when this table references
    ``other``; ``dependents[other][local_col] == other_col`` when ``other``
    references this table.
    """

    dependents: EdgeMap = field(default_factory=frozendict)
    dependencies: EdgeMap = field(default_factory=frozendict)


_EMPTY_ENTRY: Final[GraphEntry] = GraphEntry()


@final
class SchemaGraph(Mapping[str, GraphEntry]):
    """Foreign-key dependency graph over a set of registered tables.

    The graph is an immutable value: registering a table produces a new graph
    through :func:`build_graph` rather than patching an existing one. It is
    hashable, so pivot lookups against it can be cached.
    """

    __slots__ = ("_entries",)

    def __init__(self, entries: Mapping[str, GraphEntry] | None = None) -> None:
        self._entries: frozendict[str, GraphEntry] = frozendict(entries or {})

    def __getitem__(self, table: str) -> GraphEntry:
        """Look up the edges of *table*, raising ``KeyError`` if not registered."""
        return self._entries[table]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __hash__(self) -> int:
        return hash(self._entries)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, SchemaGraph):
            return self._entries == other._entries

        return NotImplemented

    def __repr__(self) -> str:
        return f"<SchemaGraph {list(self._entries)!r}>"

    def entry(self, table: str) -> GraphEntry:
        """Edges of *table*, or an empty entry when it is not registered."""
        return self._entries.get(table, _EMPTY_ENTRY)

    def pivots(self, target: str, source: str, direction: Direction) -> PivotMap:
        """Return the ``{target_col: source_col}`` map relating *target* to *source*.

        Args:
            target: Table the relation points at.
            source: Table the relation is declared on.
            direction: ``"dependents"`` when *source* references *target*,
                ``"dependencies"`` when *target* references *source*.
        """
        edges: EdgeMap = getattr(self.entry(target), direction)
        return edges.get(source, frozendict())

    def has_edge(self, table: str, dependency: str) -> bool:
        return dependency in self.entry(table).dependencies


def build_graph(tables: Mapping[str, TableSchema]) -> SchemaGraph:
    """Build the dependency graph of *tables*.

    Every ``references`` column adds a dependency edge on its own table and the
    mirrored dependent edge on the referenced table, keyed by column. Tables
    without references become isolated nodes. References to tables outside
    *tables* are skipped; they are rejected before any DDL runs.

    Args:
        tables: Registered schemas keyed by name, in registration order.

    Returns:
        A new :class:`SchemaGraph`.
    """
    dependents: dict[str, dict[str, dict[str, str]]] = {name: {} for name in tables}
    dependencies: dict[str, dict[str, dict[str, str]]] = {name: {} for name in tables}

    for name, schema in tables.items():
        for column, ref in schema.references():
            if ref.table not in tables:
                logger.debug("graph.unknown_reference", table=name, column=column, target=ref.table)
                continue

            dependencies[name].setdefault(ref.table, {})[column] = ref.column
            dependents[ref.table].setdefault(name, {})[ref.column] = column

    return SchemaGraph({
        name: GraphEntry(
            dependents=frozendict({k: frozendict(v) for k, v in dependents[name].items()}),
            dependencies=frozendict({k: frozendict(v) for k, v in dependencies[name].items()}),
        )
        for name in tables
    })

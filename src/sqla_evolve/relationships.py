from __future__ import annotations

from dataclasses import replace
from functools import lru_cache
from typing import TYPE_CHECKING, Any, Final

from .config import DEFAULT_RELATION_ALIAS
from .datastructures import frozendict
from .errors import RelationResolutionError
from .graph import Direction, SchemaGraph
from .statements import (
    AllColumns,
    ColumnRef,
    Join,
    OuterRef,
    RelationColumn,
    RelationDirective,
    RelationKind,
    Relations,
    Select,
    Statement,
    projection_field,
)
from .transforms import QueryTransform


if TYPE_CHECKING:
    from .query import Query

# `one` and `mixin` follow references in both directions, `many` and `pluck`
# only from the target back to the source.
_PIVOT_DIRECTIONS: Final[dict[RelationKind, tuple[Direction, ...]]] = {
    "one": ("dependents", "dependencies"),
    "mixin": ("dependents", "dependencies"),
    "many": ("dependencies",),
    "pluck": ("dependencies",),
}


class RelationshipsTransform(QueryTransform):
    """Query transform expanding relation directives against a schema graph.

    Each registry builds one per schema graph and hands it to its queries,
    which run it after their own query transforms.
    """

    __slots__ = ("alias_marker", "graph")

    def __init__(self, graph: SchemaGraph, *, alias_marker: str = DEFAULT_RELATION_ALIAS) -> None:
        self.graph = graph
        self.alias_marker = alias_marker
        super().__init__(self._expand)

    def _expand(self, query: Query) -> Query:
        return query.with_ast(
            expand_relations(self.graph, query.ast, alias_marker=self.alias_marker)
        )


@lru_cache(maxsize=1024)
def _resolve_pivots(
    graph: SchemaGraph,
    source: str,
    target: str,
    kind: RelationKind,
) -> tuple[tuple[str, str], ...]:
    """Return ``((target_col, source_col), ...)`` correlating *target* rows to *source*."""
    pivots: dict[str, str] = {}
    for direction in _PIVOT_DIRECTIONS[kind]:
        pivots.update(graph.pivots(target, source, direction))

    return tuple(pivots.items())


def expand_relations(
    graph: SchemaGraph,
    statement: Statement,
    *,
    alias_marker: str = DEFAULT_RELATION_ALIAS,
    source: str | None = None,
    query_alias: str | None = None,
) -> Statement:
    """Rewrite relation directives of *statement* into correlated subqueries and joins.

    ``one`` / ``many`` / ``pluck`` become computed fields appended to the
    projection (``columns`` for selects, ``returning`` otherwise); ``mixin``
    becomes a ``LEFT JOIN`` plus the joined columns. Directives nested inside
    a directive are expanded first, inside the subquery, with a subquery alias
    one marker longer than their parent's (``r`` -> ``rr`` -> ``rrr``) so that
    correlations never collide across depths.

    Args:
        graph: Dependency graph used to find pivots.
        statement: Statement to expand; returned unchanged without directives.
        alias_marker: Marker appended per depth to build subquery aliases.
        source: Name correlations bind against; defaults to the statement's
            alias or table.
        query_alias: Subquery alias for this depth; defaults to *alias_marker*.

    Raises:
        RelationResolutionError: When a directive has no pivot in *graph* and
            no explicit ``where``.
    """
    if not isinstance(getattr(statement, "relations", None), Relations) or not statement.relations:  # type: ignore[union-attr]
        return statement

    table = statement.table
    source = source or getattr(statement, "alias", None) or table
    query_alias = query_alias or alias_marker
    field = projection_field(statement)  # type: ignore[arg-type]
    projection: list[Any] = list(getattr(statement, field)) or [AllColumns()]
    joins: list[Join] = list(getattr(statement, "joins", ()))
    relations: Relations = statement.relations  # type: ignore[union-attr]

    for kind in ("one", "many", "pluck"):
        for directive in getattr(relations, kind):
            projection.append(
                _relation_column(graph, table, source, kind, directive, query_alias, alias_marker)
            )

    if relations.mixin:
        if not isinstance(statement, Select):
            raise ValueError(f"mixin is only supported on select queries, not {statement.kind}")

        for directive in relations.mixin:
            join, columns = _mixin(graph, table, source, directive, query_alias, alias_marker)
            joins.append(join)
            projection.extend(columns)

    changes: dict[str, Any] = {field: tuple(projection), "relations": Relations()}
    if isinstance(statement, Select):
        changes["joins"] = tuple(joins)

    return replace(statement, **changes)  # type: ignore[arg-type]


def _correlation(
    graph: SchemaGraph,
    table: str,
    source: str,
    kind: RelationKind,
    directive: RelationDirective,
) -> frozendict[str, Any]:
    pivots = _resolve_pivots(graph, table, directive.table, kind)
    if not pivots and not directive.where:
        raise RelationResolutionError(table, directive.table)

    bound = directive.source or source

    return directive.where.merge({
        target_col: OuterRef(table=bound, column=source_col) for target_col, source_col in pivots
    })


def _relation_column(
    graph: SchemaGraph,
    table: str,
    source: str,
    kind: RelationKind,
    directive: RelationDirective,
    query_alias: str,
    alias_marker: str,
) -> RelationColumn:
    if kind == "pluck" and not directive.column:
        raise ValueError(f"pluck of `{directive.table}` requires a `column`")

    alias = directive.query_alias or query_alias
    inner = Select(
        table=directive.table,
        alias=alias,
        columns=directive.columns,
        where=_correlation(graph, table, source, kind, directive),
        order=directive.order,
        limit=1 if kind == "one" else directive.limit,
        relations=directive.relations,
    )
    inner = expand_relations(
        graph,
        inner,
        alias_marker=alias_marker,
        source=alias,
        query_alias=alias + alias_marker,
    )  # type: ignore[assignment]

    return RelationColumn(
        kind=kind,  # type: ignore[arg-type]
        alias=directive.name,
        select=inner,
        query_alias=alias,
        column=directive.column,
        json_fields=tuple(c.alias for c in inner.columns if isinstance(c, RelationColumn)),
    )


def _mixin(
    graph: SchemaGraph,
    table: str,
    source: str,
    directive: RelationDirective,
    query_alias: str,
    alias_marker: str,
) -> tuple[Join, list[Any]]:
    pivots = _resolve_pivots(graph, table, directive.table, "mixin")
    if not pivots and not directive.where:
        raise RelationResolutionError(table, directive.table)

    bound = directive.source or source
    on = frozendict({
        target_col: OuterRef(table=bound, column=source_col) for target_col, source_col in pivots
    })

    target: str | Select = directive.table
    if directive.where or directive.relations:
        alias = directive.query_alias or query_alias
        target = expand_relations(
            graph,
            Select(
                table=directive.table,
                alias=alias,
                where=directive.where,
                relations=directive.relations,
            ),
            alias_marker=alias_marker,
            source=alias,
            query_alias=alias + alias_marker,
        )  # type: ignore[assignment]

    columns: list[Any] = (
        [
            ColumnRef(column=column, table=directive.name) if isinstance(column, str) else column
            for column in directive.columns
        ]
        if directive.columns
        else [AllColumns(table=directive.name)]
    )

    return Join(target=target, alias=directive.name, on=on), columns


def relations_cache_info() -> Any:
    """LRU statistics of the pivot lookup cache."""
    return _resolve_pivots.cache_info()


def relations_cache_clear() -> None:
    _resolve_pivots.cache_clear()

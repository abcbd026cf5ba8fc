"""Query AST.

Statements are frozen dataclasses, one per query kind. Builders derive new
statements with :func:`dataclasses.replace`; nothing here is ever mutated in
place, so a statement can be shared freely between queries and tasks.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, ClassVar, Final, Literal, Union

from .datastructures import freeze, frozendict


if TYPE_CHECKING:
    from .schema import ColumnSpec
    from .strategies import AlterAction

RelationKind = Literal["one", "many", "mixin", "pluck"]
RELATION_KINDS: Final[tuple[RelationKind, ...]] = ("one", "many", "pluck", "mixin")


@dataclass(slots=True, frozen=True)
class ColumnRef:
    """``table.column`` (or a bare column when ``table`` is ``None``)."""

    column: str
    table: str | None = None

    @classmethod
    def parse(cls, ref: str) -> ColumnRef:
        table, sep, column = ref.rpartition(".")
        return cls(column=column, table=table if sep else None)


@dataclass(slots=True, frozen=True)
class AllColumns:
    """``*`` or ``table.*``."""

    table: str | None = None


@dataclass(slots=True, frozen=True)
class Raw:
    """Literal SQL fragment, emitted as-is."""

    sql: str


@dataclass(slots=True, frozen=True)
class OuterRef:
    """Reference to a column of an enclosing query, emitted as a quoted identifier."""

    table: str
    column: str


@dataclass(slots=True, frozen=True)
class Excluded:
    """The proposed value of *column* in an upsert's conflict branch."""

    column: str


@dataclass(slots=True, frozen=True)
class RelationDirective:
    """A ``one`` / ``many`` / ``mixin`` / ``pluck`` request on a query.

    Attributes:
        table: Target table.
        alias: Name of the produced field (defaults to ``table``).
        where: Extra conditions on the target, or the whole correlation when
            the graph knows no relation between the tables.
        columns: Target columns to select (all when empty).
        source: Table or alias the correlation binds against (defaults to
            the enclosing query's alias or table).
        column: Column projected by ``pluck``.
        query_alias: Subquery alias; derived per depth when unset.
        order: ``ORDER BY`` entries for the target rows.
        limit: Row limit for ``many`` / ``pluck``.
        relations: Nested directives, expanded inside the subquery.
    """

    table: str
    alias: str | None = None
    where: frozendict[str, Any] = field(default_factory=frozendict)
    columns: tuple[Any, ...] = ()
    source: str | None = None
    column: str | None = None
    query_alias: str | None = None
    order: tuple[str, ...] = ()
    limit: int | None = None
    relations: Relations = field(default_factory=lambda: Relations())

    @classmethod
    def create(cls, value: str | Mapping[str, Any] | RelationDirective, **kw: Any) -> RelationDirective:
        """Build a directive from a table name, a mapping or an existing directive.

        Nested ``one`` / ``many`` / ``mixin`` / ``pluck`` entries of a mapping
        are converted recursively.
        """
        if isinstance(value, RelationDirective):
            return replace(value, **_normalize(kw)) if kw else value

        data: dict[str, Any] = {"table": value} if isinstance(value, str) else dict(value)
        data.update(kw)

        relations = Relations()
        for kind in RELATION_KINDS:
            for nested in _as_list(data.pop(kind, None)):
                relations = relations.add(kind, cls.create(nested))
        if isinstance(data.get("relations"), Relations):
            relations = data.pop("relations").merge(relations)

        if not isinstance(data.get("table"), str):
            raise TypeError(f"Relation directive requires a `table` string, got {value!r}")

        return cls(relations=relations, **_normalize(data))

    @property
    def name(self) -> str:
        return self.alias or self.table


@dataclass(slots=True, frozen=True)
class Relations:
    one: tuple[RelationDirective, ...] = ()
    many: tuple[RelationDirective, ...] = ()
    mixin: tuple[RelationDirective, ...] = ()
    pluck: tuple[RelationDirective, ...] = ()

    def __bool__(self) -> bool:
        return bool(self.one or self.many or self.mixin or self.pluck)

    def add(self, kind: RelationKind, directive: RelationDirective) -> Relations:
        return replace(self, **{kind: (*getattr(self, kind), directive)})

    def merge(self, other: Relations) -> Relations:
        return Relations(
            one=(*self.one, *other.one),
            many=(*self.many, *other.many),
            mixin=(*self.mixin, *other.mixin),
            pluck=(*self.pluck, *other.pluck),
        )


@dataclass(slots=True, frozen=True)
class Select:
    kind: ClassVar[str] = "select"

    table: str
    alias: str | None = None
    columns: tuple[Any, ...] = ()
    where: frozendict[str, Any] = field(default_factory=frozendict)
    joins: tuple[Join, ...] = ()
    with_: frozendict[str, Select] = field(default_factory=frozendict)
    order: tuple[str, ...] = ()
    group_by: tuple[str, ...] = ()
    limit: int | None = None
    offset: int | None = None
    distinct: bool = False
    relations: Relations = field(default_factory=Relations)


@dataclass(slots=True, frozen=True)
class Join:
    """``LEFT JOIN target AS alias ON alias.col = <on value>``."""

    target: str | Select
    alias: str
    on: frozendict[str, Any] = field(default_factory=frozendict)
    kind: Literal["left", "inner"] = "left"


@dataclass(slots=True, frozen=True)
class RelationColumn:
    """A computed field produced by expanding a ``one``/``many``/``pluck`` directive.

    ``select`` is the correlated inner query aliased as ``query_alias``;
    ``json_fields`` names nested relation fields of that query so dialects
    without native row-to-JSON can re-parse them.
    """

    kind: Literal["one", "many", "pluck"]
    alias: str
    select: Select
    query_alias: str
    column: str | None = None
    json_fields: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class Conflict:
    target: tuple[str, ...]
    update: frozendict[str, Any] = field(default_factory=frozendict)


@dataclass(slots=True, frozen=True)
class Insert:
    kind: ClassVar[str] = "insert"

    table: str
    values: frozendict[str, Any] | tuple[frozendict[str, Any], ...] = field(
        default_factory=frozendict
    )
    returning: tuple[Any, ...] = ()
    conflict: Conflict | None = None
    with_: frozendict[str, Select] = field(default_factory=frozendict)
    relations: Relations = field(default_factory=Relations)


@dataclass(slots=True, frozen=True)
class Update:
    kind: ClassVar[str] = "update"

    table: str
    updates: frozendict[str, Any] = field(default_factory=frozendict)
    where: frozendict[str, Any] = field(default_factory=frozendict)
    returning: tuple[Any, ...] = ()
    with_: frozendict[str, Select] = field(default_factory=frozendict)
    relations: Relations = field(default_factory=Relations)


@dataclass(slots=True, frozen=True)
class Delete:
    kind: ClassVar[str] = "delete"

    table: str
    where: frozendict[str, Any] = field(default_factory=frozendict)
    returning: tuple[Any, ...] = ()
    with_: frozendict[str, Select] = field(default_factory=frozendict)
    relations: Relations = field(default_factory=Relations)


@dataclass(slots=True, frozen=True)
class CreateTable:
    kind: ClassVar[str] = "create-table"

    table: str
    definition: frozendict[str, ColumnSpec] = field(default_factory=frozendict)
    if_not_exists: bool = True


@dataclass(slots=True, frozen=True)
class AlterTable:
    kind: ClassVar[str] = "alter-table"

    table: str
    actions: tuple[AlterAction, ...] = ()


@dataclass(slots=True, frozen=True)
class CreateView:
    kind: ClassVar[str] = "create-view"

    table: str
    query: Select
    or_replace: bool = True
    materialized: bool = False


@dataclass(slots=True, frozen=True)
class DropTable:
    kind: ClassVar[str] = "drop-table"

    table: str
    if_exists: bool = True
    cascade: bool = False
    view: bool = False
    materialized: bool = False


Statement = Union[Select, Insert, Update, Delete, CreateTable, AlterTable, CreateView, DropTable]
RelationalStatement = Union[Select, Insert, Update, Delete]


def projection_field(statement: RelationalStatement) -> str:
    """Name of the list relation fields are appended to: columns or returning."""
    return "columns" if isinstance(statement, Select) else "returning"


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []

    if isinstance(value, (str, Mapping, RelationDirective)):
        return [value]

    return list(value)


def _normalize(data: Mapping[str, Any]) -> dict[str, Any]:
    out = dict(data)
    if "where" in out:
        out["where"] = freeze(out["where"] or {})
    for key in ("columns", "order"):
        if key in out:
            value = out[key]
            out[key] = (value,) if isinstance(value, str) else tuple(value or ())

    return out

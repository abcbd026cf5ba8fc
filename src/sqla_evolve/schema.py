from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Final

import sqlalchemy as sa

from .config import DEFAULT_REFERENCE_COLUMN
from .datastructures import freeze, frozendict, thaw
from .errors import SchemaDefinitionError


if TYPE_CHECKING:
    from .statements import Select

DEFAULT_PRIMARY_KEY: Final[str] = "id"

# Keys accepted in column definitions besides their snake_case spelling.
_COLUMN_KEY_ALIASES: Final[dict[str, str]] = {
    "primaryKey": "primary_key",
    "pk": "primary_key",
}
_KNOWN_COLUMN_KEYS: Final[frozenset[str]] = frozenset(
    {"type", "primary_key", "unique", "default", "references", "nullable"}
)


class TableKind(str, Enum):
    TABLE = "table"
    VIEW = "view"


@dataclass(slots=True, frozen=True)
class Reference:
    """Foreign-key target of a column."""

    table: str
    column: str = DEFAULT_REFERENCE_COLUMN

    def to_dict(self) -> dict[str, str]:
        return {"table": self.table, "column": self.column}


@dataclass(slots=True, frozen=True)
class ColumnSpec:
    """Declarative description of one column.

    ``None`` means the attribute is absent, which is what the diff strategies
    key on: an attribute "was added" when it is absent from the old spec and
    present in the new one.
    """

    type: str
    primary_key: bool | None = None
    unique: bool | None = None
    default: str | None = None
    references: Reference | None = None
    nullable: bool | None = None
    extra: frozendict[str, Any] = field(default_factory=frozendict)

    def attributes(self) -> frozendict[str, Any]:
        """Present attributes keyed by name; extras are included verbatim."""
        attrs: dict[str, Any] = {"type": self.type}
        for name in ("primary_key", "unique", "default", "references", "nullable"):
            if (value := getattr(self, name)) is not None:
                attrs[name] = value

        return frozendict({**attrs, **self.extra})

    def to_dict(self) -> dict[str, Any]:
        return {
            key: value.to_dict() if isinstance(value, Reference) else thaw(value)
            for key, value in self.attributes().items()
        }


@dataclass(slots=True, frozen=True)
class TableSchema:
    """A registered table or view.

    Attributes:
        name: Table (or view) name.
        columns: Ordered column specs.
        kind: ``TableKind.TABLE`` or ``TableKind.VIEW``.
        query: Defining select of a view.
        materialized: Whether a view is materialized.
    """

    name: str
    columns: frozendict[str, ColumnSpec] = field(default_factory=frozendict)
    kind: TableKind = TableKind.TABLE
    query: Select | None = None
    materialized: bool = False

    @property
    def is_view(self) -> bool:
        return self.kind is TableKind.VIEW

    @property
    def primary_key(self) -> str:
        """Name of the first primary-key column, ``id`` when none is declared."""
        return next(
            (name for name, col in self.columns.items() if col.primary_key),
            DEFAULT_PRIMARY_KEY,
        )

    def references(self) -> Iterator[tuple[str, Reference]]:
        """Yield ``(column_name, reference)`` for every referencing column."""
        for name, col in self.columns.items():
            if col.references is not None:
                yield name, col.references

    def to_dict(self, expression: str | None = None) -> dict[str, Any]:
        """Serialize for a snapshot record.

        Args:
            expression: Compiled SQL of a view's defining query.
        """
        data: dict[str, Any] = {
            "name": self.name,
            "kind": self.kind.value,
            "columns": {name: col.to_dict() for name, col in self.columns.items()},
        }
        if self.is_view:
            data["expression"] = expression
            data["materialized"] = self.materialized

        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TableSchema:
        """Rebuild a schema from :meth:`to_dict` output (view queries are not restored)."""
        try:
            kind = TableKind(data.get("kind", TableKind.TABLE.value))
        except ValueError as exc:
            raise SchemaDefinitionError(f"Unknown table kind {data.get('kind')!r}") from exc

        return cls(
            name=data["name"],
            columns=frozendict({
                name: parse_column(name, spec) for name, spec in (data.get("columns") or {}).items()
            }),
            kind=kind,
            materialized=bool(data.get("materialized", False)),
        )


def parse_reference(
    value: Any, *, reference_column: str = DEFAULT_REFERENCE_COLUMN
) -> Reference:
    """Normalize ``"users"`` / ``{"table": "users"}`` / ``Reference`` into a ``Reference``."""
    if isinstance(value, Reference):
        return value

    if isinstance(value, str):
        table, _, column = value.partition(".")
        return Reference(table=table, column=column or reference_column)

    if isinstance(value, Mapping) and isinstance(value.get("table"), str):
        return Reference(table=value["table"], column=value.get("column") or reference_column)

    raise SchemaDefinitionError(f"Invalid references value: {value!r}")


def parse_column(
    name: str, spec: Any, *, reference_column: str = DEFAULT_REFERENCE_COLUMN
) -> ColumnSpec:
    """Build a :class:`ColumnSpec` from a mapping, a type string or a ``ColumnSpec``."""
    if isinstance(spec, ColumnSpec):
        return spec

    if isinstance(spec, str):
        return ColumnSpec(type=spec)

    if not isinstance(spec, Mapping):
        raise SchemaDefinitionError(f"Column `{name}` must be a mapping, got {type(spec).__name__}")

    attrs: dict[str, Any] = {}
    for key, value in spec.items():
        if key == "notNull":
            attrs["nullable"] = not value
            continue
        attrs[_COLUMN_KEY_ALIASES.get(key, key)] = value

    if not isinstance(attrs.get("type"), str):
        raise SchemaDefinitionError(f"Column `{name}` requires a `type` string")

    references = attrs.get("references")

    return ColumnSpec(
        type=attrs["type"],
        # False flags are treated as absent so that `unique: False` never
        # reads as "unique was added".
        primary_key=True if attrs.get("primary_key") else None,
        unique=True if attrs.get("unique") else None,
        default=None if attrs.get("default") is None else str(attrs["default"]),
        references=(
            None
            if references is None
            else parse_reference(references, reference_column=reference_column)
        ),
        nullable=attrs.get("nullable"),
        extra=freeze({k: v for k, v in attrs.items() if k not in _KNOWN_COLUMN_KEYS}),
    )


def define_table(
    definition: Mapping[str, Any] | TableSchema,
    *,
    reference_column: str = DEFAULT_REFERENCE_COLUMN,
) -> TableSchema:
    """Validate a table definition and turn it into a :class:`TableSchema`.

    Args:
        definition: ``{"name": ..., "schema": {...}, "type": "table" | "view",
            "query": Query | Select, "materialized": bool}``.
        reference_column: Column assumed when a reference names only a table.

    Raises:
        SchemaDefinitionError: On a missing name, a table without a schema,
            an unknown type, or a view without a query.
    """
    if isinstance(definition, TableSchema):
        return definition

    name = definition.get("name")
    if not isinstance(name, str) or not name:
        raise SchemaDefinitionError("Table definition requires a `name` string")

    try:
        kind = TableKind(definition.get("type") or TableKind.TABLE.value)
    except ValueError as exc:
        raise SchemaDefinitionError(
            f'Table `{name}`: type must be either "table" or "view"'
        ) from exc

    schema = definition.get("schema")
    if schema is None and kind is TableKind.TABLE:
        raise SchemaDefinitionError(f"Table `{name}` requires a `schema`")
    if schema is not None and not isinstance(schema, Mapping):
        raise SchemaDefinitionError(f"Table `{name}`: `schema` must be a mapping of columns")

    query = None
    if kind is TableKind.VIEW:
        query = definition.get("query", definition.get("expression"))
        # A Query wrapper exposes its AST as `.ast`.
        query = getattr(query, "ast", query)
        if query is None:
            raise SchemaDefinitionError(f"View `{name}` requires a `query`")

    return TableSchema(
        name=name,
        columns=frozendict({
            col: parse_column(col, spec, reference_column=reference_column)
            for col, spec in (schema or {}).items()
        }),
        kind=kind,
        query=query,
        materialized=bool(definition.get("materialized", False)),
    )


def _column_type_name(column: sa.Column[Any]) -> str:
    if (
        column.primary_key
        and isinstance(column.type, sa.Integer)
        and column.table.autoincrement_column is column
    ):
        return "bigserial" if isinstance(column.type, sa.BigInteger) else "serial"

    return str(column.type.compile()).lower()


def _server_default_text(column: sa.Column[Any]) -> str | None:
    server_default = column.server_default
    if not isinstance(server_default, sa.DefaultClause):
        return None

    arg = server_default.arg
    if isinstance(arg, sa.TextClause):
        return arg.text

    return arg if isinstance(arg, str) else None


def schemas_from_metadata(metadata: sa.MetaData | Any) -> dict[str, TableSchema]:
    """Build table schemas from SQLAlchemy ``MetaData`` (or a declarative base).

    Args:
        metadata: ``sa.MetaData`` or anything exposing ``.metadata`` (such as
            an ``orm.DeclarativeBase`` subclass).

    Returns:
        Schemas keyed by table name, in metadata order.
    """
    metadata = getattr(metadata, "metadata", metadata)
    assert isinstance(metadata, sa.MetaData), "expected sa.MetaData or a declarative base"

    out: dict[str, TableSchema] = {}
    for table in metadata.tables.values():
        columns: dict[str, ColumnSpec] = {}
        for column in table.columns:
            fk = next(iter(column.foreign_keys), None)
            columns[column.name] = ColumnSpec(
                type=_column_type_name(column),
                primary_key=True if column.primary_key else None,
                unique=True if column.unique else None,
                default=_server_default_text(column),
                references=(
                    Reference(*fk.target_fullname.rsplit(".", 1)) if fk is not None else None
                ),
                nullable=False if not column.nullable and not column.primary_key else None,
            )
        out[table.name] = TableSchema(name=table.name, columns=frozendict(columns))

    return out

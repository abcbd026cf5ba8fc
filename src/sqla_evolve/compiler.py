"""Query AST to SQLAlchemy Core.

:class:`Compiler` turns the statements of :mod:`sqla_evolve.statements` into
SQLAlchemy executables. Everything a dialect spells differently (JSON row and
array aggregation, ``ALTER TABLE`` actions, views, cascading drops) is a small
construct rendered through :func:`sqlalchemy.ext.compiler.compiles`, so the
same executable compiles on PostgreSQL, SQLite and MySQL.
"""

from __future__ import annotations

import operator
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, replace
from functools import lru_cache
from typing import Any, Final

import sqlalchemy as sa
import structlog
from sqlalchemy.dialects import mysql, postgresql, registry, sqlite
from sqlalchemy.engine import Dialect
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.schema import CreateIndex, DropIndex, ExecutableDDLElement
from sqlalchemy.sql import ColumnElement, FromClause
from sqlalchemy.sql.base import Executable
from sqlalchemy.sql.functions import FunctionElement
from sqlalchemy.types import TypeEngine, UserDefinedType

from .datastructures import thaw
from .schema import ColumnSpec, TableSchema
from .statements import (
    AllColumns,
    AlterTable,
    ColumnRef,
    CreateTable,
    CreateView,
    Delete,
    DropTable,
    Excluded,
    Insert,
    OuterRef,
    Raw,
    RelationColumn,
    Select,
    Statement,
    Update,
)
from .strategies import AddColumn, AddConstraint, AlterAction, AlterColumn, DropConstraint


logger = structlog.get_logger(__name__)

DEFAULT_DIALECT: Final[str] = "postgresql+asyncpg"
SERIAL_TYPES: Final[frozenset[str]] = frozenset({"serial", "bigserial"})


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------


class VerbatimType(UserDefinedType[Any]):
    """A column type emitted exactly as written in the definition."""

    cache_ok = True

    def __init__(self, name: str) -> None:
        self.name = name

    def get_col_spec(self, **kw: Any) -> str:
        return self.name


_TYPES: Final[dict[str, Callable[[], TypeEngine[Any]]]] = {
    "serial": sa.Integer,
    "bigserial": lambda: sa.BigInteger().with_variant(sa.Integer(), "sqlite"),
    "int": sa.Integer,
    "int4": sa.Integer,
    "integer": sa.Integer,
    "bigint": sa.BigInteger,
    "int8": sa.BigInteger,
    "smallint": sa.SmallInteger,
    "text": sa.Text,
    "varchar": sa.String,
    "boolean": sa.Boolean,
    "bool": sa.Boolean,
    "json": sa.JSON,
    "jsonb": lambda: sa.JSON().with_variant(postgresql.JSONB(), "postgresql"),
    "timestamp": sa.DateTime,
    "datetime": sa.DateTime,
    "timestamptz": lambda: sa.DateTime(timezone=True),
    "timestamp with time zone": lambda: sa.DateTime(timezone=True),
    "date": sa.Date,
    "time": sa.Time,
    "uuid": sa.Uuid,
    "numeric": sa.Numeric,
    "decimal": sa.Numeric,
    "real": sa.REAL,
    "float": sa.Float,
    "double precision": sa.Double,
}
_SIZED_TYPES: Final[dict[str, Callable[..., TypeEngine[Any]]]] = {
    "varchar": sa.String,
    "character varying": sa.String,
    "char": sa.CHAR,
    "numeric": sa.Numeric,
    "decimal": sa.Numeric,
}
_SIZED_RE: Final[re.Pattern[str]] = re.compile(r"^([a-z ]+?)\s*\(\s*(\d+)\s*(?:,\s*(\d+)\s*)?\)$")


@lru_cache(maxsize=256)
def sa_type(name: str) -> TypeEngine[Any]:
    """Map a column type string (``"varchar(64)"``, ``"jsonb"`` ...) to a SQLAlchemy type."""
    key = " ".join(name.strip().lower().split())
    if (factory := _TYPES.get(key)) is not None:
        return factory()

    if (match := _SIZED_RE.match(key)) and (sized := _SIZED_TYPES.get(match.group(1))):
        return sized(*(int(arg) for arg in match.group(2, 3) if arg is not None))

    return VerbatimType(name)


def to_sa_column(name: str, spec: ColumnSpec, *, foreign_keys: bool = True) -> sa.Column[Any]:
    args: list[Any] = [sa_type(spec.type)]
    if foreign_keys and spec.references is not None:
        args.append(sa.ForeignKey(f"{spec.references.table}.{spec.references.column}"))

    kw: dict[str, Any] = {"primary_key": bool(spec.primary_key)}
    if spec.primary_key:
        kw["autoincrement"] = spec.type.strip().lower() in SERIAL_TYPES
    if spec.unique:
        kw["unique"] = True
    if spec.nullable is not None:
        kw["nullable"] = spec.nullable
    if spec.default is not None:
        kw["server_default"] = sa.text(spec.default)

    return sa.Column(name, *args, **kw)


def to_sa_table(schema: TableSchema, metadata: sa.MetaData) -> sa.Table:
    """Declare *schema* on *metadata*; references resolve lazily against it."""
    return sa.Table(
        schema.name,
        metadata,
        *(to_sa_column(name, spec) for name, spec in schema.columns.items()),
    )


# ---------------------------------------------------------------------------
# Expression constructs
# ---------------------------------------------------------------------------


class OuterColumn(ColumnElement[Any]):
    """``"table"."column"`` emitted as quoted identifiers, never as a bound value.

    Used for correlation against an enclosing query, so it contributes nothing
    to the FROM list of the statement it appears in.
    """

    __visit_name__ = "outer_column"
    inherit_cache = False
    type = sa.types.NullType()

    def __init__(self, table: str, column: str) -> None:
        self.table_name = table
        self.column_name = column


@compiles(OuterColumn)
def _compile_outer_column(element: OuterColumn, compiler: Any, **kw: Any) -> str:
    quote = compiler.preparer.quote_identifier
    return f"{quote(element.table_name)}.{quote(element.column_name)}"


class row_json(FunctionElement[Any]):  # noqa: N801
    """One row of a subquery as a JSON object.

    The first argument is the subquery itself (``FromClause.table_valued()``),
    the rest alternate literal keys and column values.
    """

    name = "row_json"
    inherit_cache = True


@compiles(row_json)
def _compile_row_json(element: row_json, compiler: Any, **kw: Any) -> str:
    _, *pairs = element.clauses.clauses
    return "json_object(%s)" % ", ".join(compiler.process(arg, **kw) for arg in pairs)


@compiles(row_json, "postgresql")
def _compile_row_json_pg(element: row_json, compiler: Any, **kw: Any) -> str:
    return "row_to_json(%s)" % compiler.process(element.clauses.clauses[0], **kw)


class json_array_agg(FunctionElement[Any]):  # noqa: N801
    """Aggregate values into a JSON array, ``[]`` when there are no rows."""

    name = "json_array_agg"
    inherit_cache = True


@compiles(json_array_agg)
def _compile_json_array_agg(element: json_array_agg, compiler: Any, **kw: Any) -> str:
    return "json_group_array(%s)" % compiler.process(element.clauses, **kw)


@compiles(json_array_agg, "postgresql")
def _compile_json_array_agg_pg(element: json_array_agg, compiler: Any, **kw: Any) -> str:
    return "coalesce(json_agg(%s), '[]'::json)" % compiler.process(element.clauses, **kw)


@compiles(json_array_agg, "mysql")
def _compile_json_array_agg_mysql(element: json_array_agg, compiler: Any, **kw: Any) -> str:
    return "coalesce(json_arrayagg(%s), json_array())" % compiler.process(element.clauses, **kw)


class nested_json(FunctionElement[Any]):  # noqa: N801
    """Marks a value that already holds JSON text from a nested relation."""

    name = "nested_json"
    inherit_cache = True


@compiles(nested_json)
def _compile_nested_json(element: nested_json, compiler: Any, **kw: Any) -> str:
    return compiler.process(element.clauses, **kw)


@compiles(nested_json, "sqlite")
def _compile_nested_json_sqlite(element: nested_json, compiler: Any, **kw: Any) -> str:
    # JSON subtype does not survive a subquery boundary in SQLite.
    return "json(%s)" % compiler.process(element.clauses, **kw)


# ---------------------------------------------------------------------------
# DDL constructs
# ---------------------------------------------------------------------------


class AlterTableDDL(ExecutableDDLElement):
    """``ALTER TABLE name action, action ...``.

    ``columns`` carries the detached ``sa.Column`` of every ``AddColumn``
    action so the dialect can render its specification.
    """

    inherit_cache = False

    def __init__(
        self,
        table: str,
        actions: Sequence[AlterAction],
        columns: Mapping[str, sa.Column[Any]] | None = None,
    ) -> None:
        self.table = table
        self.actions = tuple(actions)
        self.columns = dict(columns or {})


def _column_clause(action: AddColumn, element: AlterTableDDL, compiler: Any) -> str:
    preparer = compiler.preparer
    text = "ADD COLUMN " + compiler.get_column_specification(element.columns[action.name])
    if action.spec.primary_key:
        text += " PRIMARY KEY"
    if action.spec.unique:
        text += " UNIQUE"
    if (ref := action.spec.references) is not None:
        text += f" REFERENCES {preparer.quote(ref.table)} ({preparer.quote(ref.column)})"

    return text


def _alter_clause(action: AlterAction, element: AlterTableDDL, compiler: Any) -> str:
    quote = compiler.preparer.quote
    pg = compiler.dialect.name == "postgresql"

    if isinstance(action, AddColumn):
        return _column_clause(action, element, compiler)

    if isinstance(action, AlterColumn):
        if action.drop_default:
            return f"ALTER COLUMN {quote(action.name)} DROP DEFAULT"
        return f"ALTER COLUMN {quote(action.name)} SET DEFAULT {action.default}"

    if isinstance(action, AddConstraint):
        kind = "PRIMARY KEY" if action.kind == "primary_key" else "UNIQUE"
        columns = ", ".join(quote(column) for column in action.columns)
        return f"ADD CONSTRAINT {quote(action.name)} {kind} ({columns})"

    if isinstance(action, DropConstraint):
        if_exists = " IF EXISTS" if action.if_exists and pg else ""
        cascade = " CASCADE" if action.cascade and pg else ""
        return f"DROP CONSTRAINT{if_exists} {quote(action.name)}{cascade}"

    raise TypeError(f"Unknown alter action {action!r}")


@compiles(AlterTableDDL)
def _compile_alter_table(element: AlterTableDDL, compiler: Any, **kw: Any) -> str:
    clauses = ", ".join(_alter_clause(action, element, compiler) for action in element.actions)
    return f"ALTER TABLE {compiler.preparer.quote(element.table)} {clauses}"


class CreateViewDDL(ExecutableDDLElement):
    inherit_cache = False

    def __init__(
        self,
        name: str,
        selectable: sa.Select[Any],
        *,
        or_replace: bool = True,
        materialized: bool = False,
    ) -> None:
        self.name = name
        self.selectable = selectable
        self.or_replace = or_replace
        self.materialized = materialized


def _view_body(element: CreateViewDDL, compiler: Any) -> str:
    return compiler.sql_compiler.process(element.selectable, literal_binds=True)


@compiles(CreateViewDDL)
def _compile_create_view(element: CreateViewDDL, compiler: Any, **kw: Any) -> str:
    name = compiler.preparer.quote(element.name)
    if element.materialized:
        return f"CREATE MATERIALIZED VIEW IF NOT EXISTS {name} AS {_view_body(element, compiler)}"

    replace = "OR REPLACE " if element.or_replace else ""
    return f"CREATE {replace}VIEW {name} AS {_view_body(element, compiler)}"


@compiles(CreateViewDDL, "sqlite")
def _compile_create_view_sqlite(element: CreateViewDDL, compiler: Any, **kw: Any) -> str:
    name = compiler.preparer.quote(element.name)
    return f"CREATE VIEW IF NOT EXISTS {name} AS {_view_body(element, compiler)}"


class DropTableDDL(ExecutableDDLElement):
    inherit_cache = False

    def __init__(
        self,
        name: str,
        *,
        if_exists: bool = True,
        cascade: bool = False,
        view: bool = False,
        materialized: bool = False,
    ) -> None:
        self.name = name
        self.if_exists = if_exists
        self.cascade = cascade
        self.view = view
        self.materialized = materialized


def _drop_prefix(element: DropTableDDL, compiler: Any) -> str:
    kind = "MATERIALIZED VIEW" if element.materialized else "VIEW" if element.view else "TABLE"
    if_exists = "IF EXISTS " if element.if_exists else ""
    return f"DROP {kind} {if_exists}{compiler.preparer.quote(element.name)}"


@compiles(DropTableDDL)
def _compile_drop_table(element: DropTableDDL, compiler: Any, **kw: Any) -> str:
    return _drop_prefix(element, compiler) + (" CASCADE" if element.cascade else "")


@compiles(DropTableDDL, "sqlite")
def _compile_drop_table_sqlite(element: DropTableDDL, compiler: Any, **kw: Any) -> str:
    return _drop_prefix(element, compiler)


# ---------------------------------------------------------------------------
# Compilation
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class CompiledQuery:
    """SQL text plus bound values in bind-position order."""

    text: str
    values: tuple[Any, ...] = ()


def _ne(column: Any, value: Any) -> Any:
    return column.is_not(None) if value is None else column != value


_OPERATORS: Final[dict[str, Callable[[Any, Any], Any]]] = {
    "$eq": lambda column, value: column.is_(None) if value is None else column == value,
    "$ne": _ne,
    "$gt": operator.gt,
    "$gte": operator.ge,
    "$lt": operator.lt,
    "$lte": operator.le,
    "$in": lambda column, value: column.in_(list(value)),
    "$nin": lambda column, value: column.not_in(list(value)),
    "$like": lambda column, value: column.like(value),
    "$ilike": lambda column, value: column.ilike(value),
}


def resolve_dialect(dialect: str | Dialect | None = None) -> Dialect:
    """Instantiate a dialect from a name such as ``"sqlite"`` or ``"postgresql+asyncpg"``."""
    if isinstance(dialect, Dialect):
        return dialect

    return registry.load((dialect or DEFAULT_DIALECT).replace("+", "."))()


def _column_of(from_: FromClause, name: str | None, column: str) -> Any:
    if column in from_.c:
        return from_.c[column]

    return sa.column(column) if name is None else OuterColumn(name, column)


class _Scope:
    """Named FROM elements a statement's column references resolve against."""

    __slots__ = ("default", "froms")

    def __init__(self, name: str, default: FromClause) -> None:
        self.default = default
        self.froms: dict[str, FromClause] = {name: default}

    def add(self, name: str, from_: FromClause) -> None:
        self.froms[name] = from_

    def column(self, ref: str | ColumnRef) -> Any:
        if isinstance(ref, str):
            ref = ColumnRef.parse(ref)

        if ref.table is None:
            return _column_of(self.default, None, ref.column)

        if (from_ := self.froms.get(ref.table)) is None:
            return OuterColumn(ref.table, ref.column)

        return _column_of(from_, ref.table, ref.column)


class Compiler:
    """Compile statement ASTs against a set of registered schemas.

    Registered tables are declared on one ``sa.MetaData`` so foreign keys
    resolve between them; anything else is addressed as a lightweight
    ``sa.table()``.

    Example:
        >>> compiler = Compiler(registry_schemas)
        >>> compiler.to_sql(Select(table="users", where=frozendict(id=1)), "sqlite")
        CompiledQuery(text='SELECT users.id, users.name \\nFROM users \\nWHERE users.id = ?', values=(1,))
    """

    __slots__ = ("_views", "metadata", "schemas")

    def __init__(self, schemas: Mapping[str, TableSchema] | None = None) -> None:
        self.schemas: dict[str, TableSchema] = dict(schemas or {})
        self.metadata = sa.MetaData()
        self._views: dict[str, sa.TableClause] = {}

        for schema in self.schemas.values():
            if schema.is_view:
                self._views[schema.name] = sa.table(
                    schema.name,
                    *(sa.column(name, sa_type(spec.type)) for name, spec in schema.columns.items()),
                )
            else:
                to_sa_table(schema, self.metadata)

    def table(self, name: str) -> sa.Table | sa.TableClause:
        if name in self.metadata.tables:
            return self.metadata.tables[name]

        if name in self._views:
            return self._views[name]

        return sa.table(name)

    def compile(self, statement: Statement, dialect: Dialect) -> list[Executable]:
        """Turn *statement* into the executables that carry it out on *dialect*."""
        if isinstance(statement, Select):
            return [self.select(statement)]

        if isinstance(statement, Insert):
            return [self._insert(statement, dialect)]

        if isinstance(statement, Update):
            return [self._update(statement)]

        if isinstance(statement, Delete):
            return [self._delete(statement)]

        if isinstance(statement, CreateTable):
            return [sa.schema.CreateTable(self._ddl_table(statement), if_not_exists=statement.if_not_exists)]

        if isinstance(statement, AlterTable):
            return self._alter(statement, dialect)

        if isinstance(statement, CreateView):
            return self._create_view(statement, dialect)

        if isinstance(statement, DropTable):
            return [
                DropTableDDL(
                    statement.table,
                    if_exists=statement.if_exists,
                    cascade=statement.cascade,
                    view=statement.view,
                    materialized=statement.materialized,
                )
            ]

        raise TypeError(f"Cannot compile {type(statement).__name__}")

    def to_sql(self, statement: Statement, dialect: str | Dialect | None = None) -> CompiledQuery:
        """Render *statement* as SQL text and its positional values."""
        resolved = resolve_dialect(dialect)
        texts: list[str] = []
        values: list[Any] = []

        for executable in self.compile(statement, resolved):
            compiled = executable.compile(dialect=resolved)
            texts.append(str(compiled))
            params = compiled.params or {}
            if (positions := getattr(compiled, "positiontup", None)) is not None:
                values.extend(params[key] for key in positions)
            else:
                values.extend(params.values())

        return CompiledQuery(text=";\n".join(texts), values=tuple(values))

    def serialize_expression(self, statement: Select, dialect: str | Dialect | None = None) -> str:
        """Defining SQL of a view, with values inlined."""
        compiled = self.select(statement).compile(
            dialect=resolve_dialect(dialect), compile_kwargs={"literal_binds": True}
        )
        return str(compiled)

    # -- relational statements ---------------------------------------------

    def _ctes(self, with_: Mapping[str, Select]) -> dict[str, sa.CTE]:
        ctes: dict[str, sa.CTE] = {}
        for name, query in with_.items():
            ctes[name] = self.select(query, ctes).cte(name)

        return ctes

    def _from(self, name: str, alias: str | None, ctes: Mapping[str, sa.CTE]) -> FromClause:
        base: FromClause = ctes[name] if name in ctes else self.table(name)
        return base.alias(alias) if alias and alias != name else base

    def select(self, statement: Select, ctes: Mapping[str, sa.CTE] | None = None) -> sa.Select[Any]:
        ctes = {**(ctes or {}), **self._ctes(statement.with_)}
        name = statement.alias or statement.table
        base = self._from(statement.table, statement.alias, ctes)
        scope = _Scope(name, base)
        for cte_name, cte in ctes.items():
            scope.froms.setdefault(cte_name, cte)

        from_: FromClause = base
        for join in statement.joins:
            target = (
                self._from(join.target, join.alias, ctes)
                if isinstance(join.target, str)
                else self.select(join.target, ctes).subquery(join.alias)
            )
            scope.add(join.alias, target)
            on = self._conditions(join.on, _Scope(join.alias, target))
            from_ = from_.join(target, sa.and_(*on) if on else sa.true(), isouter=join.kind == "left")

        query = sa.select(*self._projection(statement.columns or (AllColumns(),), scope, ctes))
        query = query.select_from(from_)

        if statement.where:
            query = query.where(*self._conditions(statement.where, scope))
        if statement.group_by:
            query = query.group_by(*(scope.column(column) for column in statement.group_by))
        if statement.order:
            query = query.order_by(*(self._order_by(entry, scope) for entry in statement.order))
        if statement.limit is not None:
            query = query.limit(statement.limit)
        if statement.offset is not None:
            query = query.offset(statement.offset)
        if statement.distinct:
            query = query.distinct()

        for cte_name in statement.with_:
            query = query.add_cte(ctes[cte_name])

        return query

    def _insert(self, statement: Insert, dialect: Dialect) -> Any:
        ctes = self._ctes(statement.with_)
        table = self._dml_table(statement.table, statement.values)
        scope = _Scope(statement.table, table)
        rows = statement.values if isinstance(statement.values, tuple) else (statement.values,)
        values = [{key: self._value(value, scope) for key, value in row.items()} for row in rows]

        if statement.conflict is None:
            query: Any = sa.insert(table)
        elif dialect.name == "postgresql":
            query = postgresql.insert(table)
        elif dialect.name == "sqlite":
            query = sqlite.insert(table)
        elif dialect.name in ("mysql", "mariadb"):
            query = mysql.insert(table)
        else:
            raise NotImplementedError(f"Upsert is not supported on {dialect.name}")

        query = query.values(values[0] if len(values) == 1 else values)

        if (conflict := statement.conflict) is not None:
            update = conflict.update or {
                key: Excluded(key) for key in values[0] if key not in conflict.target
            }
            if not update:
                # Only the conflict target was given: keep the existing row.
                if dialect.name in ("mysql", "mariadb"):
                    update = {key: Excluded(key) for key in conflict.target}
                else:
                    return self._finish_dml(
                        query.on_conflict_do_nothing(index_elements=list(conflict.target)),
                        statement.returning,
                        scope,
                        ctes,
                    )
            if dialect.name in ("mysql", "mariadb"):
                query = query.on_duplicate_key_update({
                    key: query.inserted[value.column] if isinstance(value, Excluded) else self._value(value, scope)
                    for key, value in update.items()
                })
            else:
                query = query.on_conflict_do_update(
                    index_elements=list(conflict.target),
                    set_={
                        key: query.excluded[value.column] if isinstance(value, Excluded) else self._value(value, scope)
                        for key, value in update.items()
                    },
                )

        return self._finish_dml(query, statement.returning, scope, ctes)

    def _update(self, statement: Update) -> Any:
        ctes = self._ctes(statement.with_)
        table = self._dml_table(statement.table, statement.updates)
        scope = _Scope(statement.table, table)
        query = sa.update(table).values({
            key: self._value(value, scope) for key, value in statement.updates.items()
        })
        if statement.where:
            query = query.where(*self._conditions(statement.where, scope))

        return self._finish_dml(query, statement.returning, scope, ctes)

    def _delete(self, statement: Delete) -> Any:
        ctes = self._ctes(statement.with_)
        table = self.table(statement.table)
        scope = _Scope(statement.table, table)
        query = sa.delete(table)
        if statement.where:
            query = query.where(*self._conditions(statement.where, scope))

        return self._finish_dml(query, statement.returning, scope, ctes)

    def _dml_table(self, name: str, values: Any) -> sa.Table | sa.TableClause:
        table = self.table(name)
        if isinstance(table, sa.Table) or len(table.c):
            return table

        rows = values if isinstance(values, tuple) else (values,)
        keys = dict.fromkeys(key for row in rows for key in row)
        return sa.table(name, *(sa.column(key) for key in keys))

    def _finish_dml(
        self,
        query: Any,
        returning: Sequence[Any],
        scope: _Scope,
        ctes: Mapping[str, sa.CTE],
    ) -> Any:
        if returning:
            query = query.returning(*self._projection(returning, scope, ctes))
        for cte in ctes.values():
            query = query.add_cte(cte)

        return query

    # -- expressions --------------------------------------------------------

    def _projection(self, columns: Sequence[Any], scope: _Scope, ctes: Mapping[str, sa.CTE]) -> list[Any]:
        out: list[Any] = []
        for column in columns:
            if isinstance(column, AllColumns):
                from_ = scope.default if column.table is None else scope.froms.get(column.table)
                if from_ is not None and len(from_.c):
                    out.extend(from_.c)
                else:
                    out.append(sa.literal_column("*" if column.table is None else f"{column.table}.*"))
            elif isinstance(column, RelationColumn):
                out.append(self._relation(column, ctes))
            elif isinstance(column, (str, ColumnRef)):
                out.append(scope.column(column))
            elif isinstance(column, Raw):
                out.append(sa.literal_column(column.sql))
            else:
                out.append(column)

        return out

    def _relation(self, column: RelationColumn, ctes: Mapping[str, sa.CTE]) -> Any:
        sub = self.select(column.select, ctes).subquery(column.query_alias)

        if column.kind == "pluck":
            value: Any = json_array_agg(_column_of(sub, column.query_alias, str(column.column)))
        else:
            pairs: list[Any] = []
            for col in sub.c:
                pairs.append(sa.literal_column("'%s'" % col.key.replace("'", "''")))
                pairs.append(nested_json(col) if col.key in column.json_fields else col)
            row = row_json(sub.table_valued(), *pairs)
            value = row if column.kind == "one" else json_array_agg(row)

        subquery = sa.select(value).select_from(sub).scalar_subquery()
        return sa.type_coerce(subquery, sa.JSON).label(column.alias)

    def _value(self, value: Any, scope: _Scope) -> Any:
        if isinstance(value, Raw):
            return sa.literal_column(value.sql)
        if isinstance(value, ColumnRef):
            return scope.column(value)
        if isinstance(value, OuterRef):
            return OuterColumn(value.table, value.column)

        return thaw(value)

    def _conditions(self, where: Mapping[str, Any], scope: _Scope) -> list[Any]:
        clauses: list[Any] = []
        for key, value in where.items():
            if key == "$or":
                clauses.append(sa.or_(*(sa.and_(*self._conditions(sub, scope)) for sub in value)))
            else:
                clauses.append(self._condition(scope.column(key), value, scope))

        return clauses

    def _condition(self, column: Any, value: Any, scope: _Scope) -> Any:
        if value is None:
            return column.is_(None)

        if isinstance(value, (OuterRef, ColumnRef, Raw)):
            return column == self._value(value, scope)

        if isinstance(value, Mapping) and value and all(str(k).startswith("$") for k in value):
            parts = []
            for op, operand in value.items():
                if (fn := _OPERATORS.get(op)) is None:
                    raise ValueError(f"Unknown where operator {op!r}")
                parts.append(fn(column, self._value(operand, scope)))
            return sa.and_(*parts)

        if isinstance(value, (tuple, list, set, frozenset)):
            return column.in_(list(value))

        return column == thaw(value)

    def _order_by(self, entry: str, scope: _Scope) -> Any:
        descending = entry.startswith("-")
        name = entry.lstrip("-").strip()
        parts = name.rsplit(None, 1)
        if len(parts) == 2 and parts[1].lower() in ("asc", "desc"):
            name, descending = parts[0], parts[1].lower() == "desc"

        column = scope.column(name)
        return column.desc() if descending else column

    # -- DDL ----------------------------------------------------------------

    def _ddl_table(self, statement: CreateTable) -> sa.Table:
        if not statement.definition and statement.table in self.metadata.tables:
            return self.metadata.tables[statement.table]

        schema = TableSchema(name=statement.table, columns=statement.definition)
        if self.schemas.get(statement.table) == schema:
            return self.metadata.tables[statement.table]

        # Unregistered definitions compile on their own metadata, with stand-in
        # tables for whatever they reference.
        metadata = sa.MetaData()
        table = to_sa_table(schema, metadata)
        for _, ref in schema.references():
            if ref.table not in metadata.tables:
                sa.Table(ref.table, metadata, sa.Column(ref.column, sa.Integer, primary_key=True))

        return table

    def _alter(self, statement: AlterTable, dialect: Dialect) -> list[Executable]:
        if not statement.actions:
            return []

        if dialect.name != "sqlite":
            return [_alter_table_ddl(statement.table, statement.actions)]

        # SQLite alters one column per statement and has no named constraints,
        # so unique constraints become unique indexes.
        out: list[Executable] = []
        for action in statement.actions:
            if isinstance(action, AddColumn):
                spec = action.spec
                out.append(
                    _alter_table_ddl(statement.table, [AddColumn(action.name, replace(spec, unique=None))])
                )
                if spec.unique:
                    out.append(
                        CreateIndex(
                            _index(statement.table, f"{statement.table}_{action.name}_key", (action.name,)),
                            if_not_exists=True,
                        )
                    )
            elif isinstance(action, AddConstraint) and action.kind == "unique":
                out.append(CreateIndex(_index(statement.table, action.name, action.columns), if_not_exists=True))
            elif isinstance(action, DropConstraint):
                out.append(DropIndex(_index(statement.table, action.name), if_exists=action.if_exists))
            else:
                logger.warning(
                    "compiler.unsupported_alter",
                    dialect=dialect.name,
                    table=statement.table,
                    action=type(action).__name__,
                )

        return out

    def _create_view(self, statement: CreateView, dialect: Dialect) -> list[Executable]:
        out: list[Executable] = []
        if statement.or_replace and (statement.materialized or dialect.name == "sqlite"):
            out.append(
                DropTableDDL(
                    statement.table, view=True, materialized=statement.materialized, cascade=True
                )
            )
        out.append(
            CreateViewDDL(
                statement.table,
                self.select(statement.query),
                or_replace=statement.or_replace,
                materialized=statement.materialized,
            )
        )

        return out


def _alter_table_ddl(table: str, actions: Sequence[AlterAction]) -> AlterTableDDL:
    detached = sa.Table(table, sa.MetaData())
    columns: dict[str, sa.Column[Any]] = {}
    for action in actions:
        if isinstance(action, AddColumn):
            columns[action.name] = to_sa_column(action.name, action.spec, foreign_keys=False)
            detached.append_column(columns[action.name])

    return AlterTableDDL(table, actions, columns)


def _index(table: str, name: str, columns: Sequence[str] = ("id",)) -> sa.Index:
    detached = sa.Table(table, sa.MetaData(), *(sa.Column(column, sa.Integer) for column in columns))
    return sa.Index(name, *(detached.c[column] for column in columns), unique=True)

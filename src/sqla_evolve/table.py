from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any, Final

from .datastructures import freeze, frozendict
from .schema import TableSchema
from .statements import (
    AllColumns,
    Conflict,
    CreateTable,
    CreateView,
    Delete,
    DropTable,
    Insert,
    Select,
    Update,
)
from .transforms import first_row


if TYPE_CHECKING:
    from .query import Query
    from .registry import Registry

# Keyword options of the builders, applied through the Query method of the same name.
_QUERY_OPTIONS: Final[frozenset[str]] = frozenset({
    "columns",
    "returning",
    "order",
    "group_by",
    "limit",
    "offset",
    "distinct",
    "alias",
    "one",
    "many",
    "mixin",
    "pluck",
    "before",
    "after",
})


class Table:
    """Query builders for one registered table or view.

    Builders return :class:`~sqla_evolve.query.Query` values carrying the
    registry's transforms; nothing touches the database until the query is
    awaited.

    Example:
        >>> users = registry.table("users")
        >>> await users.insert({"name": "Ada"})
        {'id': 1, 'name': 'Ada'}
        >>> await users.find_one(1, many="groups")
        {'id': 1, 'name': 'Ada', 'groups': []}
    """

    __slots__ = ("registry", "schema")

    def __init__(self, schema: TableSchema, registry: Registry) -> None:
        self.schema = schema
        self.registry = registry

    def __repr__(self) -> str:
        return f"<Table {self.name!r}>"

    @property
    def name(self) -> str:
        return self.schema.name

    @property
    def primary_key(self) -> str:
        return self.schema.primary_key

    def _query(self, ast: Any, options: Mapping[str, Any]) -> Query:
        query = self.registry.query(ast)
        if unknown := set(options) - _QUERY_OPTIONS:
            raise TypeError(f"Unknown query option(s): {', '.join(sorted(unknown))}")

        for name, value in options.items():
            if value is None:
                continue
            query = getattr(query, name)(value)

        return query

    def _key(self, where: Any) -> tuple[frozendict[str, Any], bool]:
        """Normalize *where*; a scalar binds against the primary key and asks for one row."""
        if where is None:
            return frozendict(), False

        if isinstance(where, Mapping):
            return freeze(where), False

        return frozendict({self.primary_key: where}), True

    def find(self, where: Mapping[str, Any] | None = None, **options: Any) -> Query:
        return self._query(Select(table=self.name, where=freeze(where or {})), options)

    def find_one(self, where: Any = None, **options: Any) -> Query:
        """First matching row, or ``None``; a scalar *where* looks up by primary key."""
        key, _ = self._key(where)
        options.setdefault("limit", 1)
        return self._query(Select(table=self.name, where=key), options).after(first_row)

    def insert(self, values: Mapping[str, Any] | Sequence[Mapping[str, Any]], **options: Any) -> Query:
        """Insert one row (returning it) or many rows (returning them all)."""
        options.setdefault("returning", (AllColumns(),))
        query = self._query(Insert(table=self.name, values=freeze(values)), options)
        return query.after(first_row) if isinstance(values, Mapping) else query

    def upsert(
        self,
        conflict: str | Sequence[str],
        values: Mapping[str, Any] | Sequence[Mapping[str, Any]],
        **options: Any,
    ) -> Query:
        """Insert, updating the conflicting row on a unique violation of *conflict*.

        By default every inserted column except the conflict target is
        overwritten with the proposed value; pass ``update={col: value}`` to
        choose (``Excluded(col)`` refers to the proposed value). When the values
        hold nothing but the conflict target, a conflicting row is left as it
        is and nothing is returned for it.
        """
        target = (conflict,) if isinstance(conflict, str) else tuple(conflict)
        update = freeze(options.pop("update", None) or {})
        options.setdefault("returning", (AllColumns(),))
        query = self._query(
            Insert(
                table=self.name,
                values=freeze(values),
                conflict=Conflict(target=target, update=update),
            ),
            options,
        )
        return query.after(first_row) if isinstance(values, Mapping) else query

    def update(self, where: Any, updates: Mapping[str, Any], **options: Any) -> Query:
        key, single = self._key(where)
        options.setdefault("returning", (AllColumns(),))
        query = self._query(Update(table=self.name, where=key, updates=freeze(updates)), options)
        return query.after(first_row) if single else query

    def remove(self, where: Any = None, **options: Any) -> Query:
        key, single = self._key(where)
        options.setdefault("returning", (AllColumns(),))
        query = self._query(Delete(table=self.name, where=key), options)
        return query.after(first_row) if single else query

    def create(self) -> Query:
        if self.schema.is_view:
            assert self.schema.query is not None
            ast: Any = CreateView(
                table=self.name, query=self.schema.query, materialized=self.schema.materialized
            )
        else:
            ast = CreateTable(table=self.name, definition=self.schema.columns)

        return self.registry.query(ast)

    def drop(self, cascade: bool = True) -> Query:
        return self.registry.query(
            DropTable(
                table=self.name,
                cascade=cascade,
                view=self.schema.is_view,
                materialized=self.schema.materialized,
            )
        )

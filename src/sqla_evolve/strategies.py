from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal, Union

from .datastructures import frozendict


if TYPE_CHECKING:
    from .schema import ColumnSpec, TableSchema


@dataclass(slots=True, frozen=True)
class AddColumn:
    name: str
    spec: ColumnSpec


@dataclass(slots=True, frozen=True)
class AlterColumn:
    """Change attributes of an existing column.

    ``default`` is only applied when ``set_default`` is true, so that a
    default of ``None`` never reads as "set the default to NULL".
    """

    name: str
    default: str | None = None
    set_default: bool = False
    drop_default: bool = False


@dataclass(slots=True, frozen=True)
class AddConstraint:
    name: str
    kind: Literal["primary_key", "unique"]
    columns: tuple[str, ...]


@dataclass(slots=True, frozen=True)
class DropConstraint:
    name: str
    if_exists: bool = True
    cascade: bool = True


AlterAction = Union[AddColumn, AlterColumn, AddConstraint, DropConstraint]

StrategyResult = Union[AlterAction, Sequence[AlterAction], None]
StrategyFn = Callable[
    [str, "ColumnSpec", "ColumnSpec", "TableSchema", "TableSchema", str], StrategyResult
]


@dataclass(slots=True, frozen=True)
class Strategy:
    fn: StrategyFn
    options: frozendict[str, Any] = field(default_factory=frozendict)


class DiffStrategies:
    """Registry of per-attribute column diff rules.

    A strategy is called as ``fn(name, new_col, old_col, new_schema,
    old_schema, table)`` for every attribute present in either column spec
    and returns one action, a sequence of actions, or ``None``. Attributes
    without a registered strategy produce nothing: diffing is best-effort and
    never destructive.
    """

    __slots__ = ("_registered",)

    def __init__(self, strategies: Mapping[str, Strategy] | None = None) -> None:
        self._registered: dict[str, Strategy] = dict(strategies or {})

    def __contains__(self, name: object) -> bool:
        return name in self._registered

    def __iter__(self) -> Iterator[str]:
        return iter(self._registered)

    def has(self, name: str) -> bool:
        return name in self._registered

    def get(self, name: str) -> Strategy | None:
        return self._registered.get(name)

    def register(
        self,
        name: str,
        fn: StrategyFn | None = None,
        **options: Any,
    ) -> Any:
        """Register *fn* under attribute *name*; usable as a decorator.

        Example:
            >>> strategies = default_strategies()
            >>> @strategies.register("nullable")
            ... def nullable(name, new, old, new_schema, old_schema, table):
            ...     return None
        """
        if fn is None:

            def decorator(func: StrategyFn) -> StrategyFn:
                self._registered[name] = Strategy(fn=func, options=frozendict(options))
                return func

            return decorator

        self._registered[name] = Strategy(fn=fn, options=frozendict(options))
        return fn

    def copy(self) -> DiffStrategies:
        return DiffStrategies(self._registered)

    def diff_column(
        self,
        name: str,
        new: ColumnSpec,
        old: ColumnSpec,
        new_schema: TableSchema,
        old_schema: TableSchema,
    ) -> list[AlterAction]:
        """Evaluate every applicable strategy for one column present in both specs."""
        new_attrs = new.attributes()
        old_attrs = old.attributes()
        actions: list[AlterAction] = []

        for attr in dict.fromkeys((*new_attrs, *old_attrs)):
            if (strategy := self._registered.get(attr)) is None:
                continue

            result = strategy.fn(name, new, old, new_schema, old_schema, new_schema.name)
            if result is None:
                continue

            if isinstance(result, (AddColumn, AlterColumn, AddConstraint, DropConstraint)):
                actions.append(result)
            else:
                actions.extend(result)

        return actions


def _primary_key(
    name: str,
    new: ColumnSpec,
    old: ColumnSpec,
    new_schema: TableSchema,
    old_schema: TableSchema,
    table: str,
) -> StrategyResult:
    # Column didn't previously hold the primary key: replace the table's one.
    if old.primary_key is None and new.primary_key is not None:
        return (
            DropConstraint(name=f"{table}_pkey", if_exists=True, cascade=True),
            AddConstraint(name=f"{table}_pkey", kind="primary_key", columns=(name,)),
        )

    return None


def _default(
    name: str,
    new: ColumnSpec,
    old: ColumnSpec,
    new_schema: TableSchema,
    old_schema: TableSchema,
    table: str,
) -> StrategyResult:
    if old.default is not None and new.default is None:
        return AlterColumn(name=name, drop_default=True)

    if new.default is not None and old.default is None:
        return AlterColumn(name=name, default=new.default, set_default=True)

    return None


def _unique(
    name: str,
    new: ColumnSpec,
    old: ColumnSpec,
    new_schema: TableSchema,
    old_schema: TableSchema,
    table: str,
) -> StrategyResult:
    constraint = f"{table}_{name}_key"

    if old.unique is not None and new.unique is None:
        return DropConstraint(name=constraint, if_exists=True, cascade=True)

    if old.unique is None and new.unique is not None:
        return AddConstraint(name=constraint, kind="unique", columns=(name,))

    return None


def default_strategies() -> DiffStrategies:
    """Fresh registry holding the built-in ``primary_key``, ``default`` and ``unique`` rules."""
    strategies = DiffStrategies()
    strategies.register("primary_key", _primary_key)
    strategies.register("default", _default)
    strategies.register("unique", _unique)

    return strategies

from __future__ import annotations

import sys
from dataclasses import dataclass, field, fields
from typing import Final


if sys.version_info >= (3, 11):
    from typing import TypedDict
else:
    from typing_extensions import TypedDict


DEFAULT_HISTORY_TABLE: Final[str] = "sqla_evolve_schemas"
DEFAULT_REFERENCE_COLUMN: Final[str] = "id"
DEFAULT_RELATION_ALIAS: Final[str] = "r"


@dataclass(slots=True, frozen=True)
class Options:
    """Registry-wide settings.

    Attributes:
        history_table: Name of the migration-history table.
        reference_column: Column assumed when a ``references`` entry names
            only a table.
        relation_alias: Marker used to build per-depth subquery aliases
            (``r``, ``rr``, ``rrr`` ...) during relationship expansion.
        drop_history: Whether ``sync(force=True)`` also drops the history table.
        debug: Log every executed statement.
    """

    history_table: str = field(default=DEFAULT_HISTORY_TABLE)
    reference_column: str = field(default=DEFAULT_REFERENCE_COLUMN)
    relation_alias: str = field(default=DEFAULT_RELATION_ALIAS)
    drop_history: bool = field(default=False)
    debug: bool = field(default=False)

    def __post_init__(self) -> None:
        if not self.history_table:
            raise ValueError("history_table must be a non-empty table name")
        if not self.relation_alias:
            raise ValueError("relation_alias must be a non-empty identifier")


class OptionsType(TypedDict, total=False):
    history_table: str
    reference_column: str
    relation_alias: str
    drop_history: bool
    debug: bool


def make_options(base: Options | None = None, **overrides: object) -> Options:
    """Build :class:`Options`, layering *overrides* over *base* (or the defaults)."""
    known = {f.name for f in fields(Options)}
    if unknown := set(overrides) - known:
        raise TypeError(f"Unknown option(s): {', '.join(sorted(unknown))}")

    values = {name: getattr(base, name) for name in known} if base is not None else {}
    values.update(overrides)

    return Options(**values)  # type: ignore[arg-type]

"""Declarative schemas, additive migrations and relationship-aware queries.

sqla_evolve keeps a registry of table and view definitions, brings the
database in line with them through ``Registry.sync()`` (recording every
version in a history table), and builds SQLAlchemy Core statements whose
``one`` / ``many`` / ``pluck`` / ``mixin`` directives embed related rows as
JSON, resolved from the foreign keys between registered tables.
"""

from ._version import __version__, __version_tuple__
from .compiler import CompiledQuery, Compiler
from .config import Options
from .datastructures import frozendict
from .errors import (
    CyclicDependencyError,
    InvalidTransformError,
    MissingPoolError,
    RelationResolutionError,
    SchemaDefinitionError,
    SqlaEvolveError,
    TransactionNotBegunError,
)
from .executor import Executor
from .migration import MigrationPlan, SnapshotRecord, plan_migration
from .query import Query
from .registry import Registry
from .relationships import expand_relations, relations_cache_clear, relations_cache_info
from .schema import ColumnSpec, Reference, TableKind, TableSchema, define_table
from .statements import AllColumns, ColumnRef, Excluded, OuterRef, Raw
from .strategies import DiffStrategies, default_strategies
from .table import Table
from .transaction import Transaction
from .transforms import QueryTransform, ResultTransform, first_row


__all__ = (
    "AllColumns",
    "ColumnRef",
    "ColumnSpec",
    "CompiledQuery",
    "Compiler",
    "CyclicDependencyError",
    "DiffStrategies",
    "Excluded",
    "Executor",
    "InvalidTransformError",
    "MigrationPlan",
    "MissingPoolError",
    "Options",
    "OuterRef",
    "Query",
    "QueryTransform",
    "Raw",
    "Reference",
    "Registry",
    "RelationResolutionError",
    "ResultTransform",
    "SchemaDefinitionError",
    "SnapshotRecord",
    "SqlaEvolveError",
    "Table",
    "TableKind",
    "TableSchema",
    "Transaction",
    "TransactionNotBegunError",
    "__version__",
    "__version_tuple__",
    "default_strategies",
    "define_table",
    "expand_relations",
    "first_row",
    "frozendict",
    "plan_migration",
    "relations_cache_clear",
    "relations_cache_info",
)

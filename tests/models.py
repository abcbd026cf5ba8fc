from __future__ import annotations

from datetime import datetime
from typing import Any, Final

import sqlalchemy as sa
from sqlalchemy import orm


USERS: Final[dict[str, Any]] = {
    "name": "users",
    "schema": {
        "id": {"type": "serial", "primaryKey": True},
        "name": {"type": "text"},
        "active": {"type": "boolean", "default": "true"},
    },
}

BOOKS: Final[dict[str, Any]] = {
    "name": "books",
    "schema": {
        "id": {"type": "serial", "primaryKey": True},
        "title": {"type": "text"},
    },
}

USER_BOOKS: Final[dict[str, Any]] = {
    "name": "user_books",
    "schema": {
        "id": {"type": "serial", "primaryKey": True},
        "user_id": {"type": "int", "references": {"table": "users", "column": "id"}},
        "book_id": {"type": "int", "references": "books"},
    },
}

GROUPS: Final[dict[str, Any]] = {
    "name": "groups",
    "schema": {
        "id": {"type": "serial", "primaryKey": True},
        "label": {"type": "text"},
        "uid": {"type": "int", "references": "users.id"},
    },
}

CATEGORIES: Final[dict[str, Any]] = {
    "name": "categories",
    "schema": {
        "id": {"type": "serial", "primaryKey": True},
        "title": {"type": "varchar(64)"},
        "parent_id": {"type": "int", "references": "categories"},
    },
}

ALL_TABLES: Final[tuple[dict[str, Any], ...]] = (USERS, BOOKS, USER_BOOKS, GROUPS)


# Declarative models, registered through Registry.register_metadata.


class Base(orm.DeclarativeBase):
    pass


class Author(Base):
    __tablename__ = "authors"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    name: orm.Mapped[str] = orm.mapped_column(sa.String(100), unique=True)
    created_at: orm.Mapped[datetime] = orm.mapped_column(
        sa.DateTime, server_default=sa.text("CURRENT_TIMESTAMP")
    )


class Article(Base):
    __tablename__ = "articles"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    title: orm.Mapped[str] = orm.mapped_column(sa.Text)
    author_id: orm.Mapped[int] = orm.mapped_column(sa.ForeignKey("authors.id"))

from __future__ import annotations

import pytest
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from sqla_evolve import ColumnSpec, Compiler, Reference, Registry
from sqla_evolve.compiler import VerbatimType, resolve_dialect, sa_type
from sqla_evolve.statements import AlterTable, CreateTable, CreateView, DropTable, Raw, Select
from sqla_evolve.strategies import AddColumn, AddConstraint, AlterColumn, DropConstraint


def _sql(statement, dialect: str, compiler: Compiler | None = None) -> str:  # type: ignore[no-untyped-def]
    return (compiler or Compiler()).to_sql(statement, dialect).text


class TestTypes:
    def test_known_types(self) -> None:
        assert isinstance(sa_type("serial"), sa.Integer)
        assert isinstance(sa_type("TEXT"), sa.Text)
        assert isinstance(sa_type("double  precision"), sa.Double)
        assert isinstance(sa_type("uuid"), sa.Uuid)

    def test_sized_types(self) -> None:
        varchar = sa_type("varchar(64)")
        assert isinstance(varchar, sa.String)
        assert varchar.length == 64

        numeric = sa_type("numeric(10, 2)")
        assert (numeric.precision, numeric.scale) == (10, 2)

    def test_jsonb_variant(self) -> None:
        rendered = sa_type("jsonb").compile(dialect=postgresql.dialect())
        assert rendered == "JSONB"

    def test_unknown_type_is_verbatim(self) -> None:
        citext = sa_type("citext")
        assert isinstance(citext, VerbatimType)
        assert citext.compile(dialect=postgresql.dialect()) == "citext"

    def test_resolve_dialect(self) -> None:
        assert resolve_dialect().name == "postgresql"
        assert resolve_dialect("sqlite").name == "sqlite"
        dialect = postgresql.dialect()
        assert resolve_dialect(dialect) is dialect


class TestAlterTable:
    def test_postgres_actions_in_one_statement(self) -> None:
        statement = AlterTable(
            table="users",
            actions=(
                AddColumn("email", ColumnSpec(type="text")),
                AlterColumn("active", default="true", set_default=True),
                AddConstraint("users_email_key", "unique", ("email",)),
                DropConstraint("users_pkey"),
            ),
        )
        assert _sql(statement, "postgresql") == (
            "ALTER TABLE users ADD COLUMN email TEXT, "
            "ALTER COLUMN active SET DEFAULT true, "
            "ADD CONSTRAINT users_email_key UNIQUE (email), "
            "DROP CONSTRAINT IF EXISTS users_pkey CASCADE"
        )

    def test_add_column_with_reference(self) -> None:
        spec = ColumnSpec(type="int", references=Reference("users"))
        sql = _sql(AlterTable("groups", (AddColumn("uid", spec),)), "postgresql")
        assert sql == "ALTER TABLE groups ADD COLUMN uid INTEGER REFERENCES users (id)"

    def test_drop_default(self) -> None:
        sql = _sql(AlterTable("users", (AlterColumn("active", drop_default=True),)), "postgresql")
        assert sql == "ALTER TABLE users ALTER COLUMN active DROP DEFAULT"

    def test_mysql_constraint_without_pg_clauses(self) -> None:
        assert _sql(AlterTable("users", (DropConstraint("users_pkey"),)), "mysql") == (
            "ALTER TABLE users DROP CONSTRAINT users_pkey"
        )

    def test_sqlite_splits_and_uses_indexes(self) -> None:
        statement = AlterTable(
            table="users",
            actions=(
                AddColumn("email", ColumnSpec(type="text", unique=True)),
                AddConstraint("users_name_key", "unique", ("name",)),
                DropConstraint("users_old_key"),
                AlterColumn("active", default="true", set_default=True),
            ),
        )
        assert [part.strip() for part in _sql(statement, "sqlite").split(";\n")] == [
            "ALTER TABLE users ADD COLUMN email TEXT",
            "CREATE UNIQUE INDEX IF NOT EXISTS users_email_key ON users (email)",
            "CREATE UNIQUE INDEX IF NOT EXISTS users_name_key ON users (name)",
            "DROP INDEX IF EXISTS users_old_key",
        ]

    def test_no_actions(self) -> None:
        assert _sql(AlterTable("users"), "postgresql") == ""


class TestCreateAndDrop:
    def test_registered_table_keeps_foreign_keys(self, offline: Registry) -> None:
        statement = CreateTable("user_books", offline.tables["user_books"].columns)
        sql = _sql(statement, "sqlite", offline.compiler)

        assert "CREATE TABLE IF NOT EXISTS user_books" in sql
        assert "FOREIGN KEY(user_id) REFERENCES users (id)" in sql
        assert "FOREIGN KEY(book_id) REFERENCES books (id)" in sql

    def test_unregistered_table(self) -> None:
        definition = {
            "id": ColumnSpec(type="serial", primary_key=True),
            "uid": ColumnSpec(type="int", references=Reference("users")),
            "created": ColumnSpec(type="timestamp", default="CURRENT_TIMESTAMP"),
        }
        sql = _sql(CreateTable("events", definition), "postgresql")

        assert "id SERIAL NOT NULL" in sql
        assert "created TIMESTAMP WITHOUT TIME ZONE DEFAULT CURRENT_TIMESTAMP" in sql
        assert "FOREIGN KEY(uid) REFERENCES users (id)" in sql

    @pytest.mark.parametrize(
        ("statement", "dialect", "expected"),
        [
            (DropTable("users", cascade=True), "postgresql", "DROP TABLE IF EXISTS users CASCADE"),
            (DropTable("users", cascade=True), "sqlite", "DROP TABLE IF EXISTS users"),
            (DropTable("v", view=True), "postgresql", "DROP VIEW IF EXISTS v"),
            (DropTable("v", if_exists=False, materialized=True), "postgresql", "DROP MATERIALIZED VIEW v"),
        ],
    )
    def test_drop(self, statement: DropTable, dialect: str, expected: str) -> None:
        assert _sql(statement, dialect) == expected

    def test_create_view(self, offline: Registry) -> None:
        view = CreateView("names", Select(table="users", columns=("id", "name"), where={"active": True}))

        pg = _sql(view, "postgresql", offline.compiler)
        assert pg == "CREATE OR REPLACE VIEW names AS SELECT users.id, users.name \nFROM users \nWHERE users.active = true"

        drop, create = _sql(view, "sqlite", offline.compiler).split(";\n")
        assert drop == "DROP VIEW IF EXISTS names"
        assert create.startswith("CREATE VIEW IF NOT EXISTS names AS SELECT")

    def test_materialized_view_is_dropped_first(self, offline: Registry) -> None:
        view = CreateView("names", Select(table="users"), materialized=True)
        drop, create = _sql(view, "postgresql", offline.compiler).split(";\n")
        assert drop == "DROP MATERIALIZED VIEW IF EXISTS names CASCADE"
        assert create.startswith("CREATE MATERIALIZED VIEW IF NOT EXISTS names AS SELECT")


class TestSelect:
    def test_values_in_bind_order(self, offline: Registry) -> None:
        compiled = offline["users"].find({"name": "alice", "active": True}, limit=2).to_sql("sqlite")

        assert "WHERE users.name = ? AND users.active = 1" in compiled.text
        assert "LIMIT ?" in compiled.text
        assert compiled.values == ("alice", 2)

    def test_default_dialect_is_asyncpg(self, offline: Registry) -> None:
        compiled = offline["users"].find({"id": 7}).to_sql()
        assert "users.id = $1" in compiled.text
        assert compiled.values == (7,)

    def test_operators(self, offline: Registry) -> None:
        compiled = offline["users"].find({"id": {"$gte": 2, "$lt": 5}, "name": {"$like": "a%"}}).to_sql("sqlite")
        assert "users.id >= ? AND users.id < ?" in compiled.text
        assert "users.name LIKE ?" in compiled.text
        assert compiled.values == (2, 5, "a%")

    def test_null_and_in(self, offline: Registry) -> None:
        text = offline["groups"].find({"uid": None, "label": ["a", "b"]}).to_sql("sqlite").text
        assert "groups.uid IS NULL" in text
        assert "groups.label IN" in text

    def test_or(self, offline: Registry) -> None:
        compiled = offline["users"].find({"$or": [{"name": "a"}, {"name": "b", "active": False}]}).to_sql("sqlite")
        assert "users.name = ? OR users.name = ? AND users.active = 0" in compiled.text
        assert compiled.values == ("a", "b")

    def test_unknown_operator(self, offline: Registry) -> None:
        with pytest.raises(ValueError, match=r"\$regex"):
            offline["users"].find({"name": {"$regex": "a"}}).to_sql("sqlite")

    def test_order(self, offline: Registry) -> None:
        text = offline["users"].find(order=["-id", "name asc"]).to_sql("sqlite").text
        assert "ORDER BY users.id DESC, users.name" in text

    def test_raw_and_dotted_columns(self, offline: Registry) -> None:
        query = offline["users"].find(columns=["users.name", Raw("count(*) AS n")]).group_by("name")
        text = query.to_sql("sqlite").text
        assert text.startswith("SELECT users.name, count(*) AS n")
        assert "GROUP BY users.name" in text

    def test_with_cte(self, offline: Registry) -> None:
        active = offline["users"].find({"active": True}, columns=["id"])
        text = Compiler(offline.tables).to_sql(
            Select(table="active_users", with_={"active_users": active.ast}), "sqlite"
        ).text
        assert text.startswith("WITH active_users AS")
        assert "FROM active_users" in text

    def test_unregistered_table(self) -> None:
        text = _sql(Select(table="logs", where={"level": "error"}), "sqlite")
        assert text == "SELECT * \nFROM logs \nWHERE level = ?"


class TestDML:
    def test_insert_returning(self, offline: Registry) -> None:
        text = offline["users"].insert({"name": "a"}).to_sql("sqlite").text
        assert text == "INSERT INTO users (name) VALUES (?) RETURNING id, name, active"

    def test_upsert_postgres(self, offline: Registry) -> None:
        text = offline["books"].upsert("id", {"id": 1, "title": "Dune"}).to_sql("postgresql").text
        assert "ON CONFLICT (id) DO UPDATE SET title = excluded.title" in text

    def test_upsert_target_only_does_nothing(self, offline: Registry) -> None:
        text = offline["books"].upsert("id", {"id": 1}).to_sql("sqlite").text
        assert "ON CONFLICT (id) DO NOTHING" in text

    def test_upsert_mysql(self, offline: Registry) -> None:
        text = offline["books"].upsert("id", {"id": 1, "title": "Dune"}, returning=[]).to_sql("mysql").text
        assert "ON DUPLICATE KEY UPDATE title = VALUES(title)" in text

    def test_update_and_delete(self, offline: Registry) -> None:
        update = offline["users"].update(1, {"name": "z"}).to_sql("sqlite").text
        assert update.startswith("UPDATE users SET name=? WHERE users.id = ? RETURNING")

        delete = offline["users"].remove({"active": False}).to_sql("sqlite").text
        assert delete.startswith("DELETE FROM users WHERE users.active = 0 RETURNING")

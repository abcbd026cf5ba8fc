from __future__ import annotations

import re

import pytest

from sqla_evolve import (
    AllColumns,
    ColumnRef,
    OuterRef,
    Query,
    Registry,
    RelationResolutionError,
    expand_relations,
    relations_cache_info,
)
from sqla_evolve.statements import Join, RelationColumn, Select


def _expand(query: Query) -> Select:
    return query.get_transformed_query().ast


class TestMany:
    def test_subquery_binds_target_to_outer_row(self, offline: Registry) -> None:
        ast = _expand(offline["users"].find().many("groups"))

        assert ast.columns[0] == AllColumns()
        column = ast.columns[1]
        assert isinstance(column, RelationColumn)
        assert column.kind == "many"
        assert column.alias == "groups"
        assert column.query_alias == "r"
        assert column.select.table == "groups"
        assert column.select.alias == "r"
        assert column.select.where == {"uid": OuterRef("users", "id")}
        assert column.select.limit is None

    def test_directives_are_consumed(self, offline: Registry) -> None:
        ast = _expand(offline["users"].find().many("groups"))
        assert not ast.relations

    def test_explicit_columns_are_kept_first(self, offline: Registry) -> None:
        ast = _expand(offline["users"].find(columns=["id"]).many("groups"))
        assert ast.columns[0] == "id"
        assert ast.columns[1].alias == "groups"

    def test_alias_and_extra_where(self, offline: Registry) -> None:
        ast = _expand(
            offline["users"].find().many({"table": "groups", "alias": "teams", "where": {"label": "admins"}})
        )
        column = ast.columns[1]
        assert column.alias == "teams"
        assert column.select.where == {"label": "admins", "uid": OuterRef("users", "id")}

    def test_outer_alias_is_the_correlation_source(self, offline: Registry) -> None:
        ast = _expand(offline["users"].find().alias("u").many("groups"))
        assert ast.columns[1].select.where == {"uid": OuterRef("u", "id")}


class TestOne:
    def test_limit_one(self, offline: Registry) -> None:
        ast = _expand(offline["groups"].find().one("users"))
        column = ast.columns[1]

        assert column.kind == "one"
        assert column.select.limit == 1
        assert column.select.where == {"id": OuterRef("groups", "uid")}


class TestPluck:
    def test_pluck(self, offline: Registry) -> None:
        ast = _expand(offline["users"].find().pluck({"table": "groups", "column": "label"}))
        column = ast.columns[1]
        assert column.kind == "pluck"
        assert column.column == "label"

    def test_pluck_requires_column(self, offline: Registry) -> None:
        with pytest.raises(ValueError, match="requires a `column`"):
            _expand(offline["users"].find().pluck("groups"))


class TestMixin:
    def test_left_join_with_columns(self, offline: Registry) -> None:
        ast = _expand(offline["user_books"].find().mixin({"table": "books", "columns": ["title"]}))

        assert ast.joins == (Join(target="books", alias="books", on={"id": OuterRef("user_books", "book_id")}),)
        assert ast.columns == (AllColumns(), ColumnRef(column="title", table="books"))

    def test_all_target_columns_by_default(self, offline: Registry) -> None:
        ast = _expand(offline["user_books"].find().mixin("books"))
        assert ast.columns[-1] == AllColumns(table="books")

    def test_filtered_target_becomes_subselect(self, offline: Registry) -> None:
        ast = _expand(offline["user_books"].find().mixin({"table": "books", "where": {"title": "Dune"}}))
        target = ast.joins[0].target
        assert isinstance(target, Select)
        assert target.where == {"title": "Dune"}

    def test_only_on_select(self, offline: Registry) -> None:
        with pytest.raises(ValueError, match="mixin"):
            _expand(offline["user_books"].insert({"book_id": 1}).mixin("books"))


class TestRecursion:
    def test_nested_aliases_grow_per_depth(self, offline: Registry) -> None:
        query = offline["users"].find().many({"table": "user_books", "one": {"table": "books"}})
        column = _expand(query).columns[1]

        nested = column.select.columns[1]
        assert column.query_alias == "r"
        assert nested.query_alias == "rr"
        assert nested.select.where == {"id": OuterRef("r", "book_id")}
        assert column.json_fields == ("books",)

    def test_custom_alias_marker(self) -> None:
        registry = Registry(relation_alias="q").register(
            {"name": "users", "schema": {"id": "serial"}},
            {"name": "groups", "schema": {"uid": {"type": "int", "references": "users"}}},
            {"name": "members", "schema": {"gid": {"type": "int", "references": "groups.uid"}}},
        )
        query = registry["users"].find().many({"table": "groups", "many": "members"})
        column = _expand(query).columns[1]
        assert column.query_alias == "q"
        assert column.select.columns[1].query_alias == "qq"


class TestResolution:
    def test_unrelated_tables_fail(self, offline: Registry) -> None:
        with pytest.raises(RelationResolutionError, match="`books`.*`groups`"):
            _expand(offline["books"].find().many("groups"))

    def test_explicit_where_relates_anything(self, offline: Registry) -> None:
        query = offline["books"].find().many({"table": "groups", "where": {"label": ColumnRef("title", "books")}})
        column = _expand(query).columns[1]
        assert column.select.where == {"label": ColumnRef("title", "books")}

    def test_pivot_lookups_are_cached(self, offline: Registry) -> None:
        for _ in range(3):
            _expand(offline["users"].find().many("groups"))
        assert relations_cache_info().hits >= 2

    def test_deterministic(self, offline: Registry) -> None:
        query = offline["users"].find().many({"table": "user_books", "one": "books"}).pluck(
            {"table": "groups", "column": "label"}
        )
        assert _expand(query) == _expand(query)

    def test_statement_without_relations_is_unchanged(self, offline: Registry) -> None:
        statement = Select(table="users")
        assert expand_relations(offline.graph, statement) is statement


class TestPostgresSQL:
    def test_many(self, offline: Registry) -> None:
        sql = offline["users"].find_one(1, many="groups").to_sql("postgresql").text

        assert "coalesce(json_agg(row_to_json(r)), '[]'::json)" in sql
        assert 'r.uid = "users"."id"' in sql
        assert re.search(r'AS "?groups"?', sql)

    def test_one_has_limit(self, offline: Registry) -> None:
        sql = offline["groups"].find(one="users").to_sql("postgresql").text
        assert "row_to_json(r)" in sql
        assert "LIMIT" in sql
        assert 'r.id = "groups"."uid"' in sql

    def test_mixin_join(self, offline: Registry) -> None:
        sql = offline["user_books"].find(mixin={"table": "books", "columns": ["title"]}).to_sql("postgresql").text
        assert 'LEFT OUTER JOIN books ON books.id = "user_books"."book_id"' in sql

    def test_sqlite_functions(self, offline: Registry) -> None:
        sql = offline["users"].find(many={"table": "user_books", "one": "books"}).to_sql("sqlite").text
        assert "json_group_array(json_object('id', r.id" in sql
        assert "json(r.books)" in sql

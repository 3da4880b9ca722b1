import sqlite3

import pytest

from sqlite_viewer.catalog import (
    tokenize_ddl,
    unquote_identifier,
    parse_create_table,
    parse_create_index,
    read_master_table,
    load_schema,
    find_table,
    column_affinity,
)
from sqlite_viewer.database import PageStore
from sqlite_viewer.errors import SchemaParseError


def test_tokenize_ddl_skips_comments():
    tokens = tokenize_ddl("CREATE TABLE t ( -- comment\n a /* b, c */ TEXT)")
    assert tokens == ["CREATE", "TABLE", "t", "(", "a", "TEXT", ")"]


def test_unquote_identifier():
    assert unquote_identifier('"first name"') == "first name"
    assert unquote_identifier('"say ""hi"""') == 'say "hi"'
    assert unquote_identifier("[last name]") == "last name"
    assert unquote_identifier("`age`") == "age"
    assert unquote_identifier("'it''s'") == "it's"
    assert unquote_identifier("plain") == "plain"


def test_parse_create_table_multiline():
    sql = """CREATE TABLE apples
    (
        id integer primary key autoincrement,
        name text,
        color text
    )"""
    assert parse_create_table(sql) == (
        ["id", "name", "color"],
        ["integer", "text", "text"],
        0,
        False,
        ["BINARY", "BINARY", "BINARY"],
    )


def test_parse_create_table_constraints_do_not_leak_into_columns():
    sql = (
        'CREATE TABLE "superheroes" (id integer primary key autoincrement, name text not null, '
        "eye_color text, hair_color text, appearance_count integer, first_appearance text, "
        "first_appearance_year text)"
    )
    columns, _, rowid_alias, _, _ = parse_create_table(sql)
    assert columns == [
        "id",
        "name",
        "eye_color",
        "hair_color",
        "appearance_count",
        "first_appearance",
        "first_appearance_year",
    ]
    assert rowid_alias == 0


def test_parse_create_table_quoted_names_and_types():
    sql = 'CREATE TABLE t ("first name" TEXT, [last name] varchar(20), `age` INT, price DECIMAL(10, 2))'
    columns, column_types, rowid_alias, _, _ = parse_create_table(sql)
    assert columns == ["first name", "last name", "age", "price"]
    assert column_types == ["TEXT", "varchar(20)", "INT", "DECIMAL(10,2)"]
    assert rowid_alias is None


def test_parse_create_table_defaults_and_checks():
    sql = "CREATE TABLE t (a INTEGER DEFAULT (1 + 2) CHECK (a > 0), b TEXT DEFAULT 'x,y', c TEXT DEFAULT (CAST(1 AS TEXT)))"
    columns, column_types, _, _, _ = parse_create_table(sql)
    assert columns == ["a", "b", "c"]
    assert column_types == ["INTEGER", "TEXT", "TEXT"]


def test_parse_create_table_untyped_columns():
    assert parse_create_table("CREATE TABLE sqlite_sequence(name,seq)") == (
        ["name", "seq"],
        ["", ""],
        None,
        False,
        ["BINARY", "BINARY"],
    )


def test_parse_create_table_column_collations():
    sql = "CREATE TABLE t (id INTEGER PRIMARY KEY, name TEXT COLLATE NOCASE, code TEXT NOT NULL COLLATE rtrim, note TEXT)"
    columns, column_types, _, _, collations = parse_create_table(sql)
    assert columns == ["id", "name", "code", "note"]
    assert column_types == ["INTEGER", "TEXT", "TEXT", "TEXT"]
    assert collations == ["BINARY", "NOCASE", "RTRIM", "BINARY"]


def test_parse_create_table_level_primary_key():
    sql = "CREATE TABLE t (name TEXT, id INTEGER, CONSTRAINT pk PRIMARY KEY (id))"
    columns, _, rowid_alias, _, _ = parse_create_table(sql)
    assert columns == ["name", "id"]
    assert rowid_alias == 1


@pytest.mark.parametrize(
    "sql",
    [
        "CREATE TABLE t (id int primary key, x)",
        "CREATE TABLE t (id INTEGER PRIMARY KEY DESC, x)",
        "CREATE TABLE t (a INTEGER, b INTEGER, PRIMARY KEY (a, b))",
        "CREATE TABLE t (id BIGINT PRIMARY KEY, x)",
    ],
)
def test_parse_create_table_no_rowid_alias(sql):
    assert parse_create_table(sql)[2] is None


def test_parse_create_table_without_rowid():
    columns, _, rowid_alias, without_rowid, _ = parse_create_table(
        "CREATE TABLE t (k INTEGER PRIMARY KEY, v) WITHOUT ROWID"
    )
    assert columns == ["k", "v"]
    assert rowid_alias is None
    assert without_rowid


@pytest.mark.parametrize(
    "sql",
    [
        "CREATE TABLE t",
        "CREATE TABLE t (a, b",
        "CREATE TABLE t (a,,b)",
        "CREATE TABLE t ()",
        'CREATE TABLE t ("a, b)',
        "CREATE TABLE t (PRIMARY KEY (a))",
        "CREATE TABLE t (a INTEGER, b INTEGER GENERATED ALWAYS AS (a * 2))",
    ],
)
def test_parse_create_table_malformed(sql):
    with pytest.raises(SchemaParseError):
        parse_create_table(sql)


def test_parse_create_index():
    assert parse_create_index(
        "CREATE INDEX idx_companies_country on companies (country)"
    ) == (["country"], True)
    assert parse_create_index(
        'CREATE UNIQUE INDEX IF NOT EXISTS "i" ON t (name COLLATE BINARY DESC, x)'
    ) == (["name", "x"], True)


@pytest.mark.parametrize(
    "sql",
    [
        "CREATE INDEX i ON t (name COLLATE NOCASE)",
        "CREATE INDEX i ON t (a) WHERE a IS NOT NULL",
        "CREATE INDEX i ON t (lower(name))",
    ],
)
def test_parse_create_index_not_usable(sql):
    assert parse_create_index(sql)[1] is False


def test_parse_create_index_inherits_column_collation():
    sql = "CREATE INDEX i ON t (Name)"
    assert parse_create_index(sql, {"name": "NOCASE"}) == (["Name"], False)
    assert parse_create_index(sql, {"name": "BINARY"}) == (["Name"], True)
    # an explicit COLLATE on the index wins over the column one
    assert parse_create_index(
        "CREATE INDEX i ON t (name COLLATE BINARY)", {"name": "NOCASE"}
    ) == (["name"], True)


def test_parse_create_index_malformed():
    with pytest.raises(SchemaParseError):
        parse_create_index("CREATE INDEX i")


@pytest.mark.parametrize(
    "declared_type, affinity",
    [
        ("INTEGER", "INTEGER"),
        ("int", "INTEGER"),
        ("UNSIGNED BIG INT", "INTEGER"),
        ("FLOATING POINT", "INTEGER"),
        ("VARCHAR(20)", "TEXT"),
        ("clob", "TEXT"),
        ("BLOB", "BLOB"),
        ("", "BLOB"),
        ("DOUBLE PRECISION", "REAL"),
        ("DECIMAL(10,2)", "NUMERIC"),
        ("BOOLEAN", "NUMERIC"),
    ],
)
def test_column_affinity(declared_type, affinity):
    assert column_affinity(declared_type) == affinity


def test_read_master_table(store):
    rows = {schema.name: schema for schema in read_master_table(store)}
    assert rows["apples"].table_type == "table"
    assert rows["red_apples"].table_type == "view"
    assert rows["sqlite_sequence"].sql == "CREATE TABLE sqlite_sequence(name,seq)"


def test_load_schema(fruits_db):
    connection = sqlite3.connect(fruits_db)
    rootpage = connection.execute(
        "SELECT rootpage FROM sqlite_master WHERE name = 'apples'"
    ).fetchone()[0]
    connection.close()

    with PageStore(fruits_db) as store:
        tables = load_schema(store)

    assert set(tables) == {"apples", "sqlite_sequence"}
    apples = tables["apples"]
    assert apples.rootpage == rootpage
    assert apples.columns == ("id", "name", "color")
    assert apples.rowid_alias == 0
    assert not apples.without_rowid
    assert apples.indexes == ()


def test_load_schema_attaches_indexes(companies_db):
    with PageStore(companies_db) as store:
        table = load_schema(store)["companies"]

    assert [index.name for index in table.indexes] == ["idx_companies_country"]
    assert table.index_on("COUNTRY").columns == ("country",)
    assert table.index_on("name") is None


def test_find_table_is_case_insensitive(store):
    tables = load_schema(store)
    assert find_table(tables, "APPLES").name == "apples"
    assert find_table(tables, "pears") is None


def test_column_position_is_case_insensitive(store):
    apples = load_schema(store)["apples"]
    assert apples.column_position("Color") == 2
    assert apples.column_position("weight") is None


def test_load_schema_skips_index_on_nocase_column(make_database):
    path = make_database(
        """
        CREATE TABLE people (id INTEGER PRIMARY KEY, name TEXT COLLATE NOCASE, city TEXT);
        CREATE INDEX idx_people_name ON people (name);
        CREATE INDEX idx_people_city ON people (city);
        """
    )
    with PageStore(path) as store:
        table = load_schema(store)["people"]

    assert table.column_collations == ("BINARY", "NOCASE", "BINARY")
    assert table.index_on("name") is None
    assert table.index_on("city").name == "idx_people_city"

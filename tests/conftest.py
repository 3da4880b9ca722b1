import sqlite3

import pytest

from sqlite_viewer.database import PageStore

COUNTRIES = ["chile", "kenya", "norway", "japan", "peru"]
COMPANY_COUNT = 2000

# Long enough to spill over several 1024 bytes overflow pages
LONG_BODY = "".join(chr(ord("a") + i % 26) for i in range(5000))
LONG_BLOB = bytes(range(256)) * 12


@pytest.fixture
def make_database(tmp_path):
    """Creates a database file with the sqlite3 module and returns its path."""

    def make(script, rows=(), page_size=4096, name="test.db", encoding=None):
        path = str(tmp_path / name)
        connection = sqlite3.connect(path)
        connection.execute(f"PRAGMA page_size = {page_size}")
        if encoding:
            connection.execute(f'PRAGMA encoding = "{encoding}"')
        connection.executescript(script)
        for statement, parameters in rows:
            connection.executemany(statement, parameters)
        connection.commit()
        connection.close()
        return path

    return make


@pytest.fixture
def fruits_db(make_database):
    return make_database(
        """
        CREATE TABLE apples
        (
            id integer primary key autoincrement,
            name text,
            color text
        );
        CREATE VIEW red_apples AS SELECT name FROM apples WHERE color = 'Red';
        """,
        rows=[
            (
                "INSERT INTO apples (id, name, color) VALUES (?, ?, ?)",
                [
                    (1, "Granny Smith", "Light Green"),
                    (2, "Fuji", "Red"),
                    (3, "Honeycrisp", "Blush Red"),
                    (7, "Golden Delicious", "Yellow"),
                ],
            )
        ],
    )


@pytest.fixture
def companies_db(make_database):
    """Small pages and many rows, so the table b-tree has interior pages."""
    return make_database(
        """
        CREATE TABLE companies (
            id integer primary key autoincrement,
            name text,
            country text,
            employees integer
        );
        CREATE INDEX idx_companies_country on companies (country);
        """,
        rows=[
            (
                "INSERT INTO companies (name, country, employees) VALUES (?, ?, ?)",
                [
                    (f"company {i}", COUNTRIES[i % len(COUNTRIES)], i * 3)
                    for i in range(1, COMPANY_COUNT + 1)
                ],
            )
        ],
        page_size=512,
        name="companies.db",
    )


@pytest.fixture
def documents_db(make_database):
    return make_database(
        "CREATE TABLE documents (id INTEGER PRIMARY KEY, title TEXT, body TEXT, data BLOB);",
        rows=[
            (
                "INSERT INTO documents (title, body, data) VALUES (?, ?, ?)",
                [
                    ("short", "tiny", b"\x00\x01"),
                    ("long", LONG_BODY, LONG_BLOB),
                    ("after", "still readable", None),
                ],
            )
        ],
        page_size=1024,
        name="documents.db",
    )


@pytest.fixture
def store(fruits_db):
    with PageStore(fruits_db) as store:
        yield store

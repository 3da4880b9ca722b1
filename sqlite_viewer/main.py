import logging
import os
import sys
from typing import List, Optional

from sqlite_viewer.consts import (
    DEFAULT_LOG_LEVEL,
    LOG_LEVEL_ENV_VAR,
    SQLITE_INTERNAL_PREFIX,
)
from sqlite_viewer.database import PageStore
from sqlite_viewer.errors import DatabaseError
from sqlite_viewer.queries import QueryEngine

logger = logging.getLogger(__name__)

USAGE = "usage: sqlite-viewer [-v] <database path> <command>"


def configure_logging(verbose: bool = False):
    # Logs go to stderr so they never mix with query results
    level = "DEBUG" if verbose else os.environ.get(LOG_LEVEL_ENV_VAR, DEFAULT_LOG_LEVEL)
    logging.basicConfig(
        stream=sys.stderr,
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def format_value(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", "replace")
    return str(value)


def print_dbinfo(engine: QueryEngine):
    header = engine.store.header
    print(f"database page size: {header.page_size}")
    print(f"number of tables: {len(engine.tables)}")
    print(f"number of pages: {header.page_count}")
    print(f"text encoding: {header.text_encoding}")


def print_tables(engine: QueryEngine):
    table_names = [
        name for name in engine.tables if not name.startswith(SQLITE_INTERNAL_PREFIX)
    ]
    print(" ".join(table_names))


def print_schema(engine: QueryEngine):
    for table in engine.tables.values():
        print(f"{table.sql};")


def run_command(database_file_path: str, command: str):
    with PageStore(database_file_path) as store:
        engine = QueryEngine(store)

        if command == ".dbinfo":
            print_dbinfo(engine)
        elif command == ".tables":
            print_tables(engine)
        elif command == ".schema":
            print_schema(engine)
        else:
            for row in engine.execute_sql(command):
                print("|".join(format_value(value) for value in row))


def main(argv: Optional[List[str]] = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)

    verbose = False
    if args and args[0] in ("-v", "--verbose"):
        verbose = True
        args = args[1:]

    if len(args) != 2:
        print(USAGE, file=sys.stderr)
        return 1

    configure_logging(verbose)
    database_file_path, command = args
    logger.debug("Running %r on %s", command, database_file_path)

    try:
        run_command(database_file_path, command)
    except DatabaseError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())

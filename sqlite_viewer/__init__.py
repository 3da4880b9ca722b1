from sqlite_viewer.consts import VERSION
from sqlite_viewer.database import PageStore, DatabaseHeader
from sqlite_viewer.catalog import load_schema
from sqlite_viewer.queries import Query, QueryEngine
from sqlite_viewer.errors import (
    DatabaseError,
    IoError,
    FormatError,
    UnsupportedPageType,
    SchemaParseError,
    QueryError,
    UnknownTable,
    UnknownColumn,
    UnsupportedQuery,
)

__version__ = VERSION

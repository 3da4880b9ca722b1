from __future__ import annotations
from logging import getLogger

import sqlparse
from sqlparse.sql import Token
from sqlparse.tokens import Comment, Keyword, Name, Number, String

from sqlite_viewer.catalog import load_schema, find_table, column_affinity, unquote_identifier
from sqlite_viewer.consts import ROWID_PSEUDO_COLUMNS
from sqlite_viewer.database import PageStore
from sqlite_viewer.errors import UnknownColumn, UnknownTable, UnsupportedQuery
from sqlite_viewer.filtering import ValueFilter
from sqlite_viewer.pages import count_table_rows, fetch_rows, lookup_index, scan_table
from sqlite_viewer.rows import TableSchema

from typing import Dict, Iterator, List, Optional, Sequence, Tuple

logger = getLogger(__name__)

# Column position standing for the row id of the b-tree cell
ROWID_POSITION = -1

RESERVED_WORDS = {"SELECT", "FROM", "WHERE"}


class _TokenStream:
    """Cursor over the meaningful tokens of a statement lexed by sqlparse."""

    def __init__(self, tokens: List[Token], query_str: str):
        self.tokens = tokens
        self.position = 0
        self.query_str = query_str

    def peek(self, ahead: int = 0) -> Optional[Token]:
        position = self.position + ahead
        if position < len(self.tokens):
            return self.tokens[position]
        return None

    def next(self) -> Token:
        token = self.peek()
        if token is None:
            raise UnsupportedQuery(f"Unexpected end of query: {self.query_str}")
        self.position += 1
        return token

    def accept(self, value: str) -> bool:
        token = self.peek()
        if token is not None and token.value.upper() == value:
            self.position += 1
            return True
        return False

    def expect(self, value: str):
        if not self.accept(value):
            found = self.peek()
            raise UnsupportedQuery(
                f"Expected {value} but found {found.value if found else 'end of query'}: {self.query_str}"
            )

    def at_end(self) -> bool:
        return self.position >= len(self.tokens)


class Query:
    """
    A parsed query. Only three shapes are understood:

        SELECT COUNT(*) FROM <table>
        SELECT <col>[, <col>...] FROM <table>
        SELECT <col>[, <col>...] FROM <table> WHERE <col> = <literal>
    """

    table_name: str
    value_filter: Optional[ValueFilter]
    requested_column_names: List[str]
    is_count: bool

    def __init__(
        self,
        table_name: str,
        value_filter: Optional[ValueFilter],
        requested_column_names: List[str],
        is_count: bool = False,
    ):
        self.table_name = table_name
        self.value_filter = value_filter
        self.requested_column_names = requested_column_names
        self.is_count = is_count

    @staticmethod
    def parse_query(query_str: str) -> Query:
        statements = [
            statement for statement in sqlparse.parse(query_str) if str(statement).strip()
        ]
        if len(statements) != 1:
            raise UnsupportedQuery(f"Expected a single statement: {query_str}")

        tokens = [
            token
            for token in statements[0].flatten()
            if not token.is_whitespace and token.ttype not in Comment
        ]
        if tokens and tokens[-1].value == ";":
            tokens.pop()
        stream = _TokenStream(tokens, query_str)

        stream.expect("SELECT")

        is_count = False
        requested_column_names = []
        if Query._is_count_star(stream):
            is_count = True
            for value in ("COUNT", "(", "*", ")"):
                stream.expect(value)
        else:
            requested_column_names.append(Query._read_identifier(stream))
            while stream.accept(","):
                requested_column_names.append(Query._read_identifier(stream))

        stream.expect("FROM")
        table_name = Query._read_identifier(stream)

        value_filter = None
        if stream.accept("WHERE"):
            if is_count:
                raise UnsupportedQuery(f"WHERE is not supported with COUNT(*): {query_str}")
            column = Query._read_identifier(stream)
            operator = stream.next().value
            value_filter = ValueFilter(column, operator, Query._read_literal(stream))

        if not stream.at_end():
            raise UnsupportedQuery(
                f"Unsupported clause starting at '{stream.peek().value}': {query_str}"
            )

        return Query(table_name, value_filter, requested_column_names, is_count)

    @staticmethod
    def _is_count_star(stream: _TokenStream) -> bool:
        token = stream.peek()
        following = stream.peek(1)
        return (
            token is not None
            and token.value.upper() == "COUNT"
            and following is not None
            and following.value == "("
        )

    @staticmethod
    def _read_identifier(stream: _TokenStream) -> str:
        token = stream.next()
        if (
            token.ttype in Name or token.ttype in Keyword or token.ttype in String.Symbol
        ) and token.value.upper() not in RESERVED_WORDS:
            return unquote_identifier(token.value)

        raise UnsupportedQuery(f"Expected a name but found '{token.value}': {stream.query_str}")

    @staticmethod
    def _read_literal(stream: _TokenStream):
        token = stream.next()

        sign = 1
        if token.value in ("-", "+"):
            sign = -1 if token.value == "-" else 1
            token = stream.next()
            if token.ttype not in Number:
                raise UnsupportedQuery(f"Expected a number after sign: {stream.query_str}")

        if token.ttype in String.Single or token.ttype in String.Symbol:
            # '' is an escaped quote inside a string literal
            return unquote_identifier(token.value)
        if token.ttype in Number:
            return sign * Query._parse_number(token.value, stream.query_str)
        if token.ttype in Keyword and token.value.upper() == "NULL":
            return None

        raise UnsupportedQuery(f"Expected a literal but found '{token.value}': {stream.query_str}")

    @staticmethod
    def _parse_number(text: str, query_str: str):
        try:
            if text.lower().startswith(("0x", "-0x")):
                return int(text, 16)
            return int(text)
        except ValueError:
            pass
        try:
            return float(text)
        except ValueError:
            raise UnsupportedQuery(f"Invalid number '{text}': {query_str}")

    def __repr__(self):
        if self.is_count:
            return f"<Query: COUNT(*) FROM {self.table_name}>"
        return f"<Query: {self.requested_column_names} FROM {self.table_name} WHERE {self.value_filter}>"


class QueryEngine:
    """
    Answers queries by walking the b-trees of the database.

    The schema is read once when the engine is created, every query then walks
    the table again from its root page.
    """

    store: PageStore
    tables: Dict[str, TableSchema]
    use_indexes: bool

    def __init__(self, store: PageStore, use_indexes: bool = True):
        self.store = store
        self.use_indexes = use_indexes
        self.tables = load_schema(store)

    def table(self, table_name: str) -> TableSchema:
        table = find_table(self.tables, table_name)
        if table is None:
            raise UnknownTable(f"no such table: {table_name}")
        if table.without_rowid:
            raise UnsupportedQuery(f"WITHOUT ROWID table {table.name} cannot be scanned")
        return table

    def count_rows(self, table_name: str) -> int:
        table = self.table(table_name)
        return count_table_rows(self.store, table.rootpage)

    def select(
        self,
        table_name: str,
        column_names: Sequence[str],
        predicate: Optional[ValueFilter] = None,
    ) -> Iterator[Tuple]:
        """
        Returns the requested columns of the rows matching predicate, by ascending row id.

        Names are resolved right away, so unknown tables and columns are reported by
        this call. The rows themselves are read lazily while iterating.
        """
        table = self.table(table_name)
        if not column_names:
            raise UnsupportedQuery("At least one column must be selected")

        positions = [self._resolve_column(table, name) for name in column_names]

        filter_position = None
        if predicate is not None:
            filter_position = self._resolve_column(table, predicate.column)
            predicate = predicate.with_affinity(self._affinity(table, filter_position))

        rows = self._candidate_rows(table, predicate, filter_position)
        return self._project(rows, positions, predicate, filter_position)

    def execute(self, query: Query) -> Iterator[Tuple]:
        if query.is_count:
            return iter([(self.count_rows(query.table_name),)])
        return self.select(
            query.table_name, query.requested_column_names, query.value_filter
        )

    def execute_sql(self, query_str: str) -> Iterator[Tuple]:
        return self.execute(Query.parse_query(query_str))

    def _candidate_rows(
        self,
        table: TableSchema,
        predicate: Optional[ValueFilter],
        filter_position: Optional[int],
    ) -> Iterator[Tuple[int, List[any]]]:
        """
        Every row of the table, or only the rows an index (or the row id itself)
        points at when the predicate allows it. The predicate still has to be
        checked on the returned rows.
        """
        if predicate is None or not self.use_indexes:
            return scan_table(self.store, table.rootpage)

        operand = predicate.operand
        if filter_position == ROWID_POSITION:
            logger.debug("Looking %r up by row id in %s", operand, table.name)
            if isinstance(operand, int) or (
                isinstance(operand, float) and operand.is_integer()
            ):
                return fetch_rows(self.store, table.rootpage, [int(operand)])
            return iter([])

        index = table.index_on(table.columns[filter_position])
        # Index keys are ordered on the encoded text, which matches str ordering for UTF-8 only
        if index is not None and (
            self.store.text_encoding == "utf-8" or not isinstance(operand, str)
        ):
            logger.debug("Using index %s to find %r", index.name, operand)
            rowids = lookup_index(self.store, index.rootpage, operand)
            return fetch_rows(self.store, table.rootpage, rowids)

        return scan_table(self.store, table.rootpage)

    @staticmethod
    def _project(
        rows: Iterator[Tuple[int, List[any]]],
        positions: List[int],
        predicate: Optional[ValueFilter],
        filter_position: Optional[int],
    ) -> Iterator[Tuple]:
        for rowid, record in rows:
            if predicate is not None and not predicate(
                QueryEngine._value(rowid, record, filter_position)
            ):
                continue
            yield tuple(QueryEngine._value(rowid, record, position) for position in positions)

    @staticmethod
    def _value(rowid: int, record: List[any], position: int):
        # When an SQL table includes an INTEGER PRIMARY KEY column (which aliases the rowid)
        # then that column appears in the record as a NULL value. SQLite will always use the
        # table b-tree key rather than the NULL value when referencing the INTEGER PRIMARY KEY column.
        if position == ROWID_POSITION:
            return rowid
        # Columns added by ALTER TABLE are missing from older records
        if position >= len(record):
            return None
        return record[position]

    @staticmethod
    def _resolve_column(table: TableSchema, column_name: str) -> int:
        position = table.column_position(column_name)
        if position is not None:
            if position == table.rowid_alias:
                return ROWID_POSITION
            return position

        if column_name.lower() in ROWID_PSEUDO_COLUMNS:
            return ROWID_POSITION

        raise UnknownColumn(f"no such column: {column_name} in table {table.name}")

    @staticmethod
    def _affinity(table: TableSchema, position: int) -> str:
        if position == ROWID_POSITION:
            return "INTEGER"
        return column_affinity(table.column_types[position])

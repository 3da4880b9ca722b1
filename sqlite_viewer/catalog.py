import re
from dataclasses import replace
from logging import getLogger
from typing import Dict, List, Optional, Tuple

from sqlite_viewer.consts import DDL_TOKEN_REGEX
from sqlite_viewer.database import PageStore
from sqlite_viewer.errors import FormatError, SchemaParseError
from sqlite_viewer.pages import scan_table
from sqlite_viewer.rows import Schema, TableSchema, IndexSchema

logger = getLogger(__name__)

MASTER_TABLE_ROOT_PAGE = 1

DDL_TOKEN_PATTERN = re.compile(DDL_TOKEN_REGEX, re.VERBOSE)

# Keywords opening a table constraint instead of a column definition
TABLE_CONSTRAINT_KEYWORDS = {"CONSTRAINT", "PRIMARY", "UNIQUE", "CHECK", "FOREIGN"}

# Keywords ending the declared type of a column
COLUMN_CONSTRAINT_KEYWORDS = {
    "CONSTRAINT",
    "PRIMARY",
    "NOT",
    "NULL",
    "UNIQUE",
    "CHECK",
    "DEFAULT",
    "COLLATE",
    "REFERENCES",
    "GENERATED",
    "AS",
}

QUOTE_CHARACTERS = {'"', "'", "`", "["}


def tokenize_ddl(sql: str) -> List[str]:
    tokens = []
    for token in DDL_TOKEN_PATTERN.findall(sql):
        if token.startswith("--") or token.startswith("/*"):
            continue
        if token in QUOTE_CHARACTERS:
            raise SchemaParseError(f"Unterminated quoted name or string in: {sql}")
        tokens.append(token)
    return tokens


def unquote_identifier(token: str) -> str:
    if len(token) >= 2:
        if token[0] == token[-1] and token[0] in "\"'`":
            quote = token[0]
            return token[1:-1].replace(quote * 2, quote)
        if token[0] == "[" and token[-1] == "]":
            return token[1:-1]
    return token


def _split_definitions(tokens: List[str], start: int, sql: str) -> Tuple[List[List[str]], int]:
    """
    Splits the parenthesized list opening at tokens[start] on its top level commas.

    Returns the definitions and the position of the closing parenthesis.
    """
    definitions = []
    current = []
    depth = 0

    for position in range(start + 1, len(tokens)):
        token = tokens[position]
        if token == "(":
            depth += 1
        elif token == ")":
            if depth == 0:
                if not current:
                    raise SchemaParseError(f"Empty definition in: {sql}")
                definitions.append(current)
                return definitions, position
            depth -= 1
        elif token == "," and depth == 0:
            if not current:
                raise SchemaParseError(f"Empty definition in: {sql}")
            definitions.append(current)
            current = []
            continue
        current.append(token)

    raise SchemaParseError(f"Unbalanced parenthesis in: {sql}")


def _join_type(tokens: List[str]) -> str:
    declared_type = ""
    for token in tokens:
        if token in ("(", ")", ","):
            declared_type += token
        elif declared_type and not declared_type.endswith(("(", ",")):
            declared_type += " " + token
        else:
            declared_type += token
    return declared_type


def _top_level(tokens: List[str]) -> List[str]:
    """Drops the tokens nested in parenthesis, like CHECK or DEFAULT expressions."""
    kept = []
    depth = 0
    for token in tokens:
        if token == "(":
            depth += 1
        elif token == ")":
            depth -= 1
        elif depth == 0:
            kept.append(token)
    return kept


def _primary_key_columns(definition: List[str], sql: str) -> List[str]:
    """Column names of a table level PRIMARY KEY (...) constraint."""
    upper = [token.upper() for token in definition]
    start = upper.index("PRIMARY")
    try:
        opening = upper.index("(", start)
    except ValueError:
        raise SchemaParseError(f"PRIMARY KEY constraint without columns in: {sql}")

    parts, _ = _split_definitions(definition, opening, sql)
    return [unquote_identifier(part[0]) for part in parts]


def parse_create_table(
    sql: str,
) -> Tuple[List[str], List[str], Optional[int], bool, List[str]]:
    """
    Creation query will look like

    CREATE TABLE apples
    (
        id integer primary key autoincrement,
        name text,
        color text
    )

    Returns the column names and declared types in order, the position of the
    column aliasing the row id (if any), whether the table is WITHOUT ROWID and
    the collation of every column (BINARY unless declared).

    sqlparse is not well fit for parsing the creation query, tokens are matched
    with a regex instead and the column list is split on its top level commas.
    """
    tokens = tokenize_ddl(sql)
    try:
        start = tokens.index("(")
    except ValueError:
        raise SchemaParseError(f"No column list in: {sql}")

    definitions, end = _split_definitions(tokens, start, sql)
    options = {token.upper() for token in tokens[end + 1 :]}
    without_rowid = "WITHOUT" in options and "ROWID" in options

    columns = []
    column_types = []
    collations = []
    primary_keys = []
    descending_primary_key = False

    for definition in definitions:
        upper = [token.upper() for token in definition]

        if upper[0] in TABLE_CONSTRAINT_KEYWORDS:
            if "PRIMARY" in upper:
                primary_keys.extend(_primary_key_columns(definition, sql))
            continue

        name = unquote_identifier(definition[0])
        if name in ("(", ")", ","):
            raise SchemaParseError(f"Column definition without a name in: {sql}")

        type_end = 1
        depth = 0
        while type_end < len(definition):
            token = upper[type_end]
            if depth == 0 and token in COLUMN_CONSTRAINT_KEYWORDS:
                break
            if token == "(":
                depth += 1
            elif token == ")":
                depth -= 1
            type_end += 1

        constraints = _top_level(upper[type_end:])
        if "AS" in constraints:
            # Virtual generated columns are missing from the record, which
            # would shift every following column
            raise SchemaParseError(f"Generated column {name} is not supported in: {sql}")

        if "PRIMARY" in constraints:
            primary_keys.append(name)
            key_position = constraints.index("PRIMARY") + 2
            if key_position < len(constraints) and constraints[key_position] == "DESC":
                descending_primary_key = True

        collation = "BINARY"
        if "COLLATE" in constraints:
            collation_position = constraints.index("COLLATE") + 1
            if collation_position >= len(constraints):
                raise SchemaParseError(f"COLLATE without a name for column {name} in: {sql}")
            collation = unquote_identifier(constraints[collation_position])

        columns.append(name)
        column_types.append(_join_type(definition[1:type_end]))
        collations.append(collation)

    if not columns:
        raise SchemaParseError(f"No columns in: {sql}")

    rowid_alias = None
    # https://www.sqlite.org/lang_createtable.html#rowid
    if len(primary_keys) == 1 and not without_rowid and not descending_primary_key:
        lowered = [column.lower() for column in columns]
        if primary_keys[0].lower() in lowered:
            position = lowered.index(primary_keys[0].lower())
            if column_types[position].upper() == "INTEGER":
                rowid_alias = position

    return columns, column_types, rowid_alias, without_rowid, collations


def parse_create_index(
    sql: str, column_collations: Optional[Dict[str, str]] = None
) -> Tuple[List[str], bool]:
    """
    Returns the indexed column names and whether the index can serve equality
    lookups: only indexes over plain columns, using the BINARY collation and
    covering every row qualify.

    An indexed column without a COLLATE clause takes the collation declared on
    the table column, column_collations maps lowered column names to those.
    """
    column_collations = column_collations or {}
    tokens = tokenize_ddl(sql)
    upper = [token.upper() for token in tokens]
    try:
        start = upper.index("(", upper.index("ON"))
    except ValueError:
        raise SchemaParseError(f"No column list in: {sql}")

    definitions, end = _split_definitions(tokens, start, sql)
    usable = "WHERE" not in upper[end + 1 :]

    columns = []
    for definition in definitions:
        definition_upper = [token.upper() for token in definition]
        column = unquote_identifier(definition[0])
        columns.append(column)

        collation = column_collations.get(column.lower(), "BINARY")
        rest = definition_upper[1:]
        if rest[:1] == ["COLLATE"]:
            collation = unquote_identifier(rest[1]) if len(rest) > 1 else ""
            rest = rest[2:]
        if collation != "BINARY":
            usable = False
        if rest and rest[0] in ("ASC", "DESC"):
            rest = rest[1:]
        # Anything else makes it an index on an expression
        if rest or definition[0] in ("(", ")", ","):
            usable = False

    return columns, usable


def read_master_table(store: PageStore) -> List[Schema]:
    """Every row of the master table, stored in the b-tree rooted at page 1."""
    schemas = []
    for rowid, record in scan_table(store, MASTER_TABLE_ROOT_PAGE):
        if len(record) < 5:
            raise FormatError(
                f"Master table row {rowid} has {len(record)} columns, expected 5",
                page_number=MASTER_TABLE_ROOT_PAGE,
            )
        schemas.append(
            Schema(
                table_type=record[0],
                name=record[1],
                table_name=record[2],
                rootpage=record[3] or 0,
                sql=record[4],
            )
        )
    return schemas


def load_schema(store: PageStore) -> Dict[str, TableSchema]:
    """
    Reads the tables of the database from the master table, with the indexes
    of each table attached to it.
    """
    tables = {}
    index_schemas = []

    for schema in read_master_table(store):
        if schema.table_type == "index":
            index_schemas.append(schema)
            continue
        if schema.table_type != "table":
            continue

        if not schema.rootpage:
            logger.warning("Skipping table %s without b-tree (virtual table)", schema.name)
            continue

        columns, column_types, rowid_alias, without_rowid, collations = parse_create_table(
            schema.sql
        )
        tables[schema.name] = TableSchema(
            name=schema.name,
            rootpage=schema.rootpage,
            columns=tuple(columns),
            column_types=tuple(column_types),
            column_collations=tuple(collations),
            rowid_alias=rowid_alias,
            without_rowid=without_rowid,
            sql=schema.sql,
        )
        logger.debug("Loaded table %s: %s", schema.name, tables[schema.name])

    for schema in index_schemas:
        table = find_table(tables, schema.table_name)
        if table is None or not schema.sql or not schema.rootpage:
            # automatic indexes of UNIQUE / PRIMARY KEY constraints carry no sql
            logger.debug("Not attaching index %s", schema.name)
            continue

        try:
            columns, usable = parse_create_index(schema.sql, table.collations_by_column())
        except SchemaParseError as e:
            logger.warning("Ignoring index %s: %s", schema.name, e)
            continue

        index = IndexSchema(
            name=schema.name,
            table_name=table.name,
            rootpage=schema.rootpage,
            columns=tuple(columns),
            usable_for_lookup=usable,
        )
        tables[table.name] = replace(table, indexes=table.indexes + (index,))
        logger.debug("Attached index %s to table %s", index.name, table.name)

    return tables


def find_table(tables: Dict[str, TableSchema], table_name: str) -> Optional[TableSchema]:
    """Table names are case insensitive, as in sqlite."""
    if table_name in tables:
        return tables[table_name]

    lowered = table_name.lower()
    for name, table in tables.items():
        if name.lower() == lowered:
            return table
    return None


def column_affinity(declared_type: str) -> str:
    """https://www.sqlite.org/datatype3.html#determination_of_column_affinity"""
    declared_type = declared_type.upper()
    if "INT" in declared_type:
        return "INTEGER"
    if "CHAR" in declared_type or "CLOB" in declared_type or "TEXT" in declared_type:
        return "TEXT"
    if "BLOB" in declared_type or not declared_type:
        return "BLOB"
    if "REAL" in declared_type or "FLOA" in declared_type or "DOUB" in declared_type:
        return "REAL"
    return "NUMERIC"

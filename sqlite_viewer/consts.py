# https://www.sqlite.org/fileformat.html#the_database_header
VERSION = "0.2.0"

SQLITE_MAGIC = b"SQLite format 3\x00"

DB_FILE_HEADER_SIZE = 100

# Offsets inside the 100 byte database header
PAGE_SIZE_OFFSET = 16
WRITE_VERSION_OFFSET = 18
READ_VERSION_OFFSET = 19
RESERVED_SPACE_OFFSET = 20
MAX_PAYLOAD_FRACTION_OFFSET = 21
CHANGE_COUNTER_OFFSET = 24
PAGE_COUNT_OFFSET = 28
SCHEMA_FORMAT_OFFSET = 44
TEXT_ENCODING_OFFSET = 56
VERSION_VALID_FOR_OFFSET = 92

# A stored page size of 1 means 65536, which does not fit in 2 bytes
MAX_PAGE_SIZE_MARKER = 1
MIN_PAGE_SIZE = 512
MAX_PAGE_SIZE = 65536

# The payload fractions are fixed by the file format
EXPECTED_PAYLOAD_FRACTIONS = (64, 32, 32)

WAL_VERSION = 2

TEXT_ENCODINGS = {
    0: "utf-8",  # not set yet, sqlite defaults to UTF-8
    1: "utf-8",
    2: "utf-16-le",
    3: "utf-16-be",
}

# b-tree page header sizes, interior pages have an extra right most pointer
LEAF_PAGE_HEADER_SIZE = 8
INTERIOR_PAGE_HEADER_SIZE = 12

PAGE_NUMBER_SIZE = 4
CELL_POINTER_SIZE = 2

# Varints
LAST_SEVEN_BITS_MASK = 0b_0111_1111
CONTINUATION_BIT = 0b_1000_0000
MAX_VARINT_SIZE = 9
UINT64_MASK = (1 << 64) - 1

SQLITE_INTERNAL_PREFIX = "sqlite_"

# Names that read the rowid of a table unless a real column shadows them
ROWID_PSEUDO_COLUMNS = ("rowid", "oid", "_rowid_")

# Environment variable used by the CLI to pick the log level
LOG_LEVEL_ENV_VAR = "SQLITE_VIEWER_LOG_LEVEL"
DEFAULT_LOG_LEVEL = "WARNING"

# Tokens of a CREATE TABLE / CREATE INDEX statement: comments,
# quoted identifiers, string literals, words, numbers and single punctuation
DDL_TOKEN_REGEX = r"""
    --[^\n]*
  | /\*(?:.|\n)*?\*/
  | "(?:[^"]|"")*"
  | `(?:[^`]|``)*`
  | \[[^\]]*\]
  | '(?:[^']|'')*'
  | [^\W\d][\w$]*
  | [-+]?[0-9]+(?:\.[0-9]*)?(?:[eE][-+]?[0-9]+)?
  | [(),]
  | \S
"""

# Text that sqlite would turn into a number under numeric affinity
NUMERIC_TEXT_REGEX = r"^\s*[-+]?(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)(?:[eE][-+]?[0-9]+)?\s*$"
INTEGER_TEXT_REGEX = r"^\s*[-+]?[0-9]+\s*$"

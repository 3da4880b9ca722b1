from __future__ import annotations
import os
from dataclasses import dataclass
from logging import getLogger
from typing import BinaryIO, Optional

from sqlite_viewer.consts import (
    DB_FILE_HEADER_SIZE,
    SQLITE_MAGIC,
    PAGE_SIZE_OFFSET,
    WRITE_VERSION_OFFSET,
    READ_VERSION_OFFSET,
    RESERVED_SPACE_OFFSET,
    MAX_PAYLOAD_FRACTION_OFFSET,
    CHANGE_COUNTER_OFFSET,
    PAGE_COUNT_OFFSET,
    SCHEMA_FORMAT_OFFSET,
    TEXT_ENCODING_OFFSET,
    VERSION_VALID_FOR_OFFSET,
    MAX_PAGE_SIZE_MARKER,
    MIN_PAGE_SIZE,
    MAX_PAGE_SIZE,
    EXPECTED_PAYLOAD_FRACTIONS,
    TEXT_ENCODINGS,
    WAL_VERSION,
)
from sqlite_viewer.errors import FormatError, IoError

logger = getLogger(__name__)


def _read_uint(data: bytes, offset: int, size: int) -> int:
    return int.from_bytes(data[offset : offset + size], "big")


@dataclass(frozen=True)
class DatabaseHeader:
    """
    The first 100 bytes of the database file.
    https://www.sqlite.org/fileformat.html#the_database_header
    """

    page_size: int
    reserved_bytes: int
    page_count: int
    text_encoding: str
    change_counter: int
    schema_format: int
    write_version: int
    read_version: int

    @property
    def usable_size(self) -> int:
        return self.page_size - self.reserved_bytes

    @staticmethod
    def from_bytes(data: bytes, file_size: int) -> DatabaseHeader:
        if len(data) < DB_FILE_HEADER_SIZE:
            raise IoError(
                f"File is too short to hold a database header ({len(data)} bytes)"
            )
        if data[: len(SQLITE_MAGIC)] != SQLITE_MAGIC:
            raise FormatError("Not an SQLite 3 database, magic string mismatch", offset=0)

        page_size = _read_uint(data, PAGE_SIZE_OFFSET, 2)
        if page_size == MAX_PAGE_SIZE_MARKER:
            page_size = MAX_PAGE_SIZE
        # a power of two has a single bit set
        if (
            page_size < MIN_PAGE_SIZE
            or page_size > MAX_PAGE_SIZE
            or page_size & (page_size - 1)
        ):
            raise FormatError(f"Invalid page size {page_size}", offset=PAGE_SIZE_OFFSET)

        reserved_bytes = data[RESERVED_SPACE_OFFSET]
        # the usable size may not be less than 480
        if page_size - reserved_bytes < 480:
            raise FormatError(
                f"{reserved_bytes} reserved bytes leave too little room in a {page_size} bytes page",
                offset=RESERVED_SPACE_OFFSET,
            )

        fractions = tuple(
            data[MAX_PAYLOAD_FRACTION_OFFSET : MAX_PAYLOAD_FRACTION_OFFSET + 3]
        )
        if fractions != EXPECTED_PAYLOAD_FRACTIONS:
            raise FormatError(
                f"Unexpected payload fractions {fractions}",
                offset=MAX_PAYLOAD_FRACTION_OFFSET,
            )

        encoding_code = _read_uint(data, TEXT_ENCODING_OFFSET, 4)
        if encoding_code not in TEXT_ENCODINGS:
            raise FormatError(
                f"Unknown text encoding {encoding_code}", offset=TEXT_ENCODING_OFFSET
            )

        change_counter = _read_uint(data, CHANGE_COUNTER_OFFSET, 4)
        page_count = _read_uint(data, PAGE_COUNT_OFFSET, 4)
        version_valid_for = _read_uint(data, VERSION_VALID_FOR_OFFSET, 4)
        # The in-header database size is only trusted when it was written by a
        # version of sqlite that keeps it up to date
        if page_count == 0 or change_counter != version_valid_for:
            logger.debug("In-header page count not valid, deriving it from file size")
            page_count = file_size // page_size

        read_version = data[READ_VERSION_OFFSET]
        if read_version == WAL_VERSION:
            logger.warning(
                "Database is in WAL mode, changes not yet checkpointed are not visible"
            )

        return DatabaseHeader(
            page_size=page_size,
            reserved_bytes=reserved_bytes,
            page_count=page_count,
            text_encoding=TEXT_ENCODINGS[encoding_code],
            change_counter=change_counter,
            schema_format=_read_uint(data, SCHEMA_FORMAT_OFFSET, 4),
            write_version=data[WRITE_VERSION_OFFSET],
            read_version=read_version,
        )


class PageStore:
    """
    Random access to the pages of a database file.

    Pages are numbered from 1. Page 1 starts with the 100 bytes database header
    followed by the b-tree page of the master table. Pages are read on demand,
    nothing is cached.
    """

    path: str
    header: DatabaseHeader

    def __init__(self, path: str):
        self.path = path
        try:
            self._file: Optional[BinaryIO] = open(path, "rb")
        except OSError as e:
            raise IoError(f"Cannot open database file {path}: {e}") from e

        try:
            file_size = os.fstat(self._file.fileno()).st_size
            self.header = DatabaseHeader.from_bytes(
                self._read_at(0, DB_FILE_HEADER_SIZE), file_size
            )
        except BaseException:
            self.close()
            raise

        logger.debug(
            "Opened %s: page size %d, %d pages, %s",
            path,
            self.header.page_size,
            self.header.page_count,
            self.header.text_encoding,
        )

    @staticmethod
    def open(path: str) -> PageStore:
        return PageStore(path)

    @property
    def page_size(self) -> int:
        return self.header.page_size

    @property
    def usable_size(self) -> int:
        return self.header.usable_size

    @property
    def page_count(self) -> int:
        return self.header.page_count

    @property
    def text_encoding(self) -> str:
        return self.header.text_encoding

    def read_page(self, page_number: int) -> bytes:
        if page_number < 1:
            raise FormatError(f"Invalid page number {page_number}")

        start = (page_number - 1) * self.page_size
        data = self._read_at(start, self.page_size)
        if len(data) < self.page_size:
            raise IoError(
                f"Database file {self.path} is truncated: page {page_number} needs "
                f"{page_number * self.page_size} bytes"
            )
        return data

    def _read_at(self, start: int, length: int) -> bytes:
        if self._file is None:
            raise IoError(f"Database file {self.path} is closed")
        try:
            self._file.seek(start)
            return self._file.read(length)
        except OSError as e:
            raise IoError(f"Cannot read {self.path} at offset {start}: {e}") from e

    def close(self):
        if self._file is not None:
            self._file.close()
            self._file = None

    def __enter__(self) -> PageStore:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __repr__(self):
        return f"<PageStore: {self.path}>"

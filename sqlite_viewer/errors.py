from typing import Optional


class DatabaseError(Exception):
    """Base class of every error raised while reading a database."""


class IoError(DatabaseError):
    """The database file is missing, unreadable or truncated."""


class FormatError(DatabaseError):
    """
    Bytes of the file violate the documented layout: invalid header,
    bad varint, unknown serial type, broken overflow chain...
    """

    def __init__(
        self,
        message: str,
        page_number: Optional[int] = None,
        offset: Optional[int] = None,
    ):
        self.message = message
        self.page_number = page_number
        self.offset = offset

        context = []
        if page_number is not None:
            context.append(f"page {page_number}")
        if offset is not None:
            context.append(f"offset {offset}")
        if context:
            message = f"{message} ({', '.join(context)})"
        super().__init__(message)


class UnsupportedPageType(DatabaseError):
    """A b-tree page of a kind the requested operation cannot handle."""


class SchemaParseError(DatabaseError):
    """CREATE TABLE text could not be tokenized into a column list."""


class QueryError(DatabaseError):
    """Base class of the errors caused by the query itself."""


class UnknownTable(QueryError):
    pass


class UnknownColumn(QueryError):
    pass


class UnsupportedQuery(QueryError):
    pass

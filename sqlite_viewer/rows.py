# record format
# https://www.sqlite.org/fileformat.html#record_format
# A record contains a header and a body, in that order
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple


# https://www.sqlite.org/fileformat.html#storage_of_the_sql_database_schema
@dataclass(frozen=True)
class Schema:
    """A row of the master table."""

    table_type: str  # table, index, view or trigger
    name: str
    table_name: str
    rootpage: int
    sql: Optional[str]  # NULL for the automatic indexes of UNIQUE constraints


@dataclass(frozen=True)
class IndexSchema:
    name: str
    table_name: str
    rootpage: int
    columns: Tuple[str, ...]
    # Only plain column, BINARY collated and non partial indexes can answer equality lookups
    usable_for_lookup: bool = True


@dataclass(frozen=True)
class TableSchema:
    name: str
    rootpage: int
    columns: Tuple[str, ...]
    column_types: Tuple[str, ...]  # declared types, "" when none was given
    column_collations: Tuple[str, ...] = ()  # BINARY unless the column declares COLLATE
    rowid_alias: Optional[int] = None  # position of the INTEGER PRIMARY KEY column
    without_rowid: bool = False
    indexes: Tuple[IndexSchema, ...] = ()
    sql: str = field(default="", repr=False)

    def column_position(self, column_name: str) -> Optional[int]:
        """Column names are case insensitive, as in sqlite."""
        lowered = column_name.lower()
        for position, name in enumerate(self.columns):
            if name.lower() == lowered:
                return position
        return None

    def collations_by_column(self) -> Dict[str, str]:
        return {
            name.lower(): collation
            for name, collation in zip(self.columns, self.column_collations)
        }

    def index_on(self, column_name: str) -> Optional[IndexSchema]:
        """An index usable for equality lookups whose first column is column_name."""
        lowered = column_name.lower()
        for index in self.indexes:
            if index.usable_for_lookup and index.columns[0].lower() == lowered:
                return index
        return None

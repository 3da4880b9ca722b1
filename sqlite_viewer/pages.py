from __future__ import annotations
from bisect import bisect_left
from enum import Enum
from dataclasses import dataclass
from logging import getLogger

from sqlite_viewer.consts import (
    INTERIOR_PAGE_HEADER_SIZE,
    LEAF_PAGE_HEADER_SIZE,
    DB_FILE_HEADER_SIZE,
    PAGE_NUMBER_SIZE,
    CELL_POINTER_SIZE,
)
from sqlite_viewer.database import PageStore
from sqlite_viewer.errors import FormatError, UnsupportedPageType
from sqlite_viewer.reading import read_varint, read_record, to_signed64

from typing import List, Iterable, Iterator, Optional, Tuple

logger = getLogger(__name__)


@dataclass
class InteriorPointer:
    """
    Cell type used by interior table pages. The pointed page holds every row
    whose row id is lower or equal to ``key``.

    An interior page has cell_count interior pointers plus its right most pointer.
    """

    left_child: int  # page number of the pointed page
    key: int  # largest row id found under left_child


@dataclass
class TableLeafCell:
    """A row of a table: its row id and the payload holding the record."""

    rowid: int
    payload_size: int
    local_payload: bytes
    overflow_page: Optional[int]  # first overflow page, if the payload did not fit


@dataclass
class IndexCell:
    """
    Cell type used by index pages. The payload is a record made of the indexed
    columns followed by the row id of the indexed row.
    """

    left_child: Optional[int]  # only present in interior index pages
    payload_size: int
    local_payload: bytes
    overflow_page: Optional[int]


class PageType(Enum):
    INTERIOR_INDEX = 0x02
    """
    Page type used to point to the multiple pages that span a specific table.
    Its cell pointer array and right most pointer can be used to find a specific key range

    Interior Page cell array Example:

|   Ptr1 | Key1 | Ptr2 | Key2 | Ptr3 | Key3 | Right-Most Ptr |
    Ptr1 → Points to keys <= Key1
    Ptr2 → Points to keys Key1 < x <= Key2
    Ptr3 → Points to keys Key2 < x <= Key3
    Right-Most Ptr → Points to keys > Key3
    """
    INTERIOR_TABLE = 0x05
    LEAF_INDEX = 0x0A
    LEAF_TABLE = 0x0D

    @property
    def is_leaf(self) -> bool:
        return self in (PageType.LEAF_INDEX, PageType.LEAF_TABLE)

    @property
    def is_table(self) -> bool:
        return self in (PageType.INTERIOR_TABLE, PageType.LEAF_TABLE)


def local_payload_size(payload_size: int, usable_size: int, is_table_leaf: bool) -> int:
    """
    Number of payload bytes stored on the b-tree page itself, the rest spills
    to overflow pages.
    https://www.sqlite.org/fileformat.html#cellformat
    """
    if is_table_leaf:
        max_local = usable_size - 35
    else:
        max_local = ((usable_size - 12) * 64 // 255) - 23

    if payload_size <= max_local:
        return payload_size

    min_local = ((usable_size - 12) * 32 // 255) - 23
    local = min_local + (payload_size - min_local) % (usable_size - 4)
    if local <= max_local:
        return local
    return min_local


class Page:
    number: int
    page_type: PageType
    first_freeblock: int
    cell_count: int
    cell_area_start: int
    fragmented_free_bytes: int
    cell_pointer_array: List[int]
    right_most_pointer: Optional[int]  # Only present in inner page headers
    data: bytes
    usable_size: int

    @staticmethod
    def from_bytes(page_number: int, data: bytes, usable_size: int) -> Page:
        """
        Parses the page header as described in https://www.sqlite.org/fileformat2.html#b_tree_pages
        and, based on that, loads the cell pointer array
        """
        instance = Page()
        instance.number = page_number
        instance.data = data
        instance.usable_size = usable_size

        # For the first page, we must skip the 100 byte database header
        header_start = DB_FILE_HEADER_SIZE if page_number == 1 else 0

        page_type_int = data[header_start]
        try:
            instance.page_type = PageType(page_type_int)
        except ValueError:
            raise FormatError(
                f"Invalid b-tree page type {page_type_int:#04x}",
                page_number=page_number,
                offset=header_start,
            )

        instance.first_freeblock = instance._uint(header_start + 1, 2)
        instance.cell_count = instance._uint(header_start + 3, 2)
        # 0 stands for 65536, a page of the maximum size with no cells
        instance.cell_area_start = instance._uint(header_start + 5, 2) or 65536
        instance.fragmented_free_bytes = data[header_start + 7]

        if instance.page_type.is_leaf:
            instance.right_most_pointer = None
            pointers_start = header_start + LEAF_PAGE_HEADER_SIZE
        else:
            instance.right_most_pointer = instance._uint(header_start + 8, PAGE_NUMBER_SIZE)
            pointers_start = header_start + INTERIOR_PAGE_HEADER_SIZE

        pointers_end = pointers_start + instance.cell_count * CELL_POINTER_SIZE
        if pointers_end > usable_size:
            raise FormatError(
                f"Cell pointer array of {instance.cell_count} cells overflows the page",
                page_number=page_number,
                offset=pointers_start,
            )

        #  The cell pointer array consists of K 2-byte integer offsets to the cell contents.
        instance.cell_pointer_array = [
            instance._uint(offset, CELL_POINTER_SIZE)
            for offset in range(pointers_start, pointers_end, CELL_POINTER_SIZE)
        ]
        for cell_pointer in instance.cell_pointer_array:
            if cell_pointer < pointers_end or cell_pointer >= usable_size:
                raise FormatError(
                    "Cell pointer outside of the cell content area",
                    page_number=page_number,
                    offset=cell_pointer,
                )

        return instance

    def table_leaf_cell(self, index: int) -> TableLeafCell:
        self._expect(PageType.LEAF_TABLE)
        offset = self.cell_pointer_array[index]

        # See https://saveriomiroddi.github.io/SQLIte-database-file-format-diagrams/ for why the reads are done
        payload_size, used = self._varint(offset)
        offset += used
        rowid, used = self._varint(offset)
        offset += used

        local_payload, overflow_page = self._split_payload(offset, payload_size, True)
        return TableLeafCell(to_signed64(rowid), payload_size, local_payload, overflow_page)

    def table_leaf_cells(self) -> Iterator[TableLeafCell]:
        for index in range(self.cell_count):
            yield self.table_leaf_cell(index)

    def interior_pointers(self) -> List[InteriorPointer]:
        self._expect(PageType.INTERIOR_TABLE)

        pointers = []
        for cell_pointer in self.cell_pointer_array:
            left_child = self._uint(cell_pointer, PAGE_NUMBER_SIZE)
            key, _ = self._varint(cell_pointer + PAGE_NUMBER_SIZE)
            pointers.append(InteriorPointer(left_child, to_signed64(key)))
        return pointers

    def index_cells(self) -> List[IndexCell]:
        if self.page_type.is_table:
            raise UnsupportedPageType(
                f"Page {self.number} is a {self.page_type.name} page, expected an index page"
            )

        cells = []
        for offset in self.cell_pointer_array:
            left_child = None
            if self.page_type == PageType.INTERIOR_INDEX:
                left_child = self._uint(offset, PAGE_NUMBER_SIZE)
                offset += PAGE_NUMBER_SIZE

            payload_size, used = self._varint(offset)
            local_payload, overflow_page = self._split_payload(
                offset + used, payload_size, False
            )
            cells.append(IndexCell(left_child, payload_size, local_payload, overflow_page))
        return cells

    def child_pages(self) -> List[int]:
        """Every child of an interior table page, left to right."""
        children = [pointer.left_child for pointer in self.interior_pointers()]
        children.append(self.right_most_pointer)
        return children

    def _split_payload(
        self, offset: int, payload_size: int, is_table_leaf: bool
    ) -> Tuple[bytes, Optional[int]]:
        local_size = local_payload_size(payload_size, self.usable_size, is_table_leaf)
        end = offset + local_size

        overflow_page = None
        if local_size < payload_size:
            overflow_page = self._uint(end, PAGE_NUMBER_SIZE)
            if end + PAGE_NUMBER_SIZE > self.usable_size:
                raise FormatError(
                    "Overflow pointer outside of the page",
                    page_number=self.number,
                    offset=end,
                )
        elif end > self.usable_size:
            raise FormatError(
                f"Payload of {payload_size} bytes overflows the page",
                page_number=self.number,
                offset=offset,
            )

        return self.data[offset:end], overflow_page

    def _expect(self, page_type: PageType):
        if self.page_type != page_type:
            raise UnsupportedPageType(
                f"Page {self.number} is a {self.page_type.name} page, expected {page_type.name}"
            )

    def _uint(self, offset: int, size: int) -> int:
        return int.from_bytes(self.data[offset : offset + size], "big")

    def _varint(self, offset: int) -> Tuple[int, int]:
        try:
            value, used = read_varint(self.data, offset)
        except FormatError as e:
            raise FormatError(e.message, page_number=self.number, offset=offset) from e

        if offset + used > self.usable_size:
            raise FormatError(
                "Varint runs into the reserved space", page_number=self.number, offset=offset
            )
        return value, used

    def __repr__(self):
        return f"<Page {self.number}: {self.page_type.name}, {self.cell_count} cells>"


def load_page(store: PageStore, page_number: int) -> Page:
    return Page.from_bytes(page_number, store.read_page(page_number), store.usable_size)


def read_payload(store: PageStore, cell) -> bytes:
    """
    Returns the full payload of a cell, concatenating the overflow pages when
    the payload did not fit on its b-tree page.

    Each overflow page starts with the number of the next one (0 ends the chain),
    followed by payload bytes.
    """
    if cell.overflow_page is None:
        return cell.local_payload

    chunks = [cell.local_payload]
    remaining = cell.payload_size - len(cell.local_payload)
    capacity = store.usable_size - PAGE_NUMBER_SIZE
    page_number = cell.overflow_page
    visited = set()

    while remaining > 0:
        if page_number == 0:
            raise FormatError(f"Overflow chain ended with {remaining} bytes missing")
        if page_number > store.page_count:
            raise FormatError(f"Overflow pointer to page {page_number} beyond end of file")
        if page_number in visited:
            raise FormatError(f"Overflow chain loops back to page {page_number}")
        visited.add(page_number)

        data = store.read_page(page_number)
        chunk = data[PAGE_NUMBER_SIZE : PAGE_NUMBER_SIZE + min(remaining, capacity)]
        chunks.append(chunk)
        remaining -= len(chunk)
        page_number = int.from_bytes(data[:PAGE_NUMBER_SIZE], "big")

    logger.debug(
        "Read %d bytes payload over %d overflow pages", cell.payload_size, len(visited)
    )
    return b"".join(chunks)


def iter_table_leaf_pages(store: PageStore, root_page: int) -> Iterator[Page]:
    """
    Yields the leaf pages of a table b-tree from left to right.

    Walks the tree depth first with an explicit stack of pending page numbers,
    interior pages push their children so that the left most one is popped first.
    """
    pending = [root_page]
    visited_interior = set()

    while pending:
        page = load_page(store, pending.pop())

        if page.page_type == PageType.LEAF_TABLE:
            yield page
        elif page.page_type == PageType.INTERIOR_TABLE:
            if page.number in visited_interior:
                raise FormatError(
                    "Table b-tree visits an interior page twice", page_number=page.number
                )
            visited_interior.add(page.number)
            # Besides traversing all the nodes pointed by this page, we must also traverse to its
            # right side neighbour, which points row IDs > than any in this page
            pending.extend(reversed(page.child_pages()))
        else:
            raise UnsupportedPageType(
                f"Page {page.number} is a {page.page_type.name} page, "
                f"table b-tree rooted at page {root_page} expected"
            )


def iter_table_cells(store: PageStore, root_page: int) -> Iterator[TableLeafCell]:
    for page in iter_table_leaf_pages(store, root_page):
        yield from page.table_leaf_cells()


def scan_table(store: PageStore, root_page: int) -> Iterator[Tuple[int, List[any]]]:
    """
    Yields a (row id, record) pair per row of the table rooted at root_page,
    by ascending row id. Every call walks the tree again from the root.
    """
    for cell in iter_table_cells(store, root_page):
        yield cell.rowid, read_record(read_payload(store, cell), store.text_encoding)


def count_table_rows(store: PageStore, root_page: int) -> int:
    return sum(page.cell_count for page in iter_table_leaf_pages(store, root_page))


def find_row(store: PageStore, root_page: int, rowid: int) -> Optional[List[any]]:
    """
    Looks a single row up by its row id, descending only the pages whose key
    range holds it.
    """
    page = load_page(store, root_page)
    depth = 0

    while page.page_type == PageType.INTERIOR_TABLE:
        depth += 1
        if depth > store.page_count:
            raise FormatError("Table b-tree is deeper than the file", page_number=page.number)

        pointers = page.interior_pointers()
        position = bisect_left([pointer.key for pointer in pointers], rowid)
        if position < len(pointers):
            page = load_page(store, pointers[position].left_child)
        else:
            page = load_page(store, page.right_most_pointer)

    if page.page_type != PageType.LEAF_TABLE:
        raise UnsupportedPageType(
            f"Page {page.number} is a {page.page_type.name} page, "
            f"table b-tree rooted at page {root_page} expected"
        )

    # binary search on the cells, ordered by row id
    low, high = 0, page.cell_count
    while low < high:
        middle = (low + high) // 2
        cell = page.table_leaf_cell(middle)
        if cell.rowid == rowid:
            return read_record(read_payload(store, cell), store.text_encoding)
        if cell.rowid < rowid:
            low = middle + 1
        else:
            high = middle

    return None


def fetch_rows(
    store: PageStore, root_page: int, rowids: Iterable[int]
) -> Iterator[Tuple[int, List[any]]]:
    """Yields the (row id, record) of the given row ids that exist, by ascending row id."""
    for rowid in sorted(set(rowids)):
        record = find_row(store, root_page, rowid)
        if record is not None:
            yield rowid, record


def sort_key(value) -> Tuple[int, any]:
    """
    Orders values the way sqlite does with the BINARY collation:
    NULL < numbers < text < blobs.
    """
    if value is None:
        return 0, 0
    if isinstance(value, (int, float)):
        return 1, value
    if isinstance(value, str):
        return 2, value
    return 3, bytes(value)


def lookup_index(store: PageStore, root_page: int, key) -> Iterator[int]:
    """
    Yields the row ids of the index entries whose first column equals key.

    Interior index pages are only descended into where the key may be found,
    so the lookup reads a handful of pages instead of the whole index.
    """
    if key is None:
        return

    target = sort_key(key)
    pending = [root_page]
    visited = set()

    while pending:
        page = load_page(store, pending.pop())
        if page.page_type.is_table:
            raise UnsupportedPageType(
                f"Page {page.number} is a {page.page_type.name} page, "
                f"index b-tree rooted at page {root_page} expected"
            )
        if page.number in visited:
            raise FormatError("Index b-tree visits a page twice", page_number=page.number)
        visited.add(page.number)

        children = []
        reached_greater_key = False
        for cell in page.index_cells():
            record = read_record(read_payload(store, cell), store.text_encoding)
            cell_key = sort_key(record[0])

            if target < cell_key:
                if cell.left_child is not None:
                    children.append(cell.left_child)
                reached_greater_key = True
                break

            if target == cell_key:
                if cell.left_child is not None:
                    children.append(cell.left_child)
                yield record[-1]

        if not reached_greater_key and page.right_most_pointer is not None:
            children.append(page.right_most_pointer)

        pending.extend(reversed(children))

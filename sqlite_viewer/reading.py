import struct
from typing import List, Tuple

from sqlite_viewer.consts import (
    CONTINUATION_BIT,
    LAST_SEVEN_BITS_MASK,
    MAX_VARINT_SIZE,
    UINT64_MASK,
)
from sqlite_viewer.errors import FormatError

# Body sizes of the fixed width serial types
# https://www.sqlite.org/fileformat.html#record_format
FIXED_SERIAL_TYPE_SIZES = {0: 0, 1: 1, 2: 2, 3: 3, 4: 4, 5: 6, 6: 8, 7: 8, 8: 0, 9: 0}


def read_varint(buffer: bytes, offset: int = 0) -> Tuple[int, int]:
    """
    Decodes the varint starting at ``offset``.

    Returns the unsigned 64-bit value and the number of bytes it used.
    https://www.sqlite.org/fileformat.html#varint
    """
    value = 0
    for i in range(MAX_VARINT_SIZE):
        position = offset + i
        if position >= len(buffer):
            raise FormatError("Buffer exhausted in the middle of a varint", offset=offset)

        byte = buffer[position]
        # The 9th byte contributes all of its 8 bits
        if i == MAX_VARINT_SIZE - 1:
            return (value << 8) | byte, MAX_VARINT_SIZE

        # Continue extracting the 7 least significant bits until the most significant bit is 0
        value = (value << 7) | (byte & LAST_SEVEN_BITS_MASK)
        if not byte & CONTINUATION_BIT:
            return value, i + 1

    raise AssertionError("unreachable")


def encode_varint(value: int) -> bytes:
    value &= UINT64_MASK

    # Values over 56 bits need the full 9 bytes, the last one storing 8 bits
    if value > 0x00FF_FFFF_FFFF_FFFF:
        encoded = bytearray([value & 0xFF])
        value >>= 8
        for _ in range(8):
            encoded.insert(0, (value & LAST_SEVEN_BITS_MASK) | CONTINUATION_BIT)
            value >>= 7
        return bytes(encoded)

    encoded = bytearray([value & LAST_SEVEN_BITS_MASK])
    value >>= 7
    while value:
        encoded.insert(0, (value & LAST_SEVEN_BITS_MASK) | CONTINUATION_BIT)
        value >>= 7
    return bytes(encoded)


def to_signed64(value: int) -> int:
    """Rowids are stored as varints but are signed 64-bit integers."""
    if value & (1 << 63):
        return value - (1 << 64)
    return value


def serial_type_size(serial_type: int) -> int:
    if serial_type in FIXED_SERIAL_TYPE_SIZES:
        return FIXED_SERIAL_TYPE_SIZES[serial_type]
    if serial_type >= 12 and serial_type % 2 == 0:
        return (serial_type - 12) // 2
    if serial_type >= 13:
        return (serial_type - 13) // 2

    # 10 and 11 are reserved for internal use
    raise FormatError(f"Unknown serial type {serial_type}")


def read_column_value(
    payload: bytes, offset: int, serial_type: int, encoding: str = "utf-8"
):
    size = serial_type_size(serial_type)
    raw = payload[offset : offset + size]

    if serial_type == 0:
        return None
    elif 1 <= serial_type <= 6:
        return int.from_bytes(raw, "big", signed=True)
    elif serial_type == 7:
        return struct.unpack(">d", raw)[0]
    elif serial_type == 8:
        return 0
    elif serial_type == 9:
        return 1
    elif serial_type % 2 == 0:
        return bytes(raw)

    # Undecodable bytes survive as lone surrogates so text comparison stays byte exact
    errors = "surrogateescape" if encoding == "utf-8" else "replace"
    return raw.decode(encoding, errors)


def read_record(payload: bytes, encoding: str = "utf-8") -> List[any]:
    """
    Decodes a record: a header made of its own size and one serial type per
    column, followed by the column values in the same order.

    Reference record format in https://saveriomiroddi.github.io/SQLIte-database-file-format-diagrams/
    """
    header_size, offset = read_varint(payload)
    if header_size < offset or header_size > len(payload):
        raise FormatError(
            f"Record header size {header_size} does not fit a payload of {len(payload)} bytes"
        )

    header = payload[:header_size]
    serial_types = []
    while offset < header_size:
        serial_type, bytes_used = read_varint(header, offset)
        offset += bytes_used
        serial_types.append(serial_type)

    body_offset = header_size
    values = []
    for serial_type in serial_types:
        size = serial_type_size(serial_type)
        if body_offset + size > len(payload):
            raise FormatError(
                f"Record body too short for serial type {serial_type}",
                offset=body_offset,
            )
        values.append(read_column_value(payload, body_offset, serial_type, encoding))
        body_offset += size

    return values

"""
AMF0 value decoder for FLV script-data (metadata) tags.

Follows the cursor contract used by the demuxer:

    cursor = AMFCursor()
    name = decode(body, cursor)   # advances cursor.offset past one value
    value = decode(body, cursor)

Mapping:
  number -> float, boolean -> bool, string / long string / XML -> str,
  object / ECMA array / typed object -> dict, strict array -> list,
  date -> timezone-aware datetime, null / undefined -> None
"""

import struct
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

# AMF0 type markers
NUMBER = 0x00
BOOLEAN = 0x01
STRING = 0x02
OBJECT = 0x03
MOVIECLIP = 0x04
NULL = 0x05
UNDEFINED = 0x06
REFERENCE = 0x07
ECMA_ARRAY = 0x08
OBJECT_END = 0x09
STRICT_ARRAY = 0x0A
DATE = 0x0B
LONG_STRING = 0x0C
UNSUPPORTED = 0x0D
XML_DOCUMENT = 0x0F
TYPED_OBJECT = 0x10

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# Nesting limit for objects and arrays
MAX_DEPTH = 64


class AMFDecodeError(ValueError):
    """Raised when the buffer does not hold a decodable AMF0 value."""


@dataclass
class AMFCursor:
    """Read position inside an AMF0 buffer."""

    offset: int = 0
    depth: int = 0


def _take(data: bytes, cursor: AMFCursor, size: int) -> bytes:
    end = cursor.offset + size
    if end > len(data):
        raise AMFDecodeError(f"AMF0: need {size} bytes at offset {cursor.offset}, only {len(data) - cursor.offset} left")
    chunk = data[cursor.offset : end]
    cursor.offset = end
    return chunk


def _read_u8(data: bytes, cursor: AMFCursor) -> int:
    return _take(data, cursor, 1)[0]


def _read_u16(data: bytes, cursor: AMFCursor) -> int:
    return struct.unpack(">H", _take(data, cursor, 2))[0]


def _read_u32(data: bytes, cursor: AMFCursor) -> int:
    return struct.unpack(">I", _take(data, cursor, 4))[0]


def _read_double(data: bytes, cursor: AMFCursor) -> float:
    return struct.unpack(">d", _take(data, cursor, 8))[0]


def _read_utf8(data: bytes, cursor: AMFCursor, length: int) -> str:
    raw = _take(data, cursor, length)
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise AMFDecodeError(f"AMF0: invalid UTF-8 string at offset {cursor.offset - length}") from e


def _read_properties(data: bytes, cursor: AMFCursor) -> dict[str, Any]:
    """Read name/value pairs up to and including the object-end marker."""
    result: dict[str, Any] = {}
    while True:
        name = _read_utf8(data, cursor, _read_u16(data, cursor))
        if not name and cursor.offset < len(data) and data[cursor.offset] == OBJECT_END:
            cursor.offset += 1
            return result
        result[name] = decode(data, cursor)


def _decode_container(marker: int, data: bytes, cursor: AMFCursor) -> Any:
    if marker == ECMA_ARRAY:
        # Associative count is a hint only; the end marker terminates
        _read_u32(data, cursor)
    elif marker == TYPED_OBJECT:
        _read_utf8(data, cursor, _read_u16(data, cursor))  # class name
    elif marker == STRICT_ARRAY:
        count = _read_u32(data, cursor)
        return [decode(data, cursor) for _ in range(count)]
    return _read_properties(data, cursor)


def decode(data: bytes, cursor: AMFCursor) -> Any:
    """
    Decode one AMF0 value starting at ``cursor.offset``.

    Advances the cursor past exactly one encoded value.

    Raises:
        AMFDecodeError: On truncated data, unsupported markers or nesting
            deeper than MAX_DEPTH.
    """
    marker = _read_u8(data, cursor)
    if marker in (OBJECT, ECMA_ARRAY, TYPED_OBJECT, STRICT_ARRAY):
        if cursor.depth >= MAX_DEPTH:
            raise AMFDecodeError(f"AMF0: nesting deeper than {MAX_DEPTH} at offset {cursor.offset - 1}")
        cursor.depth += 1
        try:
            return _decode_container(marker, data, cursor)
        finally:
            cursor.depth -= 1

    if marker == NUMBER:
        return _read_double(data, cursor)
    if marker == BOOLEAN:
        return _read_u8(data, cursor) != 0
    if marker == STRING:
        return _read_utf8(data, cursor, _read_u16(data, cursor))
    if marker in (LONG_STRING, XML_DOCUMENT):
        return _read_utf8(data, cursor, _read_u32(data, cursor))
    if marker in (NULL, UNDEFINED):
        return None
    if marker == DATE:
        millis = _read_double(data, cursor)
        _take(data, cursor, 2)  # time zone, reserved and always 0
        try:
            return _EPOCH + timedelta(milliseconds=millis)
        except (OverflowError, ValueError) as e:
            raise AMFDecodeError(f"AMF0: date out of range: {millis}") from e

    raise AMFDecodeError(f"AMF0: unsupported type marker 0x{marker:02X} at offset {cursor.offset - 1}")

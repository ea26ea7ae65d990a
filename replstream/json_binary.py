# -*- coding: utf-8 -*-
"""
Decoder for MySQL's binary JSON column format.

A value is a one-byte type tag followed by a type specific body. Objects
and arrays start with an element count and a byte size, followed by entry
tables that point at each element; offsets are relative to the start of
the container body, so elements can be located without scanning.

    small object/array:  2-byte count, size, offsets
    large object/array:  4-byte count, size, offsets

Object key order is preserved as encoded.
"""

import base64
import struct
from typing import Any, Dict, List

from .exceptions import DecodeError

JSONB_TYPE_SMALL_OBJECT = 0x00
JSONB_TYPE_LARGE_OBJECT = 0x01
JSONB_TYPE_SMALL_ARRAY = 0x02
JSONB_TYPE_LARGE_ARRAY = 0x03
JSONB_TYPE_LITERAL = 0x04
JSONB_TYPE_INT16 = 0x05
JSONB_TYPE_UINT16 = 0x06
JSONB_TYPE_INT32 = 0x07
JSONB_TYPE_UINT32 = 0x08
JSONB_TYPE_INT64 = 0x09
JSONB_TYPE_UINT64 = 0x0A
JSONB_TYPE_DOUBLE = 0x0B
JSONB_TYPE_STRING = 0x0C
JSONB_TYPE_OPAQUE = 0x0F

JSONB_LITERAL_NULL = 0x00
JSONB_LITERAL_TRUE = 0x01
JSONB_LITERAL_FALSE = 0x02

_SCALARS = {
    JSONB_TYPE_INT16: struct.Struct('<h'),
    JSONB_TYPE_UINT16: struct.Struct('<H'),
    JSONB_TYPE_INT32: struct.Struct('<i'),
    JSONB_TYPE_UINT32: struct.Struct('<I'),
    JSONB_TYPE_INT64: struct.Struct('<q'),
    JSONB_TYPE_UINT64: struct.Struct('<Q'),
    JSONB_TYPE_DOUBLE: struct.Struct('<d'),
}

_LITERALS = {
    JSONB_LITERAL_NULL: None,
    JSONB_LITERAL_TRUE: True,
    JSONB_LITERAL_FALSE: False,
}


def decode_json(data: bytes) -> Any:
    """
    Decode a binary JSON column value into Python objects.

    Example:
        >>> decode_json(b'\\x00\\x01\\x00\\x0c\\x00\\x0b\\x00\\x01\\x00\\x05\\x01\\x00a')
        {'a': 1}
    """
    if not data:
        return None
    try:
        return _parse_value(data[0], memoryview(data)[1:], 0)
    except (struct.error, IndexError, UnicodeDecodeError) as e:
        raise DecodeError(f"malformed binary JSON: {e}") from e


def _parse_value(type_tag: int, data: memoryview, offset: int) -> Any:
    if type_tag in (JSONB_TYPE_SMALL_OBJECT, JSONB_TYPE_LARGE_OBJECT):
        return _parse_container(data[offset:], large=type_tag == JSONB_TYPE_LARGE_OBJECT, is_object=True)
    if type_tag in (JSONB_TYPE_SMALL_ARRAY, JSONB_TYPE_LARGE_ARRAY):
        return _parse_container(data[offset:], large=type_tag == JSONB_TYPE_LARGE_ARRAY, is_object=False)
    if type_tag == JSONB_TYPE_LITERAL:
        return _parse_literal(data[offset])
    if type_tag in _SCALARS:
        return _SCALARS[type_tag].unpack_from(data, offset)[0]
    if type_tag == JSONB_TYPE_STRING:
        length, consumed = _read_variable_length(data, offset)
        start = offset + consumed
        _check_bounds(data, start, length)
        return bytes(data[start:start + length]).decode('utf-8')
    if type_tag == JSONB_TYPE_OPAQUE:
        field_type = data[offset]
        length, consumed = _read_variable_length(data, offset + 1)
        start = offset + 1 + consumed
        _check_bounds(data, start, length)
        payload = base64.b64encode(bytes(data[start:start + length])).decode('ascii')
        return f"base64:type{field_type}:{payload}"
    raise DecodeError(f"unknown binary JSON type tag 0x{type_tag:02x}")


def _parse_literal(value: int) -> Any:
    try:
        return _LITERALS[value]
    except KeyError:
        raise DecodeError(f"unknown binary JSON literal 0x{value:02x}") from None


def _check_bounds(data: memoryview, start: int, length: int) -> None:
    if start + length > len(data):
        raise DecodeError(
            f"binary JSON value of {length} bytes at offset {start} "
            f"overruns {len(data)} byte body"
        )


def _read_variable_length(data: memoryview, offset: int):
    """7 bits per byte, high bit set on all but the last byte (max 5 bytes)."""
    length = 0
    for i in range(5):
        byte = data[offset + i]
        length |= (byte & 0x7F) << (7 * i)
        if not byte & 0x80:
            return length, i + 1
    raise DecodeError("binary JSON string length longer than 5 bytes")


def _inlined(type_tag: int, large: bool) -> bool:
    if type_tag in (JSONB_TYPE_LITERAL, JSONB_TYPE_INT16, JSONB_TYPE_UINT16):
        return True
    return large and type_tag in (JSONB_TYPE_INT32, JSONB_TYPE_UINT32)


def _parse_container(data: memoryview, large: bool, is_object: bool):
    offset_size = 4 if large else 2
    fmt = struct.Struct('<I' if large else '<H')
    count = fmt.unpack_from(data, 0)[0]
    size = fmt.unpack_from(data, offset_size)[0]
    if size > len(data):
        raise DecodeError(f"binary JSON container declares {size} bytes, only {len(data)} present")

    position = 2 * offset_size
    keys: List[str] = []
    if is_object:
        for _ in range(count):
            key_offset = fmt.unpack_from(data, position)[0]
            (key_length,) = struct.unpack_from('<H', data, position + offset_size)
            _check_bounds(data, key_offset, key_length)
            keys.append(bytes(data[key_offset:key_offset + key_length]).decode('utf-8'))
            position += offset_size + 2

    values = []
    for _ in range(count):
        type_tag = data[position]
        if _inlined(type_tag, large):
            values.append(_parse_value(type_tag, data, position + 1))
        else:
            value_offset = fmt.unpack_from(data, position + 1)[0]
            if value_offset >= size:
                raise DecodeError(f"binary JSON value offset {value_offset} outside container of {size} bytes")
            values.append(_parse_value(type_tag, data, value_offset))
        position += 1 + offset_size

    if is_object:
        result: Dict[str, Any] = {}
        for key, value in zip(keys, values):
            result[key] = value
        return result
    return values

# -*- coding: utf-8 -*-
"""
Builders for protocol packets and binlog events used by the tests.

Everything here encodes; the package under test decodes.
"""

import struct
import uuid
import zlib

from replstream.binary_reader import bitmap_from_list, length_coded_binary
from replstream.events import EventType

HEADER = struct.Struct('<IBIIIH')
DEFAULT_SALT = bytes(range(1, 21))
SERVER_ID = 1


# ============================================================================
# Client/server protocol packets
# ============================================================================

def greeting(server_version="8.0.33", connection_id=7, salt=DEFAULT_SALT,
             capabilities=0xFFFFF7FF, auth_plugin="mysql_native_password"):
    return (
        b'\x0a'
        + server_version.encode() + b'\x00'
        + struct.pack('<I', connection_id)
        + salt[:8] + b'\x00'
        + struct.pack('<H', capabilities & 0xFFFF)
        + b'\xff'  # utf8mb4_0900_ai_ci
        + struct.pack('<H', 2)
        + struct.pack('<H', capabilities >> 16)
        + bytes([len(salt) + 1])
        + b'\x00' * 10
        + salt[8:] + b'\x00'
        + auth_plugin.encode() + b'\x00'
    )


def ok_packet():
    return b'\x00\x00\x00\x02\x00\x00\x00'


def err_packet(code=1045, message="Access denied", sql_state="28000"):
    return b'\xff' + struct.pack('<H', code) + b'#' + sql_state.encode() + message.encode()


def eof_packet():
    return b'\xfe\x00\x00\x02\x00'


# ============================================================================
# Events
# ============================================================================

def event(type_code, body=b'', log_pos=0, timestamp=1700000000, server_id=SERVER_ID,
          flags=0, checksum=False):
    """Header + body (+ CRC32)."""
    size = HEADER.size + len(body) + (4 if checksum else 0)
    data = HEADER.pack(timestamp, int(type_code), server_id, size, log_pos, flags) + body
    if checksum:
        data += struct.pack('<I', zlib.crc32(data) & 0xFFFFFFFF)
    return data


def stream_packet(event_bytes):
    return b'\x00' + event_bytes


def format_description(server_version="8.0.33", checksum=False, log_pos=126):
    body = (
        struct.pack('<H', 4)
        + server_version.encode().ljust(50, b'\x00')
        + struct.pack('<I', 0)
        + bytes([19])
        + b'\x00' * 40  # post-header lengths
        + bytes([1 if checksum else 0])
    )
    if checksum:
        return event(EventType.FORMAT_DESCRIPTION_EVENT, body, log_pos=log_pos, checksum=True)
    return event(EventType.FORMAT_DESCRIPTION_EVENT, body + b'\x00' * 4, log_pos=log_pos)


def rotate(next_binlog="mysql-bin.000001", position=4, log_pos=0, checksum=False):
    body = struct.pack('<Q', position) + next_binlog.encode()
    return event(EventType.ROTATE_EVENT, body, log_pos=log_pos, flags=0x20, checksum=checksum)


def query(sql, schema="shop", log_pos=0, checksum=False):
    body = (
        struct.pack('<IIBHH', 11, 0, len(schema), 0, 0)
        + schema.encode() + b'\x00'
        + sql.encode()
    )
    return event(EventType.QUERY_EVENT, body, log_pos=log_pos, checksum=checksum)


def xid(xid_value=99, log_pos=0, checksum=False):
    return event(EventType.XID_EVENT, struct.pack('<Q', xid_value), log_pos=log_pos, checksum=checksum)


def xa_prepare(gtrid=b'trx-1', bqual=b'', format_id=1, one_phase=False, log_pos=0, checksum=False):
    body = struct.pack('<BIII', int(one_phase), format_id, len(gtrid), len(bqual)) + gtrid + bqual
    return event(EventType.XA_PREPARE_LOG_EVENT, body, log_pos=log_pos, checksum=checksum)


def gtid(sid, gno, log_pos=0, checksum=False, anonymous=False):
    body = (
        b'\x01'
        + uuid.UUID(sid).bytes
        + struct.pack('<Q', gno)
        + b'\x02'
        + struct.pack('<QQ', gno - 1, gno)
    )
    type_code = EventType.ANONYMOUS_GTID_LOG_EVENT if anonymous else EventType.GTID_LOG_EVENT
    return event(type_code, body, log_pos=log_pos, checksum=checksum)


def heartbeat(log_file="mysql-bin.000001", log_pos=0):
    return event(EventType.HEARTBEAT_LOG_EVENT, log_file.encode(), log_pos=log_pos)


def table_map(table_id, schema, table, column_types, metadata=b'', nullable=None,
              log_pos=0, checksum=False):
    nullable = nullable if nullable is not None else [True] * len(column_types)
    body = (
        table_id.to_bytes(6, 'little')
        + struct.pack('<H', 1)
        + bytes([len(schema)]) + schema.encode() + b'\x00'
        + bytes([len(table)]) + table.encode() + b'\x00'
        + length_coded_binary(len(column_types))
        + bytes(column_types)
        + length_coded_binary(len(metadata)) + metadata
        + bitmap_from_list(nullable)
    )
    return event(EventType.TABLE_MAP_EVENT, body, log_pos=log_pos, checksum=checksum)


def row_image(values, present=None):
    """
    ``values`` holds one already-encoded bytes value, or None for NULL,
    per present column.
    """
    nulls = [value is None for value in values]
    return bitmap_from_list(nulls) + b''.join(v for v in values if v is not None)


def rows(type_code, table_id, column_count, images, present=None, present_after=None,
         log_pos=0, checksum=False):
    """Rows event body; v2 type codes get an empty extra-data block."""
    present = present if present is not None else [True] * column_count
    body = table_id.to_bytes(6, 'little') + struct.pack('<H', 1)
    if type_code in (EventType.WRITE_ROWS_EVENT_V2, EventType.UPDATE_ROWS_EVENT_V2,
                     EventType.DELETE_ROWS_EVENT_V2):
        body += struct.pack('<H', 2)
    body += length_coded_binary(column_count)
    body += bitmap_from_list(present)
    if type_code in (EventType.UPDATE_ROWS_EVENT_V1, EventType.UPDATE_ROWS_EVENT_V2):
        body += bitmap_from_list(present_after if present_after is not None else present)
    body += b''.join(images)
    return event(type_code, body, log_pos=log_pos, checksum=checksum)


# ============================================================================
# Column values
# ============================================================================

def int32(value):
    return struct.pack('<i', value)


def varchar(text, max_length=20):
    raw = text.encode('utf-8')
    prefix = bytes([len(raw)]) if max_length < 256 else struct.pack('<H', len(raw))
    return prefix + raw


def blob(raw, length_bytes=4):
    return len(raw).to_bytes(length_bytes, 'little') + raw


# ============================================================================
# Binary JSON
# ============================================================================

JSONB_SMALL_OBJECT = 0x00
JSONB_SMALL_ARRAY = 0x02
JSONB_LITERAL = 0x04
JSONB_INT16 = 0x05
JSONB_INT32 = 0x07
JSONB_INT64 = 0x09
JSONB_DOUBLE = 0x0B
JSONB_STRING = 0x0C

_INLINE = (JSONB_LITERAL, JSONB_INT16)


def _varlen(length):
    out = bytearray()
    while True:
        byte = length & 0x7F
        length >>= 7
        if length:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _encode(value):
    if value is None:
        return JSONB_LITERAL, b'\x00'
    if value is True:
        return JSONB_LITERAL, b'\x01'
    if value is False:
        return JSONB_LITERAL, b'\x02'
    if isinstance(value, int):
        if -2 ** 15 <= value < 2 ** 15:
            return JSONB_INT16, struct.pack('<h', value)
        if -2 ** 31 <= value < 2 ** 31:
            return JSONB_INT32, struct.pack('<i', value)
        return JSONB_INT64, struct.pack('<q', value)
    if isinstance(value, float):
        return JSONB_DOUBLE, struct.pack('<d', value)
    if isinstance(value, str):
        raw = value.encode('utf-8')
        return JSONB_STRING, _varlen(len(raw)) + raw
    if isinstance(value, list):
        return JSONB_SMALL_ARRAY, _container([(None, v) for v in value], is_object=False)
    if isinstance(value, dict):
        return JSONB_SMALL_OBJECT, _container(list(value.items()), is_object=True)
    raise TypeError(f"cannot encode {value!r}")


def _container(items, is_object):
    count = len(items)
    header_size = 4 + (4 * count if is_object else 0) + 3 * count
    keys = [key.encode('utf-8') for key, _ in items] if is_object else []

    key_entries = b''
    offset = header_size
    for key in keys:
        key_entries += struct.pack('<HH', offset, len(key))
        offset += len(key)

    value_entries = b''
    data = b''
    for _, value in items:
        type_tag, encoded = _encode(value)
        if type_tag in _INLINE:
            value_entries += bytes([type_tag]) + encoded.ljust(2, b'\x00')
        else:
            value_entries += bytes([type_tag]) + struct.pack('<H', offset + len(data))
            data += encoded

    size = header_size + sum(len(k) for k in keys) + len(data)
    return struct.pack('<HH', count, size) + key_entries + value_entries + b''.join(keys) + data


def encode_json(value):
    type_tag, encoded = _encode(value)
    return bytes([type_tag]) + encoded

# -*- coding: utf-8 -*-
"""
Row image decoding.

A TableMap event declares each column's type code and a few bytes of
type metadata (string lengths, decimal precision, fractional second
precision ...). Row events then carry, per row, a null bitmap followed by
the packed values of the present, non-null columns. This module reads
the metadata block and decodes row images against a TableMapEntry.
"""

import datetime
import decimal
import struct
from enum import IntEnum
from typing import Any, Callable, Dict, List, Optional, Sequence

from pymysql.charset import charset_by_name

from .binary_reader import BinaryReader
from .events import RowImage
from .exceptions import DecodeError, ProtocolError
from .json_binary import decode_json
from .table_cache import ColumnDescriptor, TableMapEntry


class ColumnType(IntEnum):
    """Column type codes used in TableMap events."""
    DECIMAL = 0
    TINY = 1
    SHORT = 2
    LONG = 3
    FLOAT = 4
    DOUBLE = 5
    NULL = 6
    TIMESTAMP = 7
    LONGLONG = 8
    INT24 = 9
    DATE = 10
    TIME = 11
    DATETIME = 12
    YEAR = 13
    NEWDATE = 14
    VARCHAR = 15
    BIT = 16
    TIMESTAMP2 = 17
    DATETIME2 = 18
    TIME2 = 19
    JSON = 245
    NEWDECIMAL = 246
    ENUM = 247
    SET = 248
    TINY_BLOB = 249
    MEDIUM_BLOB = 250
    LONG_BLOB = 251
    BLOB = 252
    VAR_STRING = 253
    STRING = 254
    GEOMETRY = 255


# ============================================================================
# TableMap metadata
# ============================================================================

_ONE_BYTE_METADATA = {
    ColumnType.FLOAT, ColumnType.DOUBLE,
    ColumnType.TINY_BLOB, ColumnType.MEDIUM_BLOB, ColumnType.LONG_BLOB, ColumnType.BLOB,
    ColumnType.GEOMETRY, ColumnType.JSON,
    ColumnType.TIMESTAMP2, ColumnType.DATETIME2, ColumnType.TIME2,
}


def read_column_metadata(reader: BinaryReader, column_types: Sequence[int]) -> List[Any]:
    """
    Parse the TableMap metadata block, one entry per column.

    STRING columns encode their real type (ENUM, SET or STRING) in the
    first byte and fold two bits of the maximum length into it; the entry
    for them is ``(real_type, max_length)``.
    """
    metadata: List[Any] = []
    for type_code in column_types:
        if type_code in _ONE_BYTE_METADATA:
            metadata.append(reader.read_uint8())
        elif type_code in (ColumnType.VARCHAR, ColumnType.VAR_STRING):
            metadata.append(reader.read_uint16())
        elif type_code == ColumnType.BIT:
            bits = reader.read_uint8()
            nbytes = reader.read_uint8()
            metadata.append(nbytes * 8 + bits)
        elif type_code == ColumnType.NEWDECIMAL:
            precision = reader.read_uint8()
            scale = reader.read_uint8()
            metadata.append((precision, scale))
        elif type_code in (ColumnType.STRING, ColumnType.ENUM, ColumnType.SET):
            real_type = reader.read_uint8()
            length = reader.read_uint8()
            if real_type and (real_type & 0x30) != 0x30:
                length |= ((real_type & 0x30) ^ 0x30) << 4
                real_type |= 0x30
            metadata.append((real_type, length))
        else:
            metadata.append(0)
    return metadata


# ============================================================================
# Value decoders
# ============================================================================

DIG_PER_DEC = 9
COMPRESSED_BYTES = [0, 1, 1, 2, 2, 3, 3, 4, 4, 4]

TIMEF_INT_OFS = 0x800000
TIMEF_OFS = 0x800000000000
DATETIMEF_INT_OFS = 0x8000000000


def _python_encoding(charset: Optional[str]) -> Optional[str]:
    if not charset or charset == 'binary':
        return None
    info = charset_by_name(charset)
    return info.encoding if info is not None else 'utf-8'


def _text(raw: bytes, column: ColumnDescriptor) -> Any:
    encoding = _python_encoding(column.charset)
    if encoding is None:
        return raw
    return raw.decode(encoding, 'surrogateescape')


def _int_reader(size: int) -> Callable[[BinaryReader, ColumnDescriptor], int]:
    def read(reader: BinaryReader, column: ColumnDescriptor) -> int:
        if column.unsigned:
            return reader.read_uint(size)
        return reader.read_int(size)
    return read


def _read_year(reader: BinaryReader, column: ColumnDescriptor) -> Optional[int]:
    year = reader.read_uint8()
    return 1900 + year if year else None


def _read_float(reader: BinaryReader, column: ColumnDescriptor) -> float:
    return reader.read_float()


def _read_double(reader: BinaryReader, column: ColumnDescriptor) -> float:
    return reader.read_double()


def _read_newdecimal(reader: BinaryReader, column: ColumnDescriptor) -> decimal.Decimal:
    precision, scale = column.metadata
    integral = precision - scale
    uncomp_integral = integral // DIG_PER_DEC
    uncomp_fractional = scale // DIG_PER_DEC
    comp_integral = integral - uncomp_integral * DIG_PER_DEC
    comp_fractional = scale - uncomp_fractional * DIG_PER_DEC

    size = (uncomp_integral * 4 + COMPRESSED_BYTES[comp_integral]
            + uncomp_fractional * 4 + COMPRESSED_BYTES[comp_fractional])
    raw = bytearray(reader.read(size))
    if not raw:
        return decimal.Decimal(0)

    # The sign lives in the high bit of the first byte; negatives are stored inverted
    negative = not raw[0] & 0x80
    raw[0] ^= 0x80
    digits = BinaryReader(bytes(raw))

    def chunk(nbytes: int) -> int:
        value = digits.read_uint_be(nbytes)
        if negative:
            value ^= (1 << (8 * nbytes)) - 1
        return value

    text = "-" if negative else ""
    if comp_integral:
        text += str(chunk(COMPRESSED_BYTES[comp_integral]))
    for _ in range(uncomp_integral):
        text += f"{chunk(4):09d}"
    if text in ("", "-"):
        text += "0"
    if scale:
        text += "."
        for _ in range(uncomp_fractional):
            text += f"{chunk(4):09d}"
        if comp_fractional:
            text += str(chunk(COMPRESSED_BYTES[comp_fractional])).zfill(comp_fractional)
    return decimal.Decimal(text)


def _read_varchar(reader: BinaryReader, column: ColumnDescriptor) -> Any:
    length = reader.read_uint8() if column.metadata < 256 else reader.read_uint16()
    return _text(reader.read(length), column)


def _read_string(reader: BinaryReader, column: ColumnDescriptor) -> Any:
    real_type, max_length = column.metadata
    if real_type == ColumnType.ENUM:
        index = reader.read_uint(max_length)
        if index == 0 or not column.labels:
            return '' if index == 0 else index
        return column.labels[index - 1]
    if real_type == ColumnType.SET:
        mask = reader.read_uint(max_length)
        if not column.labels:
            return mask
        return {label for bit, label in enumerate(column.labels) if mask & (1 << bit)}
    length = reader.read_uint8() if max_length < 256 else reader.read_uint16()
    return _text(reader.read(length), column)


def _read_bit(reader: BinaryReader, column: ColumnDescriptor) -> int:
    return reader.read_uint_be((column.metadata + 7) // 8)


def _read_blob(reader: BinaryReader, column: ColumnDescriptor) -> Any:
    raw = reader.read(reader.read_uint(column.metadata))
    return _text(raw, column)


def _read_geometry(reader: BinaryReader, column: ColumnDescriptor) -> bytes:
    return reader.read(reader.read_uint(column.metadata))


def _make_date(year: int, month: int, day: int) -> Optional[datetime.date]:
    try:
        return datetime.date(year, month, day)
    except ValueError:
        # zero dates such as 0000-00-00 have no Python equivalent
        return None


def _make_datetime(year, month, day, hour, minute, second, microsecond=0) -> Optional[datetime.datetime]:
    try:
        return datetime.datetime(year, month, day, hour, minute, second, microsecond)
    except ValueError:
        return None


def _read_fraction(reader: BinaryReader, fsp: int) -> int:
    """Fractional seconds stored big-endian in (fsp + 1) // 2 bytes, as microseconds."""
    nbytes = (fsp + 1) // 2
    if not nbytes:
        return 0
    return reader.read_uint_be(nbytes) * 100 ** (3 - nbytes)


def _read_date(reader: BinaryReader, column: ColumnDescriptor) -> Optional[datetime.date]:
    value = reader.read_uint24()
    return _make_date(value >> 9, (value >> 5) & 0x0F, value & 0x1F)


def _read_time(reader: BinaryReader, column: ColumnDescriptor) -> datetime.timedelta:
    value = reader.read_int(3)
    sign = -1 if value < 0 else 1
    value = abs(value)
    return sign * datetime.timedelta(hours=value // 10000, minutes=(value % 10000) // 100, seconds=value % 100)


def _read_time2(reader: BinaryReader, column: ColumnDescriptor) -> datetime.timedelta:
    """
    TIME(fsp): 3 bytes of packed hour/minute/second biased by TIMEF_INT_OFS,
    then 0-3 bytes of fraction. Negative values borrow from the fraction.
    """
    fsp = column.metadata
    if fsp >= 5:
        packed = reader.read_uint_be(6) - TIMEF_OFS
    else:
        intpart = reader.read_uint_be(3) - TIMEF_INT_OFS
        frac = 0
        if fsp in (1, 2):
            frac = reader.read_uint8()
            if intpart < 0 and frac:
                intpart += 1
                frac -= 0x100
            frac *= 10000
        elif fsp in (3, 4):
            frac = reader.read_uint_be(2)
            if intpart < 0 and frac:
                intpart += 1
                frac -= 0x10000
            frac *= 100
        packed = (intpart << 24) + frac

    negative = packed < 0
    packed = abs(packed)
    hms = packed >> 24
    microseconds = packed % (1 << 24)
    delta = datetime.timedelta(
        hours=(hms >> 12) % (1 << 10),
        minutes=(hms >> 6) % (1 << 6),
        seconds=hms % (1 << 6),
        microseconds=microseconds,
    )
    return -delta if negative else delta


def _read_datetime(reader: BinaryReader, column: ColumnDescriptor) -> Optional[datetime.datetime]:
    value = reader.read_uint64()
    date, time = divmod(value, 1000000)
    return _make_datetime(
        date // 10000, (date % 10000) // 100, date % 100,
        time // 10000, (time % 10000) // 100, time % 100,
    )


def _read_datetime2(reader: BinaryReader, column: ColumnDescriptor) -> Optional[datetime.datetime]:
    """
    DATETIME(fsp), 5 bytes big-endian:

        1 bit sign, 17 bits year*13+month, 5 bits day,
        5 bits hour, 6 bits minute, 6 bits second
    """
    packed = reader.read_uint_be(5) - DATETIMEF_INT_OFS
    microsecond = _read_fraction(reader, column.metadata)
    ymd = packed >> 17
    hms = packed % (1 << 17)
    year_month = ymd >> 5
    return _make_datetime(
        year_month // 13, year_month % 13, ymd % (1 << 5),
        hms >> 12, (hms >> 6) % (1 << 6), hms % (1 << 6),
        microsecond,
    )


def _read_timestamp(reader: BinaryReader, column: ColumnDescriptor) -> Optional[datetime.datetime]:
    seconds = reader.read_uint32()
    if not seconds:
        return None
    return datetime.datetime.fromtimestamp(seconds, tz=datetime.timezone.utc)


def _read_timestamp2(reader: BinaryReader, column: ColumnDescriptor) -> Optional[datetime.datetime]:
    seconds = reader.read_uint_be(4)
    microsecond = _read_fraction(reader, column.metadata)
    if not seconds and not microsecond:
        return None
    return datetime.datetime.fromtimestamp(seconds, tz=datetime.timezone.utc).replace(microsecond=microsecond)


def _read_null(reader: BinaryReader, column: ColumnDescriptor) -> None:
    return None


_DECODERS: Dict[int, Callable[[BinaryReader, ColumnDescriptor], Any]] = {
    ColumnType.TINY: _int_reader(1),
    ColumnType.SHORT: _int_reader(2),
    ColumnType.INT24: _int_reader(3),
    ColumnType.LONG: _int_reader(4),
    ColumnType.LONGLONG: _int_reader(8),
    ColumnType.YEAR: _read_year,
    ColumnType.FLOAT: _read_float,
    ColumnType.DOUBLE: _read_double,
    ColumnType.NEWDECIMAL: _read_newdecimal,
    ColumnType.VARCHAR: _read_varchar,
    ColumnType.VAR_STRING: _read_varchar,
    ColumnType.STRING: _read_string,
    ColumnType.ENUM: _read_string,
    ColumnType.SET: _read_string,
    ColumnType.BIT: _read_bit,
    ColumnType.TINY_BLOB: _read_blob,
    ColumnType.MEDIUM_BLOB: _read_blob,
    ColumnType.LONG_BLOB: _read_blob,
    ColumnType.BLOB: _read_blob,
    ColumnType.GEOMETRY: _read_geometry,
    ColumnType.DATE: _read_date,
    ColumnType.NEWDATE: _read_date,
    ColumnType.TIME: _read_time,
    ColumnType.TIME2: _read_time2,
    ColumnType.DATETIME: _read_datetime,
    ColumnType.DATETIME2: _read_datetime2,
    ColumnType.TIMESTAMP: _read_timestamp,
    ColumnType.TIMESTAMP2: _read_timestamp2,
    ColumnType.NULL: _read_null,
}


def read_value(reader: BinaryReader, column: ColumnDescriptor) -> Any:
    """Decode one non-null column value."""
    decoder = _DECODERS.get(column.type_code)
    if decoder is None:
        raise DecodeError(f"cannot decode column {column.name!r} of type {column.type_code}")
    return decoder(reader, column)


def decode_row_image(reader: BinaryReader, entry: TableMapEntry, present: Sequence[bool]) -> RowImage:
    """
    Decode one row image.

    ``present`` has one flag per declared column; absent columns are
    skipped entirely. The null bitmap that starts the image has one bit
    per present column.
    """
    if len(present) != len(entry.columns):
        raise DecodeError(
            f"{entry.qualified_name}: row has {len(present)} columns, "
            f"table map has {len(entry.columns)}"
        )

    start = reader.offset
    try:
        nulls = reader.read_bitmap(sum(present))
    except DecodeError as e:
        raise ProtocolError(f"{entry.qualified_name}: truncated null bitmap") from e

    names = []
    values = []
    null_index = 0
    for column, is_present in zip(entry.columns, present):
        if not is_present:
            continue
        is_null = nulls[null_index]
        null_index += 1
        names.append(column.name)
        if is_null:
            values.append(None)
            continue

        try:
            if column.type_code == ColumnType.JSON:
                raw_json = reader.read(reader.read_uint(column.metadata))
            else:
                values.append(read_value(reader, column))
                continue
        except (DecodeError, struct.error) as e:
            raise ProtocolError(
                f"{entry.qualified_name}.{column.name}: row image overruns event "
                f"at offset {start}; table metadata is probably stale ({e})"
            ) from e
        values.append(decode_json(raw_json))

    return RowImage(tuple(names), tuple(values))

# -*- coding: utf-8 -*-
"""Little-endian cursor over an event body."""

import struct
from typing import List

from .exceptions import DecodeError

NULL_COLUMN = 251
UNSIGNED_SHORT_COLUMN = 252
UNSIGNED_INT24_COLUMN = 253
UNSIGNED_INT64_COLUMN = 254


class BinaryReader:
    """
    Sequential reader over a bytes buffer.

    Every read checks the remaining length first; reading past the end
    raises DecodeError instead of returning short data.
    """

    def __init__(self, data: bytes, offset: int = 0):
        self.data = data
        self.offset = offset

    def __len__(self):
        return len(self.data)

    @property
    def remaining(self) -> int:
        return len(self.data) - self.offset

    def read(self, n: int) -> bytes:
        if n < 0 or self.offset + n > len(self.data):
            raise DecodeError(
                f"read of {n} bytes at offset {self.offset} overruns "
                f"buffer of {len(self.data)} bytes"
            )
        chunk = self.data[self.offset:self.offset + n]
        self.offset += n
        return chunk

    def skip(self, n: int) -> None:
        self.read(n)

    def read_rest(self) -> bytes:
        return self.read(self.remaining)

    def peek_uint8(self) -> int:
        if self.remaining < 1:
            raise DecodeError(f"peek at offset {self.offset} overruns buffer")
        return self.data[self.offset]

    def read_uint(self, n: int) -> int:
        return int.from_bytes(self.read(n), 'little', signed=False)

    def read_int(self, n: int) -> int:
        return int.from_bytes(self.read(n), 'little', signed=True)

    def read_uint_be(self, n: int) -> int:
        return int.from_bytes(self.read(n), 'big', signed=False)

    def read_uint8(self) -> int:
        return self.read_uint(1)

    def read_uint16(self) -> int:
        return self.read_uint(2)

    def read_uint24(self) -> int:
        return self.read_uint(3)

    def read_uint32(self) -> int:
        return self.read_uint(4)

    def read_uint48(self) -> int:
        return self.read_uint(6)

    def read_uint64(self) -> int:
        return self.read_uint(8)

    def read_float(self) -> float:
        return struct.unpack('<f', self.read(4))[0]

    def read_double(self) -> float:
        return struct.unpack('<d', self.read(8))[0]

    def read_length_coded_binary(self) -> int:
        """
        Packed integer:
            0-250  the value itself
            252    two more bytes
            253    three more bytes
            254    eight more bytes
        """
        first = self.read_uint8()
        if first < NULL_COLUMN:
            return first
        if first == UNSIGNED_SHORT_COLUMN:
            return self.read_uint16()
        if first == UNSIGNED_INT24_COLUMN:
            return self.read_uint24()
        if first == UNSIGNED_INT64_COLUMN:
            return self.read_uint64()
        raise DecodeError(f"invalid packed integer prefix 0x{first:02x}")

    def read_length_coded_string(self) -> bytes:
        return self.read(self.read_length_coded_binary())

    def read_null_terminated(self) -> bytes:
        end = self.data.find(b'\x00', self.offset)
        if end < 0:
            raise DecodeError(f"unterminated string at offset {self.offset}")
        value = self.data[self.offset:end]
        self.offset = end + 1
        return value

    def read_bitmap(self, bits: int) -> List[bool]:
        """Read a bitmap of ``bits`` bits, least significant bit first."""
        raw = self.read((bits + 7) // 8)
        return bitmap_to_list(raw, bits)


def bitmap_to_list(raw: bytes, bits: int) -> List[bool]:
    return [bool(raw[i >> 3] & (1 << (i & 7))) for i in range(bits)]


def bitmap_from_list(flags: List[bool]) -> bytes:
    out = bytearray((len(flags) + 7) // 8)
    for i, flag in enumerate(flags):
        if flag:
            out[i >> 3] |= 1 << (i & 7)
    return bytes(out)


def length_coded_binary(value: int) -> bytes:
    """Encode an integer in the packed length format."""
    if value < NULL_COLUMN:
        return bytes([value])
    if value < (1 << 16):
        return bytes([UNSIGNED_SHORT_COLUMN]) + value.to_bytes(2, 'little')
    if value < (1 << 24):
        return bytes([UNSIGNED_INT24_COLUMN]) + value.to_bytes(3, 'little')
    return bytes([UNSIGNED_INT64_COLUMN]) + value.to_bytes(8, 'little')

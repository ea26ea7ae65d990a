# -*- coding: utf-8 -*-
"""
Event decoding.

Turns stream packets into BinlogEvent objects:

    packet status byte  ->  19-byte header  ->  body (minus checksum)  ->  payload

The body decoder is selected purely by type code; type codes without a
decoder produce UnknownEvent. The checksum expectation starts from the
server capabilities and is fixed for the session by the first
FormatDescription event.
"""

import logging
import uuid
import zlib
from typing import Callable, Dict, Optional, Set

from .binary_reader import BinaryReader
from .events import (
    AnonymousGtidEvent,
    BinlogEvent,
    DeleteRowsEvent,
    EventHeader,
    EventType,
    FormatDescriptionEvent,
    GtidEvent,
    HeartbeatEvent,
    QueryEvent,
    RotateEvent,
    RowChange,
    RowsEvent,
    TableMapEvent,
    UnknownEvent,
    UpdateRowsEvent,
    WriteRowsEvent,
    XaPrepareEvent,
    XidEvent,
)
from .exceptions import DecodeError, ProtocolError, TransportError
from .gtid import Gtid
from .handshake import EOF_PACKET, ERR_PACKET, OK_PACKET, parse_error
from .rows import decode_row_image, read_column_metadata
from .table_cache import TableMetadataCache
from .table_patterns import EventFilter

logger = logging.getLogger(__name__)

CHECKSUM_SIZE = 4
BINLOG_CHECKSUM_ALG_OFF = 0
BINLOG_CHECKSUM_ALG_CRC32 = 1
BINLOG_CHECKSUM_ALG_UNDEF = 255

# Servers from 5.6.1 on append the checksum algorithm to the FormatDescription body
CHECKSUM_VERSION = (5, 6, 1)
SERVER_VERSION_LENGTH = 50

# Events the server may send before its FormatDescription
_BEFORE_FORMAT = {
    EventType.ROTATE_EVENT,
    EventType.FORMAT_DESCRIPTION_EVENT,
    EventType.HEARTBEAT_LOG_EVENT,
    EventType.HEARTBEAT_LOG_EVENT_V2,
}

_ROWS_EVENTS = {
    EventType.WRITE_ROWS_EVENT_V1: (WriteRowsEvent, False),
    EventType.UPDATE_ROWS_EVENT_V1: (UpdateRowsEvent, False),
    EventType.DELETE_ROWS_EVENT_V1: (DeleteRowsEvent, False),
    EventType.WRITE_ROWS_EVENT_V2: (WriteRowsEvent, True),
    EventType.UPDATE_ROWS_EVENT_V2: (UpdateRowsEvent, True),
    EventType.DELETE_ROWS_EVENT_V2: (DeleteRowsEvent, True),
}

# Heartbeat v2 fields
HEARTBEAT_LOG_FILENAME = 0
HEARTBEAT_LOG_POSITION = 1


def _version_tuple(version: str):
    parts = []
    for piece in version.split('-', 1)[0].split('.')[:3]:
        digits = ''.join(ch for ch in piece if ch.isdigit())
        parts.append(int(digits) if digits else 0)
    return tuple(parts + [0] * (3 - len(parts)))


class EventDecoder:
    """
    Decodes binlog event packets for one streaming session.

    Example:
        >>> decoder = EventDecoder(TableMetadataCache(repository), checksum=False)
        >>> event = decoder.decode_packet(transport.read_packet())
        >>> event.kind
        <EventKind.ROTATE: 'rotate'>
    """

    def __init__(
        self,
        table_cache: TableMetadataCache,
        event_filter: Optional[EventFilter] = None,
        checksum: bool = False,
        verify_checksum: bool = True,
    ):
        self.table_cache = table_cache
        self.event_filter = event_filter or EventFilter()
        self.verify_checksum = verify_checksum
        self.checksum = checksum
        self.format_description: Optional[FormatDescriptionEvent] = None
        self.in_transaction = False
        self._session_tables: Set[int] = set()
        self._body_decoders: Dict[int, Callable[[EventHeader, BinaryReader], object]] = {
            EventType.FORMAT_DESCRIPTION_EVENT: self._decode_format_description,
            EventType.ROTATE_EVENT: self._decode_rotate,
            EventType.QUERY_EVENT: self._decode_query,
            EventType.TABLE_MAP_EVENT: self._decode_table_map,
            EventType.XID_EVENT: self._decode_xid,
            EventType.XA_PREPARE_LOG_EVENT: self._decode_xa_prepare,
            EventType.GTID_LOG_EVENT: self._decode_gtid,
            EventType.ANONYMOUS_GTID_LOG_EVENT: self._decode_gtid,
            EventType.HEARTBEAT_LOG_EVENT: self._decode_heartbeat,
            EventType.HEARTBEAT_LOG_EVENT_V2: self._decode_heartbeat_v2,
        }
        for type_code in _ROWS_EVENTS:
            self._body_decoders[type_code] = self._decode_rows

    def reset(self, checksum: bool) -> None:
        """
        Start a new session.

        The next FormatDescription is required again, the dump resumes
        outside any transaction and rows events need a TableMap from this
        session before they can be decoded.
        """
        self.checksum = checksum
        self.format_description = None
        self.in_transaction = False
        self._session_tables.clear()

    # ------------------------------------------------------------------------
    # Framing
    # ------------------------------------------------------------------------

    def decode_packet(self, packet: bytes) -> BinlogEvent:
        """Decode one packet read from a streaming connection."""
        if not packet:
            raise ProtocolError("empty packet in binlog stream")
        status = packet[0]
        if status == ERR_PACKET:
            raise parse_error(packet)
        if status == EOF_PACKET and len(packet) < 9:
            raise TransportError("server ended the binlog stream")
        if status != OK_PACKET:
            raise ProtocolError(f"unexpected packet 0x{status:02x} in binlog stream")
        return self.decode_event(packet[1:])

    def decode_event(self, data: bytes) -> BinlogEvent:
        header = EventHeader.parse(data)
        if header.event_size < EventHeader.SIZE or header.event_size > len(data):
            raise ProtocolError(
                f"event declares {header.event_size} bytes, packet has {len(data)}"
            )
        data = data[:header.event_size]

        if self.format_description is None and header.type_code not in _BEFORE_FORMAT:
            raise ProtocolError(
                f"event type {header.type_code} arrived before the format description"
            )

        if header.type_code == EventType.FORMAT_DESCRIPTION_EVENT:
            body = data[EventHeader.SIZE:]
        else:
            body = self._strip_checksum(header, data)

        decoder = self._body_decoders.get(header.type_code)
        reader = BinaryReader(body)
        if decoder is None:
            payload = UnknownEvent(header.type_code, body)
        else:
            payload = decoder(header, reader)

        if header.type_code == EventType.FORMAT_DESCRIPTION_EVENT:
            self._apply_format_description(payload, data)

        logger.debug(f"Decoded {payload.kind.value} event at log_pos {header.log_pos}")
        return BinlogEvent(header, payload, ends_transaction=self._track_transaction(payload))

    def _track_transaction(self, payload) -> bool:
        """True when ``payload`` ends a transaction, explicitly or implicitly."""
        if isinstance(payload, (XidEvent, XaPrepareEvent)):
            self.in_transaction = False
            return True
        if not isinstance(payload, QueryEvent):
            return False
        if self.in_transaction:
            if payload.closes_transaction:
                self.in_transaction = False
                return True
            return False
        if payload.opens_transaction:
            self.in_transaction = True
            return False
        # DDL and other statements logged outside BEGIN commit on their own
        return True

    def _strip_checksum(self, header: EventHeader, data: bytes) -> bytes:
        if not self.checksum:
            return data[EventHeader.SIZE:]
        if len(data) < EventHeader.SIZE + CHECKSUM_SIZE:
            raise ProtocolError(f"event of {len(data)} bytes is too short to carry a checksum")
        if self.verify_checksum:
            self._verify(header, data)
        return data[EventHeader.SIZE:-CHECKSUM_SIZE]

    @staticmethod
    def _verify(header: EventHeader, data: bytes) -> None:
        expected = int.from_bytes(data[-CHECKSUM_SIZE:], 'little')
        actual = zlib.crc32(data[:-CHECKSUM_SIZE]) & 0xFFFFFFFF
        if expected != actual:
            raise DecodeError(
                f"checksum mismatch for event type {header.type_code} at log_pos "
                f"{header.log_pos}: expected 0x{expected:08x}, computed 0x{actual:08x}"
            )

    def _apply_format_description(self, event: FormatDescriptionEvent, data: bytes) -> None:
        checksum = event.checksum_algorithm == BINLOG_CHECKSUM_ALG_CRC32
        if checksum and self.verify_checksum:
            self._verify(EventHeader.parse(data), data)
        if checksum != self.checksum:
            logger.info(f"Format description sets binlog checksum {'on' if checksum else 'off'}")
        self.checksum = checksum
        self.format_description = event

    # ------------------------------------------------------------------------
    # Body decoders
    # ------------------------------------------------------------------------

    def _decode_format_description(self, header: EventHeader, reader: BinaryReader) -> FormatDescriptionEvent:
        binlog_version = reader.read_uint16()
        server_version = reader.read(SERVER_VERSION_LENGTH).rstrip(b'\x00').decode('ascii', 'replace')
        create_timestamp = reader.read_uint32()
        header_length = reader.read_uint8()

        algorithm = BINLOG_CHECKSUM_ALG_UNDEF
        if _version_tuple(server_version) >= CHECKSUM_VERSION:
            body = reader.data
            if len(body) < reader.offset + 1 + CHECKSUM_SIZE:
                raise DecodeError("format description too short for its checksum algorithm")
            algorithm = body[-(1 + CHECKSUM_SIZE)]

        return FormatDescriptionEvent(
            binlog_version=binlog_version,
            server_version=server_version,
            create_timestamp=create_timestamp,
            header_length=header_length,
            checksum_algorithm=algorithm,
        )

    def _decode_rotate(self, header: EventHeader, reader: BinaryReader) -> RotateEvent:
        position = reader.read_uint64()
        next_binlog = reader.read_rest().decode('utf-8')
        return RotateEvent(next_binlog=next_binlog, position=position)

    def _decode_query(self, header: EventHeader, reader: BinaryReader) -> QueryEvent:
        thread_id = reader.read_uint32()
        execution_time = reader.read_uint32()
        schema_length = reader.read_uint8()
        error_code = reader.read_uint16()
        status_vars_length = reader.read_uint16()
        reader.skip(status_vars_length)
        schema = reader.read(schema_length).decode('utf-8', 'replace')
        reader.skip(1)
        query = reader.read_rest().decode('utf-8', 'replace')
        return QueryEvent(
            thread_id=thread_id,
            execution_time=execution_time,
            error_code=error_code,
            schema=schema,
            query=query,
        )

    def _decode_table_map(self, header: EventHeader, reader: BinaryReader) -> TableMapEvent:
        table_id = reader.read_uint48()
        reader.skip(2)  # flags
        schema = reader.read(reader.read_uint8()).decode('utf-8')
        reader.skip(1)
        table = reader.read(reader.read_uint8()).decode('utf-8')
        reader.skip(1)

        column_count = reader.read_length_coded_binary()
        column_types = list(reader.read(column_count))
        metadata_reader = BinaryReader(reader.read_length_coded_string())
        column_metadata = read_column_metadata(metadata_reader, column_types)
        nullable = reader.read_bitmap(column_count)

        entry = self.table_cache.resolve(table_id, schema, table, column_types, column_metadata, nullable)
        self._session_tables.add(table_id)
        return TableMapEvent(table_id=table_id, schema=schema, table=table, entry=entry)

    def _decode_rows(self, header: EventHeader, reader: BinaryReader) -> RowsEvent:
        event_class, v2 = _ROWS_EVENTS[header.type_code]
        table_id = reader.read_uint48()
        flags = reader.read_uint16()
        if v2:
            extra_length = reader.read_uint16()
            if extra_length < 2:
                raise DecodeError(f"invalid rows event extra data length {extra_length}")
            reader.skip(extra_length - 2)

        column_count = reader.read_length_coded_binary()
        present = reader.read_bitmap(column_count)
        present_after = reader.read_bitmap(column_count) if event_class is UpdateRowsEvent else present

        if table_id not in self._session_tables:
            raise ProtocolError(f"rows event for table id {table_id} without a TableMap in this session")
        entry = self.table_cache.get(table_id)
        if not (
            self.event_filter.allows_table(entry.schema, entry.table)
            and self.event_filter.allows_kind(event_class.kind.value)
        ):
            return event_class(table_id, entry.schema, entry.table, rows=(), flags=flags)

        rows = []
        while reader.remaining:
            if event_class is WriteRowsEvent:
                rows.append(RowChange(after=decode_row_image(reader, entry, present)))
            elif event_class is DeleteRowsEvent:
                rows.append(RowChange(before=decode_row_image(reader, entry, present)))
            else:
                before = decode_row_image(reader, entry, present)
                after = decode_row_image(reader, entry, present_after)
                rows.append(RowChange(before=before, after=after))
        return event_class(table_id, entry.schema, entry.table, rows=tuple(rows), flags=flags)

    def _decode_xid(self, header: EventHeader, reader: BinaryReader) -> XidEvent:
        return XidEvent(xid=reader.read_uint64())

    def _decode_xa_prepare(self, header: EventHeader, reader: BinaryReader) -> XaPrepareEvent:
        one_phase = reader.read_uint8() == 1
        format_id = reader.read_uint32()
        gtrid_length = reader.read_uint32()
        bqual_length = reader.read_uint32()
        gtrid = reader.read(gtrid_length)
        bqual = reader.read(bqual_length)
        return XaPrepareEvent(one_phase, format_id, bytes(gtrid), bytes(bqual))

    def _decode_gtid(self, header: EventHeader, reader: BinaryReader):
        commit_flag = reader.read_uint8() == 1
        sid = reader.read(16)
        gno = reader.read_uint64()
        last_committed = sequence_number = None
        # logical clock fields, present since 5.7
        if reader.remaining >= 17:
            reader.skip(1)
            last_committed = reader.read_uint64()
            sequence_number = reader.read_uint64()

        if header.type_code == EventType.ANONYMOUS_GTID_LOG_EVENT:
            return AnonymousGtidEvent(commit_flag, last_committed, sequence_number)
        return GtidEvent(
            gtid=Gtid(str(uuid.UUID(bytes=bytes(sid))), gno),
            commit_flag=commit_flag,
            last_committed=last_committed,
            sequence_number=sequence_number,
        )

    def _decode_heartbeat(self, header: EventHeader, reader: BinaryReader) -> HeartbeatEvent:
        return HeartbeatEvent(log_file=reader.read_rest().decode('utf-8'), log_pos=header.log_pos)

    def _decode_heartbeat_v2(self, header: EventHeader, reader: BinaryReader) -> HeartbeatEvent:
        log_file = ""
        log_pos = header.log_pos
        while reader.remaining:
            field_type = reader.read_uint8()
            value = reader.read_length_coded_string()
            if field_type == HEARTBEAT_LOG_FILENAME:
                log_file = value.decode('utf-8')
            elif field_type == HEARTBEAT_LOG_POSITION:
                log_pos = int.from_bytes(value, 'little')
        return HeartbeatEvent(log_file=log_file, log_pos=log_pos)

    # ------------------------------------------------------------------------
    # Filtering
    # ------------------------------------------------------------------------

    def should_dispatch(self, event: BinlogEvent) -> bool:
        """Filtered events still move the position but are not delivered."""
        payload = event.payload
        if not self.event_filter.allows_kind(payload.kind.value):
            return False
        if isinstance(payload, (RowsEvent, TableMapEvent)):
            return self.event_filter.allows_table(payload.schema, payload.table)
        return True

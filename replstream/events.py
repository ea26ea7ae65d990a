# -*- coding: utf-8 -*-
"""
Binlog event model.

Every event is ``BinlogEvent(header, payload)``. The header is the fixed
19-byte prefix shared by all events; the payload is one of a closed set of
frozen dataclasses selected by the header's type code. Type codes without
a decoder become ``UnknownEvent`` carrying the raw body.
"""

import re
import struct
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, ClassVar, Dict, Optional, Tuple

from .exceptions import ProtocolError
from .gtid import Gtid
from .table_cache import TableMapEntry

_XA_START_RE = re.compile(r"^XA (START|BEGIN)\b")
_COMMIT_RE = re.compile(r"^(XA )?COMMIT\b")
_ROLLBACK_RE = re.compile(r"^(XA )?ROLLBACK\b(?!( WORK)? TO\b)")


class EventType(IntEnum):
    """Binlog event type codes."""
    UNKNOWN_EVENT = 0
    START_EVENT_V3 = 1
    QUERY_EVENT = 2
    STOP_EVENT = 3
    ROTATE_EVENT = 4
    INTVAR_EVENT = 5
    SLAVE_EVENT = 7
    APPEND_BLOCK_EVENT = 9
    DELETE_FILE_EVENT = 11
    RAND_EVENT = 13
    USER_VAR_EVENT = 14
    FORMAT_DESCRIPTION_EVENT = 15
    XID_EVENT = 16
    BEGIN_LOAD_QUERY_EVENT = 17
    EXECUTE_LOAD_QUERY_EVENT = 18
    TABLE_MAP_EVENT = 19
    WRITE_ROWS_EVENT_V1 = 23
    UPDATE_ROWS_EVENT_V1 = 24
    DELETE_ROWS_EVENT_V1 = 25
    INCIDENT_EVENT = 26
    HEARTBEAT_LOG_EVENT = 27
    IGNORABLE_LOG_EVENT = 28
    ROWS_QUERY_LOG_EVENT = 29
    WRITE_ROWS_EVENT_V2 = 30
    UPDATE_ROWS_EVENT_V2 = 31
    DELETE_ROWS_EVENT_V2 = 32
    GTID_LOG_EVENT = 33
    ANONYMOUS_GTID_LOG_EVENT = 34
    PREVIOUS_GTIDS_LOG_EVENT = 35
    TRANSACTION_CONTEXT_EVENT = 36
    VIEW_CHANGE_EVENT = 37
    XA_PREPARE_LOG_EVENT = 38
    PARTIAL_UPDATE_ROWS_EVENT = 39
    TRANSACTION_PAYLOAD_EVENT = 40
    HEARTBEAT_LOG_EVENT_V2 = 41


class EventKind(Enum):
    """Payload variant names, used by subscribers and event filters."""
    FORMAT_DESCRIPTION = "format_description"
    ROTATE = "rotate"
    QUERY = "query"
    TABLE_MAP = "table_map"
    WRITE_ROWS = "write_rows"
    UPDATE_ROWS = "update_rows"
    DELETE_ROWS = "delete_rows"
    XID = "xid"
    XA_PREPARE = "xa_prepare"
    GTID = "gtid"
    ANONYMOUS_GTID = "anonymous_gtid"
    HEARTBEAT = "heartbeat"
    UNKNOWN = "unknown"


# ============================================================================
# Header
# ============================================================================

@dataclass(frozen=True)
class EventHeader:
    """
    Common event header:

        timestamp   4 bytes
        type code   1 byte
        server id   4 bytes
        event size  4 bytes (header + body + checksum)
        log pos     4 bytes (absolute offset of the next event)
        flags       2 bytes
    """
    timestamp: int
    type_code: int
    server_id: int
    event_size: int
    log_pos: int
    flags: int

    FORMAT: ClassVar[struct.Struct] = struct.Struct('<IBIIIH')
    SIZE: ClassVar[int] = 19

    @classmethod
    def parse(cls, data: bytes) -> 'EventHeader':
        if len(data) < cls.SIZE:
            raise ProtocolError(f"event header needs {cls.SIZE} bytes, got {len(data)}")
        return cls(*cls.FORMAT.unpack_from(data, 0))

    def encode(self) -> bytes:
        return self.FORMAT.pack(
            self.timestamp, self.type_code, self.server_id,
            self.event_size, self.log_pos, self.flags,
        )


# ============================================================================
# Row images
# ============================================================================

@dataclass(frozen=True)
class RowImage:
    """Column values of one row image, in declaration order.

    Columns absent from the image (partial before-images) are not listed.
    """
    columns: Tuple[str, ...]
    values: Tuple[Any, ...]

    def as_dict(self) -> Dict[str, Any]:
        return dict(zip(self.columns, self.values))

    def __getitem__(self, column: str) -> Any:
        return self.values[self.columns.index(column)]

    def __len__(self):
        return len(self.values)


@dataclass(frozen=True)
class RowChange:
    """One affected row. Inserts have no ``before``, deletes no ``after``."""
    before: Optional[RowImage] = None
    after: Optional[RowImage] = None


# ============================================================================
# Payload variants
# ============================================================================

@dataclass(frozen=True)
class FormatDescriptionEvent:
    binlog_version: int
    server_version: str
    create_timestamp: int
    header_length: int
    checksum_algorithm: int = 0

    kind: ClassVar[EventKind] = EventKind.FORMAT_DESCRIPTION

    @property
    def checksum_enabled(self) -> bool:
        # 0 = off, 1 = CRC32, 255 = undefined (server predates checksums)
        return self.checksum_algorithm == 1


@dataclass(frozen=True)
class RotateEvent:
    next_binlog: str
    position: int

    kind: ClassVar[EventKind] = EventKind.ROTATE


@dataclass(frozen=True)
class QueryEvent:
    thread_id: int
    execution_time: int
    error_code: int
    schema: str
    query: str

    kind: ClassVar[EventKind] = EventKind.QUERY

    @property
    def statement(self) -> str:
        return ' '.join(self.query.split()).upper()

    @property
    def is_begin(self) -> bool:
        return self.statement == "BEGIN"

    @property
    def opens_transaction(self) -> bool:
        return self.is_begin or _XA_START_RE.match(self.statement) is not None

    @property
    def is_commit(self) -> bool:
        return _COMMIT_RE.match(self.statement) is not None

    @property
    def is_rollback(self) -> bool:
        # ROLLBACK TO SAVEPOINT keeps the transaction open
        return _ROLLBACK_RE.match(self.statement) is not None

    @property
    def closes_transaction(self) -> bool:
        return self.is_commit or self.is_rollback


@dataclass(frozen=True)
class TableMapEvent:
    table_id: int
    schema: str
    table: str
    entry: TableMapEntry

    kind: ClassVar[EventKind] = EventKind.TABLE_MAP


@dataclass(frozen=True)
class RowsEvent:
    table_id: int
    schema: str
    table: str
    rows: Tuple[RowChange, ...]
    flags: int = 0

    kind: ClassVar[EventKind] = EventKind.UNKNOWN

    @property
    def columns(self) -> Tuple[str, ...]:
        if not self.rows:
            return ()
        image = self.rows[0].after or self.rows[0].before
        return image.columns if image else ()


@dataclass(frozen=True)
class WriteRowsEvent(RowsEvent):
    kind: ClassVar[EventKind] = EventKind.WRITE_ROWS


@dataclass(frozen=True)
class UpdateRowsEvent(RowsEvent):
    kind: ClassVar[EventKind] = EventKind.UPDATE_ROWS


@dataclass(frozen=True)
class DeleteRowsEvent(RowsEvent):
    kind: ClassVar[EventKind] = EventKind.DELETE_ROWS


@dataclass(frozen=True)
class XidEvent:
    xid: int

    kind: ClassVar[EventKind] = EventKind.XID


@dataclass(frozen=True)
class XaPrepareEvent:
    """XA PREPARE (or one-phase XA COMMIT) closing an XA transaction."""
    one_phase: bool
    format_id: int
    gtrid: bytes
    bqual: bytes

    kind: ClassVar[EventKind] = EventKind.XA_PREPARE


@dataclass(frozen=True)
class GtidEvent:
    gtid: Gtid
    commit_flag: bool = True
    last_committed: Optional[int] = None
    sequence_number: Optional[int] = None

    kind: ClassVar[EventKind] = EventKind.GTID


@dataclass(frozen=True)
class AnonymousGtidEvent:
    commit_flag: bool = True
    last_committed: Optional[int] = None
    sequence_number: Optional[int] = None

    kind: ClassVar[EventKind] = EventKind.ANONYMOUS_GTID


@dataclass(frozen=True)
class HeartbeatEvent:
    log_file: str
    log_pos: int = 0

    kind: ClassVar[EventKind] = EventKind.HEARTBEAT


@dataclass(frozen=True)
class UnknownEvent:
    type_code: int
    raw: bytes = field(repr=False)

    kind: ClassVar[EventKind] = EventKind.UNKNOWN


@dataclass(frozen=True)
class BinlogEvent:
    """
    A decoded event: common header plus typed payload.

    ``ends_transaction`` is set by the decoder on Xid, XA PREPARE, COMMIT and
    ROLLBACK inside a transaction, and on statements outside one (DDL and
    other implicitly committing statements).
    """
    header: EventHeader
    payload: Any
    ends_transaction: bool = False

    @property
    def kind(self) -> EventKind:
        return self.payload.kind

    @property
    def timestamp(self) -> int:
        return self.header.timestamp

    @property
    def log_pos(self) -> int:
        return self.header.log_pos

    @property
    def server_id(self) -> int:
        return self.header.server_id

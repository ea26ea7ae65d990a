"""Unit tests for binlog event decoding."""

import struct

import pytest

from replstream.binary_reader import length_coded_binary
from replstream.decoder import EventDecoder
from replstream.events import (
    AnonymousGtidEvent,
    DeleteRowsEvent,
    EventHeader,
    EventKind,
    EventType,
    FormatDescriptionEvent,
    GtidEvent,
    HeartbeatEvent,
    QueryEvent,
    RotateEvent,
    TableMapEvent,
    UnknownEvent,
    UpdateRowsEvent,
    WriteRowsEvent,
    XaPrepareEvent,
    XidEvent,
)
from replstream.exceptions import (
    DecodeError,
    ErrorKind,
    ProtocolError,
    RepositoryError,
    ServerError,
    TransportError,
)
from replstream.repository import ColumnInfo
from replstream.table_cache import TableMetadataCache
from replstream.table_patterns import EventFilter

from tests import binlog_factory as bf
from tests.conftest import FakeRepository, USERS_COLUMNS

SID = "3e11fa47-71ca-11e1-9e33-c80aa9429562"
USERS_TYPES = [3, 15]
USERS_METADATA = struct.pack('<H', 80)


@pytest.fixture
def decoder(repository):
    return EventDecoder(TableMetadataCache(repository))


def feed(decoder, event_bytes):
    return decoder.decode_packet(bf.stream_packet(event_bytes))


def start_session(decoder, checksum=False):
    return feed(decoder, bf.format_description(checksum=checksum))


def map_users(decoder, table_id=7, checksum=False):
    return feed(decoder, bf.table_map(
        table_id, "shop", "users", USERS_TYPES,
        metadata=USERS_METADATA, nullable=[False, True], checksum=checksum,
    ))


class TestEventHeader:
    """Test the fixed 19-byte event header."""

    def test_parse_and_encode(self):
        raw = struct.pack('<IBIIIH', 1700000000, 30, 42, 100, 4567, 1)
        header = EventHeader.parse(raw + b'body')
        assert header.timestamp == 1700000000
        assert header.type_code == 30
        assert header.server_id == 42
        assert header.event_size == 100
        assert header.log_pos == 4567
        assert header.flags == 1
        assert header.encode() == raw

    def test_unknown_type_code(self):
        header = EventHeader.parse(struct.pack('<IBIIIH', 0, 200, 1, 19, 0, 0))
        assert header.type_code == 200

    def test_short_header(self):
        with pytest.raises(ProtocolError, match="19 bytes"):
            EventHeader.parse(b'\x00' * 10)


class TestPacketFraming:
    """Test the status byte in front of every stream packet."""

    def test_error_packet(self, decoder):
        with pytest.raises(ServerError) as exc_info:
            decoder.decode_packet(bf.err_packet(1236, "Could not find first log file name", "HY000"))
        assert exc_info.value.code == 1236
        assert exc_info.value.sql_state == "HY000"
        assert exc_info.value.kind is ErrorKind.PROTOCOL

    def test_end_of_stream(self, decoder):
        with pytest.raises(TransportError):
            decoder.decode_packet(bf.eof_packet())

    def test_unexpected_status(self, decoder):
        with pytest.raises(ProtocolError, match="0x05"):
            decoder.decode_packet(b'\x05' + bf.xid())

    def test_empty_packet(self, decoder):
        with pytest.raises(ProtocolError):
            decoder.decode_packet(b'')

    def test_truncated_event(self, decoder):
        start_session(decoder)
        with pytest.raises(ProtocolError, match="declares"):
            feed(decoder, bf.xid()[:-2])


class TestFormatDescription:
    """Test session setup by the format description event."""

    def test_events_before_format_description(self, decoder):
        with pytest.raises(ProtocolError, match="before the format description"):
            feed(decoder, bf.xid())

    def test_rotate_and_heartbeat_allowed_first(self, decoder):
        rotate = feed(decoder, bf.rotate("mysql-bin.000003", 4))
        assert rotate.payload == RotateEvent(next_binlog="mysql-bin.000003", position=4)
        heartbeat = feed(decoder, bf.heartbeat("mysql-bin.000003", log_pos=1200))
        assert heartbeat.payload == HeartbeatEvent(log_file="mysql-bin.000003", log_pos=1200)

    def test_decode_format_description(self, decoder):
        event = start_session(decoder)
        assert isinstance(event.payload, FormatDescriptionEvent)
        assert event.kind is EventKind.FORMAT_DESCRIPTION
        assert event.payload.binlog_version == 4
        assert event.payload.server_version == "8.0.33"
        assert event.payload.header_length == 19
        assert not event.payload.checksum_enabled
        assert decoder.format_description is event.payload

    def test_format_description_enables_checksum(self, decoder):
        assert decoder.checksum is False
        event = start_session(decoder, checksum=True)
        assert event.payload.checksum_enabled
        assert decoder.checksum is True

        xid = feed(decoder, bf.xid(99, checksum=True))
        assert xid.payload == XidEvent(xid=99)

    def test_format_description_disables_checksum(self, repository):
        """The server capabilities are only a first guess."""
        decoder = EventDecoder(TableMetadataCache(repository), checksum=True)
        feed(decoder, bf.rotate("mysql-bin.000001", 4, checksum=True))
        start_session(decoder, checksum=False)
        assert decoder.checksum is False
        assert feed(decoder, bf.xid(5)).payload == XidEvent(xid=5)

    def test_old_server_has_no_checksum_algorithm(self, decoder):
        event = start_session(decoder)
        old = feed(decoder, bf.format_description(server_version="5.5.40-log"))
        assert old.payload.checksum_algorithm == 255
        assert not old.payload.checksum_enabled
        assert event.payload.checksum_algorithm == 0

    def test_reset_requires_new_format_description(self, decoder):
        start_session(decoder)
        decoder.reset(checksum=False)
        with pytest.raises(ProtocolError):
            feed(decoder, bf.xid())


class TestChecksum:
    """Test CRC32 verification."""

    def test_mismatch(self, decoder):
        start_session(decoder, checksum=True)
        corrupt = bytearray(bf.xid(7, checksum=True))
        corrupt[-5] ^= 0xFF
        with pytest.raises(DecodeError, match="checksum mismatch") as exc_info:
            feed(decoder, bytes(corrupt))
        assert exc_info.value.kind is ErrorKind.DECODE

    def test_verification_disabled(self, repository):
        decoder = EventDecoder(TableMetadataCache(repository), verify_checksum=False)
        start_session(decoder, checksum=True)
        corrupt = bytearray(bf.xid(7, checksum=True))
        corrupt[-1] ^= 0xFF
        assert feed(decoder, bytes(corrupt)).payload == XidEvent(xid=7)

    def test_checksum_not_part_of_body(self, decoder):
        start_session(decoder, checksum=True)
        event = feed(decoder, bf.rotate("mysql-bin.000002", 4, checksum=True))
        assert event.payload.next_binlog == "mysql-bin.000002"


class TestSimpleEvents:
    """Test decoding of non-row events."""

    def test_query(self, decoder):
        start_session(decoder)
        event = feed(decoder, bf.query("ALTER TABLE users ADD COLUMN age INT", log_pos=500))
        assert isinstance(event.payload, QueryEvent)
        assert event.payload.schema == "shop"
        assert event.payload.query == "ALTER TABLE users ADD COLUMN age INT"
        assert event.payload.thread_id == 11
        assert event.ends_transaction
        assert event.log_pos == 500

    def test_begin_does_not_end_transaction(self, decoder):
        start_session(decoder)
        event = feed(decoder, bf.query("BEGIN"))
        assert event.payload.is_begin
        assert not event.ends_transaction
        assert decoder.in_transaction

    def test_gtid(self, decoder):
        start_session(decoder)
        event = feed(decoder, bf.gtid(SID, 5))
        assert isinstance(event.payload, GtidEvent)
        assert str(event.payload.gtid) == f"{SID}:5"
        assert event.payload.commit_flag
        assert event.payload.last_committed == 4
        assert event.payload.sequence_number == 5

    def test_anonymous_gtid(self, decoder):
        start_session(decoder)
        event = feed(decoder, bf.gtid(SID, 5, anonymous=True))
        assert isinstance(event.payload, AnonymousGtidEvent)
        assert event.kind is EventKind.ANONYMOUS_GTID

    def test_heartbeat_v2(self, decoder):
        body = (
            bytes([0]) + length_coded_binary(16) + b"mysql-bin.000009"
            + bytes([1]) + length_coded_binary(8) + (1234).to_bytes(8, 'little')
        )
        event = feed(decoder, bf.event(EventType.HEARTBEAT_LOG_EVENT_V2, body))
        assert event.payload == HeartbeatEvent(log_file="mysql-bin.000009", log_pos=1234)

    def test_unknown_type_code(self, decoder):
        start_session(decoder)
        event = feed(decoder, bf.event(200, b'\x01\x02'))
        assert isinstance(event.payload, UnknownEvent)
        assert event.payload.type_code == 200
        assert event.payload.raw == b'\x01\x02'

    def test_known_type_without_decoder(self, decoder):
        start_session(decoder)
        event = feed(decoder, bf.event(EventType.PREVIOUS_GTIDS_LOG_EVENT, b'\x00' * 8))
        assert event.kind is EventKind.UNKNOWN
        assert event.payload.type_code == EventType.PREVIOUS_GTIDS_LOG_EVENT

    def test_header_fields_exposed(self, decoder):
        start_session(decoder)
        event = feed(decoder, bf.xid(1, log_pos=777))
        assert event.log_pos == 777
        assert event.timestamp == 1700000000
        assert event.server_id == bf.SERVER_ID


class TestTransactionBoundaries:
    """Test which events close a transaction."""

    @staticmethod
    def boundaries(decoder, *events):
        start_session(decoder)
        return [feed(decoder, event_bytes).ends_transaction for event_bytes in events]

    def test_xid_closes_row_transaction(self, decoder):
        assert self.boundaries(
            decoder, bf.query("BEGIN"), bf.query("SAVEPOINT sp1"), bf.query("ROLLBACK TO SAVEPOINT sp1"), bf.xid(),
        ) == [False, False, False, True]
        assert not decoder.in_transaction

    def test_statement_dml_inside_transaction(self, decoder):
        assert self.boundaries(
            decoder, bf.query("BEGIN"), bf.query("INSERT INTO users VALUES (1, 'a')"), bf.query("COMMIT"),
        ) == [False, False, True]

    def test_rollback(self, decoder):
        assert self.boundaries(decoder, bf.query("BEGIN"), bf.query("ROLLBACK")) == [False, True]

    def test_ddl_outside_transaction(self, decoder):
        assert self.boundaries(
            decoder, bf.query("CREATE TABLE t (id INT)"), bf.query("DROP TABLE t"),
        ) == [True, True]

    def test_xa_transaction(self, decoder):
        flags = self.boundaries(
            decoder,
            bf.query("XA START X'747278',X'',1"),
            bf.query("XA END X'747278',X'',1"),
            bf.xa_prepare(gtrid=b'trx'),
            bf.query("XA COMMIT X'747278',X'',1"),
        )
        assert flags == [False, False, True, True]

    def test_xa_prepare_payload(self, decoder):
        start_session(decoder)
        event = feed(decoder, bf.xa_prepare(gtrid=b'trx', bqual=b'b1', format_id=7))
        assert isinstance(event.payload, XaPrepareEvent)
        assert event.kind is EventKind.XA_PREPARE
        assert event.payload == XaPrepareEvent(one_phase=False, format_id=7, gtrid=b'trx', bqual=b'b1')

    def test_reset_leaves_transaction(self, decoder):
        start_session(decoder)
        feed(decoder, bf.query("BEGIN"))
        decoder.reset(checksum=False)
        assert not decoder.in_transaction


class TestRowsEvents:
    """Test TableMap and row event decoding."""

    def test_table_map(self, decoder, repository):
        start_session(decoder)
        event = map_users(decoder)
        assert isinstance(event.payload, TableMapEvent)
        assert event.payload.table_id == 7
        assert event.payload.entry.column_names == ("id", "name")
        assert event.payload.entry.primary_key == ("id",)
        assert repository.column_fetches == [("shop", "users")]

    def test_write_rows(self, decoder):
        start_session(decoder)
        map_users(decoder)
        event = feed(decoder, bf.rows(
            EventType.WRITE_ROWS_EVENT_V2, 7, 2,
            [bf.row_image([bf.int32(42), bf.varchar("hello", 80)])],
        ))
        assert isinstance(event.payload, WriteRowsEvent)
        assert event.payload.schema == "shop"
        assert event.payload.table == "users"
        assert len(event.payload.rows) == 1
        row = event.payload.rows[0]
        assert row.before is None
        assert row.after.as_dict() == {"id": 42, "name": "hello"}

    def test_write_multiple_rows_v1(self, decoder):
        start_session(decoder)
        map_users(decoder)
        event = feed(decoder, bf.rows(
            EventType.WRITE_ROWS_EVENT_V1, 7, 2,
            [
                bf.row_image([bf.int32(1), bf.varchar("a", 80)]),
                bf.row_image([bf.int32(2), None]),
            ],
        ))
        assert [row.after.values for row in event.payload.rows] == [(1, "a"), (2, None)]

    def test_update_rows(self, decoder):
        start_session(decoder)
        map_users(decoder)
        event = feed(decoder, bf.rows(
            EventType.UPDATE_ROWS_EVENT_V2, 7, 2,
            [
                bf.row_image([bf.int32(42), bf.varchar("hello", 80)]),
                bf.row_image([bf.int32(42), bf.varchar("world", 80)]),
            ],
        ))
        assert isinstance(event.payload, UpdateRowsEvent)
        row = event.payload.rows[0]
        assert row.before["name"] == "hello"
        assert row.after["name"] == "world"

    def test_update_with_partial_before_image(self, decoder):
        """binlog_row_image=MINIMAL logs only the key in the before image."""
        start_session(decoder)
        map_users(decoder)
        event = feed(decoder, bf.rows(
            EventType.UPDATE_ROWS_EVENT_V2, 7, 2,
            [
                bf.row_image([bf.int32(42)]),
                bf.row_image([bf.int32(42), bf.varchar("bob", 80)]),
            ],
            present=[True, False],
            present_after=[True, True],
        ))
        row = event.payload.rows[0]
        assert row.before.columns == ("id",)
        assert row.before.values == (42,)
        assert row.after.as_dict() == {"id": 42, "name": "bob"}

    def test_delete_rows(self, decoder):
        start_session(decoder)
        map_users(decoder)
        event = feed(decoder, bf.rows(
            EventType.DELETE_ROWS_EVENT_V2, 7, 2,
            [bf.row_image([bf.int32(42), None])],
        ))
        assert isinstance(event.payload, DeleteRowsEvent)
        row = event.payload.rows[0]
        assert row.after is None
        assert row.before.as_dict() == {"id": 42, "name": None}

    def test_rows_with_checksum(self, decoder):
        start_session(decoder, checksum=True)
        map_users(decoder, checksum=True)
        event = feed(decoder, bf.rows(
            EventType.WRITE_ROWS_EVENT_V2, 7, 2,
            [bf.row_image([bf.int32(42), bf.varchar("hello", 80)])],
            checksum=True,
        ))
        assert event.payload.rows[0].after.values == (42, "hello")

    def test_rows_without_table_map(self, decoder):
        start_session(decoder)
        with pytest.raises(ProtocolError, match="table id 99"):
            feed(decoder, bf.rows(EventType.WRITE_ROWS_EVENT_V2, 99, 1, [bf.row_image([bf.int32(1)])]))

    def test_table_map_from_previous_session_is_not_used(self, decoder):
        """Table ids are only valid for the session whose TableMap announced them."""
        start_session(decoder)
        map_users(decoder)
        decoder.reset(checksum=False)
        start_session(decoder)
        with pytest.raises(ProtocolError, match="table id 7 without a TableMap in this session") as exc_info:
            feed(decoder, bf.rows(
                EventType.WRITE_ROWS_EVENT_V2, 7, 2,
                [bf.row_image([bf.int32(42), bf.varchar("hello", 80)])],
            ))
        assert exc_info.value.kind is ErrorKind.PROTOCOL

        map_users(decoder)
        event = feed(decoder, bf.rows(
            EventType.WRITE_ROWS_EVENT_V2, 7, 2,
            [bf.row_image([bf.int32(42), bf.varchar("hello", 80)])],
        ))
        assert event.payload.rows[0].after["id"] == 42

    def test_column_count_mismatch(self, decoder):
        start_session(decoder)
        map_users(decoder)
        with pytest.raises(DecodeError, match="table map has 2") as exc_info:
            feed(decoder, bf.rows(
                EventType.WRITE_ROWS_EVENT_V2, 7, 3,
                [bf.row_image([bf.int32(1), None, None])],
            ))
        assert exc_info.value.kind is ErrorKind.DECODE

    def test_row_overrun_is_protocol_error(self):
        """Row data shorter than the mapped column types."""
        repository = FakeRepository(tables={
            ("shop", "counters"): [ColumnInfo(name="n", data_type="bigint", column_type="bigint(20)")],
        })
        decoder = EventDecoder(TableMetadataCache(repository))
        start_session(decoder)
        feed(decoder, bf.table_map(3, "shop", "counters", [8]))
        with pytest.raises(ProtocolError, match="overruns") as exc_info:
            feed(decoder, bf.rows(EventType.WRITE_ROWS_EVENT_V2, 3, 1, [bf.row_image([bf.int32(1)])]))
        assert exc_info.value.kind is ErrorKind.PROTOCOL

    def test_table_map_for_unknown_table(self, decoder):
        start_session(decoder)
        with pytest.raises(RepositoryError) as exc_info:
            feed(decoder, bf.table_map(8, "shop", "missing", [3]))
        assert exc_info.value.kind is ErrorKind.REPOSITORY

    def test_changed_layout_refetches(self, decoder, repository):
        start_session(decoder)
        map_users(decoder)
        map_users(decoder)
        assert len(repository.column_fetches) == 1

        repository.tables[("shop", "users")] = USERS_COLUMNS + [
            ColumnInfo(name="age", data_type="int", column_type="int(11) unsigned"),
        ]
        feed(decoder, bf.table_map(7, "shop", "users", [3, 15, 3], metadata=USERS_METADATA))
        assert len(repository.column_fetches) == 2
        event = feed(decoder, bf.rows(
            EventType.WRITE_ROWS_EVENT_V2, 7, 3,
            [bf.row_image([bf.int32(1), bf.varchar("x", 80), b'\xff\xff\xff\xff'])],
        ))
        assert event.payload.rows[0].after.as_dict() == {"id": 1, "name": "x", "age": 4294967295}


class TestFiltering:
    """Test which events are handed to subscribers."""

    def test_ignored_table_rows_not_decoded(self, repository):
        decoder = EventDecoder(TableMetadataCache(repository), EventFilter(ignored_tables=["shop.users"]))
        start_session(decoder)
        table_map = map_users(decoder)
        event = feed(decoder, bf.rows(
            EventType.WRITE_ROWS_EVENT_V2, 7, 2,
            [bf.row_image([bf.int32(42), bf.varchar("hello", 80)])],
        ))
        assert event.payload.rows == ()
        assert not decoder.should_dispatch(event)
        assert not decoder.should_dispatch(table_map)

    def test_only_tables(self, repository):
        decoder = EventDecoder(TableMetadataCache(repository), EventFilter(only_tables=["shop.orders"]))
        start_session(decoder)
        assert not decoder.should_dispatch(map_users(decoder))
        assert decoder.should_dispatch(feed(decoder, bf.xid()))

    def test_only_events(self, repository):
        decoder = EventDecoder(TableMetadataCache(repository), EventFilter(only_events=["write_rows"]))
        start_session(decoder)
        map_users(decoder)
        rows = feed(decoder, bf.rows(
            EventType.WRITE_ROWS_EVENT_V2, 7, 2,
            [bf.row_image([bf.int32(42), None])],
        ))
        assert decoder.should_dispatch(rows)
        assert not decoder.should_dispatch(feed(decoder, bf.xid()))

    def test_ignored_event_kind_skips_row_decoding(self, repository):
        decoder = EventDecoder(TableMetadataCache(repository), EventFilter(ignored_events=["delete_rows"]))
        start_session(decoder)
        map_users(decoder)
        event = feed(decoder, bf.rows(
            EventType.DELETE_ROWS_EVENT_V2, 7, 2,
            [bf.row_image([bf.int32(42), None])],
        ))
        assert event.payload.rows == ()
        assert not decoder.should_dispatch(event)

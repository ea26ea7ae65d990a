"""Unit tests for the replica handshake."""

import struct

import pytest
from pymysql import _auth

from replstream.exceptions import (
    AuthenticationError,
    ConfigurationError,
    ErrorKind,
    ProtocolError,
    ServerError,
)
from replstream.gtid import GtidSet
from replstream.handshake import (
    ReplicaHandshake,
    ServerGreeting,
    authenticate,
    binlog_dump_gtid_payload,
    binlog_dump_payload,
    register_replica_payload,
)
from replstream.position import BinlogPosition, PositionTracker
from replstream.repository import ServerCapabilities

from tests import binlog_factory as bf
from tests.conftest import ScriptedTransport, handshake_packets

SID = "3e11fa47-71ca-11e1-9e33-c80aa9429562"
COM_QUERY = b'\x03'


class TestServerGreeting:
    """Test parsing the initial handshake packet."""

    def test_parse(self):
        greeting = ServerGreeting.parse(bf.greeting())
        assert greeting.protocol_version == 10
        assert greeting.server_version == "8.0.33"
        assert greeting.connection_id == 7
        assert greeting.salt == bf.DEFAULT_SALT
        assert greeting.capabilities == 0xFFFFF7FF
        assert greeting.auth_plugin == "mysql_native_password"

    def test_caching_sha2_plugin(self):
        greeting = ServerGreeting.parse(bf.greeting(auth_plugin="caching_sha2_password"))
        assert greeting.auth_plugin == "caching_sha2_password"

    def test_error_instead_of_greeting(self):
        with pytest.raises(ServerError) as exc_info:
            ServerGreeting.parse(bf.err_packet(1040, "Too many connections", "08004"))
        assert exc_info.value.code == 1040

    def test_unsupported_protocol(self):
        with pytest.raises(ProtocolError, match="protocol version 9"):
            ServerGreeting.parse(b'\x09' + bf.greeting()[1:])

    def test_truncated(self):
        with pytest.raises(ProtocolError, match="truncated"):
            ServerGreeting.parse(bf.greeting()[:8])


class TestAuthenticate:
    """Test the authentication exchange."""

    def test_native_password(self):
        transport = ScriptedTransport([bf.ok_packet()])
        greeting = ServerGreeting.parse(bf.greeting())
        authenticate(transport, greeting, "repl", "secret", "utf8mb4")

        response = transport.written[0]
        assert b'repl\x00' in response
        assert _auth.scramble_native_password(b'secret', bf.DEFAULT_SALT) in response
        assert response.endswith(b'mysql_native_password\x00')

    def test_rejected(self):
        transport = ScriptedTransport([bf.err_packet(1045, "Access denied for user 'repl'")])
        greeting = ServerGreeting.parse(bf.greeting())
        with pytest.raises(AuthenticationError) as exc_info:
            authenticate(transport, greeting, "repl", "wrong", "utf8mb4")
        assert exc_info.value.code == 1045
        assert exc_info.value.sql_state == "28000"
        assert not exc_info.value.recoverable

    def test_auth_switch(self):
        new_salt = bytes(range(30, 50))
        switch = b'\xfe' + b'mysql_native_password\x00' + new_salt + b'\x00'
        transport = ScriptedTransport([switch, bf.ok_packet()])
        greeting = ServerGreeting.parse(bf.greeting(auth_plugin="caching_sha2_password"))
        authenticate(transport, greeting, "repl", "secret", "utf8mb4")
        assert transport.written[1] == _auth.scramble_native_password(b'secret', new_salt)

    def test_caching_sha2_fast_path(self):
        transport = ScriptedTransport([b'\x01\x03', bf.ok_packet()])
        greeting = ServerGreeting.parse(bf.greeting(auth_plugin="caching_sha2_password"))
        authenticate(transport, greeting, "repl", "secret", "utf8mb4")
        assert _auth.scramble_caching_sha2(b'secret', bf.DEFAULT_SALT) in transport.written[0]
        assert len(transport.written) == 1

    def test_empty_password(self):
        transport = ScriptedTransport([bf.ok_packet()])
        greeting = ServerGreeting.parse(bf.greeting())
        authenticate(transport, greeting, "repl", "", "utf8mb4")
        assert b'repl\x00\x00' in transport.written[0]

    def test_unsupported_plugin(self):
        transport = ScriptedTransport([bf.ok_packet()])
        greeting = ServerGreeting.parse(bf.greeting(auth_plugin="dialog"))
        with pytest.raises(AuthenticationError, match="dialog"):
            authenticate(transport, greeting, "repl", "secret", "utf8mb4")


class TestCommandPayloads:
    """Test replication command payloads."""

    def test_register_replica(self):
        payload = register_replica_payload(1000001, "replica1", "repl", "secret", 3306)
        assert payload == (
            b'\x15'
            + struct.pack('<I', 1000001)
            + b'\x08replica1' + b'\x04repl' + b'\x06secret'
            + struct.pack('<HII', 3306, 0, 0)
        )

    def test_binlog_dump(self):
        payload = binlog_dump_payload(BinlogPosition("mysql-bin.000003", 120), 1000001)
        assert payload == b'\x12' + struct.pack('<IHI', 120, 0, 1000001) + b'mysql-bin.000003'

    def test_binlog_dump_gtid(self):
        gtid_set = GtidSet(f"{SID}:1-10")
        payload = binlog_dump_gtid_payload(gtid_set, 1000001)
        encoded = gtid_set.encoded()
        assert payload[:1] == b'\x1e'
        assert struct.unpack_from('<HI', payload, 1) == (0x04, 1000001)
        assert struct.unpack_from('<IQI', payload, 7) == (0, 4, len(encoded))
        assert payload.endswith(encoded)


class TestReplicaHandshake:
    """Test the full connect sequence against a scripted server."""

    def test_file_position_from_server(self, config, repository):
        transport = ScriptedTransport(handshake_packets())
        tracker = PositionTracker()
        result = ReplicaHandshake(config, repository).perform(transport, tracker)

        assert result.position == BinlogPosition("mysql-bin.000001", 4)
        assert result.greeting.server_version == "8.0.33"
        assert tracker.initialized
        assert transport.written[1][:1] == b'\x15'
        assert transport.written[-1] == binlog_dump_payload(result.position, config.server_id)
        assert not transport.packets

    def test_explicit_position_kept(self, config, repository):
        transport = ScriptedTransport(handshake_packets())
        tracker = PositionTracker(binlog_position=BinlogPosition("mysql-bin.000009", 120))
        result = ReplicaHandshake(config, repository).perform(transport, tracker)
        assert result.position == BinlogPosition("mysql-bin.000009", 120)

    def test_session_variables(self, config, repository):
        repository.capabilities = ServerCapabilities(version="8.0.33", checksum_enabled=True)
        config.heartbeat_period = 1.5
        transport = ScriptedTransport(handshake_packets(checksum=True, heartbeat=True))
        ReplicaHandshake(config, repository).perform(transport, PositionTracker())

        queries = [p[1:].decode() for p in transport.written if p[:1] == COM_QUERY]
        assert queries == [
            "SET @master_binlog_checksum = @@global.binlog_checksum",
            "SET @master_heartbeat_period = 1500000000",
        ]

    def test_slave_uuid_is_escaped(self, config, repository):
        config.slave_uuid = "abc'd"
        transport = ScriptedTransport(handshake_packets(heartbeat=True))
        ReplicaHandshake(config, repository).perform(transport, PositionTracker())
        assert COM_QUERY + b"SET @slave_uuid = 'abc\\'d'" in transport.written

    def test_gtid_mode(self, config, repository):
        config.gtid_enabled = True
        repository.capabilities = ServerCapabilities(version="8.0.33", gtid_mode=True)
        repository.gtid_checkpoint = GtidSet(f"{SID}:1-10")
        transport = ScriptedTransport(handshake_packets())
        tracker = PositionTracker(gtid_mode=True)
        result = ReplicaHandshake(config, repository).perform(transport, tracker)

        assert result.position == GtidSet(f"{SID}:1-10")
        assert transport.written[-1] == binlog_dump_gtid_payload(result.position, config.server_id)

    def test_gtid_mode_requires_server_support(self, config, repository):
        config.gtid_enabled = True
        transport = ScriptedTransport(handshake_packets())
        with pytest.raises(ConfigurationError, match="gtid_mode=OFF") as exc_info:
            ReplicaHandshake(config, repository).perform(transport, PositionTracker(gtid_mode=True))
        assert exc_info.value.kind is ErrorKind.CONFIGURATION
        assert len(transport.written) == 1

    def test_register_rejected(self, config, repository):
        packets = [bf.greeting(), bf.ok_packet(), bf.err_packet(1045, "no REPLICATION SLAVE privilege")]
        transport = ScriptedTransport(packets)
        with pytest.raises(ServerError, match="REPLICATION SLAVE"):
            ReplicaHandshake(config, repository).perform(transport, PositionTracker())

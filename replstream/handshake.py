# -*- coding: utf-8 -*-
"""
Handshake and replica registration.

Sequence on a freshly connected transport:

    server greeting  ->  HandshakeResponse41  ->  auth result (maybe switch)
    capabilities / checkpoint from the schema repository
    SET @master_binlog_checksum, @master_heartbeat_period, @slave_uuid
    COM_REGISTER_SLAVE
    COM_BINLOG_DUMP or COM_BINLOG_DUMP_GTID

After ``perform()`` returns, every packet read from the transport is a
binlog event packet.
"""

import logging
import struct
from dataclasses import dataclass

from pymysql import _auth
from pymysql.charset import charset_by_name
from pymysql.constants import CLIENT, COMMAND
from pymysql.converters import escape_string

from .binary_reader import BinaryReader, length_coded_binary
from .exceptions import AuthenticationError, ConfigurationError, DecodeError, ProtocolError, ServerError
from .gtid import GtidSet
from .position import BinlogPosition, Position, PositionTracker
from .repository import SchemaRepository, ServerCapabilities

logger = logging.getLogger(__name__)

OK_PACKET = 0x00
AUTH_MORE_DATA = 0x01
EOF_PACKET = 0xFE
ERR_PACKET = 0xFF

MAX_PACKET_LENGTH = 2 ** 24 - 1
BINLOG_THROUGH_GTID = 0x04

NATIVE_PASSWORD = "mysql_native_password"
CACHING_SHA2_PASSWORD = "caching_sha2_password"

# caching_sha2_password status bytes following AUTH_MORE_DATA
FAST_AUTH_SUCCESS = 0x03
PERFORM_FULL_AUTH = 0x04
REQUEST_PUBLIC_KEY = b'\x02'


# ============================================================================
# Packets
# ============================================================================

@dataclass(frozen=True)
class ServerGreeting:
    """Initial handshake packet (protocol version 10)."""
    protocol_version: int
    server_version: str
    connection_id: int
    salt: bytes
    capabilities: int
    charset: int = 0
    status: int = 0
    auth_plugin: str = NATIVE_PASSWORD

    @classmethod
    def parse(cls, payload: bytes) -> 'ServerGreeting':
        if payload[:1] == bytes([ERR_PACKET]):
            raise_for_error(payload)
        try:
            reader = BinaryReader(payload)
            protocol_version = reader.read_uint8()
            if protocol_version != 10:
                raise ProtocolError(f"unsupported protocol version {protocol_version}")
            server_version = reader.read_null_terminated().decode('latin1')
            connection_id = reader.read_uint32()
            salt = reader.read(8)
            reader.skip(1)
            capabilities = reader.read_uint16()
            charset = status = auth_len = 0
            auth_plugin = NATIVE_PASSWORD

            if reader.remaining:
                charset = reader.read_uint8()
                status = reader.read_uint16()
                capabilities |= reader.read_uint16() << 16
                auth_len = reader.read_uint8()
                reader.skip(10)

            if capabilities & CLIENT.SECURE_CONNECTION and reader.remaining:
                salt_len = max(12, auth_len - 9)
                salt += reader.read(min(salt_len, reader.remaining))
                if reader.remaining:
                    reader.skip(1)

            if capabilities & CLIENT.PLUGIN_AUTH and reader.remaining:
                end = payload.find(b'\x00', reader.offset)
                name = payload[reader.offset:] if end < 0 else payload[reader.offset:end]
                auth_plugin = name.decode('ascii')
        except DecodeError as e:
            raise ProtocolError(f"truncated server greeting: {e}") from e

        return cls(
            protocol_version=protocol_version,
            server_version=server_version,
            connection_id=connection_id,
            salt=salt,
            capabilities=capabilities,
            charset=charset,
            status=status,
            auth_plugin=auth_plugin,
        )


def parse_error(packet: bytes) -> ServerError:
    """Build a ServerError from an ERR packet."""
    reader = BinaryReader(packet, 1)
    try:
        code = reader.read_uint16()
        sql_state = None
        if reader.remaining and reader.peek_uint8() == ord('#'):
            reader.skip(1)
            sql_state = reader.read(5).decode('ascii', 'replace')
        message = reader.read_rest().decode('utf-8', 'replace')
    except DecodeError:
        return ServerError(0, "malformed error packet")
    return ServerError(code, message, sql_state)


def raise_for_error(packet: bytes) -> None:
    if not packet:
        raise ProtocolError("empty packet")
    if packet[0] == ERR_PACKET:
        raise parse_error(packet)


def execute(transport, sql: str) -> None:
    """Run a statement that answers with a plain OK packet."""
    transport.write_command(bytes([COMMAND.COM_QUERY]) + sql.encode('utf-8'))
    packet = transport.read_packet()
    raise_for_error(packet)
    if packet[0] != OK_PACKET:
        raise ProtocolError(f"expected OK after {sql!r}, got 0x{packet[0]:02x}")


# ============================================================================
# Authentication
# ============================================================================

def scramble(plugin: str, password: bytes, salt: bytes) -> bytes:
    """Auth response for ``plugin`` given the server nonce."""
    if not password:
        return b''
    if plugin == NATIVE_PASSWORD:
        return _auth.scramble_native_password(password, salt[:20])
    if plugin == CACHING_SHA2_PASSWORD:
        return _auth.scramble_caching_sha2(password, salt[:20])
    raise AuthenticationError(0, f"unsupported authentication plugin {plugin!r}")


def build_handshake_response(
    greeting: ServerGreeting,
    user: str,
    password: str,
    charset: str = "utf8mb4",
) -> bytes:
    """HandshakeResponse41 payload."""
    charset_info = charset_by_name(charset)
    if charset_info is None:
        raise ConfigurationError(f"unknown charset: {charset}")

    flags = CLIENT.CAPABILITIES & greeting.capabilities | CLIENT.PROTOCOL_41
    auth_response = scramble(greeting.auth_plugin, password.encode('utf-8'), greeting.salt)

    payload = struct.pack('<IIB', flags, MAX_PACKET_LENGTH, charset_info.id)
    payload += b'\x00' * 23
    payload += user.encode('utf-8') + b'\x00'
    if flags & CLIENT.PLUGIN_AUTH_LENENC_CLIENT_DATA:
        payload += length_coded_binary(len(auth_response)) + auth_response
    elif flags & CLIENT.SECURE_CONNECTION:
        payload += struct.pack('B', len(auth_response)) + auth_response
    else:
        payload += auth_response + b'\x00'
    if flags & CLIENT.PLUGIN_AUTH:
        payload += greeting.auth_plugin.encode('ascii') + b'\x00'
    return payload


def authenticate(transport, greeting: ServerGreeting, user: str, password: str, charset: str) -> None:
    """
    Send the handshake response and follow the server until it answers OK.

    Handles auth switch requests and the caching_sha2_password fast and
    full (RSA) authentication paths.
    """
    transport.write_packet(build_handshake_response(greeting, user, password, charset))
    plugin = greeting.auth_plugin
    salt = greeting.salt
    secret = password.encode('utf-8')

    while True:
        packet = transport.read_packet()
        if not packet:
            raise ProtocolError("empty packet during authentication")
        status = packet[0]

        if status == OK_PACKET:
            logger.debug(f"Authenticated as {user!r} with {plugin}")
            return

        if status == ERR_PACKET:
            error = parse_error(packet)
            raise AuthenticationError(error.code, error.server_message, error.sql_state)

        if status == EOF_PACKET:
            if len(packet) == 1:
                raise AuthenticationError(0, "server requested the removed old password authentication")
            reader = BinaryReader(packet, 1)
            plugin = reader.read_null_terminated().decode('ascii')
            salt = reader.read_rest().rstrip(b'\x00')
            logger.debug(f"Server switched authentication to {plugin}")
            transport.write_packet(scramble(plugin, secret, salt))
            continue

        if status == AUTH_MORE_DATA and plugin == CACHING_SHA2_PASSWORD:
            if packet[1:2] == bytes([FAST_AUTH_SUCCESS]):
                continue
            if packet[1:2] == bytes([PERFORM_FULL_AUTH]):
                transport.write_packet(REQUEST_PUBLIC_KEY)
                key_packet = transport.read_packet()
                raise_for_error(key_packet)
                if key_packet[0] != AUTH_MORE_DATA:
                    raise ProtocolError(f"expected public key, got 0x{key_packet[0]:02x}")
                try:
                    encrypted = _auth.sha2_rsa_encrypt(secret, salt[:20], key_packet[1:])
                except RuntimeError as e:
                    raise ConfigurationError(f"full caching_sha2_password auth needs 'cryptography': {e}") from e
                transport.write_packet(encrypted)
                continue

        raise ProtocolError(f"unexpected packet 0x{status:02x} during authentication")


# ============================================================================
# Replication commands
# ============================================================================

def _pascal(value: str) -> bytes:
    data = value.encode('utf-8')
    return struct.pack('B', len(data)) + data


def register_replica_payload(
    server_id: int,
    hostname: str = "",
    user: str = "",
    password: str = "",
    port: int = 0,
) -> bytes:
    """COM_REGISTER_SLAVE payload."""
    return (
        bytes([COMMAND.COM_REGISTER_SLAVE])
        + struct.pack('<I', server_id)
        + _pascal(hostname)
        + _pascal(user)
        + _pascal(password)
        + struct.pack('<HII', port, 0, 0)  # port, replication rank, master id
    )


def binlog_dump_payload(position: BinlogPosition, server_id: int) -> bytes:
    """COM_BINLOG_DUMP payload (blocking dump from file+offset)."""
    return (
        bytes([COMMAND.COM_BINLOG_DUMP])
        + struct.pack('<IHI', position.log_pos, 0, server_id)
        + position.log_file.encode('utf-8')
    )


def binlog_dump_gtid_payload(gtid_set: GtidSet, server_id: int) -> bytes:
    """COM_BINLOG_DUMP_GTID payload; the server skips every GTID in the set."""
    encoded = gtid_set.encoded()
    return (
        bytes([COMMAND.COM_BINLOG_DUMP_GTID])
        + struct.pack('<HI', BINLOG_THROUGH_GTID, server_id)
        + struct.pack('<I', 0)  # empty file name
        + struct.pack('<Q', 4)
        + struct.pack('<I', len(encoded))
        + encoded
    )


@dataclass
class HandshakeResult:
    """Outcome of a successful handshake."""
    greeting: ServerGreeting
    capabilities: ServerCapabilities
    position: Position


class ReplicaHandshake:
    """
    Puts a connected transport into binlog streaming mode.

    Example:
        >>> handshake = ReplicaHandshake(config, repository)
        >>> transport.connect((config.host, config.port))
        >>> result = handshake.perform(transport, tracker)
        >>> result.position
        BinlogPosition(log_file='mysql-bin.000003', log_pos=4)
    """

    def __init__(self, config, repository: SchemaRepository):
        self.config = config
        self.repository = repository

    def perform(self, transport, tracker: PositionTracker) -> HandshakeResult:
        config = self.config
        greeting = ServerGreeting.parse(transport.read_packet())
        logger.info(
            f"Connected to MySQL {greeting.server_version} "
            f"(connection id {greeting.connection_id})"
        )
        authenticate(transport, greeting, config.user, config.password, config.charset)

        capabilities = self.repository.fetch_server_capabilities()
        if config.gtid_enabled and not capabilities.gtid_mode:
            raise ConfigurationError("GTID mode requested but the server has gtid_mode=OFF")

        if not tracker.initialized:
            tracker.seed(self.repository.fetch_server_checkpoint(config.gtid_enabled))
        position = tracker.resume_position()

        self._prepare_session(transport, capabilities)

        transport.write_command(register_replica_payload(
            config.server_id,
            config.report_hostname,
            config.user,
            config.password,
            config.port,
        ))
        packet = transport.read_packet()
        raise_for_error(packet)
        logger.info(f"Registered as replica with server_id={config.server_id}")

        if config.gtid_enabled:
            transport.write_command(binlog_dump_gtid_payload(position, config.server_id))
        else:
            transport.write_command(binlog_dump_payload(position, config.server_id))
        logger.info(f"Requested binlog dump from {position}")

        return HandshakeResult(greeting=greeting, capabilities=capabilities, position=position)

    def _prepare_session(self, transport, capabilities: ServerCapabilities) -> None:
        if capabilities.checksum_enabled:
            execute(transport, "SET @master_binlog_checksum = @@global.binlog_checksum")
        if self.config.heartbeat_period:
            nanoseconds = int(self.config.heartbeat_period * 1000000000)
            execute(transport, f"SET @master_heartbeat_period = {nanoseconds}")
        if self.config.slave_uuid:
            execute(transport, f"SET @slave_uuid = '{escape_string(self.config.slave_uuid)}'")

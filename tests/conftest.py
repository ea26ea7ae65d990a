# -*- coding: utf-8 -*-
"""Pytest configuration for replstream tests."""

from typing import Dict, List, Tuple

import pytest

from replstream.config import BinlogStreamConfig
from replstream.exceptions import RepositoryError, TransportError
from replstream.gtid import GtidSet
from replstream.position import BinlogPosition
from replstream.repository import ColumnInfo, SchemaRepository, ServerCapabilities

from tests import binlog_factory as bf


class FakeRepository(SchemaRepository):
    """In-memory schema repository."""

    def __init__(self, tables=None, capabilities=None, checkpoint=None, gtid_checkpoint=None):
        self.tables: Dict[Tuple[str, str], List[ColumnInfo]] = dict(tables or {})
        self.capabilities = capabilities or ServerCapabilities(version="8.0.33")
        self.checkpoint = checkpoint or BinlogPosition("mysql-bin.000001", 4)
        self.gtid_checkpoint = gtid_checkpoint or GtidSet()
        self.column_fetches: List[Tuple[str, str]] = []
        self.closed = False

    def fetch_table_columns(self, schema, table):
        self.column_fetches.append((schema, table))
        try:
            return self.tables[(schema, table)]
        except KeyError:
            raise RepositoryError(f"table {schema}.{table} does not exist") from None

    def fetch_server_checkpoint(self, gtid_mode=False):
        return self.gtid_checkpoint.copy() if gtid_mode else self.checkpoint

    def fetch_server_capabilities(self):
        return self.capabilities

    def close(self):
        self.closed = True


class ScriptedTransport:
    """
    Transport double replaying canned packets.

    Reading past the script raises TransportError, like a dropped
    connection.
    """

    def __init__(self, packets=None, fail_connect=False):
        self.packets = list(packets or [])
        self.fail_connect = fail_connect
        self.written: List[bytes] = []
        self.connected_to = None
        self.closed = False

    @property
    def is_connected(self):
        return self.connected_to is not None and not self.closed

    def connect(self, address):
        if self.fail_connect:
            raise TransportError(f"cannot connect to {address[0]}:{address[1]}: refused")
        self.connected_to = address

    def read_packet(self):
        if self.closed or not self.packets:
            raise TransportError("connection closed by server")
        return self.packets.pop(0)

    def write_packet(self, payload):
        self.written.append(payload)

    def write_command(self, payload):
        self.written.append(payload)

    def close(self):
        self.closed = True


def handshake_packets(checksum=False, heartbeat=False):
    """Server side of a successful handshake: greeting, auth OK, SETs, register OK."""
    packets = [bf.greeting(), bf.ok_packet()]
    if checksum:
        packets.append(bf.ok_packet())
    if heartbeat:
        packets.append(bf.ok_packet())
    packets.append(bf.ok_packet())
    return packets


USERS_COLUMNS = [
    ColumnInfo(name="id", data_type="int", column_type="int(11)", nullable=False, key="PRI"),
    ColumnInfo(name="name", data_type="varchar", column_type="varchar(20)",
               character_set="utf8mb4", collation="utf8mb4_general_ci"),
]


@pytest.fixture
def repository():
    """Fake repository knowing ``shop.users (id INT, name VARCHAR(20))``."""
    return FakeRepository(tables={("shop", "users"): list(USERS_COLUMNS)})


@pytest.fixture
def config():
    """Minimal valid configuration."""
    return BinlogStreamConfig(host="db1", user="repl", password="secret", retry_backoff_seconds=0.5)


# Custom markers
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )

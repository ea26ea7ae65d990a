# -*- coding: utf-8 -*-
"""
replstream - MySQL binlog replication client.

Connects to a MySQL server as a replica, requests the binary log from a
file position or GTID set, and decodes the event stream into typed events
(row changes with before/after images, DDL, transaction boundaries, GTIDs)
for delivery to subscribers.

    from replstream import BinlogStreamConfig, BinlogStreamEngine

    engine = BinlogStreamEngine(BinlogStreamConfig(host="db1", user="repl", password="secret"))
    engine.register_subscriber(print)
    engine.run()
"""

__version__ = "0.3.0"

from .config import BinlogStreamConfig
from .connector import BinlogCDCConnector, create_binlog_cdc_connector
from .dispatcher import EventDispatcher, EventSubscriber
from .engine import BinlogStreamEngine
from .events import (
    AnonymousGtidEvent,
    BinlogEvent,
    DeleteRowsEvent,
    EventHeader,
    EventKind,
    EventType,
    FormatDescriptionEvent,
    GtidEvent,
    HeartbeatEvent,
    QueryEvent,
    RotateEvent,
    RowChange,
    RowImage,
    RowsEvent,
    TableMapEvent,
    UnknownEvent,
    UpdateRowsEvent,
    WriteRowsEvent,
    XaPrepareEvent,
    XidEvent,
)
from .exceptions import (
    AuthenticationError,
    ConfigurationError,
    DecodeError,
    ErrorKind,
    ProtocolError,
    ReplicationError,
    RepositoryError,
    ServerError,
    TransportError,
)
from .gtid import Gtid, GtidSet
from .position import BinlogPosition, PositionTracker
from .records import ArrowBatchSubscriber, ChangeRecord, ChangeRecordSubscriber, records_to_arrow_batch
from .repository import ColumnInfo, MySQLRepository, SchemaRepository, ServerCapabilities
from .supervisor import ReconnectSupervisor, RetryState, SupervisorState
from .table_cache import ColumnDescriptor, LRUCache, TableMapEntry, TableMetadataCache

__all__ = [
    '__version__',
    # Engine
    'BinlogStreamConfig',
    'BinlogStreamEngine',
    'BinlogCDCConnector',
    'create_binlog_cdc_connector',
    'ReconnectSupervisor',
    'RetryState',
    'SupervisorState',
    # Events
    'BinlogEvent',
    'EventHeader',
    'EventKind',
    'EventType',
    'FormatDescriptionEvent',
    'RotateEvent',
    'QueryEvent',
    'TableMapEvent',
    'RowsEvent',
    'WriteRowsEvent',
    'UpdateRowsEvent',
    'DeleteRowsEvent',
    'XidEvent',
    'XaPrepareEvent',
    'GtidEvent',
    'AnonymousGtidEvent',
    'HeartbeatEvent',
    'UnknownEvent',
    'RowImage',
    'RowChange',
    # Subscribers
    'EventDispatcher',
    'EventSubscriber',
    'ChangeRecord',
    'ChangeRecordSubscriber',
    'ArrowBatchSubscriber',
    'records_to_arrow_batch',
    # Positions
    'Gtid',
    'GtidSet',
    'BinlogPosition',
    'PositionTracker',
    # Schema
    'SchemaRepository',
    'MySQLRepository',
    'ColumnInfo',
    'ServerCapabilities',
    'LRUCache',
    'TableMetadataCache',
    'TableMapEntry',
    'ColumnDescriptor',
    # Errors
    'ErrorKind',
    'ReplicationError',
    'TransportError',
    'ProtocolError',
    'ServerError',
    'AuthenticationError',
    'DecodeError',
    'RepositoryError',
    'ConfigurationError',
]

# -*- coding: utf-8 -*-
"""
Replication stream engine.

Wires the components of one replication stream together:

    ReconnectSupervisor
      -> PacketTransport + ReplicaHandshake     (connect)
      -> EventDecoder + TableMetadataCache      (consume)
      -> PositionTracker                        (position bookkeeping)
      -> EventDispatcher                        (subscribers)

One engine owns exactly one connection and one sequential read loop.
"""

import logging
import time
from typing import Callable, Optional

from .config import BinlogStreamConfig
from .decoder import EventDecoder
from .dispatcher import EventDispatcher, Subscriber
from .events import (
    AnonymousGtidEvent,
    BinlogEvent,
    GtidEvent,
    HeartbeatEvent,
    RotateEvent,
)
from .exceptions import TransportError
from .gtid import GtidSet
from .handshake import HandshakeResult, ReplicaHandshake
from .position import PositionTracker
from .repository import MySQLRepository, SchemaRepository
from .supervisor import ReconnectSupervisor, SupervisorState
from .table_cache import TableMetadataCache
from .table_patterns import EventFilter
from .transport import PacketTransport

logger = logging.getLogger(__name__)


class BinlogStreamEngine:
    """
    MySQL binlog replication client.

    Args:
        config: Stream configuration (validated on construction)
        repository: Schema repository, defaults to a pymysql backed one
        cache: Key/value store for table metadata (get/set/has)
        dispatcher: Event dispatcher, defaults to a fresh one
        transport_factory: Builds an unconnected PacketTransport
        sleep: Backoff sleep, injectable for tests

    Example:
        >>> config = BinlogStreamConfig(host="db1", user="repl", password="secret")
        >>> engine = BinlogStreamEngine(config)
        >>> engine.register_subscriber(lambda event: print(event.kind, event.payload))
        >>> engine.run()
    """

    def __init__(
        self,
        config: BinlogStreamConfig,
        repository: Optional[SchemaRepository] = None,
        cache=None,
        dispatcher: Optional[EventDispatcher] = None,
        transport_factory: Optional[Callable[[], PacketTransport]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config.validate()
        self.repository = repository if repository is not None else MySQLRepository.from_config(config)
        self.table_cache = TableMetadataCache(self.repository, cache=cache, maxsize=config.table_cache_size)
        self.dispatcher = dispatcher if dispatcher is not None else EventDispatcher()
        self.decoder = EventDecoder(
            self.table_cache,
            event_filter=EventFilter.from_config(config),
            verify_checksum=config.verify_checksum,
        )
        self.tracker = self._build_tracker(config)
        self.handshake = ReplicaHandshake(config, self.repository)
        self._transport_factory = transport_factory or self._default_transport
        self._transport: Optional[PacketTransport] = None
        self._server_info: Optional[HandshakeResult] = None
        self.supervisor = ReconnectSupervisor(
            connect=self.connect,
            consume=self.consume,
            disconnect=self.disconnect,
            retry_attempts=config.retry_attempts,
            backoff_seconds=config.retry_backoff_seconds,
            sleep=sleep,
        )

    @staticmethod
    def _build_tracker(config: BinlogStreamConfig) -> PositionTracker:
        start = config.starting_position()
        if isinstance(start, GtidSet):
            return PositionTracker(gtid_mode=True, gtid_set=start)
        return PositionTracker(gtid_mode=config.gtid_enabled, binlog_position=start)

    def _default_transport(self) -> PacketTransport:
        return PacketTransport(
            connect_timeout=self.config.connect_timeout,
            read_timeout=self.config.effective_read_timeout,
        )

    # ========================================================================
    # Connection
    # ========================================================================

    def connect(self) -> HandshakeResult:
        """Open a connection and start the dump from the tracker's resume point."""
        self.disconnect()
        transport = self._transport_factory()
        self._transport = transport
        transport.connect((self.config.host, int(self.config.port)))
        result = self.handshake.perform(transport, self.tracker)
        self.decoder.reset(checksum=result.capabilities.checksum_enabled)
        self._server_info = result
        logger.info(f"Streaming binlog from {self.config.host}:{self.config.port} at {result.position}")
        return result

    def disconnect(self) -> None:
        transport, self._transport = self._transport, None
        if transport is not None:
            transport.close()
            logger.info(f"Disconnected from {self.config.host}:{self.config.port}")

    @property
    def is_connected(self) -> bool:
        return self._transport is not None and self._transport.is_connected

    # ========================================================================
    # Streaming
    # ========================================================================

    def consume(self) -> BinlogEvent:
        """Read, decode, track and dispatch the next event."""
        transport = self._transport
        if transport is None:
            raise TransportError("not connected")
        event = self.decoder.decode_packet(transport.read_packet())
        self._track(event)
        if self.decoder.should_dispatch(event):
            self.dispatcher.dispatch(event)
        return event

    def _track(self, event: BinlogEvent) -> None:
        payload = event.payload
        if isinstance(payload, HeartbeatEvent):
            return
        if isinstance(payload, RotateEvent):
            self.tracker.on_rotate(payload.next_binlog, payload.position)
            return
        self.tracker.on_event(event.log_pos)
        if isinstance(payload, GtidEvent):
            self.tracker.on_gtid(payload.gtid)
        elif isinstance(payload, AnonymousGtidEvent):
            self.tracker.on_anonymous_gtid()
        if event.ends_transaction:
            self.tracker.on_commit(event.log_pos)

    def run(self) -> None:
        """Stream until stopped or the retry budget is exhausted."""
        self.supervisor.run()

    def stop(self) -> None:
        self.supervisor.stop()

    def close(self) -> None:
        self.stop()
        self.repository.close()

    # ========================================================================
    # Subscribers
    # ========================================================================

    def register_subscriber(self, subscriber: Subscriber) -> None:
        self.dispatcher.register(subscriber)

    def unregister_subscriber(self, subscriber: Subscriber) -> None:
        self.dispatcher.unregister(subscriber)

    # ========================================================================
    # Introspection
    # ========================================================================

    @property
    def server_info(self) -> Optional[HandshakeResult]:
        """Greeting and capabilities of the last successful connection."""
        return self._server_info

    @property
    def position(self) -> dict:
        return self.tracker.snapshot()

    @property
    def state(self) -> SupervisorState:
        return self.supervisor.state

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

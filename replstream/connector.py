#!/usr/bin/env python3
"""
Asyncio facade over the replication stream engine.

The engine's read loop is blocking, so it runs on a worker thread; change
records cross into the event loop through an asyncio queue.

    async with BinlogCDCConnector(config) as connector:
        async for batch in connector.stream_batches():
            print(f"Batch: {batch.num_rows} records")
"""

import asyncio
import logging
from typing import Any, AsyncGenerator, Dict, List, Optional

import pyarrow as pa

from .config import BinlogStreamConfig
from .engine import BinlogStreamEngine
from .records import ChangeRecord, ChangeRecordSubscriber, records_to_arrow_batch

logger = logging.getLogger(__name__)

_END_OF_STREAM = object()


class BinlogCDCConnector:
    """
    Change data capture connector streaming ChangeRecord batches.

    Example:
        >>> config = BinlogStreamConfig(host="localhost", user="repl", password="secret",
        ...                             only_tables=["ecommerce.*"])
        >>> connector = BinlogCDCConnector(config)
        >>>
        >>> async with connector:
        >>>     async for records in connector.stream_changes():
        >>>         for record in records:
        >>>             print(record.event_type, record.table, record.data)
    """

    def __init__(self, config: BinlogStreamConfig, engine: Optional[BinlogStreamEngine] = None):
        self.config = config
        self.engine = engine if engine is not None else BinlogStreamEngine(config)
        self._running = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Future] = None
        self._subscriber: Optional[ChangeRecordSubscriber] = None
        self._error: Optional[BaseException] = None
        self._records_emitted = 0

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    async def start(self):
        """Start streaming on a worker thread."""
        if self._worker is not None:
            return

        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._error = None
        self._subscriber = ChangeRecordSubscriber(
            self._enqueue,
            batch_size=self.config.batch_size,
            tracker=self.engine.tracker,
        )
        self.engine.register_subscriber(self._subscriber)
        self._worker = self._loop.run_in_executor(None, self._run_engine)
        self._running = True

        logger.info(
            f"Binlog CDC connector started: "
            f"host={self.config.host}, "
            f"server_id={self.config.server_id}"
        )

    def _run_engine(self) -> None:
        try:
            self.engine.run()
        except Exception as e:
            logger.error(f"Binlog CDC streaming error: {e}")
            self._error = e
        finally:
            self._subscriber.flush()
            self._loop.call_soon_threadsafe(self._end_stream)

    def _end_stream(self) -> None:
        self._running = False
        self._queue.put_nowait(_END_OF_STREAM)

    def _enqueue(self, records: List[ChangeRecord]) -> None:
        self._records_emitted += len(records)
        self._loop.call_soon_threadsafe(self._queue.put_nowait, records)

    async def stop(self):
        """Stop streaming and wait for the worker thread to finish."""
        if self._worker is None:
            return

        if not self._worker.done():
            self.engine.stop()
        await self._worker
        self._worker = None
        self._running = False
        self.engine.unregister_subscriber(self._subscriber)
        logger.info("Binlog CDC connector stopped")

    async def stream_changes(self) -> AsyncGenerator[List[ChangeRecord], None]:
        """
        Stream change records.

        Yields:
            Batches of ChangeRecord, cut at transaction boundaries or at
            ``batch_size`` records.
        """
        if self._worker is None:
            await self.start()

        try:
            while True:
                item = await self._queue.get()
                if item is _END_OF_STREAM:
                    # later calls see the end of a finished stream at once
                    self._queue.put_nowait(_END_OF_STREAM)
                    break
                yield item
        except asyncio.CancelledError:
            logger.info("Binlog CDC streaming cancelled")
            raise

        if self._error is not None:
            raise self._error

    async def stream_batches(self) -> AsyncGenerator[pa.RecordBatch, None]:
        """
        Stream change records as Arrow RecordBatches.

        Yields:
            Arrow RecordBatches with the ChangeRecord schema
        """
        async for records in self.stream_changes():
            if records:
                yield records_to_arrow_batch(records)

    def get_status(self) -> Dict[str, Any]:
        """Get connector status."""
        position = self.engine.position
        return {
            "running": self._running,
            "state": self.engine.state.value,
            "connected": self.engine.is_connected,
            "log_file": position["log_file"],
            "log_pos": position["log_pos"],
            "gtid_set": position["gtid_set"],
            "records_emitted": self._records_emitted,
            "last_error": str(self.engine.supervisor.last_error) if self.engine.supervisor.last_error else None,
            "server_id": self.config.server_id,
            "host": self.config.host,
        }

    def get_position(self) -> Dict[str, Any]:
        """Get the last committed position for checkpointing."""
        position = self.engine.position
        return {
            "log_file": position["log_file"],
            "log_pos": position["log_pos"],
            "gtid_set": position["gtid_set"],
        }


def create_binlog_cdc_connector(
    host: str = "localhost",
    port: int = 3306,
    user: str = "root",
    password: str = "",
    **kwargs
) -> BinlogCDCConnector:
    """
    Create a binlog CDC connector.

    Args:
        host: MySQL host
        port: MySQL port
        user: Username (needs REPLICATION SLAVE and REPLICATION CLIENT)
        password: Password
        **kwargs: Additional BinlogStreamConfig options

    Returns:
        Configured BinlogCDCConnector instance
    """
    config = BinlogStreamConfig(host=host, port=port, user=user, password=password, **kwargs)
    return BinlogCDCConnector(config)

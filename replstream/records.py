#!/usr/bin/env python3
"""
Change records and Arrow output.

Flattens decoded binlog events into one ChangeRecord per affected row
(plus DDL, GTID and commit markers) and converts lists of records into
Arrow RecordBatches for downstream analytics.
"""

import base64
import datetime
import decimal
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import pyarrow as pa

from .dispatcher import EventSubscriber
from .events import (
    BinlogEvent,
    DeleteRowsEvent,
    GtidEvent,
    QueryEvent,
    UpdateRowsEvent,
    WriteRowsEvent,
    XidEvent,
)
from .position import PositionTracker

logger = logging.getLogger(__name__)


# ============================================================================
# Records
# ============================================================================

@dataclass
class ChangeRecord:
    """High-level change record for user consumption."""

    event_type: str  # 'insert', 'update', 'delete', 'ddl', 'gtid', 'commit', 'rollback'
    schema: str
    table: str
    timestamp: datetime.datetime

    # Row data
    data: Optional[Dict[str, Any]] = None  # New row, or deleted row
    old_data: Optional[Dict[str, Any]] = None  # Row before an update

    # Position tracking
    log_file: Optional[str] = None
    log_pos: Optional[int] = None
    gtid: Optional[str] = None

    # DDL-specific
    query: Optional[str] = None

    @classmethod
    def from_event(
        cls,
        event: BinlogEvent,
        log_file: Optional[str] = None,
        gtid: Optional[str] = None,
    ) -> List['ChangeRecord']:
        """Convert a decoded event to zero or more records."""
        payload = event.payload
        timestamp = datetime.datetime.fromtimestamp(event.timestamp, tz=datetime.timezone.utc)
        common = dict(timestamp=timestamp, log_file=log_file, log_pos=event.log_pos, gtid=gtid)

        if isinstance(payload, WriteRowsEvent):
            return [
                cls(event_type='insert', schema=payload.schema, table=payload.table,
                    data=row.after.as_dict(), **common)
                for row in payload.rows
            ]

        if isinstance(payload, UpdateRowsEvent):
            return [
                cls(event_type='update', schema=payload.schema, table=payload.table,
                    data=row.after.as_dict(), old_data=row.before.as_dict(), **common)
                for row in payload.rows
            ]

        if isinstance(payload, DeleteRowsEvent):
            return [
                cls(event_type='delete', schema=payload.schema, table=payload.table,
                    data=row.before.as_dict(), **common)
                for row in payload.rows
            ]

        if isinstance(payload, QueryEvent) and event.ends_transaction:
            if payload.is_commit:
                event_type = 'commit'
            elif payload.is_rollback:
                event_type = 'rollback'
            else:
                event_type = 'ddl'
            return [cls(event_type=event_type, schema=payload.schema, table='', query=payload.query, **common)]

        if isinstance(payload, GtidEvent):
            common['gtid'] = str(payload.gtid)
            return [cls(event_type='gtid', schema='', table='', **common)]

        if isinstance(payload, XidEvent):
            return [cls(event_type='commit', schema='', table='', **common)]

        return []


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime.datetime, datetime.date, datetime.time)):
        return value.isoformat()
    if isinstance(value, datetime.timedelta):
        return str(value)
    if isinstance(value, decimal.Decimal):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode('ascii')
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode_row(row: Optional[Dict[str, Any]]) -> Optional[str]:
    """JSON text for a row dict; dates, decimals, bytes and SETs become strings/lists."""
    if row is None:
        return None
    return json.dumps(row, default=_json_default)


# ============================================================================
# Arrow Conversion Utilities
# ============================================================================

CHANGE_RECORD_SCHEMA = pa.schema([
    ('event_type', pa.string()),
    ('schema', pa.string()),
    ('table', pa.string()),
    ('timestamp', pa.timestamp('us', tz='UTC')),
    ('data', pa.string()),
    ('old_data', pa.string()),
    ('log_file', pa.string()),
    ('log_pos', pa.int64()),
    ('gtid', pa.string()),
    ('query', pa.string()),
])


def records_to_arrow_batch(records: List[ChangeRecord]) -> pa.RecordBatch:
    """
    Convert change records to an Arrow RecordBatch.

    Schema:
        event_type: string
        schema: string
        table: string
        timestamp: timestamp[us, UTC]
        data: string (JSON-encoded, nullable)
        old_data: string (JSON-encoded, nullable)
        log_file: string
        log_pos: int64
        gtid: string (nullable)
        query: string (nullable)
    """
    columns = {
        'event_type': [r.event_type for r in records],
        'schema': [r.schema for r in records],
        'table': [r.table for r in records],
        'timestamp': [r.timestamp for r in records],
        'data': [encode_row(r.data) for r in records],
        'old_data': [encode_row(r.old_data) for r in records],
        'log_file': [r.log_file or "" for r in records],
        'log_pos': [r.log_pos or 0 for r in records],
        'gtid': [r.gtid for r in records],
        'query': [r.query for r in records],
    }
    arrays = [pa.array(columns[f.name], type=f.type) for f in CHANGE_RECORD_SCHEMA]
    return pa.RecordBatch.from_arrays(arrays, schema=CHANGE_RECORD_SCHEMA)


# ============================================================================
# Subscribers
# ============================================================================

class ChangeRecordSubscriber(EventSubscriber):
    """
    Buffers change records and hands them over in batches.

    A batch is flushed at every transaction boundary (Xid, XA PREPARE,
    COMMIT, ROLLBACK, DDL)
    and whenever ``batch_size`` records are buffered.

    Example:
        >>> subscriber = ChangeRecordSubscriber(print, batch_size=500, tracker=engine.tracker)
        >>> engine.register_subscriber(subscriber)
    """

    def __init__(
        self,
        handler: Callable[[List[ChangeRecord]], None],
        batch_size: int = 100,
        tracker: Optional[PositionTracker] = None,
    ):
        self.handler = handler
        self.batch_size = batch_size
        self.tracker = tracker
        self._buffer: List[ChangeRecord] = []
        self._gtid: Optional[str] = None

    def on_event(self, event: BinlogEvent) -> None:
        payload = event.payload
        if isinstance(payload, GtidEvent):
            self._gtid = str(payload.gtid)

        log_file = self.tracker.current_log_file if self.tracker else None
        records = ChangeRecord.from_event(event, log_file=log_file, gtid=self._gtid)
        self._buffer.extend(records)

        if event.ends_transaction:
            self._gtid = None
        if event.ends_transaction or len(self._buffer) >= self.batch_size:
            self.flush()

    def flush(self) -> None:
        if not self._buffer:
            return
        batch, self._buffer = self._buffer, []
        self.emit(batch)

    def emit(self, records: List[ChangeRecord]) -> None:
        self.handler(records)

    @property
    def pending(self) -> int:
        return len(self._buffer)


class ArrowBatchSubscriber(ChangeRecordSubscriber):
    """Like ChangeRecordSubscriber, but hands over ``pyarrow.RecordBatch`` objects."""

    def __init__(
        self,
        handler: Callable[[pa.RecordBatch], None],
        batch_size: int = 100,
        tracker: Optional[PositionTracker] = None,
    ):
        super().__init__(handler, batch_size=batch_size, tracker=tracker)

    def emit(self, records: List[ChangeRecord]) -> None:
        batch = records_to_arrow_batch(records)
        logger.debug(f"Emitting Arrow batch of {batch.num_rows} records")
        self.handler(batch)

# -*- coding: utf-8 -*-
"""
Event dispatch.

Subscribers are called synchronously, in registration order, once per
decoded event in stream order. A slow subscriber therefore slows the
whole stream. Exceptions raised by a subscriber propagate to the caller
of ``dispatch``.
"""

import logging
from typing import Callable, List, Union

from .events import BinlogEvent, EventKind

logger = logging.getLogger(__name__)


class EventSubscriber:
    """
    Base class routing events to per-kind hooks.

    Override the hooks you care about; the rest are no-ops.

    Example:
        >>> class PrintInserts(EventSubscriber):
        ...     def on_write(self, event):
        ...         for row in event.payload.rows:
        ...             print(row.after.as_dict())
        >>> engine.register_subscriber(PrintInserts())
    """

    _HOOKS = {
        EventKind.WRITE_ROWS: 'on_write',
        EventKind.UPDATE_ROWS: 'on_update',
        EventKind.DELETE_ROWS: 'on_delete',
        EventKind.TABLE_MAP: 'on_table_map',
        EventKind.QUERY: 'on_query',
        EventKind.XID: 'on_xid',
        EventKind.XA_PREPARE: 'on_xa_prepare',
        EventKind.GTID: 'on_gtid',
        EventKind.ANONYMOUS_GTID: 'on_anonymous_gtid',
        EventKind.ROTATE: 'on_rotate',
        EventKind.HEARTBEAT: 'on_heartbeat',
        EventKind.FORMAT_DESCRIPTION: 'on_format_description',
        EventKind.UNKNOWN: 'on_unknown',
    }

    def on_event(self, event: BinlogEvent) -> None:
        getattr(self, self._HOOKS[event.kind])(event)

    def on_write(self, event: BinlogEvent) -> None:
        pass

    def on_update(self, event: BinlogEvent) -> None:
        pass

    def on_delete(self, event: BinlogEvent) -> None:
        pass

    def on_table_map(self, event: BinlogEvent) -> None:
        pass

    def on_query(self, event: BinlogEvent) -> None:
        pass

    def on_xid(self, event: BinlogEvent) -> None:
        pass

    def on_xa_prepare(self, event: BinlogEvent) -> None:
        pass

    def on_gtid(self, event: BinlogEvent) -> None:
        pass

    def on_anonymous_gtid(self, event: BinlogEvent) -> None:
        pass

    def on_rotate(self, event: BinlogEvent) -> None:
        pass

    def on_heartbeat(self, event: BinlogEvent) -> None:
        pass

    def on_format_description(self, event: BinlogEvent) -> None:
        pass

    def on_unknown(self, event: BinlogEvent) -> None:
        pass


Subscriber = Union[EventSubscriber, Callable[[BinlogEvent], None]]


class EventDispatcher:
    """Ordered fan-out of decoded events to subscribers."""

    def __init__(self):
        self._subscribers: List[Subscriber] = []
        self.dispatched = 0

    def register(self, subscriber: Subscriber) -> None:
        if subscriber in self._subscribers:
            return
        self._subscribers.append(subscriber)
        logger.debug(f"Registered subscriber {subscriber!r}")

    def unregister(self, subscriber: Subscriber) -> None:
        try:
            self._subscribers.remove(subscriber)
        except ValueError:
            logger.debug(f"Subscriber {subscriber!r} was not registered")
            return
        logger.debug(f"Unregistered subscriber {subscriber!r}")

    @property
    def subscribers(self) -> List[Subscriber]:
        return list(self._subscribers)

    def dispatch(self, event: BinlogEvent) -> None:
        # Snapshot so subscribers can (un)register from inside a callback
        for subscriber in list(self._subscribers):
            if isinstance(subscriber, EventSubscriber):
                subscriber.on_event(event)
            else:
                subscriber(event)
        self.dispatched += 1

    def __len__(self):
        return len(self._subscribers)

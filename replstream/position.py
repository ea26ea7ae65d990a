# -*- coding: utf-8 -*-
"""
Position / GTID tracking.

The tracker is an accumulator: it only ever moves forward. The resume
point is the last committed position, so a transaction interrupted by a
disconnect is replayed from its start after reconnecting.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional, Union

from .gtid import Gtid, GtidSet

logger = logging.getLogger(__name__)

_SUFFIX_RE = re.compile(r'^(.*?)(\d+)$')


@dataclass(frozen=True)
class BinlogPosition:
    """``(filename, offset)`` inside the server's binary log."""
    log_file: str
    log_pos: int

    def _sort_key(self):
        match = _SUFFIX_RE.match(self.log_file)
        if match:
            return match.group(1), int(match.group(2)), self.log_pos
        return self.log_file, -1, self.log_pos

    def __lt__(self, other: 'BinlogPosition') -> bool:
        return self._sort_key() < other._sort_key()

    def __le__(self, other: 'BinlogPosition') -> bool:
        return self._sort_key() <= other._sort_key()

    def __str__(self):
        return f"{self.log_file}:{self.log_pos}"


Position = Union[BinlogPosition, GtidSet]


class PositionTracker:
    """
    Tracks the resumable stream position.

    Exactly one representation is authoritative per session: GTID mode
    resumes from ``gtid_set``, file mode from ``binlog_position``. The file
    position is tracked in both modes for reporting.
    """

    def __init__(
        self,
        gtid_mode: bool = False,
        binlog_position: Optional[BinlogPosition] = None,
        gtid_set: Optional[GtidSet] = None,
    ):
        self.gtid_mode = gtid_mode
        self._binlog_position = binlog_position
        self._gtid_set = gtid_set.copy() if gtid_set is not None else None
        self._current_gtid: Optional[Gtid] = None
        self._current_log_file: Optional[str] = binlog_position.log_file if binlog_position else None
        self._last_log_pos: Optional[int] = binlog_position.log_pos if binlog_position else None

    @property
    def initialized(self) -> bool:
        if self.gtid_mode:
            return self._gtid_set is not None
        return self._binlog_position is not None

    def seed(self, position: Position) -> None:
        """Install a starting position fetched from the server."""
        if isinstance(position, GtidSet):
            self._gtid_set = position.copy()
        else:
            self._binlog_position = position
            self._current_log_file = position.log_file
            self._last_log_pos = position.log_pos
        logger.info(f"Position tracker seeded at {position}")

    @property
    def binlog_position(self) -> Optional[BinlogPosition]:
        return self._binlog_position

    @property
    def gtid_set(self) -> Optional[GtidSet]:
        return self._gtid_set.copy() if self._gtid_set is not None else None

    @property
    def current_gtid(self) -> Optional[Gtid]:
        """GTID of the transaction being streamed, if any."""
        return self._current_gtid

    @property
    def current_log_file(self) -> Optional[str]:
        return self._current_log_file

    @property
    def last_log_pos(self) -> Optional[int]:
        """Next-position of the last event seen, committed or not."""
        return self._last_log_pos

    def resume_position(self) -> Optional[Position]:
        """Position to hand to the dump request on (re)connect."""
        if self.gtid_mode:
            return self.gtid_set
        return self._binlog_position

    def snapshot(self) -> dict:
        return {
            "gtid_mode": self.gtid_mode,
            "log_file": self._binlog_position.log_file if self._binlog_position else self._current_log_file,
            "log_pos": self._binlog_position.log_pos if self._binlog_position else None,
            "gtid_set": str(self._gtid_set) if self._gtid_set is not None else None,
            "current_gtid": str(self._current_gtid) if self._current_gtid else None,
        }

    def _advance_file_position(self, position: BinlogPosition) -> None:
        if self._binlog_position is not None and position < self._binlog_position:
            logger.debug(f"Ignoring position {position} behind {self._binlog_position}")
            return
        self._binlog_position = position

    def on_rotate(self, next_binlog: str, position: int) -> None:
        self._current_log_file = next_binlog
        self._last_log_pos = position
        self._advance_file_position(BinlogPosition(next_binlog, position))

    def on_event(self, log_pos: int) -> None:
        """Any event with a non-zero next-position moves the read cursor."""
        if log_pos:
            self._last_log_pos = log_pos

    def on_gtid(self, gtid: Gtid) -> None:
        self._current_gtid = gtid

    def on_anonymous_gtid(self) -> None:
        self._current_gtid = None

    def on_commit(self, log_pos: int) -> None:
        """Transaction boundary: Xid, or a statement that implicitly commits."""
        if self._current_gtid is not None and self._gtid_set is not None:
            self._gtid_set.add(self._current_gtid)
        self._current_gtid = None
        if self._current_log_file and log_pos:
            self._last_log_pos = log_pos
            self._advance_file_position(BinlogPosition(self._current_log_file, log_pos))

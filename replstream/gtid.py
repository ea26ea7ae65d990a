# -*- coding: utf-8 -*-
"""
Global transaction identifiers.

A GTID set is written as comma separated members, each a source UUID
followed by one or more colon separated intervals:

    3e11fa47-71ca-11e1-9e33-c80aa9429562:1-5:11-18,
    57b70f4e-20e1-11e6-a0be-5254004f4e5f:1-2

Intervals are inclusive in the text form and kept sorted, merged and
disjoint in memory.
"""

import re
import struct
import uuid
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Tuple

from .exceptions import ConfigurationError, DecodeError

Interval = Tuple[int, int]

_UUID_RE = re.compile(r'^[0-9a-fA-F]{8}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{4}-?'
                      r'[0-9a-fA-F]{4}-?[0-9a-fA-F]{12}$')


def _normalize_sid(sid: str) -> str:
    sid = sid.strip()
    if not _UUID_RE.match(sid):
        raise ConfigurationError(f"invalid GTID source id: {sid!r}")
    return str(uuid.UUID(sid))


def _merge(intervals: List[Interval]) -> List[Interval]:
    merged: List[Interval] = []
    for start, end in sorted(intervals):
        if merged and start <= merged[-1][1] + 1:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


@dataclass(frozen=True)
class Gtid:
    """A single ``sid:gno`` transaction identifier."""
    sid: str
    gno: int

    @classmethod
    def parse(cls, text: str) -> 'Gtid':
        if ':' not in text:
            raise ConfigurationError(f"invalid GTID: {text!r}")
        sid, gno = text.rsplit(':', 1)
        try:
            number = int(gno)
        except ValueError:
            raise ConfigurationError(f"invalid GTID sequence number: {text!r}") from None
        if number < 1:
            raise ConfigurationError(f"GTID sequence numbers start at 1: {text!r}")
        return cls(_normalize_sid(sid), number)

    def __str__(self):
        return f"{self.sid}:{self.gno}"


class GtidSet:
    """Set of GTIDs grouped by source UUID."""

    def __init__(self, text: Optional[str] = None):
        self._sets: Dict[str, List[Interval]] = {}
        if text:
            self._parse(text)

    def _parse(self, text: str) -> None:
        for member in text.replace('\n', '').split(','):
            member = member.strip()
            if not member:
                continue
            parts = member.split(':')
            sid = _normalize_sid(parts[0])
            if len(parts) < 2:
                raise ConfigurationError(f"GTID set member without intervals: {member!r}")
            for part in parts[1:]:
                self._add_interval(sid, self._parse_interval(part, member))

    @staticmethod
    def _parse_interval(part: str, member: str) -> Interval:
        try:
            if '-' in part:
                start_text, end_text = part.split('-', 1)
                start, end = int(start_text), int(end_text)
            else:
                start = end = int(part)
        except ValueError:
            raise ConfigurationError(f"invalid GTID interval {part!r} in {member!r}") from None
        if start < 1 or end < start:
            raise ConfigurationError(f"invalid GTID interval {part!r} in {member!r}")
        return start, end

    def _add_interval(self, sid: str, interval: Interval) -> None:
        intervals = self._sets.setdefault(sid, [])
        intervals.append(interval)
        self._sets[sid] = _merge(intervals)

    @classmethod
    def from_intervals(cls, sets: Dict[str, List[Interval]]) -> 'GtidSet':
        result = cls()
        for sid, intervals in sets.items():
            for interval in intervals:
                result._add_interval(_normalize_sid(sid), interval)
        return result

    def add(self, gtid: Gtid) -> None:
        """Record one executed transaction."""
        self._add_interval(gtid.sid, (gtid.gno, gtid.gno))

    def update(self, other: 'GtidSet') -> None:
        for sid, intervals in other._sets.items():
            for interval in intervals:
                self._add_interval(sid, interval)

    def copy(self) -> 'GtidSet':
        result = GtidSet()
        result._sets = {sid: list(intervals) for sid, intervals in self._sets.items()}
        return result

    def intervals(self, sid: str) -> List[Interval]:
        return list(self._sets.get(_normalize_sid(sid), []))

    @property
    def sids(self) -> List[str]:
        return sorted(self._sets)

    def __iter__(self) -> Iterator[Tuple[str, List[Interval]]]:
        for sid in self.sids:
            yield sid, list(self._sets[sid])

    def __contains__(self, gtid: Gtid) -> bool:
        return any(start <= gtid.gno <= end for start, end in self._sets.get(gtid.sid, []))

    def issubset(self, other: 'GtidSet') -> bool:
        for sid, intervals in self._sets.items():
            theirs = other._sets.get(sid, [])
            for start, end in intervals:
                if not any(o_start <= start and end <= o_end for o_start, o_end in theirs):
                    return False
        return True

    def __le__(self, other: 'GtidSet') -> bool:
        return self.issubset(other)

    def __ge__(self, other: 'GtidSet') -> bool:
        return other.issubset(self)

    def __eq__(self, other):
        if not isinstance(other, GtidSet):
            return NotImplemented
        return self._sets == other._sets

    def __bool__(self):
        return bool(self._sets)

    def __str__(self):
        members = []
        for sid in self.sids:
            ranges = ':'.join(
                str(start) if start == end else f"{start}-{end}"
                for start, end in self._sets[sid]
            )
            members.append(f"{sid}:{ranges}")
        return ','.join(members)

    def __repr__(self):
        return f"GtidSet({str(self)!r})"

    def encoded(self) -> bytes:
        """
        Binary form used by COM_BINLOG_DUMP_GTID and PREVIOUS_GTIDS:

            n_sids        8 bytes
            sid          16 bytes
            n_intervals   8 bytes
            start         8 bytes
            stop          8 bytes (exclusive)
        """
        out = struct.pack('<Q', len(self._sets))
        for sid in self.sids:
            intervals = self._sets[sid]
            out += uuid.UUID(sid).bytes
            out += struct.pack('<Q', len(intervals))
            for start, end in intervals:
                out += struct.pack('<QQ', start, end + 1)
        return out

    @classmethod
    def decode(cls, data: bytes) -> 'GtidSet':
        result = cls()
        try:
            (n_sids,) = struct.unpack_from('<Q', data, 0)
            offset = 8
            for _ in range(n_sids):
                sid = str(uuid.UUID(bytes=bytes(data[offset:offset + 16])))
                (n_intervals,) = struct.unpack_from('<Q', data, offset + 16)
                offset += 24
                for _ in range(n_intervals):
                    start, stop = struct.unpack_from('<QQ', data, offset)
                    offset += 16
                    result._add_interval(sid, (start, stop - 1))
        except (struct.error, ValueError) as e:
            raise DecodeError(f"malformed encoded GTID set: {e}") from e
        return result

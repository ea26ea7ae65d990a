# -*- coding: utf-8 -*-
"""
Table metadata cache.

TableMap events carry column type codes and per-type metadata; the
schema repository supplies names, signedness, charsets and ENUM/SET
labels. The merged result is a TableMapEntry, cached by table id in a
bounded LRU cache.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Hashable, Optional, Sequence, Tuple

from .exceptions import ProtocolError

logger = logging.getLogger(__name__)


class LRUCache:
    """
    Bounded key/value store evicting the least recently used entry.

    Example:
        >>> cache = LRUCache(maxsize=2)
        >>> cache.set(1, "a"); cache.set(2, "b"); cache.get(1)
        'a'
        >>> cache.set(3, "c")   # evicts 2
        >>> cache.has(2)
        False
    """

    def __init__(self, maxsize: int = 128):
        if maxsize < 1:
            raise ValueError(f"maxsize must be positive: {maxsize}")
        self.maxsize = maxsize
        self._data: 'OrderedDict[Hashable, Any]' = OrderedDict()

    def get(self, key: Hashable, default: Any = None) -> Any:
        try:
            self._data.move_to_end(key)
        except KeyError:
            return default
        return self._data[key]

    def set(self, key: Hashable, value: Any) -> None:
        self._data[key] = value
        self._data.move_to_end(key)
        while len(self._data) > self.maxsize:
            evicted, _ = self._data.popitem(last=False)
            logger.debug(f"Evicted {evicted!r} from cache")

    def has(self, key: Hashable) -> bool:
        return key in self._data

    def delete(self, key: Hashable) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()

    def keys(self):
        return list(self._data.keys())

    def __len__(self):
        return len(self._data)

    def __contains__(self, key):
        return self.has(key)


@dataclass(frozen=True)
class ColumnDescriptor:
    """One column of a mapped table."""
    name: str
    type_code: int
    metadata: Any = 0
    nullable: bool = True
    unsigned: bool = False
    charset: Optional[str] = None
    labels: Tuple[str, ...] = ()
    is_primary: bool = False


@dataclass(frozen=True)
class TableMapEntry:
    """Column layout of a table as of its most recent TableMap event."""
    table_id: int
    schema: str
    table: str
    columns: Tuple[ColumnDescriptor, ...]

    @property
    def signature(self) -> Tuple[Tuple[int, Any], ...]:
        return tuple((c.type_code, c.metadata) for c in self.columns)

    @property
    def column_names(self) -> Tuple[str, ...]:
        return tuple(c.name for c in self.columns)

    @property
    def primary_key(self) -> Tuple[str, ...]:
        return tuple(c.name for c in self.columns if c.is_primary)

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.table}"


class TableMetadataCache:
    """
    Table id -> TableMapEntry, fed by TableMap events.

    A miss, or a TableMap whose column signature differs from the cached
    entry, triggers a synchronous ``fetch_table_columns`` on the repository.
    Repository failures propagate as RepositoryError.
    """

    def __init__(self, repository, cache=None, maxsize: int = 128):
        self.repository = repository
        self.cache = cache if cache is not None else LRUCache(maxsize)

    def resolve(
        self,
        table_id: int,
        schema: str,
        table: str,
        column_types: Sequence[int],
        column_metadata: Sequence[Any],
        nullable: Sequence[bool],
    ) -> TableMapEntry:
        signature = tuple(zip(column_types, column_metadata))
        cached = self.cache.get(table_id)
        if (
            cached is not None
            and cached.schema == schema
            and cached.table == table
            and cached.signature == signature
        ):
            return cached

        infos = self.repository.fetch_table_columns(schema, table)
        if len(infos) != len(column_types):
            # The table was altered after this event was written
            logger.warning(
                f"{schema}.{table}: binlog has {len(column_types)} columns, "
                f"schema has {len(infos)}; using positional column names"
            )
            infos = [None] * len(column_types)

        columns = []
        for index, (type_code, metadata, is_nullable, info) in enumerate(
            zip(column_types, column_metadata, nullable, infos)
        ):
            if info is None:
                columns.append(ColumnDescriptor(
                    name=f"col_{index}",
                    type_code=type_code,
                    metadata=metadata,
                    nullable=is_nullable,
                ))
                continue
            columns.append(ColumnDescriptor(
                name=info.name,
                type_code=type_code,
                metadata=metadata,
                nullable=is_nullable,
                unsigned=info.unsigned,
                charset=info.character_set,
                labels=info.labels,
                is_primary=info.is_primary,
            ))

        entry = TableMapEntry(table_id, schema, table, tuple(columns))
        if cached is not None:
            logger.info(f"Column layout of table id {table_id} ({entry.qualified_name}) changed")
        else:
            logger.debug(f"Cached table id {table_id} -> {entry.qualified_name}")
        self.cache.set(table_id, entry)
        return entry

    def get(self, table_id: int) -> TableMapEntry:
        entry = self.cache.get(table_id)
        if entry is None:
            raise ProtocolError(f"rows event for table id {table_id} without a preceding TableMap")
        return entry

    def __len__(self):
        return len(self.cache)

# -*- coding: utf-8 -*-
"""
Configuration for the replication stream engine.

Options can be given directly, loaded from ``REPLSTREAM_*`` environment
variables, or read from a JSON file:

    config = BinlogStreamConfig(host="db1", user="repl", password="secret",
                                gtid_enabled=True)
    config = BinlogStreamConfig.from_env()
    config = BinlogStreamConfig.from_file("replstream.json")

``validate()`` rejects invalid combinations before any connection attempt.
"""

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pymysql.charset import charset_by_name

from .exceptions import ConfigurationError
from .gtid import GtidSet
from .position import BinlogPosition

MAX_HEARTBEAT_PERIOD = 4294967  # seconds, server side limit
MAX_SERVER_ID = 2 ** 32 - 1


@dataclass
class BinlogStreamConfig:
    """Configuration for a replication stream."""

    # Connection settings
    host: str = "localhost"
    port: int = 3306
    user: str = "root"
    password: str = ""
    charset: str = "utf8mb4"
    connect_timeout: float = 10.0
    read_timeout: Optional[float] = None  # None = derived from heartbeat

    # Replica registration
    server_id: int = 1000001  # Unique ID for this replica
    report_hostname: str = ""
    slave_uuid: Optional[str] = None

    # Starting position (None = current server checkpoint)
    gtid_enabled: bool = False
    binlog_file: Optional[str] = None
    binlog_position: Optional[int] = None
    gtid_set: Optional[str] = None

    # Stream settings
    heartbeat_period: float = 0.0  # seconds, 0 = server default
    verify_checksum: bool = True
    table_cache_size: int = 128

    # Filtering
    only_tables: Optional[List[str]] = None  # e.g., ["db.users", "db.orders_*"]
    ignored_tables: Optional[List[str]] = None
    only_schemas: Optional[List[str]] = None
    ignored_schemas: Optional[List[str]] = None
    only_events: Optional[List[str]] = None  # event kind names, e.g. ["write_rows"]
    ignored_events: Optional[List[str]] = None

    # Error handling
    retry_attempts: int = 3
    retry_backoff_seconds: float = 1.0

    # Record output
    batch_size: int = 100

    extra: Dict[str, Any] = field(default_factory=dict)

    def validate(self) -> 'BinlogStreamConfig':
        """
        Raise ConfigurationError on the first invalid option.

        Numeric options given as strings (a JSON file may hold ``"3306"``)
        are converted in place.
        """
        if not self.host:
            raise ConfigurationError("host must not be empty")
        self._validate_numbers()
        if not 1 <= self.port <= 65535:
            raise ConfigurationError(f"port out of range: {self.port}")
        if not 1 <= self.server_id <= MAX_SERVER_ID:
            raise ConfigurationError(f"server_id must be between 1 and {MAX_SERVER_ID}: {self.server_id}")
        if self.table_cache_size < 1:
            raise ConfigurationError(f"table_cache_size must be positive: {self.table_cache_size}")
        if self.retry_attempts < 1:
            raise ConfigurationError(f"retry_attempts must be at least 1: {self.retry_attempts}")
        if self.retry_backoff_seconds < 0:
            raise ConfigurationError(f"retry_backoff_seconds must not be negative: {self.retry_backoff_seconds}")
        if not 0 <= self.heartbeat_period <= MAX_HEARTBEAT_PERIOD:
            raise ConfigurationError(
                f"heartbeat_period must be between 0 and {MAX_HEARTBEAT_PERIOD}: {self.heartbeat_period}"
            )
        if self.batch_size < 1:
            raise ConfigurationError(f"batch_size must be positive: {self.batch_size}")
        if not self.charset or charset_by_name(self.charset) is None:
            raise ConfigurationError(f"unknown charset: {self.charset}")

        if self.binlog_position is not None and not self.binlog_file:
            raise ConfigurationError("binlog_position requires binlog_file")
        if self.binlog_position is not None and self.binlog_position < 4:
            raise ConfigurationError(f"binlog_position must be at least 4: {self.binlog_position}")
        if self.gtid_enabled:
            if self.binlog_file:
                raise ConfigurationError("GTID mode cannot start from a binlog file position")
            if self.gtid_set is not None:
                GtidSet(self.gtid_set)
        elif self.gtid_set is not None:
            raise ConfigurationError("gtid_set given but gtid_enabled is off")

        self._validate_filters()
        return self

    def _validate_numbers(self) -> None:
        for name in sorted(_INT_FIELDS | _FLOAT_FIELDS):
            value = getattr(self, name)
            if value is None and name in _OPTIONAL_NUMBER_FIELDS:
                continue
            convert = int if name in _INT_FIELDS else float
            try:
                setattr(self, name, convert(value))
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"invalid value for {name}: {value!r}") from e

    def _validate_filters(self) -> None:
        from .table_patterns import validate_pattern
        from .events import EventKind

        for pattern in (self.only_tables or []) + (self.ignored_tables or []):
            error = validate_pattern(pattern)
            if error:
                raise ConfigurationError(f"{error}: {pattern!r}")
        for name in (self.only_events or []) + (self.ignored_events or []):
            try:
                EventKind(name)
            except ValueError:
                raise ConfigurationError(f"unknown event kind: {name!r}") from None

    def starting_position(self) -> Optional[Union[BinlogPosition, GtidSet]]:
        """Explicit starting position, or None to ask the server."""
        if self.gtid_enabled:
            return GtidSet(self.gtid_set) if self.gtid_set is not None else None
        if self.binlog_file:
            return BinlogPosition(self.binlog_file, self.binlog_position or 4)
        return None

    @property
    def effective_read_timeout(self) -> Optional[float]:
        if self.read_timeout is not None:
            return self.read_timeout
        if self.heartbeat_period:
            return self.heartbeat_period * 2
        return None

    def to_connection_params(self) -> Dict[str, Any]:
        """Connection parameters for pymysql, used by the schema repository."""
        return {
            "host": self.host,
            "port": int(self.port),
            "user": self.user,
            "password": self.password,
            "charset": self.charset,
            "connect_timeout": self.connect_timeout,
        }

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        if data["password"]:
            data["password"] = "***"
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BinlogStreamConfig':
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        extra = {k: v for k, v in data.items() if k not in known}
        config = cls(**kwargs)
        config.extra.update(extra)
        return config

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> 'BinlogStreamConfig':
        try:
            with open(path, 'r') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigurationError(f"cannot load config from {path}: {e}") from e
        return cls.from_dict(data)

    @classmethod
    def from_env(cls, prefix: str = "REPLSTREAM_", environ: Optional[Dict[str, str]] = None) -> 'BinlogStreamConfig':
        """Build a config from environment variables (``REPLSTREAM_HOST`` ...)."""
        environ = os.environ if environ is None else environ
        config = cls()
        for f in fields(cls):
            if f.name == "extra":
                continue
            raw = environ.get(prefix + f.name.upper())
            if raw is None:
                continue
            setattr(config, f.name, _coerce(f.name, getattr(config, f.name), raw))
        return config


_INT_FIELDS = {"port", "server_id", "binlog_position", "table_cache_size", "retry_attempts", "batch_size"}
_FLOAT_FIELDS = {"connect_timeout", "read_timeout", "heartbeat_period", "retry_backoff_seconds"}
_OPTIONAL_NUMBER_FIELDS = {"binlog_position", "read_timeout"}
_LIST_FIELDS = {"only_tables", "ignored_tables", "only_schemas", "ignored_schemas", "only_events", "ignored_events"}


def _coerce(name: str, default: Any, raw: str) -> Any:
    try:
        if name in _INT_FIELDS:
            return int(raw)
        if name in _FLOAT_FIELDS:
            return float(raw)
    except ValueError:
        raise ConfigurationError(f"invalid value for {name}: {raw!r}") from None
    if name in _LIST_FIELDS:
        return [item.strip() for item in raw.split(',') if item.strip()]
    if isinstance(default, bool):
        return raw.lower() in ("1", "true", "yes", "on")
    return raw

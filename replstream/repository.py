# -*- coding: utf-8 -*-
"""
Schema repository.

The binlog carries column type codes but no column names, signedness or
ENUM/SET labels. The repository fetches those from information_schema over
an ordinary client connection (pymysql), along with the server's binlog
checkpoint and capabilities.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

import pymysql
import pymysql.cursors

from .exceptions import RepositoryError
from .gtid import GtidSet
from .position import BinlogPosition

logger = logging.getLogger(__name__)

_LABEL_RE = re.compile(r"'((?:[^']|'')*)'")


@dataclass(frozen=True)
class ColumnInfo:
    """Column metadata as reported by information_schema.COLUMNS."""
    name: str
    data_type: str
    column_type: str
    character_set: Optional[str] = None
    collation: Optional[str] = None
    nullable: bool = True
    key: str = ""

    @property
    def unsigned(self) -> bool:
        return 'unsigned' in self.column_type.lower()

    @property
    def labels(self) -> Tuple[str, ...]:
        """ENUM/SET labels, in declaration order."""
        lowered = self.column_type.lower()
        if not (lowered.startswith('enum(') or lowered.startswith('set(')):
            return ()
        return tuple(label.replace("''", "'") for label in _LABEL_RE.findall(self.column_type))

    @property
    def is_primary(self) -> bool:
        return self.key == 'PRI'


@dataclass(frozen=True)
class ServerCapabilities:
    """What the server supports, queried once per connection."""
    version: str
    checksum_enabled: bool = False
    gtid_mode: bool = False
    binlog_format: Optional[str] = None

    @property
    def version_tuple(self) -> Tuple[int, ...]:
        match = re.match(r'(\d+)\.(\d+)\.(\d+)', self.version)
        return tuple(int(part) for part in match.groups()) if match else (0, 0, 0)


class SchemaRepository(ABC):
    """Interface the engine uses to look up schema and server state."""

    @abstractmethod
    def fetch_table_columns(self, schema: str, table: str) -> List[ColumnInfo]:
        """Ordered column descriptors; RepositoryError if the table is gone."""

    @abstractmethod
    def fetch_server_checkpoint(self, gtid_mode: bool = False) -> Union[BinlogPosition, GtidSet]:
        """Current end of the server's binlog."""

    @abstractmethod
    def fetch_server_capabilities(self) -> ServerCapabilities:
        """Version, checksum and GTID settings."""

    def close(self) -> None:
        """Release resources (optional)."""


class MySQLRepository(SchemaRepository):
    """
    Schema repository backed by a pymysql connection.

    Example:
        >>> repository = MySQLRepository(host="localhost", user="repl", password="secret")
        >>> repository.fetch_table_columns("ecommerce", "orders")
        [ColumnInfo(name='id', data_type='int', ...), ...]
    """

    def __init__(
        self,
        host: str,
        port: int = 3306,
        user: str = "root",
        password: str = "",
        charset: str = "utf8mb4",
        connect_timeout: float = 10.0,
        connect=pymysql.connect,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.charset = charset
        self.connect_timeout = connect_timeout
        self._connect_fn = connect
        self._conn = None

    @classmethod
    def from_config(cls, config) -> 'MySQLRepository':
        return cls(**config.to_connection_params())

    def _connection(self):
        if self._conn is None:
            try:
                self._conn = self._connect_fn(
                    host=self.host,
                    port=self.port,
                    user=self.user,
                    password=self.password,
                    charset=self.charset,
                    connect_timeout=self.connect_timeout,
                    cursorclass=pymysql.cursors.Cursor,
                    autocommit=True,
                )
            except pymysql.MySQLError as e:
                raise RepositoryError(f"cannot connect to {self.host}:{self.port}: {e}") from e
        return self._conn

    def _query(self, sql: str, args=None) -> list:
        conn = self._connection()
        try:
            with conn.cursor() as cursor:
                cursor.execute(sql, args)
                return list(cursor.fetchall())
        except pymysql.MySQLError as e:
            # drop the connection so the next call reconnects
            self.close()
            raise RepositoryError(f"query failed: {e}") from e

    def fetch_table_columns(self, schema: str, table: str) -> List[ColumnInfo]:
        rows = self._query("""
            SELECT
                COLUMN_NAME,
                DATA_TYPE,
                COLUMN_TYPE,
                CHARACTER_SET_NAME,
                COLLATION_NAME,
                IS_NULLABLE,
                COLUMN_KEY
            FROM information_schema.COLUMNS
            WHERE TABLE_SCHEMA = %s AND TABLE_NAME = %s
            ORDER BY ORDINAL_POSITION
        """, (schema, table))

        if not rows:
            raise RepositoryError(f"table {schema}.{table} does not exist")

        columns = [
            ColumnInfo(
                name=name,
                data_type=data_type,
                column_type=column_type,
                character_set=character_set,
                collation=collation,
                nullable=is_nullable == 'YES',
                key=column_key or '',
            )
            for name, data_type, column_type, character_set, collation, is_nullable, column_key in rows
        ]
        logger.debug(f"Fetched {len(columns)} columns for {schema}.{table}")
        return columns

    def fetch_server_checkpoint(self, gtid_mode: bool = False) -> Union[BinlogPosition, GtidSet]:
        if gtid_mode:
            rows = self._query("SELECT @@GLOBAL.gtid_executed")
            return GtidSet(rows[0][0] if rows and rows[0][0] else None)

        rows = self._master_status()
        if not rows:
            raise RepositoryError(
                "Could not get master status. Ensure binary logging is enabled (log_bin=ON)"
            )
        return BinlogPosition(rows[0][0], int(rows[0][1]))

    def _master_status(self) -> list:
        version = self.fetch_server_capabilities().version_tuple
        # MySQL 8.4 removed SHOW MASTER STATUS
        if version >= (8, 4, 0):
            return self._query("SHOW BINARY LOG STATUS")
        return self._query("SHOW MASTER STATUS")

    def fetch_server_capabilities(self) -> ServerCapabilities:
        variables = dict(self._query("""
            SHOW GLOBAL VARIABLES
            WHERE Variable_name IN ('version', 'binlog_checksum', 'gtid_mode', 'binlog_format')
        """))
        checksum = (variables.get('binlog_checksum') or 'NONE').upper()
        return ServerCapabilities(
            version=variables.get('version', ''),
            checksum_enabled=checksum != 'NONE',
            gtid_mode=(variables.get('gtid_mode') or 'OFF').upper() == 'ON',
            binlog_format=variables.get('binlog_format'),
        )

    def close(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        try:
            conn.close()
        except pymysql.MySQLError as e:
            logger.debug(f"Error closing repository connection: {e}")

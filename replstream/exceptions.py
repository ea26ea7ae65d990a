# -*- coding: utf-8 -*-
"""
Error taxonomy for the replication stream engine.

Every error raised by replstream derives from ReplicationError and carries
an ErrorKind. Callers branch on ``error.kind`` (or ``error.recoverable``)
rather than on the concrete class:

    TRANSPORT      unreachable host, reset or closed connection
    PROTOCOL       malformed header, unexpected packet, server error
    DECODE         malformed binary JSON, inconsistent bitmap, bad checksum
    REPOSITORY     schema lookup failure
    CONFIGURATION  invalid options, rejected before connecting
"""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Discriminator for replication errors."""
    TRANSPORT = "transport"
    PROTOCOL = "protocol"
    DECODE = "decode"
    REPOSITORY = "repository"
    CONFIGURATION = "configuration"

    @property
    def recoverable(self) -> bool:
        """Only transport failures are healed by reconnecting."""
        return self is ErrorKind.TRANSPORT


class ReplicationError(Exception):
    """Base class for replstream errors."""

    kind: ErrorKind = ErrorKind.PROTOCOL

    @property
    def recoverable(self) -> bool:
        return self.kind.recoverable

    def __str__(self):
        message = super().__str__()
        return f"[{self.kind.value}] {message}"


class TransportError(ReplicationError):
    """Socket level failure: unreachable, reset, closed or short read."""
    kind = ErrorKind.TRANSPORT


class ProtocolError(ReplicationError):
    """The stream is out of sync with the wire protocol."""
    kind = ErrorKind.PROTOCOL


class ServerError(ProtocolError):
    """An ERR packet sent by the server."""

    def __init__(self, code: int, message: str, sql_state: Optional[str] = None):
        self.code = code
        self.sql_state = sql_state
        self.server_message = message
        state = f" ({sql_state})" if sql_state else ""
        super().__init__(f"server error {code}{state}: {message}")


class AuthenticationError(ServerError):
    """The server rejected our credentials."""


class DecodeError(ReplicationError):
    """An event body could not be decoded."""
    kind = ErrorKind.DECODE


class RepositoryError(ReplicationError):
    """Schema repository lookup failed."""
    kind = ErrorKind.REPOSITORY


class ConfigurationError(ReplicationError):
    """Invalid configuration, raised before any connection attempt."""
    kind = ErrorKind.CONFIGURATION

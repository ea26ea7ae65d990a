# -*- coding: utf-8 -*-
"""
Packet transport.

Owns the socket and frames MySQL client/server packets:

    3 bytes   payload length (little-endian)
    1 byte    sequence id
    n bytes   payload

A payload of 0xFFFFFF bytes or more is split into maximum-size packets
followed by a (possibly empty) shorter packet; reads reassemble them.
"""

import logging
import socket
from typing import Callable, Optional, Tuple

from .exceptions import TransportError

logger = logging.getLogger(__name__)

MAX_PACKET_SIZE = 0xFFFFFF
HEADER_SIZE = 4

Address = Tuple[str, int]


def frame_packets(payload: bytes, sequence_id: int) -> Tuple[bytes, int]:
    """Split ``payload`` into wire packets. Returns (frames, next sequence id)."""
    frames = bytearray()
    offset = 0
    while True:
        chunk = payload[offset:offset + MAX_PACKET_SIZE]
        frames += len(chunk).to_bytes(3, 'little') + bytes([sequence_id])
        frames += chunk
        sequence_id = (sequence_id + 1) % 256
        offset += len(chunk)
        if len(chunk) < MAX_PACKET_SIZE:
            break
    return bytes(frames), sequence_id


class PacketTransport:
    """
    Blocking packet reader/writer over a TCP socket.

    Example:
        >>> transport = PacketTransport(connect_timeout=5)
        >>> transport.connect(("localhost", 3306))
        >>> greeting = transport.read_packet()
        >>> transport.close()
    """

    def __init__(
        self,
        connect_timeout: Optional[float] = 10.0,
        read_timeout: Optional[float] = None,
        socket_factory: Callable[..., socket.socket] = socket.create_connection,
    ):
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self._socket_factory = socket_factory
        self._sock: Optional[socket.socket] = None
        self._sequence_id = 0

    @classmethod
    def from_socket(cls, sock: socket.socket, read_timeout: Optional[float] = None) -> 'PacketTransport':
        """Wrap an already connected socket."""
        transport = cls(read_timeout=read_timeout)
        transport._sock = sock
        sock.settimeout(read_timeout)
        return transport

    @property
    def is_connected(self) -> bool:
        return self._sock is not None

    def connect(self, address: Address) -> None:
        if self._sock is not None:
            self.close()
        try:
            sock = self._socket_factory(address, self.connect_timeout)
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
            sock.settimeout(self.read_timeout)
        except OSError as e:
            raise TransportError(f"cannot connect to {address[0]}:{address[1]}: {e}") from e
        self._sock = sock
        self._sequence_id = 0
        logger.debug(f"Connected socket to {address[0]}:{address[1]}")

    def _recv_exactly(self, n: int) -> bytes:
        if self._sock is None:
            raise TransportError("transport is closed")
        buf = bytearray()
        while len(buf) < n:
            try:
                chunk = self._sock.recv(n - len(buf))
            except socket.timeout as e:
                raise TransportError(f"read timed out after {self.read_timeout}s") from e
            except OSError as e:
                raise TransportError(f"read failed: {e}") from e
            if not chunk:
                raise TransportError(
                    f"connection closed by server ({len(buf)} of {n} bytes read)"
                )
            buf += chunk
        return bytes(buf)

    def read_packet(self) -> bytes:
        """Read one logical packet, joining continuation packets."""
        payload = bytearray()
        while True:
            header = self._recv_exactly(HEADER_SIZE)
            length = int.from_bytes(header[:3], 'little')
            self._sequence_id = (header[3] + 1) % 256
            payload += self._recv_exactly(length)
            if length < MAX_PACKET_SIZE:
                return bytes(payload)

    def write_packet(self, payload: bytes) -> None:
        """Send ``payload`` continuing the current sequence."""
        if self._sock is None:
            raise TransportError("transport is closed")
        frames, self._sequence_id = frame_packets(payload, self._sequence_id)
        try:
            self._sock.sendall(frames)
        except OSError as e:
            raise TransportError(f"write failed: {e}") from e

    def write_command(self, payload: bytes) -> None:
        """Send a new command; commands restart the sequence at zero."""
        self._sequence_id = 0
        self.write_packet(payload)

    def close(self) -> None:
        sock, self._sock = self._sock, None
        if sock is None:
            return
        try:
            # shutdown wakes a reader blocked in recv() on another thread
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            logger.debug(f"Socket already shut down: {e}")
        try:
            sock.close()
        except OSError as e:
            logger.debug(f"Error closing socket: {e}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

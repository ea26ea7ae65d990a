# -*- coding: utf-8 -*-
"""
Reconnect supervisor.

An explicit state machine around the connect / stream loop:

    DISCONNECTED --connect--> CONNECTING --ok--> STREAMING
         ^                        |                  |
         |    failure, budget left (sleep backoff)   | transport failure
         +------------------------+------------------+
                                  |
                       budget exhausted, or stop()
                                  v
                               STOPPED

The retry budget counts connection attempts, including the first one
after a disconnect, and is restored to its configured value every time a
connection succeeds.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .exceptions import ErrorKind, ReplicationError

logger = logging.getLogger(__name__)


class SupervisorState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    STOPPED = "stopped"


@dataclass
class RetryState:
    """Remaining connection attempts out of the configured budget."""
    configured_budget: int
    remaining_attempts: Optional[int] = None

    def __post_init__(self):
        if self.remaining_attempts is None:
            self.remaining_attempts = self.configured_budget

    def reset(self) -> None:
        self.remaining_attempts = self.configured_budget

    def consume(self) -> bool:
        """Record a failed attempt; True if another attempt is allowed."""
        self.remaining_attempts = max(0, self.remaining_attempts - 1)
        return self.remaining_attempts > 0

    @property
    def exhausted(self) -> bool:
        return self.remaining_attempts <= 0


class ReconnectSupervisor:
    """
    Drives ``connect`` and ``consume`` until stopped or out of retries.

    Args:
        connect: Open the transport and run the handshake
        consume: Read, decode and dispatch one event
        disconnect: Close the transport (must be idempotent)
        retry_attempts: Connection attempts allowed per outage
        backoff_seconds: Pause between failed attempts
        sleep: Injectable for tests

    Example:
        >>> supervisor = ReconnectSupervisor(engine.connect, engine.consume, engine.disconnect)
        >>> supervisor.run()           # returns once STOPPED
        >>> supervisor.last_error
        TransportError('cannot connect to db1:3306: ...')
    """

    def __init__(
        self,
        connect: Callable[[], None],
        consume: Callable[[], None],
        disconnect: Callable[[], None],
        retry_attempts: int = 3,
        backoff_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._connect = connect
        self._consume = consume
        self._disconnect = disconnect
        self.retry = RetryState(retry_attempts)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep
        self.state = SupervisorState.DISCONNECTED
        self.last_error: Optional[ReplicationError] = None
        self.connection_attempts = 0
        self._stop_requested = False

    def _transition(self, state: SupervisorState) -> None:
        if state is not self.state:
            logger.debug(f"Supervisor {self.state.value} -> {state.value}")
        self.state = state

    def stop(self) -> None:
        """
        Ask the loop to finish.

        Safe to call from another thread: closing the transport unblocks a
        pending read, which the loop then treats as the requested stop.
        """
        self._stop_requested = True
        self._disconnect()

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def run(self) -> None:
        """
        Run until STOPPED. Non-transport streaming errors propagate.

        A ``stop()`` issued before ``run()`` starts makes it return at once;
        the request is consumed when ``run()`` returns.
        """
        self.retry.reset()
        self._transition(SupervisorState.DISCONNECTED)
        try:
            self._loop()
        finally:
            self._stop_requested = False

    def _loop(self) -> None:
        while True:
            if self._stop_requested:
                self._finish()
                return

            if self.state is SupervisorState.DISCONNECTED:
                if not self._attempt_connect():
                    if self.state is SupervisorState.STOPPED:
                        return
                    continue

            try:
                while not self._stop_requested:
                    self._consume()
            except ReplicationError as e:
                self._disconnect()
                if self._stop_requested:
                    continue
                self.last_error = e
                if e.recoverable:
                    logger.warning(f"Stream interrupted, reconnecting: {e}")
                    self._transition(SupervisorState.DISCONNECTED)
                    continue
                logger.error(f"Stream aborted: {e}")
                self._transition(SupervisorState.DISCONNECTED)
                raise
            except Exception:
                self._disconnect()
                self._transition(SupervisorState.DISCONNECTED)
                raise

    def _attempt_connect(self) -> bool:
        self._transition(SupervisorState.CONNECTING)
        self.connection_attempts += 1
        try:
            self._connect()
        except ReplicationError as e:
            self._disconnect()
            self.last_error = e
            if e.kind is ErrorKind.CONFIGURATION:
                self._transition(SupervisorState.STOPPED)
                raise
            attempts_left = self.retry.consume()
            logger.warning(
                f"Connection attempt failed ({self.retry.remaining_attempts} of "
                f"{self.retry.configured_budget} attempts left): {e}"
            )
            if not attempts_left:
                logger.error(f"Giving up after {self.retry.configured_budget} connection attempts")
                self._transition(SupervisorState.STOPPED)
                return False
            self._transition(SupervisorState.DISCONNECTED)
            self._sleep(self.backoff_seconds)
            return False

        self.retry.reset()
        self._transition(SupervisorState.STREAMING)
        return True

    def _finish(self) -> None:
        self._disconnect()
        self._transition(SupervisorState.STOPPED)
        logger.info("Replication stream stopped")

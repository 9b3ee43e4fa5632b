"""
Connection supervisor deriving a coarse status from the device server.

Provides functionality to:
- Drive DeviceServer.tick() on the caller's fixed cadence
- Smooth "no new data" ticks into a dead/ok decision with a retry counter
- Notify a registered callback exactly once per status transition
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .server import DeviceServer

logger = logging.getLogger(__name__)


class ConnectionStatus(Enum):
    """Handler status. Values match the status codes reported to the tracking host."""
    OK = 0
    CONNECTION_DEAD = 0x00010001
    NO_DATA = 0x00010002
    INIT_FAILED = 0x00010003
    PORTS_TAKEN = 0x00010004
    NOT_STARTED = 0x00010005

    @property
    def is_terminal(self) -> bool:
        """Terminal statuses need a fresh server instance to recover."""
        return self in (ConnectionStatus.INIT_FAILED, ConnectionStatus.PORTS_TAKEN)

    @property
    def description(self) -> str:
        return _DESCRIPTIONS[self]


_DESCRIPTIONS = {
    ConnectionStatus.OK: "Success! Everything's fine",
    ConnectionStatus.CONNECTION_DEAD: "No connection with the device",
    ConnectionStatus.NO_DATA: "No data received from the device",
    ConnectionStatus.INIT_FAILED: "Failed to set up the device handler",
    ConnectionStatus.PORTS_TAKEN: "The data port is already taken",
    ConnectionStatus.NOT_STARTED: "The device handler is not started",
}

STATUS_OK_MESSAGE = "STATUS OK"
STATUS_ERROR_MESSAGE = "STATUS ERROR"


@dataclass(frozen=True)
class StatusChange:
    """One status transition."""
    previous: ConnectionStatus
    current: ConnectionStatus
    message: str


class ConnectionSupervisor:
    """
    Hysteresis-smoothed status tracker for one DeviceServer.

    Each tick without new payloads increments a retry counter; the tick on which
    it reaches RETRY_THRESHOLD resets it and decides between OK (link alive but
    quiet) and CONNECTION_DEAD. Any tick with new payloads sets OK immediately.

    Usage:
        supervisor = ConnectionSupervisor(on_status_change=print)
        supervisor.attach(server)
        supervisor.set_status(ConnectionStatus.CONNECTION_DEAD)
        while running:
            supervisor.tick()   # every 25ms
    """

    RETRY_THRESHOLD = 100  # ~1s at 25ms per tick

    def __init__(
        self,
        server: Optional[DeviceServer] = None,
        on_status_change: Optional[Callable[[StatusChange], None]] = None,
    ):
        self._server = server
        self._on_status_change = on_status_change
        self._status = ConnectionStatus.NOT_STARTED
        self._retries = 0
        self._transitions = 0

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def retries(self) -> int:
        return self._retries

    @property
    def transitions(self) -> int:
        """Number of status changes notified so far."""
        return self._transitions

    @property
    def server(self) -> Optional[DeviceServer]:
        return self._server

    def attach(self, server: Optional[DeviceServer]) -> None:
        """Supervise `server` from now on and restart the retry count."""
        self._server = server
        self._retries = 0

    def set_status_callback(self, callback: Optional[Callable[[StatusChange], None]]) -> None:
        self._on_status_change = callback

    def set_status(self, status: ConnectionStatus, notify: bool = False) -> bool:
        """
        Set the status directly (initialization and shutdown paths).

        Args:
            status: New status
            notify: Raise a status-change notification if the status changed

        Returns:
            True if the status changed
        """
        previous = self._status
        self._status = status
        if previous == status:
            return False
        if notify:
            self._notify(previous, status)
        return True

    def tick(self) -> ConnectionStatus:
        """
        Tick the server and update the status. Never raises.

        Returns:
            Current status
        """
        server = self._server
        if server is None or self._status.is_terminal:
            return self._status

        server.tick()

        if server.poll_new_data():
            self._transition(ConnectionStatus.OK)
            return self._status

        self._retries += 1
        if self._retries >= self.RETRY_THRESHOLD:
            self._retries = 0
            alive = server.is_connection_alive()
            self._transition(ConnectionStatus.OK if alive else ConnectionStatus.CONNECTION_DEAD)
        return self._status

    def _transition(self, status: ConnectionStatus) -> None:
        previous = self._status
        if previous == status:
            return
        self._status = status
        self._notify(previous, status)

    def _notify(self, previous: ConnectionStatus, current: ConnectionStatus) -> None:
        message = STATUS_OK_MESSAGE if current == ConnectionStatus.OK else STATUS_ERROR_MESSAGE
        self._transitions += 1
        logger.info("Status changed: %s -> %s (%s)", previous.name, current.name, message)

        if self._on_status_change is None:
            return
        try:
            self._on_status_change(StatusChange(previous, current, message))
        except Exception:
            logger.exception("Status change callback failed")

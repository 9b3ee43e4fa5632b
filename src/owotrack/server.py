"""
Device server owning the data-plane UDP socket.

Provides functionality to:
- Bind a non-blocking UDP socket and discard anything queued before the bind
- Drain and decode device datagrams on each tick (bounded per tick)
- Gate payloads on their sequence id while still tracking liveness
- Answer handshakes and send periodic heartbeats and haptic signals
"""

import logging
import socket
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple

from .errors import PortBindError, ProtocolError
from .geo import Quaternion, Vector3
from .metrics import DeviceMetrics
from .wire import PAYLOAD_TYPES, MessageType, WireCodec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeviceSample:
    """Snapshot of the latest device state."""
    orientation: Quaternion
    angular_velocity: Vector3
    acceleration: Vector3
    last_sequence_id: int
    last_packet_time: Optional[float]  # clock seconds, None before the first packet
    connection_alive: bool
    new_data_flag: bool


def _kind(message_type: Any) -> str:
    if isinstance(message_type, MessageType):
        return message_type.name.lower()
    return "unknown"


class DeviceServer:
    """
    Non-blocking UDP server for one handheld device.

    All mutation happens on the tick path, which a single driver calls
    serially. Readers on other threads go through the snapshot accessors.

    Usage:
        server = DeviceServer(port=6969)
        server.start_listening()
        while running:
            server.tick()           # every 25ms
            if server.poll_new_data():
                orientation = server.orientation
        server.close()
    """

    HEARTBEAT_INTERVAL_TICKS = 200  # ~5s at 25ms per tick
    MAX_PACKETS_PER_TICK = 50
    MAX_FLUSH_PACKETS = 100
    CONNECTION_TIMEOUT_SECONDS = 5.0
    # Ids below this are always accepted (reordering during the handshake window)
    SEQUENCE_BOOTSTRAP_IDS = 5
    MAX_DATAGRAM_SIZE = 2048

    def __init__(
        self,
        port: int = 6969,
        host: str = "0.0.0.0",
        metrics: Optional[DeviceMetrics] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Initialize device server.

        Args:
            port: UDP data port (0 picks a free port at bind time)
            host: Host address to bind (default: all interfaces)
            metrics: Optional shared metrics collector
            clock: Time source in seconds (default: time.monotonic)
        """
        self.port = port
        self.host = host
        self.metrics = metrics if metrics is not None else DeviceMetrics()
        self._clock = clock if clock is not None else time.monotonic

        self._lock = threading.Lock()
        self._socket: Optional[socket.socket] = None
        self._client: Optional[Tuple[str, int]] = None

        self._orientation = Quaternion.identity()
        self._angular_velocity = Vector3.zero()
        self._acceleration = Vector3.zero()
        self._last_sequence_id = 0
        self._last_packet_time: Optional[float] = None
        self._alive = False
        self._new_data = False
        self._heartbeat_ticks = 0

    # Lifecycle

    def start_listening(self) -> None:
        """
        Bind the data socket and flush stale datagrams.

        Raises:
            PortBindError: If the port cannot be bound
            RuntimeError: If already listening
        """
        if self._socket is not None:
            raise RuntimeError("device server already listening")

        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.bind((self.host, self.port))
        except OSError as exc:
            sock.close()
            logger.error("Failed to start listening on port %d: %s", self.port, exc)
            raise PortBindError(self.port, str(exc)) from exc

        sock.setblocking(False)
        self._socket = sock
        self.port = int(sock.getsockname()[1])

        self.flush_buffer()
        logger.info("Device server listening on UDP %s:%d", self.host, self.port)

    def close(self) -> None:
        sock = self._socket
        self._socket = None
        with self._lock:
            self._alive = False
        if sock is not None:
            try:
                sock.close()
            except OSError as exc:
                logger.warning("Error closing data socket: %s", exc)

    @property
    def is_listening(self) -> bool:
        return self._socket is not None

    # Periodic work

    def tick(self) -> int:
        """
        Run one scheduling step: heartbeat accounting, then drain pending datagrams.

        Never raises.

        Returns:
            Number of datagrams processed
        """
        try:
            self._send_heartbeat_if_due()

            processed = 0
            while processed < self.MAX_PACKETS_PER_TICK and self._read_packet():
                processed += 1

            if processed >= self.MAX_PACKETS_PER_TICK:
                logger.warning(
                    "Processed %d packets in one tick, check the device packet rate",
                    self.MAX_PACKETS_PER_TICK,
                )
                self.metrics.record_drain_cap()
            return processed
        except Exception:
            logger.exception("Unexpected error during device server tick")
            return 0

    def _send_heartbeat_if_due(self) -> None:
        self._heartbeat_ticks += 1
        if self._heartbeat_ticks <= self.HEARTBEAT_INTERVAL_TICKS:
            return
        self._heartbeat_ticks = 0

        if not self.is_connection_alive():
            return
        self._send(WireCodec.encode_heartbeat(), "heartbeat")

    def _read_packet(self) -> bool:
        """Receive and handle one datagram. Returns False when nothing was queued."""
        sock = self._socket
        if sock is None:
            return False

        try:
            data, addr = sock.recvfrom(self.MAX_DATAGRAM_SIZE)
        except (BlockingIOError, InterruptedError):
            return False
        except OSError as exc:
            logger.warning("Socket error while receiving: %s", exc)
            with self._lock:
                self._alive = False
            return False

        try:
            message_type = WireCodec.read_message_type(data)
        except ProtocolError as exc:
            logger.debug("Dropping datagram from %s: %s", addr, exc)
            self.metrics.record_malformed()
            return True

        with self._lock:
            self._client = addr
            self._alive = True
            self._last_packet_time = self._clock()

        if message_type == MessageType.HANDSHAKE:
            self.metrics.record_packet("handshake")
            logger.info("Handshake from %s", addr)
            self._send(WireCodec.encode_handshake_ack(), "handshake_ack")
        elif message_type in PAYLOAD_TYPES:
            self._handle_payload(data)
        else:
            self.metrics.record_packet(_kind(message_type))

        return True

    def _handle_payload(self, data: bytes) -> None:
        try:
            packet = WireCodec.decode(data)
        except ProtocolError as exc:
            logger.debug("Error handling packet: %s", exc)
            self.metrics.record_malformed()
            return

        kind = _kind(packet.message_type)
        accepted = self._accept_sequence_id(packet.sequence_id)
        self.metrics.record_packet(kind, accepted=accepted)
        if not accepted:
            logger.debug(
                "Dropping stale %s packet %d (last accepted %d)",
                kind, packet.sequence_id, self._last_sequence_id,
            )
            return

        with self._lock:
            if packet.message_type == MessageType.ROTATION:
                self._orientation = packet.value
            elif packet.message_type == MessageType.GYRO:
                self._angular_velocity = packet.value
            else:
                self._acceleration = packet.value
            self._new_data = True
            self._last_packet_time = self._clock()

    def _accept_sequence_id(self, sequence_id: int) -> bool:
        if sequence_id <= self._last_sequence_id and sequence_id >= self.SEQUENCE_BOOTSTRAP_IDS:
            return False
        self._last_sequence_id = sequence_id
        return True

    # Liveness

    def is_connection_alive(self) -> bool:
        """
        Check whether the device link is live.

        Alive requires a socket, at least one received datagram, the alive flag,
        and a datagram within CONNECTION_TIMEOUT_SECONDS. The first check that
        finds the link timed out also flushes queued datagrams.
        """
        with self._lock:
            if self._socket is None or self._last_packet_time is None or not self._alive:
                self._alive = False
                return False

            timed_out = self._clock() - self._last_packet_time >= self.CONNECTION_TIMEOUT_SECONDS
            if timed_out:
                self._alive = False

        if timed_out:
            logger.info("Connection timed out")
            self.flush_buffer()
            return False
        return True

    def flush_buffer(self) -> int:
        """
        Discard queued datagrams (at most MAX_FLUSH_PACKETS).

        Returns:
            Number of datagrams discarded
        """
        sock = self._socket
        if sock is None:
            return 0

        flushed = 0
        while flushed < self.MAX_FLUSH_PACKETS:
            try:
                sock.recvfrom(self.MAX_DATAGRAM_SIZE)
            except (BlockingIOError, InterruptedError):
                break
            except OSError as exc:
                logger.warning("Error flushing buffer: %s", exc)
                break
            flushed += 1

        if flushed > 0:
            logger.info("Flushed %d old packets from buffer", flushed)
        self.metrics.record_flush(flushed)
        return flushed

    def poll_new_data(self) -> bool:
        """Return whether a payload was applied since the last call, and clear the flag."""
        with self._lock:
            available = self._new_data
            self._new_data = False
        return available

    # Outbound

    def signal(self, duration: float, frequency: float, amplitude: float) -> bool:
        """
        Send a haptic buzz to the device. Best effort; never raises.

        Returns:
            True if the frame was handed to the socket
        """
        return self._send(WireCodec.encode_signal(duration, frequency, amplitude), "signal")

    def _send(self, payload: bytes, kind: str) -> bool:
        sock = self._socket
        with self._lock:
            client = self._client

        if sock is None or client is None:
            logger.debug("Cannot send %s: no device address yet", kind)
            return False

        try:
            sock.sendto(payload, client)
        except OSError as exc:
            logger.warning("Socket exception while sending %s: %s", kind, exc)
            self.metrics.record_send(kind, ok=False)
            with self._lock:
                self._alive = False
            return False

        self.metrics.record_send(kind, ok=True)
        return True

    # Readers

    @property
    def orientation(self) -> Quaternion:
        with self._lock:
            return self._orientation

    @property
    def angular_velocity(self) -> Vector3:
        with self._lock:
            return self._angular_velocity

    @property
    def acceleration(self) -> Vector3:
        with self._lock:
            return self._acceleration

    @property
    def last_sequence_id(self) -> int:
        with self._lock:
            return self._last_sequence_id

    @property
    def client_address(self) -> Optional[Tuple[str, int]]:
        with self._lock:
            return self._client

    @property
    def sample(self) -> DeviceSample:
        """Consistent snapshot of the device state. Does not clear the new-data flag."""
        with self._lock:
            return DeviceSample(
                orientation=self._orientation,
                angular_velocity=self._angular_velocity,
                acceleration=self._acceleration,
                last_sequence_id=self._last_sequence_id,
                last_packet_time=self._last_packet_time,
                connection_alive=self._alive,
                new_data_flag=self._new_data,
            )


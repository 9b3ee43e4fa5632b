"""Simulated handheld device speaking the device side of both protocols.

Used by the tests and by ``owotrack simulate`` to exercise a running receiver
without a phone: discovery probe, handshake, sequenced rotation/gyro/accelerometer
packets, and decoding of the host's heartbeat/signal frames.
"""

from __future__ import annotations

import logging
import socket
import threading
import time

import numpy as np
from scipy.spatial.transform import Rotation

from .discovery import INFO_PORT, probe
from .errors import ProtocolError
from .geo import Quaternion, Vector3
from .wire import HostFrame, WireCodec

logger = logging.getLogger(__name__)

GRAVITY = 9.81


class SimulatedDevice:
    """Deterministic UDP client standing in for the sensor app."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 6969,
        seed: int = 0,
        rate_hz: float = 50.0,
        angular_speed: float = 0.5,
        noise: float = 0.0,
    ):
        if rate_hz <= 0.0:
            raise ValueError("rate_hz must be > 0")

        self.host = str(host)
        self.port = int(port)
        self.rate_hz = float(rate_hz)
        self.angular_speed = float(angular_speed)  # rad/s about the screen normal
        self.noise = float(noise)
        self._rng = np.random.default_rng(int(seed))

        self._socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        self._socket.bind(("127.0.0.1" if self.host == "127.0.0.1" else "0.0.0.0", 0))

        self._lock = threading.Lock()
        self._sequence_id = 0
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._sent = 0

    def __enter__(self) -> "SimulatedDevice":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def address(self) -> tuple[str, int]:
        return self._socket.getsockname()

    @property
    def sent(self) -> int:
        return self._sent

    def _take_sequence_id(self) -> int:
        with self._lock:
            sequence_id = self._sequence_id
            self._sequence_id += 1
            return sequence_id

    # Outbound (device -> host)

    def send_raw(self, payload: bytes) -> None:
        self._socket.sendto(payload, (self.host, self.port))
        self._sent += 1

    def send_handshake(self) -> None:
        self.send_raw(WireCodec.encode_handshake())

    def send_heartbeat(self) -> None:
        self.send_raw(WireCodec.encode_device_heartbeat())

    def send_rotation(self, rotation: Quaternion, sequence_id: int | None = None) -> int:
        if sequence_id is None:
            sequence_id = self._take_sequence_id()
        self.send_raw(WireCodec.encode_rotation(sequence_id, rotation))
        return sequence_id

    def send_gyro(self, angular_velocity: Vector3, sequence_id: int | None = None) -> int:
        if sequence_id is None:
            sequence_id = self._take_sequence_id()
        self.send_raw(WireCodec.encode_gyro(sequence_id, angular_velocity))
        return sequence_id

    def send_accelerometer(self, acceleration: Vector3, sequence_id: int | None = None) -> int:
        if sequence_id is None:
            sequence_id = self._take_sequence_id()
        self.send_raw(WireCodec.encode_accelerometer(sequence_id, acceleration))
        return sequence_id

    # Motion model

    def orientation_at(self, t_sec: float) -> Quaternion:
        """Device lying flat, spinning about its screen normal."""
        return Quaternion.from_rotation(Rotation.from_rotvec([0.0, 0.0, self.angular_speed * t_sec]))

    def _noise(self) -> np.ndarray:
        if self.noise <= 0.0:
            return np.zeros(3)
        return self._rng.normal(0.0, self.noise, size=3)

    def send_sample(self, t_sec: float) -> None:
        """Send one rotation, gyro and accelerometer packet for time `t_sec`."""
        self.send_rotation(self.orientation_at(t_sec))
        self.send_gyro(Vector3.from_array(np.array([0.0, 0.0, self.angular_speed]) + self._noise()))
        self.send_accelerometer(Vector3.from_array(np.array([0.0, 0.0, GRAVITY]) + self._noise()))

    # Inbound (host -> device)

    def receive_frame(self, timeout: float = 1.0) -> HostFrame | None:
        """Wait for one host frame; None on timeout or an unrecognized frame."""
        self._socket.settimeout(timeout)
        try:
            data, _addr = self._socket.recvfrom(1024)
        except socket.timeout:
            return None
        try:
            return WireCodec.decode_host_frame(data)
        except ProtocolError:
            return None

    def wait_for_frame(self, kind: str, timeout: float = 1.0) -> HostFrame | None:
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            frame = self.receive_frame(timeout=remaining)
            if frame is not None and frame.kind == kind:
                return frame

    def discover(self, info_port: int = INFO_PORT, timeout: float = 1.0) -> int | None:
        """Probe the host's discovery port and return the announced data port."""
        result = probe(self.host, info_port, timeout=timeout)
        if result is None:
            return None
        data_port, _addr = result
        return data_port

    # Streaming

    def start(self, duration: float | None = None) -> None:
        """Handshake, then stream samples at rate_hz on a background thread."""
        if self._thread is not None and self._thread.is_alive():
            raise RuntimeError("simulated device already streaming")
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop, args=(duration,), name="owotrack-sim", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        thread = self._thread
        self._thread = None
        if thread is not None:
            thread.join(timeout=1.0)

    def join(self, timeout: float | None = None) -> None:
        thread = self._thread
        if thread is not None:
            thread.join(timeout=timeout)

    def close(self) -> None:
        self.stop()
        try:
            self._socket.close()
        except OSError as exc:
            logger.debug("Error closing simulated device socket: %s", exc)

    def _loop(self, duration: float | None) -> None:
        period = 1.0 / self.rate_hz
        start = time.perf_counter()
        next_tick = start
        try:
            self.send_handshake()
            while not self._stop_event.is_set():
                t_sec = time.perf_counter() - start
                if duration is not None and t_sec >= duration:
                    return
                self.send_sample(t_sec)

                next_tick += period
                wait_s = next_tick - time.perf_counter()
                if wait_s > 0:
                    self._stop_event.wait(wait_s)
                else:
                    next_tick = time.perf_counter()
        except OSError as exc:
            logger.warning("Simulated device stopped streaming: %s", exc)

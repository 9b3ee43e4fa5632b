import socket
import sys
import time
from pathlib import Path
from typing import Callable, Iterator, Tuple

import pytest

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / "src"))

from owotrack.errors import PortBindError
from owotrack.geo import Quaternion, Vector3
from owotrack.server import DeviceServer
from owotrack.wire import WireCodec


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class FailingSocket:
    def sendto(self, payload: bytes, addr: Tuple[str, int]) -> int:
        raise OSError("network unreachable")

    def recvfrom(self, size: int):
        raise BlockingIOError()

    def close(self) -> None:
        pass


def _wait_for(predicate: Callable[[], bool], timeout: float = 1.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


def _tick_until(server: DeviceServer, predicate: Callable[[], bool], timeout: float = 1.0) -> bool:
    def step() -> bool:
        server.tick()
        return predicate()
    return _wait_for(step, timeout)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def server(clock: FakeClock) -> Iterator[DeviceServer]:
    srv = DeviceServer(port=0, host="127.0.0.1", clock=clock)
    srv.start_listening()
    try:
        yield srv
    finally:
        srv.close()


@pytest.fixture()
def client() -> Iterator[socket.socket]:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(1.0)
    try:
        yield sock
    finally:
        sock.close()


def _addr(server: DeviceServer) -> Tuple[str, int]:
    return ("127.0.0.1", server.port)


def test_rotation_packet_updates_sample(server: DeviceServer, client: socket.socket) -> None:
    rotation = Quaternion(0.0, 0.5, 0.0, 0.75)
    client.sendto(WireCodec.encode_rotation(10, rotation), _addr(server))

    assert _tick_until(server, lambda: server.last_sequence_id == 10)
    assert server.orientation == rotation
    assert server.poll_new_data() is True
    assert server.poll_new_data() is False
    assert server.is_connection_alive()


def test_stale_sequence_id_refreshes_liveness_only(
    server: DeviceServer, client: socket.socket, clock: FakeClock
) -> None:
    first = Quaternion(0.0, 0.5, 0.0, 0.75)
    client.sendto(WireCodec.encode_rotation(10, first), _addr(server))
    assert _tick_until(server, lambda: server.last_sequence_id == 10)
    assert server.poll_new_data()

    clock.now = 2.0
    client.sendto(WireCodec.encode_rotation(8, Quaternion(1.0, 0.0, 0.0, 0.0)), _addr(server))
    assert _tick_until(server, lambda: server.metrics.get_summary()["packets"]["stale"] == 1)

    assert server.orientation == first
    assert server.last_sequence_id == 10
    assert server.poll_new_data() is False
    assert server.sample.last_packet_time == 2.0


def test_bootstrap_ids_are_always_accepted(server: DeviceServer, client: socket.socket) -> None:
    client.sendto(WireCodec.encode_gyro(3, Vector3(1.0, 0.0, 0.0)), _addr(server))
    assert _tick_until(server, lambda: server.last_sequence_id == 3)

    client.sendto(WireCodec.encode_gyro(1, Vector3(2.0, 0.0, 0.0)), _addr(server))
    assert _tick_until(server, lambda: server.last_sequence_id == 1)
    assert server.angular_velocity == Vector3(2.0, 0.0, 0.0)


def test_sequence_counter_is_shared_across_types(server: DeviceServer, client: socket.socket) -> None:
    client.sendto(WireCodec.encode_rotation(10, Quaternion.identity()), _addr(server))
    assert _tick_until(server, lambda: server.last_sequence_id == 10)

    client.sendto(WireCodec.encode_accelerometer(9, Vector3(0.0, 0.0, 9.5)), _addr(server))
    assert _tick_until(server, lambda: server.metrics.get_summary()["packets"]["stale"] == 1)
    assert server.acceleration == Vector3.zero()

    client.sendto(WireCodec.encode_accelerometer(11, Vector3(0.0, 0.0, 9.5)), _addr(server))
    assert _tick_until(server, lambda: server.acceleration == Vector3(0.0, 0.0, 9.5))


def test_handshake_is_acknowledged(server: DeviceServer, client: socket.socket) -> None:
    client.sendto(WireCodec.encode_handshake(), _addr(server))
    assert _tick_until(server, lambda: server.client_address is not None)

    data, _ = client.recvfrom(64)
    assert data == WireCodec.encode_handshake_ack()
    assert server.client_address == client.getsockname()


def test_undersized_datagram_does_not_count_as_liveness(server: DeviceServer, client: socket.socket) -> None:
    client.sendto(b"\x00\x01", _addr(server))
    assert _tick_until(server, lambda: server.metrics.get_summary()["packets"]["malformed"] == 1)

    assert server.sample.last_packet_time is None
    assert not server.is_connection_alive()


def test_truncated_payload_is_dropped_after_header(server: DeviceServer, client: socket.socket) -> None:
    truncated = WireCodec.encode_rotation(10, Quaternion(1.0, 0.0, 0.0, 0.0))[:-2]
    client.sendto(truncated, _addr(server))
    assert _tick_until(server, lambda: server.metrics.get_summary()["packets"]["malformed"] == 1)

    assert server.is_connection_alive()
    assert server.orientation == Quaternion.identity()
    assert server.last_sequence_id == 0
    assert not server.poll_new_data()


def test_liveness_times_out_and_flushes_once(
    server: DeviceServer, client: socket.socket, clock: FakeClock
) -> None:
    client.sendto(WireCodec.encode_device_heartbeat(), _addr(server))
    assert _tick_until(server, lambda: server.client_address is not None)
    assert server.is_connection_alive()

    clock.now = 4.999
    assert server.is_connection_alive()

    # Queued but never ticked; the timeout flush should discard it
    client.sendto(WireCodec.encode_device_heartbeat(), _addr(server))
    time.sleep(0.05)

    flushes_before = server.metrics.get_summary()["buffer"]["flushes"]
    clock.now = 5.0
    assert not server.is_connection_alive()
    assert not server.is_connection_alive()

    buffer = server.metrics.get_summary()["buffer"]
    assert buffer["flushes"] == flushes_before + 1
    assert buffer["flushed_packets"] == 1


def test_flush_buffer_discards_queued_datagrams(server: DeviceServer, client: socket.socket) -> None:
    for _ in range(3):
        client.sendto(WireCodec.encode_device_heartbeat(), _addr(server))

    flushed = [0]

    def drained() -> bool:
        flushed[0] += server.flush_buffer()
        return flushed[0] >= 3

    assert _wait_for(drained)
    assert flushed[0] == 3
    assert server.tick() == 0


def test_heartbeat_sent_only_while_alive(server: DeviceServer, client: socket.socket) -> None:
    client.sendto(WireCodec.encode_device_heartbeat(), _addr(server))

    ticks = 0
    deadline = time.monotonic() + 1.0
    while server.client_address is None and time.monotonic() < deadline:
        server.tick()
        ticks += 1
        time.sleep(0.001)
    assert server.client_address is not None
    assert ticks <= DeviceServer.HEARTBEAT_INTERVAL_TICKS

    while ticks < DeviceServer.HEARTBEAT_INTERVAL_TICKS:
        server.tick()
        ticks += 1
    assert server.metrics.get_summary()["outbound"]["sent"] == {}

    server.tick()
    assert server.metrics.get_summary()["outbound"]["sent"] == {"heartbeat": 1}

    data, _ = client.recvfrom(64)
    assert WireCodec.decode_host_frame(data).kind == "heartbeat"
    assert server.metrics.get_summary()["outbound"]["sent"] == {"heartbeat": 1}


def test_no_heartbeat_without_live_link(server: DeviceServer) -> None:
    for _ in range(250):
        server.tick()
    assert server.metrics.get_summary()["outbound"]["sent"] == {}


def test_drain_is_capped_per_tick(server: DeviceServer, client: socket.socket) -> None:
    for _ in range(60):
        client.sendto(WireCodec.encode_device_heartbeat(), _addr(server))
    time.sleep(0.2)

    assert server.tick() == DeviceServer.MAX_PACKETS_PER_TICK
    assert server.metrics.get_summary()["buffer"]["drain_cap_hits"] == 1
    assert server.tick() == 10


def test_signal_reaches_client(server: DeviceServer, client: socket.socket) -> None:
    assert server.signal(0.7, 100.0, 0.5) is False

    client.sendto(WireCodec.encode_device_heartbeat(), _addr(server))
    assert _tick_until(server, lambda: server.client_address is not None)

    assert server.signal(0.7, 100.0, 0.5) is True
    frame = WireCodec.decode_host_frame(client.recvfrom(64)[0])
    assert frame.kind == "signal"
    assert frame.duration == pytest.approx(0.7)


def test_send_failure_marks_connection_dead(server: DeviceServer, client: socket.socket) -> None:
    client.sendto(WireCodec.encode_device_heartbeat(), _addr(server))
    assert _tick_until(server, lambda: server.client_address is not None)
    assert server.is_connection_alive()

    server._socket.close()
    server._socket = FailingSocket()

    assert server.signal(0.7, 100.0, 0.5) is False
    assert not server.sample.connection_alive
    assert server.metrics.get_summary()["outbound"]["failures"] == 1


def test_tick_never_raises(server: DeviceServer, monkeypatch: pytest.MonkeyPatch) -> None:
    def boom() -> bool:
        raise ValueError("boom")

    monkeypatch.setattr(server, "_read_packet", boom)
    assert server.tick() == 0


def test_port_conflict_raises_port_bind_error() -> None:
    blocker = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    blocker.bind(("127.0.0.1", 0))
    port = blocker.getsockname()[1]
    try:
        srv = DeviceServer(port=port, host="127.0.0.1")
        with pytest.raises(PortBindError) as excinfo:
            srv.start_listening()
        assert excinfo.value.port == port
        assert not srv.is_listening
        assert not srv.is_connection_alive()
    finally:
        blocker.close()

import socket
import sys
import time
from pathlib import Path
from typing import Iterator

import pytest

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / "src"))

from owotrack.cli import main
from owotrack.discovery import (
    DiscoveryConfig,
    DiscoveryResponder,
    build_reply,
    is_discovery_request,
    probe,
)


@pytest.fixture()
def responder() -> Iterator[DiscoveryResponder]:
    r = DiscoveryResponder(DiscoveryConfig(info_port=0, data_port=6969, host="127.0.0.1"))
    assert r.start()
    try:
        yield r
    finally:
        r.stop()


def _ask(port: int, payload: bytes, timeout: float = 1.0):
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.settimeout(timeout)
    try:
        sock.sendto(payload, ("127.0.0.1", port))
        try:
            data, _ = sock.recvfrom(1024)
        except socket.timeout:
            return None
        return data
    finally:
        sock.close()


def test_request_matching() -> None:
    assert is_discovery_request(b"DISCOVERY")
    assert is_discovery_request(b"DISCOVERY\n")
    assert is_discovery_request(b"DISCOVERY\r\n\x00")
    assert not is_discovery_request(b"discovery")
    assert not is_discovery_request(b" DISCOVERY")
    assert not is_discovery_request(b"\xff\xfe")
    assert build_reply(6970) == b"6970:Default\n"


def test_discovery_reply(responder: DiscoveryResponder) -> None:
    assert _ask(responder.info_port, b"DISCOVERY\n") == b"6969:Default\n"
    assert responder.requests_answered == 1


def test_other_payloads_get_no_reply(responder: DiscoveryResponder) -> None:
    assert _ask(responder.info_port, b"HELLO\n", timeout=0.3) is None
    assert responder.is_running


def test_restart_announces_new_port(responder: DiscoveryResponder) -> None:
    assert responder.restart(7001)
    assert responder.is_running
    assert responder.data_port == 7001
    assert _ask(responder.info_port, b"DISCOVERY") == b"7001:Default\n"


def test_stop_is_idempotent(responder: DiscoveryResponder) -> None:
    responder.stop()
    responder.stop()
    assert not responder.is_running

    never_started = DiscoveryResponder(DiscoveryConfig(info_port=0))
    never_started.stop()
    assert not never_started.is_running


def test_start_twice_raises(responder: DiscoveryResponder) -> None:
    with pytest.raises(RuntimeError):
        responder.start()


def test_bind_failure_is_reported() -> None:
    blocker = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    blocker.bind(("127.0.0.1", 0))
    port = blocker.getsockname()[1]
    try:
        r = DiscoveryResponder(DiscoveryConfig(info_port=port, host="127.0.0.1"))
        assert r.start() is False
        assert r.failed
        assert isinstance(r.last_error, OSError)
        assert not r.is_running
    finally:
        blocker.close()


def test_socket_error_stops_listener_until_restart(responder: DiscoveryResponder) -> None:
    responder._socket.close()

    deadline = time.monotonic() + 2.0
    while responder.is_running and time.monotonic() < deadline:
        time.sleep(0.01)

    assert not responder.is_running
    assert responder.failed
    assert isinstance(responder.last_error, OSError)

    assert responder.restart(7000)
    assert responder.is_running
    assert not responder.failed
    assert responder.last_error is None
    assert _ask(responder.info_port, b"DISCOVERY") == b"7000:Default\n"


def test_probe_helper(responder: DiscoveryResponder) -> None:
    result = probe("127.0.0.1", responder.info_port, timeout=1.0)
    assert result is not None
    data_port, addr = result
    assert data_port == 6969
    assert addr[0] == "127.0.0.1"


def test_cli_discover(responder: DiscoveryResponder, capsys: pytest.CaptureFixture) -> None:
    code = main(["discover", "--host", "127.0.0.1", "--info-port", str(responder.info_port)])
    assert code == 0
    assert capsys.readouterr().out.strip() == "127.0.0.1:6969"

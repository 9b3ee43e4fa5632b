import sys
from pathlib import Path
from typing import List

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / "src"))

from owotrack.supervisor import ConnectionStatus, ConnectionSupervisor, StatusChange


class FakeServer:
    """Stands in for DeviceServer: scripted new-data flag and liveness."""

    def __init__(self) -> None:
        self.alive = False
        self.new_data = False
        self.ticks = 0

    def tick(self) -> int:
        self.ticks += 1
        return 0

    def poll_new_data(self) -> bool:
        available = self.new_data
        self.new_data = False
        return available

    def is_connection_alive(self) -> bool:
        return self.alive


def _supervisor(changes: List[StatusChange]) -> tuple:
    server = FakeServer()
    supervisor = ConnectionSupervisor(server, on_status_change=changes.append)
    supervisor.set_status(ConnectionStatus.OK)
    return server, supervisor


def test_hysteresis_dead_after_hundred_quiet_ticks() -> None:
    changes: List[StatusChange] = []
    server, supervisor = _supervisor(changes)

    for _ in range(99):
        supervisor.tick()
    assert supervisor.status == ConnectionStatus.OK
    assert supervisor.retries == 99
    assert changes == []

    supervisor.tick()
    assert supervisor.status == ConnectionStatus.CONNECTION_DEAD
    assert supervisor.retries == 0
    assert changes == [
        StatusChange(ConnectionStatus.OK, ConnectionStatus.CONNECTION_DEAD, "STATUS ERROR")
    ]


def test_alive_but_quiet_link_stays_ok() -> None:
    changes: List[StatusChange] = []
    server, supervisor = _supervisor(changes)
    server.alive = True

    for _ in range(300):
        supervisor.tick()

    assert supervisor.status == ConnectionStatus.OK
    assert changes == []


def test_new_data_sets_ok_once() -> None:
    changes: List[StatusChange] = []
    server = FakeServer()
    supervisor = ConnectionSupervisor(server, on_status_change=changes.append)
    supervisor.set_status(ConnectionStatus.CONNECTION_DEAD)

    for _ in range(5):
        server.new_data = True
        supervisor.tick()

    assert supervisor.status == ConnectionStatus.OK
    assert changes == [
        StatusChange(ConnectionStatus.CONNECTION_DEAD, ConnectionStatus.OK, "STATUS OK")
    ]
    assert supervisor.transitions == 1


def test_notifications_fire_once_per_transition() -> None:
    changes: List[StatusChange] = []
    server, supervisor = _supervisor(changes)

    for _ in range(500):
        supervisor.tick()
    assert supervisor.status == ConnectionStatus.CONNECTION_DEAD
    assert len(changes) == 1

    server.new_data = True
    supervisor.tick()
    for _ in range(100):
        supervisor.tick()
    assert [c.current for c in changes] == [
        ConnectionStatus.CONNECTION_DEAD,
        ConnectionStatus.OK,
        ConnectionStatus.CONNECTION_DEAD,
    ]


def test_data_tick_does_not_reset_retry_counter() -> None:
    changes: List[StatusChange] = []
    server, supervisor = _supervisor(changes)

    for _ in range(50):
        supervisor.tick()
    server.new_data = True
    supervisor.tick()
    assert supervisor.retries == 50

    for _ in range(50):
        supervisor.tick()
    assert supervisor.status == ConnectionStatus.CONNECTION_DEAD


def test_terminal_status_stops_ticking() -> None:
    server = FakeServer()
    supervisor = ConnectionSupervisor(server)
    supervisor.set_status(ConnectionStatus.PORTS_TAKEN)

    server.new_data = True
    assert supervisor.tick() == ConnectionStatus.PORTS_TAKEN
    assert server.ticks == 0


def test_tick_without_server_keeps_status() -> None:
    supervisor = ConnectionSupervisor()
    assert supervisor.tick() == ConnectionStatus.NOT_STARTED


def test_callback_errors_do_not_escape() -> None:
    def broken(change: StatusChange) -> None:
        raise RuntimeError("listener failed")

    server = FakeServer()
    supervisor = ConnectionSupervisor(server, on_status_change=broken)
    supervisor.set_status(ConnectionStatus.CONNECTION_DEAD)

    server.new_data = True
    assert supervisor.tick() == ConnectionStatus.OK


def test_set_status_notifies_only_when_asked() -> None:
    changes: List[StatusChange] = []
    supervisor = ConnectionSupervisor(on_status_change=changes.append)

    assert supervisor.set_status(ConnectionStatus.CONNECTION_DEAD) is True
    assert changes == []
    assert supervisor.set_status(ConnectionStatus.CONNECTION_DEAD, notify=True) is False
    assert supervisor.set_status(ConnectionStatus.NOT_STARTED, notify=True) is True
    assert changes[-1].message == "STATUS ERROR"


def test_status_codes() -> None:
    assert ConnectionStatus.OK.value == 0
    assert ConnectionStatus.CONNECTION_DEAD.value == 0x00010001
    assert ConnectionStatus.NOT_STARTED.value == 0x00010005
    assert ConnectionStatus.PORTS_TAKEN.is_terminal
    assert ConnectionStatus.INIT_FAILED.is_terminal
    assert not ConnectionStatus.CONNECTION_DEAD.is_terminal

"""
Tests for the session journal and link metrics.
"""

import json
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from owotrack.errors import NotInitializedError
from owotrack.logger import SessionLogger, list_session_logs
from owotrack.metrics import DeviceMetrics, MetricsExporter


class StepClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture()
def recorded_journal(tmp_path) -> str:
    """Create a short journal with a few handler events."""
    journal = SessionLogger(log_dir=str(tmp_path))
    log_file = journal.start_session(session_name="test_session", metadata={"port": 6969})

    journal.log_event("initialize", {"port": 6969, "status": "OK"})
    journal.log_event("status_change", {"previous": "CONNECTION_DEAD", "current": "OK"})
    journal.log_event("shutdown")
    summary = journal.stop_session()

    assert summary["total_events"] == 3
    assert os.path.exists(log_file)
    return log_file


def test_journal_layout(recorded_journal: str) -> None:
    with open(recorded_journal, encoding="utf-8") as f:
        lines = [json.loads(line) for line in f]

    assert lines[0]["_type"] == "header"
    assert lines[0]["metadata"] == {"port": 6969}
    assert [entry["event_type"] for entry in lines[1:-1]] == ["initialize", "status_change", "shutdown"]
    assert lines[-1]["_type"] == "footer"
    assert lines[-1]["total_events"] == 3


def test_list_session_logs(recorded_journal: str, tmp_path) -> None:
    (tmp_path / "broken.jsonl").write_text("not json\n")

    logs = {entry["name"]: entry for entry in list_session_logs(str(tmp_path))}
    assert logs["test_session"]["schema_version"] == SessionLogger.SCHEMA_VERSION
    assert logs["test_session"]["metadata"] == {"port": 6969}
    assert logs["broken"]["schema_version"] == "unknown"
    assert list_session_logs(str(tmp_path / "nope")) == []


def test_journal_requires_open_session(tmp_path) -> None:
    journal = SessionLogger(log_dir=str(tmp_path))
    with pytest.raises(NotInitializedError):
        journal.log_event("initialize")
    assert journal.stop_session() == {"status": "not_recording"}

    journal.start_session(session_name="twice")
    with pytest.raises(RuntimeError):
        journal.start_session(session_name="twice")
    journal.stop_session()


def test_metrics_summary() -> None:
    clock = StepClock()
    metrics = DeviceMetrics(clock=clock)

    for i in range(11):
        clock.now = 100.0 + i * 0.02
        metrics.record_packet("rotation")
    metrics.record_packet("rotation", accepted=False)
    metrics.record_packet("heartbeat")
    metrics.record_malformed()
    metrics.record_flush(4)
    metrics.record_drain_cap()
    metrics.record_send("heartbeat", ok=True)
    metrics.record_send("signal", ok=False)

    summary = metrics.get_summary()
    assert summary["packets"]["total"] == 13
    assert summary["packets"]["by_type"] == {"rotation": 12, "heartbeat": 1}
    assert summary["packets"]["stale"] == 1
    assert summary["packets"]["malformed"] == 1
    assert summary["packets"]["rate_hz"] == pytest.approx(60.0)
    assert summary["buffer"] == {"flushes": 1, "flushed_packets": 4, "drain_cap_hits": 1}
    assert summary["outbound"] == {"sent": {"heartbeat": 1}, "failures": 1}

    metrics.reset()
    assert metrics.get_summary()["packets"]["total"] == 0
    assert metrics.packet_rate() == 0.0


def test_metrics_export(tmp_path) -> None:
    metrics = DeviceMetrics()
    metrics.record_packet("gyro")
    metrics.record_send("signal", ok=False)

    text = metrics.export_prometheus()
    assert 'owotrack_packets_total{type="gyro"} 1' in text
    assert "owotrack_send_failures_total 1" in text

    out = tmp_path / "metrics.json"
    MetricsExporter.to_json(metrics.get_summary(), str(out))
    assert json.loads(out.read_text())["packets"]["by_type"] == {"gyro": 1}

    prom = tmp_path / "metrics.prom"
    MetricsExporter.to_prometheus_file(metrics, str(prom))
    assert prom.read_text() == text

"""
Metrics module for monitoring the device data link.

Provides functionality to:
- Count received packets per message type and their sequence gating outcome
- Count malformed datagrams, buffer flushes and drain-cap hits
- Track outbound heartbeats, signals and send failures
- Measure packet rate over a rolling window
- Export metrics for inspection (JSON, Prometheus format)
"""

import json
import threading
import time
from collections import Counter, deque
from datetime import datetime
from typing import Any, Callable, Deque, Dict, Optional


class DeviceMetrics:
    """
    Thread-safe metrics collector for one DeviceServer.

    Usage:
        metrics = DeviceMetrics()
        metrics.record_packet("rotation", accepted=True)
        metrics.record_send("heartbeat", ok=True)
        summary = metrics.get_summary()
    """

    def __init__(self, history_size: int = 120, clock: Optional[Callable[[], float]] = None):
        """
        Initialize metrics collector.

        Args:
            history_size: Number of packet arrival times kept for the rate window
            clock: Time source in seconds (default: time.monotonic)
        """
        self.history_size = history_size
        self._clock = clock if clock is not None else time.monotonic
        self._lock = threading.Lock()
        self._start_time = self._clock()

        self._packets: Counter = Counter()
        self._stale_packets = 0
        self._malformed_packets = 0
        self._flushed_packets = 0
        self._flushes = 0
        self._drain_cap_hits = 0
        self._sent: Counter = Counter()
        self._send_failures = 0

        self._arrivals: Deque[float] = deque(maxlen=history_size)

    def record_packet(self, kind: str, accepted: bool = True) -> None:
        """
        Record a received datagram.

        Args:
            kind: Message type name ("rotation", "heartbeat", ...)
            accepted: False when the payload was discarded by sequence gating
        """
        with self._lock:
            self._packets[kind] += 1
            if not accepted:
                self._stale_packets += 1
            self._arrivals.append(self._clock())

    def record_malformed(self) -> None:
        with self._lock:
            self._malformed_packets += 1

    def record_flush(self, discarded: int) -> None:
        with self._lock:
            self._flushes += 1
            self._flushed_packets += discarded

    def record_drain_cap(self) -> None:
        with self._lock:
            self._drain_cap_hits += 1

    def record_send(self, kind: str, ok: bool) -> None:
        with self._lock:
            if ok:
                self._sent[kind] += 1
            else:
                self._send_failures += 1

    def packet_rate(self) -> float:
        """Packets per second across the rolling window."""
        with self._lock:
            return self._rate_locked()

    def _rate_locked(self) -> float:
        if len(self._arrivals) < 2:
            return 0.0
        span = self._arrivals[-1] - self._arrivals[0]
        if span <= 0:
            return 0.0
        return (len(self._arrivals) - 1) / span

    def get_summary(self) -> Dict[str, Any]:
        """
        Get a complete metrics summary.

        Returns:
            Dictionary containing all counters and the current packet rate
        """
        with self._lock:
            return {
                "timestamp": datetime.now().isoformat(),
                "uptime_seconds": round(self._clock() - self._start_time, 2),
                "packets": {
                    "total": sum(self._packets.values()),
                    "by_type": dict(self._packets),
                    "stale": self._stale_packets,
                    "malformed": self._malformed_packets,
                    "rate_hz": round(self._rate_locked(), 2),
                },
                "buffer": {
                    "flushes": self._flushes,
                    "flushed_packets": self._flushed_packets,
                    "drain_cap_hits": self._drain_cap_hits,
                },
                "outbound": {
                    "sent": dict(self._sent),
                    "failures": self._send_failures,
                },
            }

    def export_prometheus(self) -> str:
        """
        Export metrics in Prometheus text format.

        Returns:
            Prometheus-formatted metrics string
        """
        summary = self.get_summary()
        packets = summary["packets"]

        lines = [
            "# HELP owotrack_packets_total Datagrams received from the device",
            "# TYPE owotrack_packets_total counter",
        ]
        for kind, count in sorted(packets["by_type"].items()):
            lines.append(f'owotrack_packets_total{{type="{kind}"}} {count}')

        lines.extend([
            "",
            "# HELP owotrack_stale_packets_total Payloads dropped by sequence gating",
            "# TYPE owotrack_stale_packets_total counter",
            f"owotrack_stale_packets_total {packets['stale']}",
            "",
            "# HELP owotrack_malformed_packets_total Undersized or undecodable datagrams",
            "# TYPE owotrack_malformed_packets_total counter",
            f"owotrack_malformed_packets_total {packets['malformed']}",
            "",
            "# HELP owotrack_packet_rate_hz Current packet rate",
            "# TYPE owotrack_packet_rate_hz gauge",
            f"owotrack_packet_rate_hz {packets['rate_hz']}",
            "",
            "# HELP owotrack_flushed_packets_total Queued datagrams discarded by buffer flushes",
            "# TYPE owotrack_flushed_packets_total counter",
            f"owotrack_flushed_packets_total {summary['buffer']['flushed_packets']}",
            "",
            "# HELP owotrack_send_failures_total Failed outbound sends",
            "# TYPE owotrack_send_failures_total counter",
            f"owotrack_send_failures_total {summary['outbound']['failures']}",
        ])

        return "\n".join(lines)

    def reset(self) -> None:
        """Reset all metrics."""
        with self._lock:
            self._packets.clear()
            self._stale_packets = 0
            self._malformed_packets = 0
            self._flushed_packets = 0
            self._flushes = 0
            self._drain_cap_hits = 0
            self._sent.clear()
            self._send_failures = 0
            self._arrivals.clear()
            self._start_time = self._clock()


class MetricsExporter:
    """
    Export metrics to file.
    """

    @staticmethod
    def to_json(metrics: Dict[str, Any], filepath: str) -> None:
        """Write metrics to JSON file."""
        with open(filepath, 'w') as f:
            json.dump(metrics, f, indent=2)

    @staticmethod
    def to_prometheus_file(metrics: DeviceMetrics, filepath: str) -> None:
        """Write Prometheus-format metrics to file."""
        content = metrics.export_prometheus()
        with open(filepath, 'w') as f:
            f.write(content)

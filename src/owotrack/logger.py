"""
Session journal for device handler events.

Provides functionality to:
- Record handler events (initialization, status changes, calibration) to a JSONL file
- Write header/footer metadata lines around each session
- List existing journals with their header metadata

Pose samples are not journaled.
"""

import json
import os
import queue
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import NotInitializedError


class SessionLogger:
    """
    Thread-safe journal for handler events.

    Usage:
        journal = SessionLogger(log_dir="./logs")
        journal.start_session()
        journal.log_event("status_change", {"previous": "CONNECTION_DEAD", "current": "OK"})
        journal.stop_session()
    """

    SCHEMA_VERSION = "1.0"

    def __init__(self, log_dir: str = "./logs"):
        """
        Initialize the session journal.

        Args:
            log_dir: Directory to store journal files
        """
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self._recording = False
        self._log_file: Optional[os.PathLike] = None
        self._file_handle = None
        self._lock = threading.Lock()
        self._write_queue: queue.Queue = queue.Queue()
        self._writer_thread: Optional[threading.Thread] = None
        self._start_time: Optional[str] = None
        self._event_count = 0

    def start_session(
        self,
        session_name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Start a new journal file.

        Args:
            session_name: Optional name for the session (default: timestamp)
            metadata: Extra header fields (data port, addresses, ...)

        Returns:
            Path to the created journal file

        Raises:
            RuntimeError: If a session is already being recorded
        """
        with self._lock:
            if self._recording:
                raise RuntimeError("Session already in progress")

            self._start_time = datetime.now().isoformat()
            if session_name is None:
                session_name = datetime.now().strftime("%Y%m%d_%H%M%S")

            self._log_file = self.log_dir / f"{session_name}.jsonl"
            self._file_handle = open(self._log_file, 'w', encoding='utf-8')
            self._recording = True
            self._event_count = 0

            header = {
                "_type": "header",
                "schema_version": self.SCHEMA_VERSION,
                "session_start": self._start_time,
                "log_format": "jsonl",
            }
            if metadata:
                header["metadata"] = metadata
            self._file_handle.write(json.dumps(header) + '\n')

            self._writer_thread = threading.Thread(
                target=self._writer_loop, name="owotrack-journal", daemon=True
            )
            self._writer_thread.start()

            return str(self._log_file)

    def stop_session(self) -> Dict[str, Any]:
        """
        Stop recording and close the journal.

        Returns:
            Metadata about the session
        """
        with self._lock:
            if not self._recording:
                return {"status": "not_recording"}

            self._recording = False

            self._write_queue.put(None)
            if self._writer_thread:
                self._writer_thread.join(timeout=5.0)
            self._writer_thread = None

            footer = {
                "_type": "footer",
                "session_end": datetime.now().isoformat(),
                "total_events": self._event_count,
            }
            self._file_handle.write(json.dumps(footer) + '\n')
            self._file_handle.close()

            metadata = {
                "log_file": str(self._log_file),
                "start_time": self._start_time,
                "end_time": datetime.now().isoformat(),
                "total_events": self._event_count,
            }

            self._log_file = None
            self._file_handle = None
            self._event_count = 0

            return metadata

    def log_event(self, event_type: str, event_data: Optional[Dict[str, Any]] = None) -> None:
        """
        Journal an event (status change, calibration start, ...).

        Args:
            event_type: Type identifier for the event
            event_data: Event-specific data

        Raises:
            NotInitializedError: If no session is being recorded
        """
        if not self._recording:
            raise NotInitializedError("Not currently recording")

        entry = {
            "_type": "event",
            "event_type": event_type,
            "timestamp": datetime.now().isoformat(),
            "data": event_data or {},
        }

        self._write_queue.put(entry)
        self._event_count += 1

    def _writer_loop(self) -> None:
        while True:
            entry = self._write_queue.get()
            if entry is None:
                break

            if self._file_handle:
                self._file_handle.write(json.dumps(entry) + '\n')
                self._file_handle.flush()

    @property
    def is_recording(self) -> bool:
        return self._recording

    @property
    def current_log_file(self) -> Optional[str]:
        return str(self._log_file) if self._log_file else None


def list_session_logs(log_dir: str = "./logs") -> List[Dict[str, Any]]:
    """
    List journal files with metadata, newest first.

    Args:
        log_dir: Directory containing journal files

    Returns:
        List of journal info dictionaries
    """
    log_path = Path(log_dir)
    if not log_path.exists():
        return []

    logs = []
    for f in sorted(log_path.glob("*.jsonl"), reverse=True):
        stat = f.stat()
        info = {
            "path": str(f),
            "name": f.stem,
            "size_bytes": stat.st_size,
            "modified": datetime.fromtimestamp(stat.st_mtime).isoformat(),
            "schema_version": "unknown",
            "session_start": None,
        }
        try:
            with open(f, 'r', encoding='utf-8') as fp:
                header = json.loads(fp.readline())
        except (json.JSONDecodeError, UnicodeDecodeError):
            header = {}

        if isinstance(header, dict) and header.get("_type") == "header":
            info["schema_version"] = header.get("schema_version")
            info["session_start"] = header.get("session_start")
            info["metadata"] = header.get("metadata", {})
        logs.append(info)

    return logs

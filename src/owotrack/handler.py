"""
Device handler tying discovery, the device server, the supervisor and the pose engine together.

Provides functionality to:
- Initialize the data port (with sequential fallback) and the discovery responder
- Drive the server/supervisor on a fixed 25ms cadence from a background thread
- Compute tracker poses for the tracking host
- Run the timed forward/down calibration routines and persist their results
- Report local IPv4 addresses for display
"""

import logging
import socket
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from .discovery import DiscoveryConfig, DiscoveryResponder
from .errors import NotInitializedError, PortBindError
from .geo import Vector3
from .logger import SessionLogger
from .metrics import DeviceMetrics
from .pose import CalibrationPhase, HeadsetPose, Pose, PoseEngine
from .server import DeviceServer
from .settings import (
    DEVICE_OFFSET,
    GLOBAL_OFFSET,
    HandlerSettings,
    SettingsStore,
    clamp_height_offset,
)
from .supervisor import ConnectionStatus, ConnectionSupervisor, StatusChange

logger = logging.getLogger(__name__)

SIGNAL_DURATION = 0.7
SIGNAL_FREQUENCY = 100.0
SIGNAL_AMPLITUDE = 0.5

UPDATE_INTERVAL_SECONDS = 0.025


def local_ipv4_addresses() -> List[str]:
    """
    IPv4 address of the adapter carrying the default route.

    Informational only. Falls back to ["127.0.0.1"] when no route is available.
    """
    addresses: List[str] = []
    try:
        # connect() on UDP only selects a route, nothing is sent
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(("8.8.8.8", 80))
            address = sock.getsockname()[0]
            if address and address != "0.0.0.0":
                addresses.append(address)
    except OSError as exc:
        logger.info("Failed to get host addresses: %s", exc)

    if not addresses:
        addresses.append("127.0.0.1")
    return addresses


class TrackingHandler:
    """
    Device handle exposed to the tracking host.

    Usage:
        handler = TrackingHandler(settings=store.load(), store=store)
        handler.on_load()
        handler = initialize_with_fallback(handler)
        loop = handler.start_update_loop()
        pose = handler.calculate_pose(HeadsetPose(position, orientation, yaw))
        handler.shutdown()
    """

    def __init__(
        self,
        port: Optional[int] = None,
        settings: Optional[HandlerSettings] = None,
        store: Optional[SettingsStore] = None,
        discovery: Optional[DiscoveryResponder] = None,
        journal: Optional[SessionLogger] = None,
        metrics: Optional[DeviceMetrics] = None,
        on_status_change: Optional[Callable[[StatusChange], None]] = None,
    ):
        """
        Initialize the handler. Nothing is bound until initialize().

        Args:
            port: UDP data port (default: settings.port)
            settings: Restored settings (default: HandlerSettings())
            store: Where calibration results and height changes are saved
            discovery: Discovery responder shared across fallback handlers
            journal: Optional session journal for handler events
            metrics: Metrics collector handed to the device server
            on_status_change: Called once per status transition
        """
        self.settings = settings if settings is not None else HandlerSettings()
        self.port = int(port) if port is not None else self.settings.port
        self.store = store
        self.discovery = discovery if discovery is not None else DiscoveryResponder(
            DiscoveryConfig(info_port=self.settings.info_port, data_port=self.port)
        )
        self.journal = journal
        self.metrics = metrics if metrics is not None else DeviceMetrics()
        self.engine = PoseEngine()
        self.engine.restore(self.settings.global_rotation, self.settings.local_rotation)
        self.addresses: List[str] = []

        self._on_status_change = on_status_change
        self._supervisor = ConnectionSupervisor(on_status_change=self._handle_status_change)
        self._server: Optional[DeviceServer] = None
        self._initialized = False
        self._update_loop: Optional["UpdateLoop"] = None
        self._discovery_failed = False

    # State

    @property
    def status(self) -> ConnectionStatus:
        return self._supervisor.status

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def server(self) -> DeviceServer:
        """
        The bound device server.

        Raises:
            NotInitializedError: Before a successful initialize()
        """
        if self._server is None:
            raise NotInitializedError("device handler is not initialized")
        return self._server

    @property
    def discovery_failed(self) -> bool:
        """True once the discovery listener has died since the last initialize()."""
        return self._discovery_failed

    @property
    def calibrating_forward(self) -> bool:
        return self.engine.calibrating_forward

    @calibrating_forward.setter
    def calibrating_forward(self, value: bool) -> None:
        self.engine.calibrating_forward = value

    @property
    def calibrating_down(self) -> bool:
        return self.engine.calibrating_down

    @calibrating_down.setter
    def calibrating_down(self, value: bool) -> None:
        self.engine.calibrating_down = value

    def set_status_callback(self, callback: Optional[Callable[[StatusChange], None]]) -> None:
        self._on_status_change = callback

    def get_status(self) -> Dict[str, Any]:
        return {
            "status": self.status.name,
            "status_code": self.status.value,
            "initialized": self._initialized,
            "port": self.port,
            "info_port": self.discovery.info_port,
            "discovery_running": self.discovery.is_running,
            "discovery_failed": self._discovery_failed,
            "addresses": list(self.addresses),
            "calibration_phase": self.engine.phase.value,
            "metrics": self.metrics.get_summary(),
        }

    # Lifecycle

    def on_load(self) -> None:
        """Restore persisted calibration and refresh the local address list."""
        self.settings.sanitize()
        self.engine.restore(self.settings.global_rotation, self.settings.local_rotation)
        self.addresses = local_ipv4_addresses()
        logger.info("Local addresses: %s, data port %d", ", ".join(self.addresses), self.port)

    def initialize(self) -> ConnectionStatus:
        """
        Bind the data port and start discovery. Only acts from NOT_STARTED.

        Returns:
            ConnectionStatus.OK if the handler is now initialized, otherwise
            the terminal status (PORTS_TAKEN or INIT_FAILED)
        """
        if self.status == ConnectionStatus.NOT_STARTED:
            try:
                server = DeviceServer(port=self.port, metrics=self.metrics)
                self._server = server
                self._supervisor.attach(server)

                self._discovery_failed = False
                if not self.discovery.restart(self.port):
                    logger.warning("Failed to start discovery service")

                server.start_listening()
                if server.port != self.port:
                    self.port = server.port
                    self.discovery.config.data_port = server.port

                self._supervisor.set_status(ConnectionStatus.CONNECTION_DEAD)
            except PortBindError as exc:
                logger.error("Failed to bind ports: %s", exc)
                self._drop_server()
                self._supervisor.set_status(ConnectionStatus.PORTS_TAKEN)
            except Exception:
                logger.exception("Failed to set up the handler")
                self._drop_server()
                self._supervisor.set_status(ConnectionStatus.INIT_FAILED)

        if self.status.is_terminal:
            self.record_event("initialize", {"port": self.port, "status": self.status.name})
            return self.status

        self._initialized = True
        self.engine.clear_calibration_flags()
        self.record_event("initialize", {"port": self.port, "status": ConnectionStatus.OK.name})
        logger.info("Device handler initialized on port %d", self.port)
        return ConnectionStatus.OK

    def shutdown(self) -> None:
        """Stop the update loop, close the data socket and stop discovery."""
        self._initialized = False

        loop = self._update_loop
        self._update_loop = None
        if loop is not None:
            loop.stop()

        self.engine.clear_calibration_flags()
        self._drop_server()
        self.discovery.stop()

        if not self.status.is_terminal:
            self._supervisor.set_status(ConnectionStatus.NOT_STARTED)
        self.record_event("shutdown", {"port": self.port, "status": self.status.name})
        logger.info("Device handler shut down with status %s", self.status.name)

    def _drop_server(self) -> None:
        server = self._server
        self._server = None
        self._supervisor.attach(None)
        if server is not None:
            server.close()

    def next(self) -> "TrackingHandler":
        """A fresh handler on the next data port, sharing discovery, settings and journal."""
        handler = TrackingHandler(
            port=self.port + 1,
            settings=self.settings,
            store=self.store,
            discovery=self.discovery,
            journal=self.journal,
            metrics=DeviceMetrics(),
            on_status_change=self._on_status_change,
        )
        handler.addresses = list(self.addresses)
        return handler

    # Periodic work

    def update(self) -> ConnectionStatus:
        """One 25ms step: tick the server and refresh the status. Never raises."""
        if not self._initialized or self._server is None:
            return self.status
        try:
            self._check_discovery()
            return self._supervisor.tick()
        except Exception:
            logger.exception("Error during update")
            return self.status

    def _check_discovery(self) -> None:
        if self._discovery_failed or not self.discovery.failed:
            return
        self._discovery_failed = True
        error = self.discovery.last_error
        logger.warning("Discovery listener failed, devices cannot find port %d: %s", self.port, error)
        self.record_event("discovery_failed", {
            "info_port": self.discovery.config.info_port,
            "error": str(error),
        })

    def start_update_loop(self, interval: float = UPDATE_INTERVAL_SECONDS) -> "UpdateLoop":
        if self._update_loop is not None and self._update_loop.is_running:
            return self._update_loop
        self._update_loop = UpdateLoop(self, interval=interval)
        self._update_loop.start()
        return self._update_loop

    def _handle_status_change(self, change: StatusChange) -> None:
        self.record_event("status_change", {
            "previous": change.previous.name,
            "current": change.current.name,
            "message": change.message,
        })
        if self._on_status_change is not None:
            self._on_status_change(change)

    # Device commands

    def signal(self) -> bool:
        """Buzz the device. Only sent while initialized and OK."""
        if not self._initialized or self.status != ConnectionStatus.OK or self._server is None:
            return False
        return self._server.signal(SIGNAL_DURATION, SIGNAL_FREQUENCY, SIGNAL_AMPLITUDE)

    def calculate_pose(
        self,
        headset: Optional[HeadsetPose] = None,
        global_offset: Optional[Vector3] = None,
        device_offset: Optional[Vector3] = None,
        tracker_offset: Optional[Vector3] = None,
    ) -> Pose:
        """
        Compute the tracker pose for the current headset pose. Never raises.

        Offsets default to the configured global/device offsets and the
        height-derived tracker offset.

        Returns:
            Tracker pose, or the identity pose while not initialized, not OK,
            or when the computation fails
        """
        server = self._server
        if not self._initialized or self.status != ConnectionStatus.OK or server is None:
            return Pose.identity()

        try:
            return self.engine.compute(
                server.orientation,
                headset if headset is not None else HeadsetPose.identity(),
                global_offset if global_offset is not None else GLOBAL_OFFSET,
                device_offset if device_offset is not None else DEVICE_OFFSET,
                tracker_offset if tracker_offset is not None else self.settings.tracker_offset,
            )
        except Exception as exc:
            logger.warning("Pose computation failed: %s", exc)
            return Pose.identity()

    # Settings

    def set_tracker_height_offset(self, value: float) -> int:
        """Clamp to 60..90 cm, store and save. Returns the applied value."""
        self.settings.tracker_height_offset = clamp_height_offset(value)
        self._save_settings()
        return self.settings.tracker_height_offset

    def save_calibration(self) -> None:
        """Copy the engine's rotations into the settings and save them."""
        self.settings.global_rotation = self.engine.global_rotation
        self.settings.local_rotation = self.engine.local_rotation
        self._save_settings()

    def _save_settings(self) -> None:
        if self.store is None:
            return
        try:
            self.store.save(self.settings)
        except OSError as exc:
            logger.error("Failed to save settings to %s: %s", self.store.filepath, exc)

    def record_event(self, event_type: str, data: Dict[str, Any]) -> None:
        if self.journal is not None and self.journal.is_recording:
            self.journal.log_event(event_type, data)


class UpdateLoop:
    """
    Background driver calling TrackingHandler.update() at a fixed interval.

    A single loop per handler; stop() is cooperative and idempotent.
    """

    def __init__(self, handler: TrackingHandler, interval: float = UPDATE_INTERVAL_SECONDS):
        self._handler = handler
        self._interval = float(interval)
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._ticks = 0

    @property
    def is_running(self) -> bool:
        with self._lock:
            thread = self._thread
        return thread is not None and thread.is_alive() and not self._stop_event.is_set()

    @property
    def ticks(self) -> int:
        return self._ticks

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                raise RuntimeError("update loop already running")

            self._stop_event.clear()
            self._thread = threading.Thread(target=self._loop, name="owotrack-update", daemon=True)
            self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        with self._lock:
            thread = self._thread
            self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)

    def _loop(self) -> None:
        next_tick = time.perf_counter()
        while not self._stop_event.is_set():
            self._handler.update()
            self._ticks += 1

            next_tick += self._interval
            now = time.perf_counter()
            wait_s = next_tick - now
            if wait_s > 0:
                self._stop_event.wait(wait_s)
            else:
                next_tick = now


class CalibrationRoutine:
    """
    Timed forward/down calibration, one routine at a time.

    Waits PREPARATION_SECONDS for the user to get into position, asserts the
    calibration flag for HOLD_SECONDS, then clears it and saves the resulting
    rotations. Aborts if the handler stops being initialized during preparation.

    Usage:
        routine = CalibrationRoutine(handler)
        routine.start(CalibrationPhase.CALIBRATING_FORWARD)
    """

    PREPARATION_SECONDS = 5.0
    HOLD_SECONDS = 4.0

    def __init__(
        self,
        handler: TrackingHandler,
        preparation_seconds: Optional[float] = None,
        hold_seconds: Optional[float] = None,
        sleep: Optional[Callable[[float], Any]] = None,
    ):
        """
        Args:
            handler: Handler whose pose engine is calibrated
            preparation_seconds: Delay before asserting the phase
            hold_seconds: How long the phase stays asserted
            sleep: Wait function (default: interruptible wait on cancel())
        """
        self._handler = handler
        self.preparation_seconds = (
            self.PREPARATION_SECONDS if preparation_seconds is None else float(preparation_seconds)
        )
        self.hold_seconds = self.HOLD_SECONDS if hold_seconds is None else float(hold_seconds)
        self._cancel_event = threading.Event()
        self._sleep = sleep if sleep is not None else self._cancel_event.wait

        self._lock = threading.Lock()
        self._pending = False
        self._thread: Optional[threading.Thread] = None

    @property
    def is_pending(self) -> bool:
        with self._lock:
            return self._pending

    def run(self, phase: CalibrationPhase) -> bool:
        """
        Run one calibration synchronously.

        Returns:
            True if the calibration completed and was saved
        """
        if not self._claim(phase):
            return False
        return self._run_claimed(phase)

    def _claim(self, phase: CalibrationPhase) -> bool:
        if phase == CalibrationPhase.IDLE:
            raise ValueError("calibration phase must be forward or down")

        with self._lock:
            if self._pending or not self._handler.is_initialized:
                return False
            self._cancel_event.clear()
            self._pending = True
        return True

    def _run_claimed(self, phase: CalibrationPhase) -> bool:
        try:
            return self._run(phase)
        finally:
            with self._lock:
                self._pending = False

    def _run(self, phase: CalibrationPhase) -> bool:
        engine = self._handler.engine
        self._handler.record_event("calibration_start", {"phase": phase.value})
        logger.info("Calibration %s: preparing for %.1fs", phase.value, self.preparation_seconds)

        self._sleep(self.preparation_seconds)
        if self._cancel_event.is_set() or not self._handler.is_initialized:
            engine.clear_calibration_flags()
            self._handler.record_event("calibration_abort", {"phase": phase.value})
            logger.info("Calibration %s aborted", phase.value)
            return False

        engine.set_phase(phase)
        self._sleep(self.hold_seconds)
        engine.clear_calibration_flags()
        if self._cancel_event.is_set():
            self._handler.record_event("calibration_abort", {"phase": phase.value})
            logger.info("Calibration %s cancelled", phase.value)
            return False

        self._handler.save_calibration()
        self._handler.record_event("calibration_finish", {
            "phase": phase.value,
            "global_rotation": engine.global_rotation.to_list(),
            "local_rotation": engine.local_rotation.to_list(),
        })
        logger.info("Calibration %s finished", phase.value)
        return True

    def start(self, phase: CalibrationPhase) -> bool:
        """
        Run a calibration on a background thread.

        Returns:
            False if a calibration is already pending or the handler is not initialized.
            A cancel() issued after this returns is honored.
        """
        if not self._claim(phase):
            return False
        self._thread = threading.Thread(
            target=self._run_claimed, args=(phase,), name="owotrack-calibration", daemon=True
        )
        self._thread.start()
        return True

    def cancel(self) -> None:
        """Abort the running routine; nothing is saved."""
        self._cancel_event.set()

    def join(self, timeout: Optional[float] = None) -> None:
        thread = self._thread
        if thread is not None:
            thread.join(timeout=timeout)


def initialize_with_fallback(handler: TrackingHandler, attempts: int = 10) -> TrackingHandler:
    """
    Initialize `handler`, moving to the next data port while ports are taken.

    Returns:
        The handler that ended up initialized, or the last one tried
    """
    current = handler
    for attempt in range(max(1, attempts)):
        status = current.initialize()
        if status != ConnectionStatus.PORTS_TAKEN:
            return current
        if attempt + 1 < attempts:
            logger.warning("Port %d taken, trying %d", current.port, current.port + 1)
            current = current.next()
    return current

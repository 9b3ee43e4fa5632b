"""
Host-side receiver for owoTrack handheld sensor devices.

Modules:
- wire: Binary device protocol (inbound big-endian, outbound host-native)
- geo: Vector/quaternion types and yaw extraction
- discovery: Discovery responder announcing the data port
- server: Non-blocking UDP device server (sequencing, liveness, heartbeats)
- supervisor: Connection status with hysteresis
- pose: Pose engine and calibration state
- handler: Device handle, update loop, calibration routine
- settings: Persisted handler settings
- logger: Session journal
- metrics: Link metrics collection
- sim: Simulated device
"""

from .errors import (
    OwoTrackError, TransportError, PortBindError,
    ProtocolError, NotInitializedError
)
from .geo import Vector3, Quaternion, get_yaw, angle_to, yaw_rotation
from .wire import MessageType, WireCodec, DevicePacket, HostFrame
from .discovery import DiscoveryResponder, DiscoveryConfig
from .metrics import DeviceMetrics, MetricsExporter
from .server import DeviceServer, DeviceSample
from .supervisor import ConnectionStatus, ConnectionSupervisor, StatusChange
from .pose import PoseEngine, CalibrationState, CalibrationPhase, HeadsetPose, Pose
from .settings import HandlerSettings, SettingsStore
from .logger import SessionLogger, list_session_logs
from .handler import (
    TrackingHandler, UpdateLoop, CalibrationRoutine,
    initialize_with_fallback, local_ipv4_addresses
)
from .sim import SimulatedDevice

__all__ = [
    # Errors
    "OwoTrackError",
    "TransportError",
    "PortBindError",
    "ProtocolError",
    "NotInitializedError",
    # Geometry
    "Vector3",
    "Quaternion",
    "get_yaw",
    "angle_to",
    "yaw_rotation",
    # Wire
    "MessageType",
    "WireCodec",
    "DevicePacket",
    "HostFrame",
    # Discovery
    "DiscoveryResponder",
    "DiscoveryConfig",
    # Metrics
    "DeviceMetrics",
    "MetricsExporter",
    # Server
    "DeviceServer",
    "DeviceSample",
    # Supervisor
    "ConnectionStatus",
    "ConnectionSupervisor",
    "StatusChange",
    # Pose
    "PoseEngine",
    "CalibrationState",
    "CalibrationPhase",
    "HeadsetPose",
    "Pose",
    # Settings
    "HandlerSettings",
    "SettingsStore",
    # Logger
    "SessionLogger",
    "list_session_logs",
    # Handler
    "TrackingHandler",
    "UpdateLoop",
    "CalibrationRoutine",
    "initialize_with_fallback",
    "local_ipv4_addresses",
    # Simulation
    "SimulatedDevice",
]

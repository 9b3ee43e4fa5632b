"""
Pose engine: device orientation + headset pose + calibration -> tracker pose.

Provides functionality to:
- Correct the device's mounting offset (rotate -90 degrees about X)
- Run the forward (yaw + position) and down (pitch/roll neutral) calibration phases
- Compose the final orientation and the offset-adjusted position

Timing of the calibration phases is the caller's job (see handler.CalibrationRoutine);
the engine only reacts to whichever phase is asserted when a pose is computed.
"""

import math
import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional

import numpy as np
from scipy.spatial.transform import Rotation

from .geo import (
    BACKWARD,
    HORIZONTAL_MASK,
    UP,
    Quaternion,
    Vector3,
    axis_angle,
    get_yaw,
    yaw_rotation,
)

# Device frame -> tracking frame
MOUNTING_CORRECTION = axis_angle([1.0, 0.0, 0.0], -math.pi / 2.0)

CALIBRATION_LIFT = np.array([0.0, 0.2, 0.0])


class CalibrationPhase(Enum):
    IDLE = "idle"
    CALIBRATING_FORWARD = "calibrating_forward"
    CALIBRATING_DOWN = "calibrating_down"


@dataclass
class CalibrationState:
    """Calibration flags and the rotations they produce."""
    calibrating_forward: bool = False
    calibrating_down: bool = False
    global_rotation: Quaternion = field(default_factory=Quaternion.identity)
    local_rotation: Quaternion = field(default_factory=Quaternion.identity)

    @property
    def phase(self) -> CalibrationPhase:
        if self.calibrating_forward:
            return CalibrationPhase.CALIBRATING_FORWARD
        if self.calibrating_down:
            return CalibrationPhase.CALIBRATING_DOWN
        return CalibrationPhase.IDLE


@dataclass(frozen=True)
class HeadsetPose:
    """Headset pose supplied by the tracking host on each request."""
    position: Vector3 = field(default_factory=Vector3.zero)
    orientation: Quaternion = field(default_factory=Quaternion.identity)
    yaw: float = 0.0

    @classmethod
    def identity(cls) -> "HeadsetPose":
        return cls()


@dataclass(frozen=True)
class Pose:
    """Tracker pose in tracking space."""
    position: Vector3 = field(default_factory=Vector3.zero)
    orientation: Quaternion = field(default_factory=Quaternion.identity)

    @classmethod
    def identity(cls) -> "Pose":
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position": self.position.to_list(),
            "orientation": self.orientation.to_list(),
        }


def _to_rotation(quaternion: Quaternion) -> Rotation:
    # Zero quaternions show up before the first sample and in unset settings
    if quaternion.is_zero:
        return Rotation.identity()
    return quaternion.to_rotation()


def calibration_offset(headset: Rotation) -> np.ndarray:
    """Horizontal unit vector of the headset's backward direction, lifted by 0.2."""
    flattened = headset.apply(BACKWARD) * HORIZONTAL_MASK
    length = float(np.linalg.norm(flattened))
    if length < 1e-9:
        return CALIBRATION_LIFT.copy()
    return flattened / length + CALIBRATION_LIFT


class PoseEngine:
    """
    Computes tracker poses and owns the calibration state.

    The calibration flags are written by the calibration routine while the
    update loop and pose requests read them, so all state goes through one lock.

    Usage:
        engine = PoseEngine()
        engine.restore(settings.global_rotation, settings.local_rotation)
        pose = engine.compute(server.orientation, headset, global_offset,
                              device_offset, tracker_offset)
    """

    def __init__(self, state: Optional[CalibrationState] = None):
        self._state = state if state is not None else CalibrationState()
        self._lock = threading.Lock()

    @property
    def state(self) -> CalibrationState:
        """Copy of the current calibration state."""
        with self._lock:
            return replace(self._state)

    @property
    def phase(self) -> CalibrationPhase:
        with self._lock:
            return self._state.phase

    @property
    def calibrating_forward(self) -> bool:
        with self._lock:
            return self._state.calibrating_forward

    @calibrating_forward.setter
    def calibrating_forward(self, value: bool) -> None:
        with self._lock:
            self._state.calibrating_forward = bool(value)

    @property
    def calibrating_down(self) -> bool:
        with self._lock:
            return self._state.calibrating_down

    @calibrating_down.setter
    def calibrating_down(self, value: bool) -> None:
        with self._lock:
            self._state.calibrating_down = bool(value)

    @property
    def global_rotation(self) -> Quaternion:
        with self._lock:
            return self._state.global_rotation

    @property
    def local_rotation(self) -> Quaternion:
        with self._lock:
            return self._state.local_rotation

    def set_phase(self, phase: CalibrationPhase) -> None:
        """Assert exactly the flag for `phase` (both cleared for IDLE)."""
        with self._lock:
            self._state.calibrating_forward = phase == CalibrationPhase.CALIBRATING_FORWARD
            self._state.calibrating_down = phase == CalibrationPhase.CALIBRATING_DOWN

    def clear_calibration_flags(self) -> None:
        self.set_phase(CalibrationPhase.IDLE)

    def restore(self, global_rotation: Quaternion, local_rotation: Quaternion) -> None:
        """Load persisted rotations. Zero quaternions are replaced by identity."""
        with self._lock:
            self._state.global_rotation = (
                Quaternion.identity() if global_rotation.is_zero else global_rotation
            )
            self._state.local_rotation = (
                Quaternion.identity() if local_rotation.is_zero else local_rotation
            )

    def compute(
        self,
        device_orientation: Quaternion,
        headset: HeadsetPose,
        global_offset: Vector3,
        device_offset: Vector3,
        tracker_offset: Vector3,
    ) -> Pose:
        """
        Compute the tracker pose.

        While forward calibration is asserted, the global rotation is re-derived
        from the yaw difference between device and headset, and the offsets are
        replaced by the calibration offset. While down calibration is asserted,
        the local rotation is re-derived so the final orientation matches the
        headset's yaw-only orientation.

        Args:
            device_orientation: Latest device orientation (device frame)
            headset: Headset position, orientation and yaw
            global_offset: Offset added in tracking space
            device_offset: Offset in the headset's frame
            tracker_offset: Offset in the final tracker frame

        Returns:
            Pose in tracking space

        Raises:
            ValueError: If an input cannot be turned into a rotation
        """
        headset_rotation = _to_rotation(headset.orientation)
        corrected = MOUNTING_CORRECTION * _to_rotation(device_orientation)

        offset_global = global_offset.as_array()
        offset_device = device_offset.as_array()
        offset_tracker = tracker_offset.as_array()

        with self._lock:
            state = self._state

            if state.calibrating_forward:
                global_rotation = yaw_rotation(
                    get_yaw(corrected, UP) - get_yaw(headset_rotation, BACKWARD)
                )
                state.global_rotation = Quaternion.from_rotation(global_rotation)

                offset_global = calibration_offset(headset_rotation)
                offset_device = np.zeros(3)
                offset_tracker = np.zeros(3)
            else:
                global_rotation = _to_rotation(state.global_rotation)

            aligned = global_rotation * corrected

            if state.calibrating_down:
                local_rotation = aligned.inv() * yaw_rotation(-headset.yaw)
                state.local_rotation = Quaternion.from_rotation(local_rotation)
            else:
                local_rotation = _to_rotation(state.local_rotation)

        final = aligned * local_rotation

        position = (
            headset.position.as_array()
            + offset_global
            + headset_rotation.apply(offset_device)
            + final.apply(offset_tracker)
        )
        if not np.all(np.isfinite(position)):
            raise ValueError("pose position is not finite")

        return Pose(
            position=Vector3.from_array(position),
            orientation=Quaternion.from_rotation(final),
        )

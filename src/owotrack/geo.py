"""
Geometry helpers for device and headset orientations.

Provides functionality to:
- Represent vectors and scalar-last (x, y, z, w) quaternions as they arrive on the wire
- Convert to and from scipy Rotation for composition and vector transforms
- Extract yaw about +Y in the right-handed, Y-up tracking convention
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Sequence

import numpy as np
from scipy.spatial.transform import Rotation


UP = np.array([0.0, 1.0, 0.0])
WORLD_FORWARD = np.array([0.0, 0.0, 1.0])
BACKWARD = np.array([0.0, 0.0, -1.0])
HORIZONTAL_MASK = np.array([1.0, 0.0, 1.0])

# Below this length a flattened direction has no usable heading
_DEGENERATE_LENGTH = 1e-9


@dataclass(frozen=True)
class Vector3:
    """Three-component vector (x, y, z)."""
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    @classmethod
    def zero(cls) -> "Vector3":
        return cls(0.0, 0.0, 0.0)

    @classmethod
    def from_array(cls, values: Iterable[float]) -> "Vector3":
        x, y, z = (float(v) for v in values)
        return cls(x, y, z)

    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z], dtype=np.float64)

    def to_list(self) -> List[float]:
        return [self.x, self.y, self.z]


@dataclass(frozen=True)
class Quaternion:
    """Rotation quaternion in scalar-last (x, y, z, w) order."""
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    w: float = 1.0

    @classmethod
    def identity(cls) -> "Quaternion":
        return cls(0.0, 0.0, 0.0, 1.0)

    @classmethod
    def from_array(cls, values: Iterable[float]) -> "Quaternion":
        x, y, z, w = (float(v) for v in values)
        return cls(x, y, z, w)

    @classmethod
    def from_rotation(cls, rotation: Rotation) -> "Quaternion":
        return cls.from_array(rotation.as_quat())

    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z, self.w], dtype=np.float64)

    def to_list(self) -> List[float]:
        return [self.x, self.y, self.z, self.w]

    @property
    def is_zero(self) -> bool:
        return self.x == 0.0 and self.y == 0.0 and self.z == 0.0 and self.w == 0.0

    def to_rotation(self) -> Rotation:
        """
        Convert to a scipy Rotation.

        Raises:
            ValueError: If the quaternion has zero norm
        """
        return Rotation.from_quat(self.as_array())

    def to_dict(self) -> Dict[str, Any]:
        return {"x": self.x, "y": self.y, "z": self.z, "w": self.w}


def axis_angle(axis: Sequence[float], angle: float) -> Rotation:
    """Rotation of `angle` radians about `axis`."""
    direction = np.asarray(axis, dtype=np.float64)
    direction = direction / np.linalg.norm(direction)
    return Rotation.from_rotvec(direction * float(angle))


def yaw_rotation(yaw: float) -> Rotation:
    """Pure rotation about +Y (yaw only, zero pitch and roll)."""
    return Rotation.from_rotvec([0.0, float(yaw), 0.0])


def angle_to(v: np.ndarray, u: np.ndarray) -> float:
    """Unsigned angle between two vectors, in radians."""
    return float(math.atan2(np.linalg.norm(np.cross(v, u)), np.dot(v, u)))


def horizontal_direction(rotation: Rotation, direction: np.ndarray) -> np.ndarray:
    """
    Transform `direction` by `rotation`, drop the vertical component and normalize.

    Returns the zero vector when the transformed direction is (near) vertical.
    """
    flattened = rotation.apply(direction) * HORIZONTAL_MASK
    length = float(np.linalg.norm(flattened))
    if length < _DEGENERATE_LENGTH:
        return np.zeros(3)
    return flattened / length


def get_yaw(rotation: Rotation, forward: np.ndarray = UP) -> float:
    """
    Signed yaw of an orientation relative to world forward (+Z).

    The reference direction (device "up" by default, which points out of the
    front of a handheld device) is transformed by the orientation, flattened onto
    the XZ plane, and compared against +Z. The sign follows the flattened
    vector's X component, so a zero X yields zero yaw.

    Args:
        rotation: Orientation to measure
        forward: Reference direction in the orientation's local frame

    Returns:
        Yaw in radians
    """
    front = horizontal_direction(rotation, np.asarray(forward, dtype=np.float64))
    if not front.any():
        return 0.0
    angle = angle_to(front, WORLD_FORWARD)
    return float(-angle * np.sign(front[0]))

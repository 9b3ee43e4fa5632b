"""
Persisted handler settings.

Provides functionality to:
- Hold the data/discovery ports, tracker height offset and calibration rotations
- Load and save them as JSON
- Repair out-of-range values on restore
"""

import json
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Union

from .discovery import INFO_PORT
from .geo import Quaternion, Vector3

logger = logging.getLogger(__name__)

DEFAULT_DATA_PORT = 6969
DEFAULT_HEIGHT_OFFSET_CM = 75
MIN_HEIGHT_OFFSET_CM = 60
MAX_HEIGHT_OFFSET_CM = 90

GLOBAL_OFFSET = Vector3(0.0, 0.0, 0.0)
DEVICE_OFFSET = Vector3(0.0, -0.045, 0.09)


def clamp_height_offset(value: float) -> int:
    """Clamp a user-entered height offset; NaN falls back to the default."""
    if value is None or math.isnan(value):
        return DEFAULT_HEIGHT_OFFSET_CM
    return int(min(max(value, MIN_HEIGHT_OFFSET_CM), MAX_HEIGHT_OFFSET_CM))


def _quaternion_from(value: Any) -> Quaternion:
    if isinstance(value, Quaternion):
        return value
    if isinstance(value, dict):
        return Quaternion(
            float(value.get("x", 0.0)),
            float(value.get("y", 0.0)),
            float(value.get("z", 0.0)),
            float(value.get("w", 0.0)),
        )
    return Quaternion.from_array(value)


@dataclass
class HandlerSettings:
    """Settings restored at startup and saved after each calibration."""
    port: int = DEFAULT_DATA_PORT
    info_port: int = INFO_PORT
    tracker_height_offset: int = DEFAULT_HEIGHT_OFFSET_CM  # cm
    global_rotation: Quaternion = field(default_factory=Quaternion.identity)
    local_rotation: Quaternion = field(default_factory=Quaternion.identity)

    @property
    def tracker_offset(self) -> Vector3:
        return Vector3(0.0, -self.tracker_height_offset / 100.0, 0.0)

    def sanitize(self) -> "HandlerSettings":
        """Repair restored values in place and return self."""
        height = self.tracker_height_offset
        if not MIN_HEIGHT_OFFSET_CM <= height <= MAX_HEIGHT_OFFSET_CM:
            logger.warning("Tracker height offset %s out of range, using %d",
                           height, DEFAULT_HEIGHT_OFFSET_CM)
            height = DEFAULT_HEIGHT_OFFSET_CM
        self.tracker_height_offset = int(height)

        if self.global_rotation.is_zero:
            self.global_rotation = Quaternion.identity()
        if self.local_rotation.is_zero:
            self.local_rotation = Quaternion.identity()
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "port": self.port,
            "info_port": self.info_port,
            "tracker_height_offset": self.tracker_height_offset,
            "global_rotation": self.global_rotation.to_dict(),
            "local_rotation": self.local_rotation.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HandlerSettings":
        """
        Build settings from a decoded JSON object.

        Raises:
            ValueError: If a field has the wrong type or shape (null included)
        """
        defaults = cls()
        try:
            settings = cls(
                port=int(data.get("port", defaults.port)),
                info_port=int(data.get("info_port", defaults.info_port)),
                tracker_height_offset=float(data.get("tracker_height_offset", defaults.tracker_height_offset)),
                global_rotation=_quaternion_from(data.get("global_rotation", defaults.global_rotation)),
                local_rotation=_quaternion_from(data.get("local_rotation", defaults.local_rotation)),
            )
        except TypeError as exc:
            raise ValueError(f"invalid settings field: {exc}") from exc
        return settings.sanitize()


class SettingsStore:
    """
    JSON file backing for HandlerSettings.

    Usage:
        store = SettingsStore("owotrack_settings.json")
        settings = store.load()
        settings.tracker_height_offset = 80
        store.save(settings)
    """

    def __init__(self, filepath: Union[str, Path]):
        self.filepath = Path(filepath)

    def load(self) -> HandlerSettings:
        """
        Load settings; a missing file yields defaults.

        Raises:
            ValueError: If the file exists but is not a valid settings document
        """
        if not self.filepath.exists():
            logger.info("No settings at %s, using defaults", self.filepath)
            return HandlerSettings()

        with open(self.filepath, 'r', encoding='utf-8') as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"settings file {self.filepath} does not hold an object")
        return HandlerSettings.from_dict(data)

    def save(self, settings: HandlerSettings) -> None:
        self.filepath.parent.mkdir(parents=True, exist_ok=True)
        with open(self.filepath, 'w', encoding='utf-8') as f:
            json.dump(settings.to_dict(), f, indent=2)
        logger.debug("Saved settings to %s", self.filepath)

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

Vector3 = Tuple[float, float, float]
Quaternion = Tuple[float, float, float, float]


@dataclass(frozen=True, slots=True)
class TelemetryRecord:
    """Vehicle state reported by the physics simulator after one step.

    ``gyro`` (rad/s) and ``accel`` (m/s^2) are body frame; ``position`` and
    ``velocity`` are Earth frame (North, East, Down); ``quaternion`` is
    ``(w, x, y, z)``.
    """

    timestamp: float
    gyro: Vector3
    accel: Vector3
    position: Vector3
    velocity: Vector3
    quaternion: Quaternion

    def as_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "imu": {
                "gyro": list(self.gyro),
                "accel_body": list(self.accel),
            },
            "position": list(self.position),
            "velocity": list(self.velocity),
            "quaternion": list(self.quaternion),
        }

from __future__ import annotations

import math
import struct
from dataclasses import dataclass
from typing import Any, List, Mapping, Sequence, Tuple

import json5

from .telemetry import TelemetryRecord

CONTROL_MAGIC = 18458
PWM_CHANNELS = 16
PWM_NEUTRAL = 1500
PWM_HALF_RANGE = 500

CONTROL_FRAME_FORMAT = f"!HHI{PWM_CHANNELS}H"
CONTROL_FRAME_SIZE = struct.calcsize(CONTROL_FRAME_FORMAT)

TELEMETRY_BUFFER_SIZE = 1 << 10


class DecodeError(ValueError):
    """Base class for telemetry rejections. Never fatal to an exchange."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class ParseError(DecodeError):
    pass


class MissingFieldError(DecodeError):
    def __init__(self, field: str) -> None:
        super().__init__(f"telemetry does not contain '{field}'", field=field)


class ShapeError(DecodeError):
    def __init__(self, field: str, expected_len: int) -> None:
        super().__init__(
            f"telemetry field '{field}' must be an array of {expected_len} numbers",
            field=field,
        )
        self.expected_len = expected_len


@dataclass(frozen=True, slots=True)
class ControlFrame:
    magic: int
    frame_rate: int
    frame_count: int
    pwm: Tuple[int, ...]


def _round_half_away(value: float) -> int:
    magnitude = abs(value)
    whole = math.floor(magnitude)
    if magnitude - whole >= 0.5:
        whole += 1
    return -whole if value < 0 else whole


def pwm_from_actuator(value: float) -> int:
    """Map a normalised actuator value to a 16-bit pulse width.

    ``-1 -> 1000``, ``0 -> 1500``, ``1 -> 2000``. Values outside ``[-1, 1]``
    are not clamped and wrap at 16 bits.
    """
    value = float(value)
    if not math.isfinite(value):
        return PWM_NEUTRAL
    return (_round_half_away(value * PWM_HALF_RANGE) + PWM_NEUTRAL) & 0xFFFF


def encode_control_frame(actuators: Sequence[float], frame_rate: float, frame_count: int) -> bytes:
    if len(actuators) != PWM_CHANNELS:
        raise ValueError(f"expected {PWM_CHANNELS} actuator values, got {len(actuators)}")

    rate_u16 = int(frame_rate) & 0xFFFF if math.isfinite(frame_rate) else 0
    count_u32 = int(frame_count) & 0xFFFFFFFF
    pwm = [pwm_from_actuator(value) for value in actuators]
    return struct.pack(CONTROL_FRAME_FORMAT, CONTROL_MAGIC, rate_u16, count_u32, *pwm)


def decode_control_frame(frame: bytes) -> ControlFrame:
    if len(frame) != CONTROL_FRAME_SIZE:
        raise ValueError(f"Invalid control frame length: {len(frame)}")

    magic, frame_rate, frame_count, *pwm = struct.unpack(CONTROL_FRAME_FORMAT, frame)
    if magic != CONTROL_MAGIC:
        raise ValueError(f"Invalid control frame magic: {magic}")

    return ControlFrame(magic=magic, frame_rate=frame_rate, frame_count=frame_count, pwm=tuple(pwm))


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-standard JSON constant {name}")


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        # integers too large for a double
        return abs(value) <= 2**1023
    return isinstance(value, float)


def _number_field(obj: Mapping[str, Any], field: str) -> float:
    value = obj.get(field)
    if not _is_number(value):
        raise MissingFieldError(field)
    return float(value)


def _array_field(obj: Mapping[str, Any], field: str, length: int) -> List[float]:
    values = obj.get(field)
    if not isinstance(values, list) or len(values) != length:
        raise ShapeError(field, length)
    if not all(_is_number(value) for value in values):
        raise ShapeError(field, length)
    return [float(value) for value in values]


def decode_telemetry(raw: bytes) -> TelemetryRecord:
    try:
        text = raw.decode("utf-8")
        msg = json5.loads(text, parse_constant=_reject_constant)
    except (UnicodeDecodeError, ValueError) as exc:
        raise ParseError(f"Failed to parse telemetry message: {exc}") from exc

    if not isinstance(msg, dict):
        raise ParseError(f"telemetry must be a JSON object, got {type(msg).__name__}")

    timestamp = _number_field(msg, "timestamp")

    imu = msg.get("imu")
    if not isinstance(imu, dict):
        raise MissingFieldError("imu")
    accel = _array_field(imu, "accel_body", 3)
    gyro = _array_field(imu, "gyro", 3)

    position = _array_field(msg, "position", 3)
    velocity = _array_field(msg, "velocity", 3)
    quaternion = _array_field(msg, "quaternion", 4)

    return TelemetryRecord(
        timestamp=timestamp,
        gyro=(gyro[0], gyro[1], gyro[2]),
        accel=(accel[0], accel[1], accel[2]),
        position=(position[0], position[1], position[2]),
        velocity=(velocity[0], velocity[1], velocity[2]),
        quaternion=(quaternion[0], quaternion[1], quaternion[2], quaternion[3]),
    )

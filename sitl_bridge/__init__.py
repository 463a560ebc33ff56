from .backend import BackendStats, ExchangeOutcome, PhysicsBackend
from .config import BackendConfig, ConfigError, DecodeFailurePolicy, load_config
from .json_backend import JSONBackend
from .protocol import (
    DecodeError,
    MissingFieldError,
    ParseError,
    ShapeError,
    decode_control_frame,
    decode_telemetry,
    encode_control_frame,
)
from .session import BackendStatus
from .telemetry import TelemetryRecord
from .transport import TransportError, UdpTransport

__all__ = [
    "BackendConfig",
    "BackendStats",
    "BackendStatus",
    "ConfigError",
    "DecodeError",
    "DecodeFailurePolicy",
    "ExchangeOutcome",
    "JSONBackend",
    "MissingFieldError",
    "ParseError",
    "PhysicsBackend",
    "ShapeError",
    "TelemetryRecord",
    "TransportError",
    "UdpTransport",
    "decode_control_frame",
    "decode_telemetry",
    "encode_control_frame",
    "load_config",
]

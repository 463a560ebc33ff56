from __future__ import annotations

import dataclasses
import logging
import math
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional, Union

import json5

from .session import DEFAULT_FRAME_RATE_HZ

logger = logging.getLogger(__name__)

DEFAULT_SECTION_KEY = "JSONBackend"


class ConfigError(ValueError):
    pass


class DecodeFailurePolicy(str, Enum):
    """What an exchange does with a datagram that fails to decode."""

    KEEP_POLLING = "keep_polling"
    ABORT = "abort"


@dataclass(frozen=True, slots=True)
class BackendConfig:
    telem_timeout: float = 10.0
    receive_timeout: float = 0.01
    addr: str = "127.0.0.1"
    port: int = 9002
    frame_rate: float = DEFAULT_FRAME_RATE_HZ
    decode_failure_policy: DecodeFailurePolicy = DecodeFailurePolicy.KEEP_POLLING

    def __post_init__(self) -> None:
        for name in ("telem_timeout", "receive_timeout", "frame_rate"):
            value = getattr(self, name)
            try:
                finite = math.isfinite(value)
            except OverflowError as exc:
                raise ConfigError(f"{name} must be a finite number >= 0") from exc
            if not finite or value < 0:
                raise ConfigError(f"{name} must be a finite number >= 0")
        if not 0 <= self.port <= 0xFFFF:
            raise ConfigError("port must be in 0..65535")
        if not isinstance(self.decode_failure_policy, DecodeFailurePolicy):
            object.__setattr__(
                self, "decode_failure_policy", DecodeFailurePolicy(self.decode_failure_policy)
            )

    @classmethod
    def from_mapping(cls, section: Optional[Mapping[str, Any]]) -> "BackendConfig":
        """Build a config from one component section.

        Missing or null keys keep their defaults. Values of the wrong type or
        outside their valid range are logged and replaced by the default.
        """
        defaults = cls()
        section = section or {}
        return cls(
            telem_timeout=_get_number(section, "telem_timeout", defaults.telem_timeout, minimum=0.0),
            receive_timeout=_get_number(section, "receive_timeout", defaults.receive_timeout, minimum=0.0),
            addr=_get_str(section, "addr", defaults.addr),
            port=_get_port(section, "port", defaults.port),
            frame_rate=_get_number(section, "frame_rate", defaults.frame_rate, minimum=0.0),
            decode_failure_policy=_get_policy(section, "decode_failure_policy", defaults.decode_failure_policy),
        )

    def replace(self, **changes: Any) -> "BackendConfig":
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> dict:
        return {
            "telem_timeout": self.telem_timeout,
            "receive_timeout": self.receive_timeout,
            "addr": self.addr,
            "port": self.port,
            "frame_rate": self.frame_rate,
            "decode_failure_policy": self.decode_failure_policy.value,
        }


def _fallback(key: str, value: Any, default: Any, expected: str) -> Any:
    logger.info("Failed to parse %s as %s (%r), using default %r", key, expected, value, default)
    return default


def _get_number(section: Mapping[str, Any], key: str, default: float, minimum: float) -> float:
    value = section.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return _fallback(key, value, default, "a number")
    try:
        number = float(value)
    except OverflowError:
        return _fallback(key, value, default, "a finite number")
    if not math.isfinite(number) or number < minimum:
        return _fallback(key, value, default, f"a number >= {minimum}")
    return number


def _get_str(section: Mapping[str, Any], key: str, default: str) -> str:
    value = section.get(key)
    if value is None:
        return default
    if not isinstance(value, str):
        return _fallback(key, value, default, "a string")
    return value


def _get_port(section: Mapping[str, Any], key: str, default: int) -> int:
    value = section.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return _fallback(key, value, default, "a port number")
    if isinstance(value, float) and not value.is_integer():
        return _fallback(key, value, default, "a port number")
    if not 0 <= value <= 0xFFFF:
        return _fallback(key, value, default, "a port number")
    return int(value)


def _get_policy(section: Mapping[str, Any], key: str, default: DecodeFailurePolicy) -> DecodeFailurePolicy:
    value = section.get(key)
    if value is None:
        return default
    try:
        return DecodeFailurePolicy(str(value).strip().lower())
    except ValueError:
        return _fallback(key, value, default, "a decode failure policy")


def load_config(path: Union[str, Path], key: str = DEFAULT_SECTION_KEY) -> BackendConfig:
    """Load the ``key`` section of a JSON configuration file.

    Comments and trailing commas are accepted.
    """
    path = Path(path).expanduser()
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Failed to open configuration file at '{path}': {exc}") from exc

    try:
        data = json5.loads(text)
    except ValueError as exc:
        raise ConfigError(f"Failed to parse JSON in file '{path}': {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file '{path}' must contain a JSON object")

    section = data.get(key)
    if section is not None and not isinstance(section, dict):
        logger.info("Configuration section '%s' is not an object, using defaults", key)
        section = None
    return BackendConfig.from_mapping(section)

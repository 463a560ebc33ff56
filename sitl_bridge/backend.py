from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

from .session import BackendStatus, SessionState
from .telemetry import TelemetryRecord


class ExchangeOutcome(str, Enum):
    NONE = "none"
    OK = "ok"
    TIMEOUT = "timeout"
    SEND_FAILED = "send_failed"
    RECEIVE_FAILED = "receive_failed"
    DECODE_FAILED = "decode_failed"
    FAULTED = "faulted"


@dataclass(slots=True)
class BackendStats:
    tx_frames_ok: int = 0
    tx_errors: int = 0
    rx_frames_ok: int = 0
    rx_decode_errors: int = 0
    rx_errors: int = 0
    timeouts: int = 0


class PhysicsBackend(ABC):
    """Capability interface for anything that steps a vehicle physics model.

    ``iterate`` sends one set of actuator outputs and returns the telemetry
    produced by the step, or ``None`` when no complete telemetry arrived.
    The reason for a ``None`` is available from ``last_outcome``.
    """

    def __init__(self) -> None:
        self._session = SessionState()
        self._stats = BackendStats()
        self._last_outcome = ExchangeOutcome.NONE
        self._last_decode_errors = 0

    @abstractmethod
    def iterate(self, actuators: Sequence[float]) -> Optional[TelemetryRecord]:
        raise NotImplementedError

    @property
    def frame_rate(self) -> float:
        return self._session.frame_rate

    def set_frame_rate(self, hz: float) -> float:
        return self._session.set_frame_rate(hz)

    @property
    def frame_count(self) -> int:
        return self._session.frame_count

    @property
    def status(self) -> BackendStatus:
        return self._session.status

    @property
    def faulted(self) -> bool:
        return self._session.faulted

    def __bool__(self) -> bool:
        return not self._session.faulted

    @property
    def last_outcome(self) -> ExchangeOutcome:
        return self._last_outcome

    @property
    def last_decode_errors(self) -> int:
        return self._last_decode_errors

    @property
    def degraded(self) -> bool:
        """True when the last exchange succeeded only after skipping bad datagrams."""
        return self._last_outcome == ExchangeOutcome.OK and self._last_decode_errors > 0

    def stats(self) -> BackendStats:
        return BackendStats(
            tx_frames_ok=self._stats.tx_frames_ok,
            tx_errors=self._stats.tx_errors,
            rx_frames_ok=self._stats.rx_frames_ok,
            rx_decode_errors=self._stats.rx_decode_errors,
            rx_errors=self._stats.rx_errors,
            timeouts=self._stats.timeouts,
        )

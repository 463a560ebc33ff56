from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum


DEFAULT_FRAME_RATE_HZ = 50.0


class BackendStatus(IntEnum):
    GOOD = 0
    SOCKET_FAIL = 1
    BIND_FAIL = 2
    HANDLE_LOST = 3
    MOVED_OUT = 4
    CLOSED = 5


@dataclass(slots=True)
class SessionState:
    frame_rate: float = DEFAULT_FRAME_RATE_HZ
    frame_count: int = 0
    status: BackendStatus = BackendStatus.GOOD

    @property
    def faulted(self) -> bool:
        return self.status != BackendStatus.GOOD

    def set_frame_rate(self, hz: float) -> float:
        if hz < 0:
            raise ValueError("frame rate must be >= 0")
        self.frame_rate = float(hz)
        return self.frame_rate

    def advance(self) -> int:
        self.frame_count += 1
        return self.frame_count

    def fault(self, status: BackendStatus) -> None:
        # keep the first fault
        if self.status == BackendStatus.GOOD:
            self.status = status

    def to_dict(self) -> dict:
        return {
            "frame_rate": self.frame_rate,
            "frame_count": self.frame_count,
            "status": self.status.name,
        }

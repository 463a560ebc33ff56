from __future__ import annotations

import logging
import time
from typing import Optional, Sequence, Tuple

from .backend import ExchangeOutcome, PhysicsBackend
from .config import BackendConfig, DecodeFailurePolicy
from .protocol import TELEMETRY_BUFFER_SIZE, DecodeError, decode_telemetry, encode_control_frame
from .session import BackendStatus, SessionState
from .telemetry import TelemetryRecord
from .transport import TransportError, UdpTransport


class JSONBackend(PhysicsBackend):
    """ArduPilot SITL JSON backend.

    Each ``iterate`` sends a 40-byte binary control frame to the simulator's
    UDP server and then polls for its JSON telemetry reply until
    ``telem_timeout`` expires. Datagrams that fail to decode are logged and
    skipped (or end the exchange, depending on ``decode_failure_policy``).

    A backend whose socket could not be opened, was lost, was moved to
    another instance, or was closed is faulted: ``iterate`` returns ``None``
    without touching the network.
    """

    def __init__(self, config: Optional[BackendConfig] = None, logger: Optional[logging.Logger] = None) -> None:
        super().__init__()
        self._config = config or BackendConfig()
        self._log = logger or logging.getLogger(__name__)
        self._session.set_frame_rate(self._config.frame_rate)

        self._transport: Optional[UdpTransport] = None
        try:
            self._transport = UdpTransport(self._config.addr, self._config.port, logger=self._log)
        except TransportError as exc:
            self._log.error("%s", exc)
            self._session.fault(exc.status or BackendStatus.SOCKET_FAIL)
            return

        self._log.info(
            "JSONBackend connected to address %s on port %d", self._config.addr, self._config.port
        )

    @property
    def config(self) -> BackendConfig:
        return self._config

    @property
    def local_address(self) -> Optional[Tuple[str, int]]:
        if self._transport is None:
            return None
        return self._transport.local_address

    def iterate(self, actuators: Sequence[float]) -> Optional[TelemetryRecord]:
        self._last_decode_errors = 0
        if self._transport is None or self._session.faulted:
            self._log.error("JSONBackend is not usable (status=%s)", self._session.status.name)
            return self._finish(ExchangeOutcome.FAULTED)

        frame = encode_control_frame(actuators, self._session.frame_rate, self._session.frame_count)

        try:
            self._transport.send(frame)
        except TransportError as exc:
            self._stats.tx_errors += 1
            self._log.error("Failed to send control packet: %s", exc)
            self._check_handle(exc)
            return self._finish(ExchangeOutcome.SEND_FAILED)
        self._stats.tx_frames_ok += 1

        config = self._config
        deadline = time.monotonic() + config.telem_timeout

        while time.monotonic() < deadline:
            try:
                raw = self._transport.poll_receive(TELEMETRY_BUFFER_SIZE)
            except TransportError as exc:
                self._stats.rx_errors += 1
                self._log.error("%s", exc)
                self._check_handle(exc)
                return self._finish(ExchangeOutcome.RECEIVE_FAILED)

            if raw is None:
                # physics backend not started yet, or no reply so far
                time.sleep(config.receive_timeout)
                continue

            try:
                telemetry = decode_telemetry(raw)
            except DecodeError as exc:
                self._stats.rx_decode_errors += 1
                self._last_decode_errors += 1
                self._log.warning("Rejected telemetry message: %s", exc)
                if config.decode_failure_policy == DecodeFailurePolicy.ABORT:
                    return self._finish(ExchangeOutcome.DECODE_FAILED)
                continue

            self._session.advance()
            self._stats.rx_frames_ok += 1
            self._last_outcome = ExchangeOutcome.OK
            return telemetry

        self._stats.timeouts += 1
        self._log.warning(
            "Physics backend telemetry request timed out after %.3fs", config.telem_timeout
        )
        return self._finish(ExchangeOutcome.TIMEOUT)

    def reconfigure(self, config: BackendConfig) -> None:
        """Swap in a new configuration between exchanges.

        Timing and policy apply from the next ``iterate``. A new address or
        port retargets the existing socket. Frame counter and status are kept.
        """
        if self._session.status in (BackendStatus.MOVED_OUT, BackendStatus.CLOSED):
            raise RuntimeError(f"cannot reconfigure backend with status {self._session.status.name}")

        previous = self._config
        self._config = config

        if config.frame_rate != previous.frame_rate:
            self._session.set_frame_rate(config.frame_rate)

        if self._transport is not None and (config.addr, config.port) != (previous.addr, previous.port):
            self._transport.retarget(config.addr, config.port)

    def transfer(self) -> "JSONBackend":
        """Move socket, configuration and counters into a new backend.

        This instance is left ``MOVED_OUT`` and will not touch the socket again.
        """
        if self._session.status in (BackendStatus.MOVED_OUT, BackendStatus.CLOSED):
            raise RuntimeError(f"cannot transfer backend with status {self._session.status.name}")

        other = type(self).__new__(type(self))
        PhysicsBackend.__init__(other)
        other._config = self._config
        other._log = self._log
        other._transport = self._transport.detach() if self._transport is not None else None
        other._session = SessionState(
            frame_rate=self._session.frame_rate,
            frame_count=self._session.frame_count,
            status=self._session.status,
        )
        other._stats = self.stats()

        self._transport = None
        self._session.status = BackendStatus.MOVED_OUT
        return other

    def close(self) -> None:
        if self._transport is not None:
            try:
                self._transport.close()
            finally:
                self._transport = None
        if self._session.status != BackendStatus.MOVED_OUT:
            self._session.status = BackendStatus.CLOSED

    def _check_handle(self, exc: TransportError) -> None:
        if exc.handle_lost:
            self._log.error("UDP socket is no longer usable, backend faulted")
            self._session.fault(BackendStatus.HANDLE_LOST)

    def _finish(self, outcome: ExchangeOutcome) -> None:
        self._last_outcome = outcome
        return None

    def __enter__(self) -> "JSONBackend":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

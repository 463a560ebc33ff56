from __future__ import annotations

import argparse
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .config import DEFAULT_SECTION_KEY, BackendConfig, ConfigError, load_config
from .json_backend import JSONBackend
from .protocol import PWM_CHANNELS
from .telemetry import TelemetryRecord

logger = logging.getLogger(__name__)


class SessionLogger:
    def __init__(self, path: Optional[str]) -> None:
        self._path = Path(path).expanduser() if path else None
        self._file = None
        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._file = self._path.open("a", encoding="utf-8")

    def write(
        self,
        frame_count: int,
        outcome: str,
        telemetry: Optional[dict],
        extra: Optional[dict] = None,
    ) -> None:
        if self._file is None:
            return
        payload = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "frame_count": frame_count,
            "outcome": outcome,
            "telemetry": telemetry,
            "extra": extra or {},
        }
        self._file.write(json.dumps(payload, ensure_ascii=True) + "\n")
        self._file.flush()

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None


def _format_vector(values) -> str:
    return "[" + ", ".join(f"{value:.3f}" for value in values) + "]"


def _format_telemetry(telemetry: Optional[TelemetryRecord]) -> str:
    if telemetry is None:
        return "telemetry: N/A"
    return (
        "telemetry: "
        f"t={telemetry.timestamp:.3f}s "
        f"gyro={_format_vector(telemetry.gyro)} "
        f"accel={_format_vector(telemetry.accel)} "
        f"pos={_format_vector(telemetry.position)} "
        f"vel={_format_vector(telemetry.velocity)} "
        f"q={_format_vector(telemetry.quaternion)}"
    )


def _resolve_config(args: argparse.Namespace) -> BackendConfig:
    config = BackendConfig()
    if args.config:
        try:
            config = load_config(args.config, key=args.key)
        except ConfigError as exc:
            logger.warning("%s, using defaults", exc)

    overrides = {}
    if args.addr is not None:
        overrides["addr"] = args.addr
    if args.port is not None:
        overrides["port"] = args.port
    if args.frame_rate is not None:
        overrides["frame_rate"] = args.frame_rate
    if args.telem_timeout is not None:
        overrides["telem_timeout"] = args.telem_timeout
    if args.receive_timeout is not None:
        overrides["receive_timeout"] = args.receive_timeout
    if args.decode_failure_policy is not None:
        overrides["decode_failure_policy"] = args.decode_failure_policy
    return config.replace(**overrides) if overrides else config


def run_cli(args: argparse.Namespace) -> int:
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    try:
        config = _resolve_config(args)
    except ConfigError as exc:
        print(f"error: {exc}")
        return 2

    actuators = [float(args.throttle)] * PWM_CHANNELS
    session_log = SessionLogger(args.log_file)
    backend = JSONBackend(config)

    try:
        if not backend:
            print(f"backend faulted at start: {backend.status.name}")
            return 1

        print(f"sending to {config.addr}:{config.port} from {backend.local_address}")
        done = 0
        while args.iterations <= 0 or done < args.iterations:
            telemetry = backend.iterate(actuators)
            done += 1
            print(f"[{backend.frame_count}] {backend.last_outcome.value} {_format_telemetry(telemetry)}")
            session_log.write(
                frame_count=backend.frame_count,
                outcome=backend.last_outcome.value,
                telemetry=telemetry.as_dict() if telemetry is not None else None,
                extra={"decode_errors": backend.last_decode_errors},
            )
            if not backend:
                print(f"backend faulted: {backend.status.name}")
                return 1

    except KeyboardInterrupt:
        print("\ninterrupted")

    finally:
        stats = backend.stats()
        print(
            "stats: "
            f"tx_ok={stats.tx_frames_ok} tx_err={stats.tx_errors} "
            f"rx_ok={stats.rx_frames_ok} rx_bad={stats.rx_decode_errors} "
            f"rx_err={stats.rx_errors} timeouts={stats.timeouts}"
        )
        backend.close()
        session_log.close()

    return 0


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="ArduPilot SITL JSON backend client")
    parser.add_argument("--config", default=None, help="JSON configuration file")
    parser.add_argument(
        "--key", default=DEFAULT_SECTION_KEY, help=f"Configuration section (default: {DEFAULT_SECTION_KEY})"
    )
    parser.add_argument("--addr", default=None, help="Simulator IPv4 address (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=None, help="Simulator UDP port (default: 9002)")
    parser.add_argument("--frame-rate", type=float, default=None, help="Requested frame rate in Hz (default: 50)")
    parser.add_argument(
        "--telem-timeout", type=float, default=None, help="Seconds to wait for telemetry per frame (default: 10)"
    )
    parser.add_argument(
        "--receive-timeout", type=float, default=None, help="Seconds between receive polls (default: 0.01)"
    )
    parser.add_argument(
        "--decode-failure-policy",
        choices=["keep_polling", "abort"],
        default=None,
        help="What to do with undecodable telemetry (default: keep_polling)",
    )
    parser.add_argument("--iterations", type=int, default=0, help="Exchanges to run, 0 = until interrupted")
    parser.add_argument("--throttle", type=float, default=-1.0, help="Actuator value for all channels (default: -1)")
    parser.add_argument("--log-file", default=None, help="Optional JSONL session log path")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser

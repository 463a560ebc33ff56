import socket
import time

import pytest

from conftest import encode_json, make_telemetry
from sitl_bridge import transport as transport_module
from sitl_bridge.backend import ExchangeOutcome
from sitl_bridge.config import BackendConfig, DecodeFailurePolicy
from sitl_bridge.json_backend import JSONBackend
from sitl_bridge.protocol import decode_control_frame
from sitl_bridge.session import BackendStatus
from sitl_bridge.transport import TransportError

NEUTRAL = [0.0] * 16


def make_backend(sim_peer, **overrides) -> JSONBackend:
    settings = {"port": sim_peer.getsockname()[1], "telem_timeout": 2.0, "receive_timeout": 0.01}
    settings.update(overrides)
    return JSONBackend(BackendConfig(**settings))


def reply(sim_peer, backend: JSONBackend, payload) -> None:
    raw = payload if isinstance(payload, bytes) else encode_json(payload)
    sim_peer.sendto(raw, ("127.0.0.1", backend.local_address[1]))


def test_starts_without_running_server() -> None:
    with JSONBackend() as backend:
        assert backend
        assert backend.status == BackendStatus.GOOD
        assert backend.frame_rate == 50.0
        assert backend.frame_count == 0


def test_timeout_without_reply(sim_peer) -> None:
    ramp = [((i * 2.0) / 15) - 1.0 for i in range(16)]
    with make_backend(sim_peer, telem_timeout=1.0) as backend:
        start = time.monotonic()
        assert backend.iterate(ramp) is None
        elapsed = time.monotonic() - start

        assert 0.95 <= elapsed < 3.0
        assert backend.frame_count == 0
        assert backend.last_outcome == ExchangeOutcome.TIMEOUT
        assert backend.stats().timeouts == 1
        assert backend

        raw, _ = sim_peer.recvfrom(1024)
        frame = decode_control_frame(raw)
        assert len(raw) == 40
        assert frame.frame_rate == 50
        assert frame.frame_count == 0
        assert list(frame.pwm) == [round(value * 500 + 1500) for value in ramp]


def test_valid_reply_is_decoded(sim_peer) -> None:
    with make_backend(sim_peer) as backend:
        reply(sim_peer, backend, make_telemetry())

        telemetry = backend.iterate(NEUTRAL)

        assert telemetry is not None
        assert telemetry.timestamp == 0.1
        assert telemetry.accel == (1.0, 2.0, 3.0)
        assert telemetry.gyro == (-1.0, -2.0, -3.0)
        assert telemetry.position == (100.0, 1000.0, -500.0)
        assert telemetry.velocity == (1.0, 10.0, -5.0)
        assert telemetry.quaternion == (1.0, 0.12, 0.34, 0.56)
        assert backend.frame_count == 1
        assert backend.last_outcome == ExchangeOutcome.OK
        assert backend.degraded is False

        assert decode_control_frame(sim_peer.recvfrom(1024)[0]).frame_count == 0

        backend.reconfigure(backend.config.replace(telem_timeout=0.05))
        assert backend.iterate(NEUTRAL) is None
        assert backend.frame_count == 1
        assert decode_control_frame(sim_peer.recvfrom(1024)[0]).frame_count == 1


def test_malformed_datagram_is_skipped(sim_peer) -> None:
    with make_backend(sim_peer) as backend:
        reply(sim_peer, backend, b"{garbage")
        reply(sim_peer, backend, make_telemetry(timestamp=0.2))

        telemetry = backend.iterate(NEUTRAL)

        assert telemetry is not None
        assert telemetry.timestamp == 0.2
        assert backend.frame_count == 1
        assert backend.last_decode_errors == 1
        assert backend.degraded is True
        assert backend.stats().rx_decode_errors == 1


def test_missing_imu_keeps_polling(sim_peer, caplog) -> None:
    payload = make_telemetry()
    del payload["imu"]

    with make_backend(sim_peer) as backend:
        reply(sim_peer, backend, payload)
        reply(sim_peer, backend, make_telemetry(timestamp=0.3))

        telemetry = backend.iterate(NEUTRAL)

        assert telemetry is not None
        assert telemetry.timestamp == 0.3
        assert "imu" in caplog.text


def test_only_first_decodable_datagram_is_consumed(sim_peer) -> None:
    with make_backend(sim_peer) as backend:
        reply(sim_peer, backend, make_telemetry(timestamp=1.0))
        reply(sim_peer, backend, make_telemetry(timestamp=2.0))

        assert backend.iterate(NEUTRAL).timestamp == 1.0
        assert backend.iterate(NEUTRAL).timestamp == 2.0
        assert backend.frame_count == 2


def test_abort_policy_ends_exchange_on_bad_datagram(sim_peer) -> None:
    with make_backend(sim_peer, decode_failure_policy=DecodeFailurePolicy.ABORT) as backend:
        reply(sim_peer, backend, b"[]")
        reply(sim_peer, backend, make_telemetry(timestamp=0.4))

        assert backend.iterate(NEUTRAL) is None
        assert backend.last_outcome == ExchangeOutcome.DECODE_FAILED
        assert backend.frame_count == 0
        assert backend

        telemetry = backend.iterate(NEUTRAL)
        assert telemetry is not None
        assert telemetry.timestamp == 0.4


def test_invalid_address_fails_send_without_faulting(caplog) -> None:
    with JSONBackend(BackendConfig(addr="999.1.1.1", telem_timeout=0.1)) as backend:
        assert backend
        assert backend.iterate(NEUTRAL) is None
        assert backend.last_outcome == ExchangeOutcome.SEND_FAILED
        assert backend.stats().tx_errors == 1
        assert backend.status == BackendStatus.GOOD
        assert "999.1.1.1" in caplog.text


def test_socket_failure_faults_backend(monkeypatch) -> None:
    def broken_socket(*args, **kwargs):
        raise OSError(24, "Too many open files")

    monkeypatch.setattr(transport_module.socket, "socket", broken_socket)

    backend = JSONBackend()

    assert not backend
    assert backend.status == BackendStatus.SOCKET_FAIL
    assert backend.local_address is None
    assert backend.iterate(NEUTRAL) is None
    assert backend.last_outcome == ExchangeOutcome.FAULTED
    assert backend.stats().tx_frames_ok == 0
    backend.close()


def test_receive_error_with_lost_handle_faults(sim_peer, monkeypatch) -> None:
    backend = make_backend(sim_peer)

    def lost(*args, **kwargs):
        raise TransportError("bad file descriptor", handle_lost=True)

    monkeypatch.setattr(backend._transport, "poll_receive", lost)

    assert backend.iterate(NEUTRAL) is None
    assert backend.last_outcome == ExchangeOutcome.RECEIVE_FAILED
    assert backend.status == BackendStatus.HANDLE_LOST

    assert backend.iterate(NEUTRAL) is None
    assert backend.last_outcome == ExchangeOutcome.FAULTED
    backend.close()


def test_transient_receive_error_does_not_fault(sim_peer, monkeypatch) -> None:
    backend = make_backend(sim_peer)

    def refused(*args, **kwargs):
        raise TransportError("connection refused")

    monkeypatch.setattr(backend._transport, "poll_receive", refused)

    assert backend.iterate(NEUTRAL) is None
    assert backend.last_outcome == ExchangeOutcome.RECEIVE_FAILED
    assert backend.status == BackendStatus.GOOD
    assert backend.stats().rx_errors == 1
    backend.close()


def test_transfer_moves_ownership(sim_peer) -> None:
    source = make_backend(sim_peer)
    reply(sim_peer, source, make_telemetry())
    assert source.iterate(NEUTRAL) is not None
    local = source.local_address

    target = source.transfer()

    assert not source
    assert source.status == BackendStatus.MOVED_OUT
    assert source.iterate(NEUTRAL) is None
    assert source.last_outcome == ExchangeOutcome.FAULTED
    source.close()
    assert source.status == BackendStatus.MOVED_OUT
    with pytest.raises(RuntimeError):
        source.transfer()

    assert target
    assert target.local_address == local
    assert target.frame_count == 1
    assert target.stats().rx_frames_ok == 1

    reply(sim_peer, target, make_telemetry(timestamp=0.5))
    assert target.iterate(NEUTRAL).timestamp == 0.5
    assert target.frame_count == 2
    target.close()


def test_close_is_idempotent_and_faults(sim_peer) -> None:
    backend = make_backend(sim_peer)

    backend.close()
    backend.close()

    assert backend.status == BackendStatus.CLOSED
    assert backend.iterate(NEUTRAL) is None
    assert backend.last_outcome == ExchangeOutcome.FAULTED
    with pytest.raises(RuntimeError):
        backend.reconfigure(BackendConfig())


def test_reconfigure_retargets_and_keeps_counters(sim_peer) -> None:
    other_peer = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    other_peer.bind(("127.0.0.1", 0))
    other_peer.settimeout(2.0)

    try:
        with make_backend(sim_peer) as backend:
            reply(sim_peer, backend, make_telemetry())
            assert backend.iterate(NEUTRAL) is not None
            sim_peer.recvfrom(1024)

            backend.set_frame_rate(400)
            backend.reconfigure(backend.config.replace(port=other_peer.getsockname()[1]))
            reply(other_peer, backend, make_telemetry(timestamp=0.6))

            assert backend.iterate(NEUTRAL).timestamp == 0.6
            frame = decode_control_frame(other_peer.recvfrom(1024)[0])
            assert frame.frame_rate == 400
            assert frame.frame_count == 1
            assert backend.frame_count == 2
    finally:
        other_peer.close()


def test_wrong_actuator_count_raises(sim_peer) -> None:
    with make_backend(sim_peer) as backend:
        with pytest.raises(ValueError):
            backend.iterate([0.0] * 4)

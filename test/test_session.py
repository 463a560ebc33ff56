import pytest

from sitl_bridge.session import BackendStatus, SessionState


def test_advance_is_monotonic() -> None:
    state = SessionState()

    assert state.frame_count == 0
    assert state.advance() == 1
    assert state.advance() == 2
    assert state.frame_count == 2


def test_fault_keeps_first_status() -> None:
    state = SessionState()
    assert state.faulted is False

    state.fault(BackendStatus.BIND_FAIL)
    state.fault(BackendStatus.HANDLE_LOST)

    assert state.faulted is True
    assert state.status == BackendStatus.BIND_FAIL
    assert state.to_dict()["status"] == "BIND_FAIL"


def test_set_frame_rate() -> None:
    state = SessionState()

    assert state.frame_rate == 50.0
    assert state.set_frame_rate(400) == 400.0
    with pytest.raises(ValueError):
        state.set_frame_rate(-1)

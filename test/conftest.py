import json
import socket

import pytest


def make_telemetry(**overrides) -> dict:
    payload = {
        "timestamp": 0.1,
        "imu": {"accel_body": [1.0, 2.0, 3.0], "gyro": [-1.0, -2.0, -3.0]},
        "position": [100, 1000, -500],
        "velocity": [1, 10, -5],
        "quaternion": [1, 0.12, 0.34, 0.56],
    }
    payload.update(overrides)
    return payload


def encode_json(payload) -> bytes:
    return json.dumps(payload).encode("utf-8")


@pytest.fixture
def sim_peer():
    """UDP socket standing in for the physics simulator."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(2.0)
    try:
        yield sock
    finally:
        sock.close()

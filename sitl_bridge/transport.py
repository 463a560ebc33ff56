from __future__ import annotations

import errno
import logging
import socket
from typing import Optional, Tuple

from .protocol import TELEMETRY_BUFFER_SIZE
from .session import BackendStatus

_LOST_HANDLE_ERRNOS = frozenset({errno.EBADF, errno.ENOTSOCK})

LOCAL_BIND_ADDR = ("0.0.0.0", 0)


class TransportError(OSError):
    def __init__(
        self,
        message: str,
        status: Optional[BackendStatus] = None,
        handle_lost: bool = False,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.handle_lost = handle_lost


class UdpTransport:
    """Owns one non-blocking IPv4 UDP socket talking to a single remote endpoint.

    The socket is opened and bound to an ephemeral local port on construction.
    An address that does not parse as IPv4 leaves the remote unset; every
    ``send`` then fails until ``retarget`` is given a valid one.
    """

    def __init__(self, addr: str, port: int, logger: Optional[logging.Logger] = None) -> None:
        self._log = logger or logging.getLogger(__name__)
        self._remote: Optional[Tuple[str, int]] = None
        self._sock: Optional[socket.socket] = self._open_socket()
        self.retarget(addr, port)

    @classmethod
    def _adopt(
        cls,
        sock: socket.socket,
        remote: Optional[Tuple[str, int]],
        logger: logging.Logger,
    ) -> "UdpTransport":
        transport = cls.__new__(cls)
        transport._log = logger
        transport._remote = remote
        transport._sock = sock
        return transport

    @staticmethod
    def _open_socket() -> socket.socket:
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        except OSError as exc:
            raise TransportError(
                f"Failed to initialise UDP socket: {exc}",
                status=BackendStatus.SOCKET_FAIL,
            ) from exc

        try:
            sock.setblocking(False)
            sock.bind(LOCAL_BIND_ADDR)
        except OSError as exc:
            sock.close()
            raise TransportError(
                f"Failed to bind UDP socket: {exc}",
                status=BackendStatus.BIND_FAIL,
            ) from exc

        return sock

    @property
    def closed(self) -> bool:
        return self._sock is None

    @property
    def remote(self) -> Optional[Tuple[str, int]]:
        return self._remote

    @property
    def local_address(self) -> Optional[Tuple[str, int]]:
        if self._sock is None:
            return None
        return self._sock.getsockname()

    def retarget(self, addr: str, port: int) -> None:
        try:
            socket.inet_pton(socket.AF_INET, addr)
        except (OSError, TypeError):
            self._log.error("Failed to convert server network address '%s'", addr)
            self._remote = None
            return

        self._remote = (addr, int(port))
        self._log.debug("UDP transport targeting %s on port %d", addr, int(port))

    def send(self, payload: bytes) -> None:
        sock = self._require_socket()
        if self._remote is None:
            raise TransportError("remote address is unset")

        try:
            sock.sendto(payload, self._remote)
        except OSError as exc:
            raise TransportError(
                f"Failed to send to {self._remote[0]}:{self._remote[1]}: {exc}",
                handle_lost=exc.errno in _LOST_HANDLE_ERRNOS,
            ) from exc

    def poll_receive(self, max_size: int = TELEMETRY_BUFFER_SIZE) -> Optional[bytes]:
        """Single non-blocking receive. ``None`` means nothing is ready yet."""
        sock = self._require_socket()
        try:
            data, _ = sock.recvfrom(max_size)
        except BlockingIOError:
            return None
        except OSError as exc:
            raise TransportError(
                f"Received error when receiving from UDP server: {exc}",
                handle_lost=exc.errno in _LOST_HANDLE_ERRNOS,
            ) from exc

        if not data:
            return None
        return data

    def detach(self) -> "UdpTransport":
        sock = self._require_socket()
        self._sock = None
        return self._adopt(sock, self._remote, self._log)

    def close(self) -> None:
        if self._sock is not None:
            try:
                self._sock.close()
            finally:
                self._sock = None

    def _require_socket(self) -> socket.socket:
        if self._sock is None:
            raise TransportError("UDP socket is closed", handle_lost=True)
        return self._sock

    def __enter__(self) -> "UdpTransport":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

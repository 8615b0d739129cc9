from __future__ import annotations

import os
import socket
from pathlib import Path
from typing import Iterable

from .protocol import (
    ProtocolError,
    make_translate_request,
    parse_translate_result,
    read_message,
    write_message,
)


class ServerUnavailableError(ConnectionError):
    """No server is listening on the socket file."""

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"cannot connect to {path}: {reason}")
        self.path = path
        self.reason = reason


class RemoteError(RuntimeError):
    """The server answered with a failure response."""

    def __init__(self, message: str, code: str = "") -> None:
        super().__init__(message)
        self.code = code


def _open_connection(path: Path, timeout: float | None) -> socket.socket:
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    try:
        sock.connect(str(path))
    except OSError as exc:
        sock.close()
        reason = exc.strerror or str(exc)
        raise ServerUnavailableError(path, reason) from exc
    return sock


class Client:
    """Sends batch translation requests to a running server.

    The server answers one request per connection, so each call to
    :meth:`translate` consumes the current connection; a following call
    connects again.
    """

    def __init__(
        self,
        socket_path: Path,
        sock: socket.socket | None = None,
        timeout: float | None = None,
    ) -> None:
        self.socket_path = socket_path
        self.timeout = timeout
        self._sock = sock

    @classmethod
    def connect(
        cls, socket_path: str | os.PathLike[str], timeout: float | None = None
    ) -> Client:
        path = Path(socket_path)
        return cls(path, _open_connection(path, timeout), timeout)

    def translate(self, units: Iterable[str]) -> list[str]:
        units = list(units)
        sock = self._sock or _open_connection(self.socket_path, self.timeout)
        self._sock = None
        with sock, sock.makefile("rwb") as file:
            write_message(file, make_translate_request(units))
            response = read_message(file)
        if response is None:
            raise ProtocolError("server closed the connection without a response")
        if not response.get("ok"):
            code = str(response.get("error") or "")
            message = response.get("message") or code or "unknown error"
            raise RemoteError(str(message), code=code)
        return parse_translate_result(response, len(units))

    def close(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def __enter__(self) -> Client:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

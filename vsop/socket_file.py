from __future__ import annotations

import errno
import os
import socket
import sys
import weakref
from pathlib import Path

DATA_DIR_ENV = "VSOP_DATA_DIR"
DEFAULT_DATA_HOME = Path("~/.local/share")
SOCKET_SUFFIX = ".socket"
STALE_PROBE_TIMEOUT = 0.2


class SocketFileError(OSError):
    """The socket file or its directory could not be prepared."""


class AddressInUseError(SocketFileError):
    """Another server is already listening on the socket file."""


def data_dir(app_name: str) -> Path:
    env = os.environ.get(DATA_DIR_ENV)
    if env:
        return Path(env).expanduser()
    xdg = os.environ.get("XDG_DATA_HOME")
    base = Path(xdg) if xdg else DEFAULT_DATA_HOME
    return base.expanduser() / app_name


def ensure_directory(path: Path, mode: int = 0o700) -> None:
    if path.is_dir():
        return
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise SocketFileError(
            exc.errno, f"failed to create directory: {exc.strerror}", str(path)
        ) from exc
    try:
        os.chmod(path, mode)
    except OSError:
        pass


def socket_filename(app_name: str) -> Path:
    """Default socket path for ``app_name``, creating its data directory."""
    directory = data_dir(app_name)
    ensure_directory(directory)
    return directory / f"{app_name}{SOCKET_SUFFIX}"


def is_listening(path: Path, timeout: float = STALE_PROBE_TIMEOUT) -> bool:
    """Probe ``path`` with a connection attempt.

    A refused or missing endpoint is stale. A probe that times out or would
    block means a live server with a full accept backlog.
    """
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    with sock:
        try:
            sock.connect(str(path))
        except (socket.timeout, BlockingIOError):
            return True
        except OSError:
            return False
    return True


def _remove_socket_file(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        return
    except OSError as exc:
        sys.stderr.write(f"[WARN] Failed to remove socket file {path}: {exc}\n")


class SocketFile:
    """Owns the filesystem entry of the server's Unix domain socket.

    The entry is removed by :meth:`release`, when leaving a ``with`` block,
    when the object is garbage collected, or at interpreter exit, whichever
    comes first.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._finalizer = weakref.finalize(self, _remove_socket_file, path)

    @classmethod
    def acquire(cls, path: str | os.PathLike[str]) -> SocketFile:
        path = Path(path)
        if os.path.lexists(path):
            if is_listening(path):
                raise AddressInUseError(
                    errno.EADDRINUSE, "a server is already listening", str(path)
                )
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as exc:
                raise SocketFileError(
                    exc.errno,
                    f"failed to remove stale socket file: {exc.strerror}",
                    str(path),
                ) from exc
        return cls(path)

    @classmethod
    def from_app_name(cls, app_name: str) -> SocketFile:
        return cls.acquire(socket_filename(app_name))

    @property
    def released(self) -> bool:
        return not self._finalizer.alive

    def release(self) -> None:
        self._finalizer()

    def detach(self) -> None:
        """Stop managing the path without removing it."""
        self._finalizer.detach()

    def __enter__(self) -> SocketFile:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()

    def __fspath__(self) -> str:
        return str(self.path)

    def __str__(self) -> str:
        return str(self.path)

    def __repr__(self) -> str:
        return f"SocketFile({str(self.path)!r})"

from __future__ import annotations

import os
import shutil
import tempfile
import threading
import time
from pathlib import Path
from typing import Callable, Iterator, Sequence

import pytest

from vsop.engine import TranslationEngine, TranslationError
from vsop.server import TranslationService
from vsop.socket_file import SocketFile


class EchoEngine(TranslationEngine):
    """Upper-cases every unit and tracks how many batches overlap."""

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.batches: list[list[str]] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def translate_batch(self, units: Sequence[str]) -> list[str]:
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            time.sleep(self.delay)
            self.batches.append(list(units))
            return [unit.upper() for unit in units]
        finally:
            with self._lock:
                self.active -= 1


class FlakyEngine(TranslationEngine):
    """Fails any batch that contains the word "boom"."""

    def translate_batch(self, units: Sequence[str]) -> list[str]:
        if any("boom" in unit for unit in units):
            raise TranslationError("model exploded")
        return [f"<{unit}>" for unit in units]


class ShortEngine(TranslationEngine):
    def translate_batch(self, units: Sequence[str]) -> list[str]:
        return list(units)[:-1]


class RunningServer:
    def __init__(
        self,
        service: TranslationService,
        socket_file: SocketFile,
        cancel: threading.Event,
        thread: threading.Thread,
    ) -> None:
        self.service = service
        self.socket_file = socket_file
        self.cancel = cancel
        self.thread = thread

    @property
    def path(self) -> Path:
        return self.socket_file.path

    def stop(self, timeout: float = 5.0) -> None:
        self.cancel.set()
        self.thread.join(timeout)
        assert not self.thread.is_alive()


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def socket_dir() -> Iterator[Path]:
    # AF_UNIX paths are limited to roughly 100 bytes; pytest's tmp_path can be longer.
    base = "/tmp" if os.path.isdir("/tmp") else None
    path = Path(tempfile.mkdtemp(prefix="vsop-", dir=base))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def socket_path(socket_dir: Path) -> Path:
    return socket_dir / "vsop.socket"


@pytest.fixture
def start_server(socket_path: Path) -> Iterator[Callable[[TranslationEngine], RunningServer]]:
    servers: list[RunningServer] = []

    def _start(engine: TranslationEngine) -> RunningServer:
        socket_file = SocketFile.acquire(socket_path)
        service = TranslationService(engine)
        cancel = threading.Event()
        thread = threading.Thread(
            target=service.serve, args=(socket_file, cancel), daemon=True
        )
        thread.start()
        assert service.listening.wait(5.0)
        server = RunningServer(service, socket_file, cancel, thread)
        servers.append(server)
        return server

    yield _start
    for server in servers:
        server.cancel.set()
        server.thread.join(5.0)

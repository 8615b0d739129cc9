from __future__ import annotations

import enum
import errno
import itertools
import json
import os
import socket
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import IO, Any, Sequence

from .engine import TranslationEngine, TranslationError
from .protocol import (
    ERROR_TRANSLATE_FAILED,
    ProtocolError,
    make_error_response,
    make_ok_response,
    parse_translate_request,
    read_message,
    write_message,
)
from .socket_file import AddressInUseError, SocketFile

SERVER_LISTEN_BACKLOG = 16
ACCEPT_POLL_INTERVAL = 0.2
LOG_SNIPPET_LIMIT = 20
_REQUEST_COUNTER = itertools.count(1)


class ServerState(enum.Enum):
    UNBOUND = "unbound"
    LISTENING = "listening"
    DRAINING = "draining"
    STOPPED = "stopped"


def _log_snippet(text: str) -> str:
    cleaned = text.replace("\n", " ").replace("\r", " ")
    return cleaned[:LOG_SNIPPET_LIMIT]


def log_event(event: str, payload: dict[str, Any]) -> None:
    data = {"event": event, "ts": time.time(), **payload}
    try:
        sys.stderr.write("[SERVER] " + json.dumps(data, ensure_ascii=False) + "\n")
    except (OSError, ValueError):
        return


def _bind(path: Path) -> socket.socket:
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.bind(str(path))
        os.chmod(path, 0o600)
        sock.listen(SERVER_LISTEN_BACKLOG)
        sock.settimeout(ACCEPT_POLL_INTERVAL)
    except OSError as exc:
        sock.close()
        if exc.errno == errno.EADDRINUSE:
            raise AddressInUseError(
                errno.EADDRINUSE, "socket file is already bound", str(path)
            ) from exc
        raise
    return sock


class TranslationService:
    """Serves batch translation requests on a Unix domain socket.

    Every accepted connection is handled on its own thread, so reading
    requests and writing responses never waits on the engine. Engine calls
    go through a single-worker executor: at most one batch is translated at
    a time, and requests that arrive meanwhile queue for the slot.

    :meth:`serve` runs the accept loop on the calling thread until ``cancel``
    is set. It then stops accepting, hangs up on connections that have not
    sent a request yet, lets in-flight requests finish, removes the socket
    file and returns.
    """

    def __init__(self, engine: TranslationEngine) -> None:
        self.engine = engine
        self.state = ServerState.UNBOUND
        self.listening = threading.Event()
        self._slot: ThreadPoolExecutor | None = None
        self._workers: set[threading.Thread] = set()
        # Connections that have not delivered their request line yet.
        self._idle: set[socket.socket] = set()
        self._workers_lock = threading.Lock()

    def serve(self, socket_file: SocketFile, cancel: threading.Event) -> None:
        if self.state is not ServerState.UNBOUND:
            raise RuntimeError(f"service cannot be started from state {self.state.value}")
        try:
            sock = _bind(socket_file.path)
        except AddressInUseError:
            # The path belongs to another server now; leave it alone.
            socket_file.detach()
            raise
        except OSError:
            socket_file.release()
            raise

        self._slot = ThreadPoolExecutor(max_workers=1, thread_name_prefix="vsop-engine")
        self.state = ServerState.LISTENING
        self.listening.set()
        log_event("listening", {"socket": str(socket_file), **self.engine.describe()})
        try:
            self._accept_loop(sock, cancel)
        finally:
            self.state = ServerState.DRAINING
            self.listening.clear()
            sock.close()
            idle = self._close_idle()
            log_event("draining", {"connections": len(self._workers), "idle": idle})
            self._drain()
            self._slot.shutdown(wait=True)
            socket_file.release()
            self.state = ServerState.STOPPED
            log_event("stopped", {"socket": str(socket_file)})

    def _accept_loop(self, sock: socket.socket, cancel: threading.Event) -> None:
        while not cancel.is_set():
            try:
                conn, _ = sock.accept()
            except socket.timeout:
                continue
            except OSError as exc:
                if cancel.is_set():
                    break
                log_event("accept_error", {"error": str(exc)})
                raise
            conn.settimeout(None)
            worker = threading.Thread(
                target=self._handle_connection,
                args=(conn,),
                name="vsop-connection",
                daemon=True,
            )
            with self._workers_lock:
                self._workers.add(worker)
                self._idle.add(conn)
            worker.start()

    def _close_idle(self) -> int:
        """Shut the read side of connections still waiting for a request.

        Their pending reads see end of file, so the handlers return without
        a response. Requests already read are left to finish.
        """
        with self._workers_lock:
            idle = list(self._idle)
        for conn in idle:
            try:
                conn.shutdown(socket.SHUT_RD)
            except OSError:
                # Already closed by its handler.
                continue
        return len(idle)

    def _mark_busy(self, conn: socket.socket) -> None:
        with self._workers_lock:
            self._idle.discard(conn)

    def _drain(self) -> None:
        with self._workers_lock:
            workers = list(self._workers)
        for worker in workers:
            worker.join()

    def _handle_connection(self, conn: socket.socket) -> None:
        try:
            with conn, conn.makefile("rwb") as file:
                response = self._respond(conn, file)
                if response is not None:
                    write_message(file, response)
        except (OSError, ProtocolError) as exc:
            log_event("connection_error", {"error": str(exc)})
        finally:
            with self._workers_lock:
                self._idle.discard(conn)
                self._workers.discard(threading.current_thread())

    def _respond(self, conn: socket.socket, file: IO[bytes]) -> dict[str, Any] | None:
        try:
            request = read_message(file)
        except ProtocolError as exc:
            log_event(exc.code, {"error": str(exc)})
            return make_error_response(exc.code, str(exc))
        finally:
            self._mark_busy(conn)
        if request is None:
            return None
        try:
            units = parse_translate_request(request)
        except ProtocolError as exc:
            log_event(exc.code, {"type": request.get("type"), "error": str(exc)})
            return make_error_response(exc.code, str(exc))
        return self._translate(units)

    def _translate(self, units: list[str]) -> dict[str, Any]:
        request_id = next(_REQUEST_COUNTER)
        log_event(
            "translate_start",
            {
                "id": request_id,
                "units": len(units),
                "text_head": _log_snippet(next((u for u in units if u), "")),
            },
        )
        start_time = time.time()
        try:
            result = self._slot.submit(self._run_engine, units).result()
        except Exception as exc:
            log_event(
                "translate_error",
                {
                    "id": request_id,
                    "duration_sec": round(time.time() - start_time, 3),
                    "error": str(exc),
                },
            )
            return make_error_response(ERROR_TRANSLATE_FAILED, str(exc))

        log_event(
            "translate_done",
            {
                "id": request_id,
                "duration_sec": round(time.time() - start_time, 3),
                "units": len(result),
                "output_head": _log_snippet(next((r for r in result if r), "")),
            },
        )
        return make_ok_response(result)

    def _run_engine(self, units: Sequence[str]) -> list[str]:
        result = list(self.engine.translate_batch(units))
        if len(result) != len(units):
            raise TranslationError(
                f"engine returned {len(result)} results for {len(units)} units"
            )
        return result

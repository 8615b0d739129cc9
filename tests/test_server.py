from __future__ import annotations

import json
import socket
import threading
from pathlib import Path

import pytest

from conftest import EchoEngine, FlakyEngine, ShortEngine, wait_until
from vsop.client import Client, RemoteError, ServerUnavailableError
from vsop.server import ServerState, TranslationService
from vsop.socket_file import AddressInUseError, SocketFile, is_listening


def _raw_request(path: Path, data: bytes) -> dict:
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
        sock.settimeout(5.0)
        sock.connect(str(path))
        sock.sendall(data)
        with sock.makefile("rb") as file:
            return json.loads(file.readline().decode("utf-8"))


def test_translate_round_trip(start_server) -> None:
    server = start_server(EchoEngine())
    with Client.connect(server.path) as client:
        result = client.translate(["Hello.", "", "World."])
    assert result == ["HELLO.", "", "WORLD."]
    assert server.service.state is ServerState.LISTENING


@pytest.mark.parametrize("size", [0, 1, 7])
def test_response_has_one_entry_per_unit(start_server, size: int) -> None:
    server = start_server(EchoEngine())
    units = [f"unit {i}." for i in range(size)]
    result = Client.connect(server.path).translate(units)
    assert result == [unit.upper() for unit in units]


def test_engine_failure_is_reported_and_server_keeps_serving(start_server) -> None:
    server = start_server(FlakyEngine())
    with pytest.raises(RemoteError) as excinfo:
        Client.connect(server.path).translate(["fine.", "boom."])
    assert excinfo.value.code == "translate_failed"
    assert "model exploded" in str(excinfo.value)

    assert Client.connect(server.path).translate(["fine."]) == ["<fine.>"]


def test_engine_returning_wrong_length_is_a_failure(start_server) -> None:
    server = start_server(ShortEngine())
    with pytest.raises(RemoteError) as excinfo:
        Client.connect(server.path).translate(["a.", "b."])
    assert "2 units" in str(excinfo.value)


def test_concurrent_requests_share_one_engine_slot(start_server) -> None:
    engine = EchoEngine(delay=0.1)
    server = start_server(engine)
    batches = [[f"request {i} unit {j}." for j in range(3)] for i in range(4)]
    results: dict[int, list[str]] = {}

    def run(index: int) -> None:
        results[index] = Client.connect(server.path).translate(batches[index])

    threads = [threading.Thread(target=run, args=(i,)) for i in range(len(batches))]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10.0)

    assert results == {
        i: [unit.upper() for unit in batch] for i, batch in enumerate(batches)
    }
    assert len(engine.batches) == len(batches)
    assert engine.max_active == 1


def test_stop_removes_socket_file(start_server) -> None:
    server = start_server(EchoEngine())
    assert server.path.exists()
    server.stop()
    assert server.service.state is ServerState.STOPPED
    assert not server.path.exists()
    assert server.socket_file.released
    with pytest.raises(ServerUnavailableError):
        Client.connect(server.path)


def test_in_flight_request_completes_after_cancel(start_server) -> None:
    engine = EchoEngine(delay=0.5)
    server = start_server(engine)
    results: list[list[str]] = []
    client_thread = threading.Thread(
        target=lambda: results.append(Client.connect(server.path).translate(["slow."]))
    )
    client_thread.start()
    assert wait_until(lambda: engine.active == 1)

    server.cancel.set()
    client_thread.join(5.0)
    server.thread.join(5.0)

    assert results == [["SLOW."]]
    assert server.service.state is ServerState.STOPPED
    assert not server.path.exists()


def test_silent_connection_does_not_block_shutdown(start_server) -> None:
    server = start_server(EchoEngine())
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as idle:
        idle.settimeout(5.0)
        idle.connect(str(server.path))
        assert wait_until(lambda: len(server.service._idle) == 1)

        server.cancel.set()
        server.thread.join(3.0)

        assert not server.thread.is_alive()
        assert server.service.state is ServerState.STOPPED
        assert not server.path.exists()
        assert idle.recv(1) == b""


def test_cancel_spares_a_request_being_translated(start_server) -> None:
    engine = EchoEngine(delay=0.5)
    server = start_server(engine)
    results: list[list[str]] = []
    busy = threading.Thread(
        target=lambda: results.append(Client.connect(server.path).translate(["busy."]))
    )
    busy.start()
    assert wait_until(lambda: engine.active == 1)
    idle = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    idle.connect(str(server.path))
    assert wait_until(lambda: len(server.service._idle) == 1)

    server.cancel.set()
    busy.join(5.0)
    server.thread.join(5.0)
    idle.close()

    assert results == [["BUSY."]]
    assert server.service.state is ServerState.STOPPED


def test_second_server_cannot_take_a_live_socket(start_server, socket_path: Path) -> None:
    server = start_server(EchoEngine())
    with pytest.raises(AddressInUseError):
        SocketFile.acquire(socket_path)
    assert Client.connect(server.path).translate(["still here."]) == ["STILL HERE."]


def test_bind_conflict_leaves_the_other_server_alone(start_server, socket_path: Path) -> None:
    late = SocketFile.acquire(socket_path)
    server = start_server(EchoEngine())

    service = TranslationService(EchoEngine())
    with pytest.raises(AddressInUseError):
        service.serve(late, threading.Event())

    assert service.state is ServerState.UNBOUND
    assert late.released
    assert socket_path.exists()
    assert Client.connect(server.path).translate(["ok."]) == ["OK."]


def test_service_cannot_be_started_twice(start_server) -> None:
    server = start_server(EchoEngine())
    with pytest.raises(RuntimeError):
        server.service.serve(server.socket_file, threading.Event())


def test_liveness_check_without_request_is_ignored(start_server) -> None:
    server = start_server(EchoEngine())
    assert is_listening(server.path)
    assert Client.connect(server.path).translate(["after check."]) == ["AFTER CHECK."]


def test_invalid_json_is_rejected(start_server) -> None:
    server = start_server(EchoEngine())
    response = _raw_request(server.path, b"this is not json\n")
    assert response["ok"] is False
    assert response["error"] == "invalid_json"


def test_unknown_request_type_is_rejected(start_server) -> None:
    server = start_server(EchoEngine())
    response = _raw_request(server.path, b'{"type": "stop"}\n')
    assert response == {
        "ok": False,
        "error": "unknown_request",
        "message": "unknown request type: 'stop'",
    }
    assert server.service.state is ServerState.LISTENING


def test_malformed_source_is_rejected(start_server) -> None:
    server = start_server(EchoEngine())
    response = _raw_request(server.path, b'{"type": "translate", "source": "text"}\n')
    assert response["error"] == "invalid_request"

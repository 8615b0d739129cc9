"""Wire format shared by the server and the client.

Every message is a single UTF-8 JSON object terminated by a newline. A
connection carries exactly one request followed by exactly one response::

    -> {"type": "translate", "source": ["Hello.", "", "World."]}
    <- {"ok": true, "result": ["こんにちは。", "", "世界。"]}

Failures are reported with ``ok`` set to false, a short error code and a
human readable message::

    <- {"ok": false, "error": "translate_failed", "message": "..."}
"""

from __future__ import annotations

import json
from typing import IO, Any, Iterable

REQUEST_TRANSLATE = "translate"
MAX_MESSAGE_BYTES = 16 * 1024 * 1024

ERROR_INVALID_JSON = "invalid_json"
ERROR_INVALID_REQUEST = "invalid_request"
ERROR_UNKNOWN_REQUEST = "unknown_request"
ERROR_TRANSLATE_FAILED = "translate_failed"


class ProtocolError(ValueError):
    """A message does not follow the wire format."""

    def __init__(self, message: str, code: str = ERROR_INVALID_REQUEST) -> None:
        super().__init__(message)
        self.code = code


def encode_message(message: dict[str, Any]) -> bytes:
    data = json.dumps(message, ensure_ascii=False).encode("utf-8")
    if len(data) > MAX_MESSAGE_BYTES:
        raise ProtocolError(f"message too large: {len(data)} bytes")
    return data + b"\n"


def write_message(file: IO[bytes], message: dict[str, Any]) -> None:
    file.write(encode_message(message))
    file.flush()


def read_message(file: IO[bytes]) -> dict[str, Any] | None:
    """Read one message, or return None if the peer closed the connection."""
    line = file.readline(MAX_MESSAGE_BYTES + 1)
    if not line:
        return None
    body = line[:-1] if line.endswith(b"\n") else line
    if len(body) > MAX_MESSAGE_BYTES:
        raise ProtocolError(f"message exceeds {MAX_MESSAGE_BYTES} bytes")
    try:
        message = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProtocolError(str(exc), code=ERROR_INVALID_JSON) from exc
    if not isinstance(message, dict):
        raise ProtocolError("message is not a JSON object")
    return message


def make_translate_request(units: Iterable[str]) -> dict[str, Any]:
    return {"type": REQUEST_TRANSLATE, "source": list(units)}


def make_ok_response(result: Iterable[str]) -> dict[str, Any]:
    return {"ok": True, "result": list(result)}


def make_error_response(error: str, message: str) -> dict[str, Any]:
    return {"ok": False, "error": error, "message": message}


def _as_string_list(value: Any, field: str) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ProtocolError(f"'{field}' must be a list of strings")
    return value


def parse_translate_request(request: dict[str, Any]) -> list[str]:
    req_type = request.get("type")
    if req_type != REQUEST_TRANSLATE:
        raise ProtocolError(
            f"unknown request type: {req_type!r}", code=ERROR_UNKNOWN_REQUEST
        )
    return _as_string_list(request.get("source"), "source")


def parse_translate_result(response: dict[str, Any], expected: int) -> list[str]:
    """Extract the result of a successful response, checking its length."""
    result = _as_string_list(response.get("result"), "result")
    if len(result) != expected:
        raise ProtocolError(
            f"response has {len(result)} entries for {expected} units"
        )
    return result

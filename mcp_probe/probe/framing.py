"""Transport-agnostic framing helpers.

- Server-Sent-Events decoding (`parse_sse`)
- newline-delimited JSON-RPC framing (`LineFramer`)
- bounded brace scanning for `serverInfo` extraction
- JSON-RPC message builders
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from mcp_probe.errors import FrameParseError, ProtocolError

JSONRPC_VERSION = "2.0"
PROTOCOL_VERSION = "2024-11-05"

MAX_LINE_LENGTH = 10000


@dataclass(slots=True)
class SseEvent:
    event: str | None = None
    id: str | None = None
    data: Any = None
    has_data: bool = False

    def is_empty(self) -> bool:
        return self.event is None and self.id is None and not self.has_data


def _field_value(line: str, prefix: str) -> str:
    # Accept both "data: x" and "data:x".
    value = line[len(prefix):]
    return value[1:] if value.startswith(" ") else value


def _decode_data(raw: str) -> Any:
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def parse_sse(text: str) -> list[SseEvent]:
    """Decode an SSE body into events.

    Multiple `data:` lines within one event are joined with a newline before
    the JSON decode is attempted. A final event without a closing blank line
    is still emitted.
    """

    events: list[SseEvent] = []
    current = SseEvent()
    data_lines: list[str] = []

    def close() -> None:
        nonlocal current, data_lines
        if data_lines:
            current.data = _decode_data("\n".join(data_lines))
            current.has_data = True
        if not current.is_empty():
            events.append(current)
        current = SseEvent()
        data_lines = []

    for line in text.split("\n"):
        stripped = line.strip()
        if stripped.startswith("data:"):
            data_lines.append(_field_value(stripped, "data:"))
        elif stripped.startswith("event:"):
            current.event = _field_value(stripped, "event:")
        elif stripped.startswith("id:"):
            current.id = _field_value(stripped, "id:")
        elif stripped == "":
            close()

    close()
    return events


class LineFramer:
    """Split a byte-derived text stream into complete lines.

    A trailing partial line is retained until the next chunk. Lines longer
    than `max_line_length` are dropped.
    """

    def __init__(self, *, max_line_length: int = MAX_LINE_LENGTH) -> None:
        self._buffer = ""
        self._max = max_line_length
        # Set while skipping the rest of an oversized line.
        self._discarding = False
        self.dropped = 0

    @property
    def pending(self) -> str:
        return self._buffer

    def feed(self, chunk: str) -> list[str]:
        self._buffer += chunk
        *complete, self._buffer = self._buffer.split("\n")

        lines: list[str] = []
        for line in complete:
            if self._discarding:
                self._discarding = False
                continue
            if len(line) > self._max:
                self.dropped += 1
                continue
            lines.append(line.rstrip("\r"))

        if len(self._buffer) > self._max:
            if not self._discarding:
                self.dropped += 1
            self._buffer = ""
            self._discarding = True
        return lines

    def flush(self) -> str | None:
        """Return the retained partial line at end of stream, if usable."""

        tail, self._buffer = self._buffer, ""
        if self._discarding or not tail.strip():
            self._discarding = False
            return None
        return tail.rstrip("\r")


def extract_balanced_object(text: str, start: int) -> str | None:
    """Return the first balanced `{...}` at or after `start`.

    Depth counting over characters; braces inside JSON strings are ignored.
    Returns None when no complete object is found.
    """

    begin = text.find("{", start)
    if begin == -1:
        return None

    depth = 0
    in_string = False
    escaped = False
    for i in range(begin, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[begin : i + 1]
    return None


def extract_server_info(stdout: str, *, max_line_length: int = MAX_LINE_LENGTH) -> dict[str, Any] | None:
    """Find the `serverInfo` object in raw server output, if any."""

    marker = '"serverInfo"'
    for line in stdout.split("\n"):
        if len(line) > max_line_length:
            continue
        idx = line.find(marker)
        if idx == -1:
            continue
        candidate = extract_balanced_object(line, idx + len(marker))
        if candidate is None:
            continue
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def looks_like_jsonrpc(stdout: str) -> bool:
    return '"jsonrpc"' in stdout or '"result"' in stdout


def build_request(request_id: int, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method, "params": params or {}}


def build_notification(method: str) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "method": method}


def initialize_params(*, client_name: str, client_version: str) -> dict[str, Any]:
    return {
        "protocolVersion": PROTOCOL_VERSION,
        "capabilities": {},
        "clientInfo": {"name": client_name, "version": client_version},
    }


def encode_line(message: dict[str, Any]) -> bytes:
    return (json.dumps(message, separators=(",", ":")) + "\n").encode("utf-8")


def parse_jsonrpc_line(line: str) -> dict[str, Any] | None:
    """Parse one stdout line. Blank or non-JSON lines yield None."""

    if not line.strip():
        return None
    try:
        message = json.loads(line)
    except ValueError:
        return None
    return message if isinstance(message, dict) else None


def describe_error(error: Any) -> str:
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return json.dumps(error)


def protocol_error(error: Any, *, prefix: str = "Server error") -> ProtocolError:
    code = error.get("code") if isinstance(error, dict) else None
    raw = error.get("message") if isinstance(error, dict) else None
    return ProtocolError(
        f"{prefix}: {describe_error(error)}",
        code=code if isinstance(code, int) else None,
        raw_message=raw if isinstance(raw, str) else None,
    )


def decode_jsonrpc_body(text: str) -> dict[str, Any]:
    """Decode an HTTP response body into one JSON-RPC message.

    SSE framing is tried first; the first event carrying a JSON object as
    data wins. Otherwise the body is parsed as a single JSON document.

    Raises:
        FrameParseError: body is neither usable SSE nor a JSON object.
        ProtocolError: the message carries an `error` member.
    """

    message: Any = None
    for event in parse_sse(text):
        if event.has_data and isinstance(event.data, dict):
            message = event.data
            break

    if message is None:
        try:
            message = json.loads(text)
        except ValueError as e:
            raise FrameParseError(f"Failed to parse response: {e}") from e

    if not isinstance(message, dict):
        raise FrameParseError("Failed to parse response: expected a JSON object")

    if "error" in message and message["error"] is not None:
        raise protocol_error(message["error"])

    return message

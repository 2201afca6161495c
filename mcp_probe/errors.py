from __future__ import annotations


class ProbeError(RuntimeError):
    """Base exception for MCP probe failures.

    Transport and protocol failures are normalized into a small set of stable
    error types. They never cross the public entry points: `verify_server` and
    `list_server_tools` convert them into result values.
    """

    def __init__(self, error_type: str, message: str, *, details: dict[str, str] | None = None):
        super().__init__(message)
        self.error_type = error_type
        self.message = message
        self.details = details or {}


class CommandNotAllowedError(ProbeError):
    def __init__(self, *, command: str, reason: str):
        super().__init__("command_not_allowed", reason, details={"command": command})


class SpawnError(ProbeError):
    def __init__(self, message: str, *, command: str):
        super().__init__("spawn_failure", message, details={"command": command})


class ProcessError(ProbeError):
    def __init__(self, message: str):
        super().__init__("process_error", message)


class ProbeTimeoutError(ProbeError):
    def __init__(self, message: str, *, timeout_ms: int):
        super().__init__("timeout", message, details={"timeout_ms": str(timeout_ms)})
        self.timeout_ms = timeout_ms


class ProtocolError(ProbeError):
    """A JSON-RPC `error` object was returned by the server."""

    def __init__(self, message: str, *, code: int | None = None, raw_message: str | None = None):
        super().__init__(
            "protocol_error",
            message,
            details={"code": str(code)} if code is not None else None,
        )
        self.code = code
        self.raw_message = raw_message or ""

    @property
    def is_session_error(self) -> bool:
        # -32600 (Invalid Request) is what servers answer for stale sessions.
        return self.code == -32600 or "session" in self.raw_message


class HttpStatusError(ProbeError):
    def __init__(self, status_code: int, reason: str):
        super().__init__(
            "http_error",
            f"HTTP {status_code}: {reason}",
            details={"status_code": str(status_code)},
        )
        self.status_code = status_code


class NetworkError(ProbeError):
    def __init__(self, message: str, *, exc: str | None = None, retryable: bool = True):
        super().__init__("network_error", message, details={"exc": exc} if exc else None)
        self.retryable = retryable


class FrameParseError(ProbeError):
    def __init__(self, message: str):
        super().__init__("parse_error", message)

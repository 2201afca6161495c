"""Handshake state machines.

Each machine is a plain value advanced by discrete input events. It never
performs I/O: `start()` and `feed()` return the messages the driver must
send next, and `result` is assigned exactly once when a terminal state is
reached. Events arriving after that are ignored.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any

from mcp_probe.probe.framing import (
    describe_error,
    extract_server_info,
    initialize_params,
    looks_like_jsonrpc,
    parse_jsonrpc_line,
)
from mcp_probe.types import (
    STATUS_CONNECTED,
    STATUS_FAILED,
    STATUS_PENDING,
    ServerInfo,
    ServerStatus,
    ToolsResult,
    VerificationResult,
)

logger = logging.getLogger(__name__)

_STDOUT_WINDOW = 65536
_EXCERPT_CHARS = 500
# len('"jsonrpc"') - 1
_MARKER_OVERLAP = 8


class Phase(enum.IntEnum):
    INIT = 0
    AWAITING_INITIALIZE = 1
    INITIALIZED = 2
    AWAITING_TOOLS = 3
    DONE = 4


# -- input events -------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class StdoutReceived:
    text: str
    lines: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class MessageReceived:
    message: dict[str, Any]


@dataclass(frozen=True, slots=True)
class ProcessExited:
    code: int | None
    stderr: str = ""


@dataclass(frozen=True, slots=True)
class ProcessFailed:
    message: str


@dataclass(frozen=True, slots=True)
class TimerFired:
    timeout_s: float


Event = StdoutReceived | MessageReceived | ProcessExited | ProcessFailed | TimerFired


# -- outbound messages --------------------------------------------------------


@dataclass(frozen=True, slots=True)
class OutboundRequest:
    method: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class OutboundNotification:
    method: str


Outbound = OutboundRequest | OutboundNotification


class ToolDiscoveryMachine:
    """initialize -> notifications/initialized -> tools/list.

    Responses are matched strictly by the id of the request sent for the
    current phase (see `mark_sent`); anything else is ignored unless it
    carries a top-level `error`.
    """

    def __init__(
        self,
        name: str,
        *,
        client_name: str,
        client_version: str,
        server_type: str | None = None,
    ) -> None:
        self.name = name
        self.phase = Phase.INIT
        self.result: ToolsResult | None = None
        self._client_name = client_name
        self._client_version = client_version
        self._server_type = server_type
        self._expected_id: int | None = None

    @property
    def done(self) -> bool:
        return self.result is not None

    def start(self) -> list[Outbound]:
        if self.phase is not Phase.INIT:
            return []
        self.phase = Phase.AWAITING_INITIALIZE
        return [
            OutboundRequest(
                "initialize",
                initialize_params(client_name=self._client_name, client_version=self._client_version),
            )
        ]

    def mark_sent(self, request_id: int) -> None:
        """Record the id the current phase's response must carry."""

        if not self.done:
            self._expected_id = request_id

    def fail(self, error: str) -> None:
        self._finish(ToolsResult(self.name, [], error, self._server_type))

    def complete(self, tools: list[dict[str, Any]]) -> None:
        self._finish(ToolsResult(self.name, list(tools), None, self._server_type))

    def feed(self, event: Event) -> list[Outbound]:
        if self.done:
            return []

        if isinstance(event, MessageReceived):
            return self._on_message(event.message)

        if isinstance(event, StdoutReceived):
            out: list[Outbound] = []
            for line in event.lines:
                message = parse_jsonrpc_line(line)
                if message is None:
                    if line.strip():
                        logger.debug("stdout_line_skipped", extra={"line": line[:100]})
                    continue
                out.extend(self._on_message(message))
                if self.done:
                    break
            return out

        if isinstance(event, ProcessExited):
            if event.code != 0:
                error = f"Process exited with code {event.code}"
                if event.stderr:
                    error += f". stderr: {event.stderr[:200]}"
            else:
                error = "Process closed without response"
            self.fail(error)
        elif isinstance(event, ProcessFailed):
            self.fail(f"Process error: {event.message}")
        elif isinstance(event, TimerFired):
            self.fail(f"Timeout after {event.timeout_s:g}s")
        return []

    def _on_message(self, message: dict[str, Any]) -> list[Outbound]:
        matches = self._expected_id is not None and message.get("id") == self._expected_id
        error = message.get("error")

        if self.phase is Phase.AWAITING_INITIALIZE and matches:
            if error:
                self.fail(f"Initialize error: {describe_error(error)}")
                return []
            if message.get("result") is not None:
                logger.info("initialize_response_received")
                self.phase = Phase.INITIALIZED
                self._expected_id = None
                out: list[Outbound] = [
                    OutboundNotification("notifications/initialized"),
                    OutboundRequest("tools/list"),
                ]
                self.phase = Phase.AWAITING_TOOLS
                return out
            return []

        if self.phase is Phase.AWAITING_TOOLS and matches:
            if error:
                self.fail(f"Tools/list error: {describe_error(error)}")
                return []
            result = message.get("result")
            if result is not None:
                tools = result.get("tools") if isinstance(result, dict) else None
                if isinstance(tools, list):
                    self._finish(ToolsResult(self.name, list(tools), None, self._server_type))
                else:
                    logger.warning("tools_list_without_tools")
                    self._finish(ToolsResult(self.name, [], None, self._server_type))
            return []

        if error:
            self.fail(f"Server error: {describe_error(error)}")
        return []

    def _finish(self, result: ToolsResult) -> None:
        if self.done:
            return
        self.result = result
        self.phase = Phase.DONE
        self._expected_id = None


class StdioVerificationMachine:
    """Single `initialize` write; decides from whatever the process prints.

    Only a bounded tail of stdout is kept. Markers are matched against each
    new chunk plus a few trailing characters of the previous output, so a
    marker split across reads is still seen.
    """

    def __init__(self, name: str, *, max_line_length: int = 10000) -> None:
        self.name = name
        self.result: VerificationResult | None = None
        self._max_line_length = max_line_length
        self._head = ""
        self._window = ""
        self._saw_mcp = False

    @property
    def done(self) -> bool:
        return self.result is not None

    def feed(self, event: Event) -> None:
        if self.done:
            return

        if isinstance(event, StdoutReceived):
            recent = self._window[-_MARKER_OVERLAP:] + event.text
            self._append(event.text)
            self._saw_mcp = self._saw_mcp or "MCP" in recent
            if looks_like_jsonrpc(recent):
                self._finish(STATUS_CONNECTED, self._server_info())
        elif isinstance(event, ProcessExited):
            self._on_exit(event)
        elif isinstance(event, ProcessFailed):
            self._finish(STATUS_FAILED, error=event.message)
        elif isinstance(event, TimerFired):
            # Slow servers are not necessarily broken.
            self._finish(STATUS_PENDING)

    def fail(self, error: str) -> None:
        self._finish(STATUS_FAILED, error=error)

    def _append(self, text: str) -> None:
        if len(self._head) < _EXCERPT_CHARS:
            self._head = (self._head + text)[:_EXCERPT_CHARS]
        self._window = (self._window + text)[-_STDOUT_WINDOW:]

    def _on_exit(self, event: ProcessExited) -> None:
        if self._saw_mcp:
            self._finish(STATUS_CONNECTED, self._server_info())
        elif event.code != 0:
            details = f"Process exited with code {event.code}"
            if event.stderr:
                details += f". stderr: {event.stderr[:_EXCERPT_CHARS]}"
            if self._head:
                details += f". stdout: {self._head}"
            self._finish(STATUS_FAILED, error=details)
        else:
            # Exited cleanly without MCP output: reported as pending so callers re-poll.
            self._finish(STATUS_PENDING, error=event.stderr or "No response from server")

    def _server_info(self) -> ServerInfo | None:
        return ServerInfo.from_mapping(
            extract_server_info(self._window, max_line_length=self._max_line_length)
        )

    def _finish(self, status: ServerStatus, server_info: ServerInfo | None = None, *, error: str | None = None) -> None:
        if self.done:
            return
        self.result = VerificationResult(self.name, status, server_info, error)


class HttpVerificationMachine:
    """One `initialize` POST; any result means connected."""

    def __init__(self, name: str, *, client_name: str, client_version: str) -> None:
        self.name = name
        self.result: VerificationResult | None = None
        self._client_name = client_name
        self._client_version = client_version
        self._started = False

    @property
    def done(self) -> bool:
        return self.result is not None

    def start(self) -> list[Outbound]:
        if self._started:
            return []
        self._started = True
        return [
            OutboundRequest(
                "initialize",
                initialize_params(client_name=self._client_name, client_version=self._client_version),
            )
        ]

    def feed(self, event: Event) -> None:
        if self.done:
            return
        if isinstance(event, MessageReceived):
            result = event.message.get("result")
            server_info = ServerInfo.from_mapping(result.get("serverInfo")) if isinstance(result, dict) else None
            self.result = VerificationResult(self.name, STATUS_CONNECTED, server_info)
        elif isinstance(event, TimerFired):
            self.result = VerificationResult(self.name, STATUS_PENDING, None, "Connection timeout")

    def fail(self, error: str) -> None:
        if not self.done:
            self.result = VerificationResult(self.name, STATUS_FAILED, None, error)

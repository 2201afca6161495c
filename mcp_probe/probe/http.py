"""JSON-RPC over HTTP POST (streamable HTTP / SSE-style MCP servers)."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from types import TracebackType
from typing import Any, Mapping
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx

from mcp_probe.errors import HttpStatusError, NetworkError, ProbeTimeoutError, ProtocolError
from mcp_probe.probe.framing import build_notification, build_request, decode_jsonrpc_body
from mcp_probe.settings import ProbeSettings

logger = logging.getLogger(__name__)

SESSION_HEADER = "Mcp-Session-Id"

BASE_HEADERS: dict[str, str] = {
    "Content-Type": "application/json",
    "Accept": "application/json, text/event-stream",
}


@dataclass(slots=True)
class SessionState:
    """Per-call HTTP session. Never shared between calls."""

    session_id: str | None = None
    last_request_id: int = 0

    def next_request_id(self) -> int:
        self.last_request_id += 1
        return self.last_request_id


@dataclass(frozen=True, slots=True)
class Exchange:
    request_id: int
    response: dict[str, Any]


def split_authorization(url: str) -> tuple[str, str | None]:
    """Move an `Authorization` query parameter out of the URL.

    Returns the cleaned URL and the extracted value (None when absent).
    """

    try:
        parts = urlsplit(url)
    except ValueError:
        return url, None

    query = parse_qsl(parts.query, keep_blank_values=True)
    auth = next((v for k, v in query if k == "Authorization"), None)
    if not auth:
        return url, None

    remaining = [(k, v) for k, v in query if k != "Authorization"]
    return urlunsplit(parts._replace(query=urlencode(remaining))), auth


class HttpTransport:
    """One JSON-RPC exchange per `request()` call, with session tracking.

    Retries (when enabled) cover two error classes, each up to
    `settings.max_retries` times with linear backoff:

    - JSON-RPC errors that look session related (code -32600 or a message
      mentioning "session")
    - connection-level failures, except an unsupported URL scheme or a
      malformed request

    Everything else is raised to the caller unchanged.
    """

    def __init__(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        settings: ProbeSettings | None = None,
        client: httpx.AsyncClient | None = None,
        retry: bool = True,
    ) -> None:
        self._settings = settings or ProbeSettings()
        self._retry = retry
        self.session = SessionState()

        self.url, auth = split_authorization(url)
        self._base_headers: dict[str, str] = {**BASE_HEADERS, **dict(headers or {})}
        if auth:
            self._base_headers["Authorization"] = auth

        if client is None:
            # Per-attempt deadlines are enforced with asyncio cancellation.
            self._client = httpx.AsyncClient(timeout=None)
            self._owns_client = True
        else:
            self._client = client
            self._owns_client = False

    async def __aenter__(self) -> "HttpTransport":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        headers = dict(self._base_headers)
        if self.session.session_id:
            headers[SESSION_HEADER] = self.session.session_id
        return headers

    async def _post(self, message: dict[str, Any], *, timeout_ms: int) -> httpx.Response:
        try:
            response = await asyncio.wait_for(
                self._client.post(self.url, json=message, headers=self._headers()),
                timeout=timeout_ms / 1000,
            )
        except (TimeoutError, httpx.TimeoutException) as e:
            raise ProbeTimeoutError(f"Request timeout after {timeout_ms}ms", timeout_ms=timeout_ms) from e
        except (httpx.UnsupportedProtocol, httpx.LocalProtocolError) as e:
            raise NetworkError(f"Request failed: {e}", exc=type(e).__name__, retryable=False) from e
        except httpx.TransportError as e:
            raise NetworkError(f"Connection failed: {e}", exc=type(e).__name__) from e

        if not response.is_success:
            if response.status_code in (404, 405):
                logger.warning(
                    "legacy_sse_transport_suspected",
                    extra={"status_code": response.status_code},
                )
            raise HttpStatusError(response.status_code, response.reason_phrase)

        session_id = response.headers.get(SESSION_HEADER)
        if session_id and not self.session.session_id:
            self.session.session_id = session_id
            logger.info("session_acquired", extra={"session_id": session_id})

        return response

    async def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout_ms: int | None = None,
    ) -> Exchange:
        """Send one JSON-RPC request and return the decoded response.

        When `timeout_ms` is None the timeout is tiered by attempt
        (10s, 15s, 20s by default).
        """

        retry_count = 0
        while True:
            request_id = self.session.next_request_id()
            attempt_timeout = timeout_ms or self._settings.http_request_timeout_ms(retry_count)
            logger.info("request_sent", extra={"method": method, "request_id": request_id})

            try:
                response = await self._post(build_request(request_id, method, params), timeout_ms=attempt_timeout)
                return Exchange(request_id, decode_jsonrpc_body(response.text))
            except ProtocolError as e:
                if not (self._retry and e.is_session_error and retry_count < self._settings.max_retries):
                    raise
                delay = self._settings.session_retry_delay_s * (retry_count + 1)
                logger.warning("request_retry", extra={"method": method, "reason": "session", "error": e.message})
            except NetworkError as e:
                if not (self._retry and e.retryable and retry_count < self._settings.max_retries):
                    raise
                delay = self._settings.network_retry_delay_s * (retry_count + 1)
                logger.warning("request_retry", extra={"method": method, "reason": "network", "error": e.message})

            await asyncio.sleep(delay)
            retry_count += 1

    async def notify(self, method: str, *, timeout_ms: int | None = None) -> None:
        """Send a notification. Any 2xx is accepted; the body is ignored."""

        await self._post(
            build_notification(method),
            timeout_ms=timeout_ms or self._settings.http_base_timeout_ms,
        )

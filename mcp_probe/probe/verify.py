"""Public entry points: verify one server, or discover its tools.

Both functions always return a result value; no exception escapes them.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Iterator

import httpx

from mcp_probe.errors import CommandNotAllowedError, ProbeError, ProbeTimeoutError, ProcessError, SpawnError
from mcp_probe.observability.context import server_scope
from mcp_probe.probe.allowlist import DEFAULT_ALLOW_LIST, CommandAllowList
from mcp_probe.probe.framing import build_notification, build_request, encode_line, initialize_params
from mcp_probe.probe.handshake import (
    HttpVerificationMachine,
    MessageReceived,
    Outbound,
    OutboundRequest,
    Phase,
    StdioVerificationMachine,
    TimerFired,
    ToolDiscoveryMachine,
)
from mcp_probe.probe.http import HttpTransport
from mcp_probe.probe.stdio import StdioTransport
from mcp_probe.settings import ProbeSettings
from mcp_probe.types import STATUS_FAILED, ServerConfig, ToolsResult, VerificationResult

logger = logging.getLogger(__name__)

NO_URL = "No URL specified for HTTP/SSE server"
NO_COMMAND = "No command specified"


def _transport_name(config: ServerConfig) -> str:
    return "http" if config.is_http else "stdio"


async def _spawn(config: ServerConfig, settings: ProbeSettings) -> StdioTransport:
    assert config.command is not None
    return await StdioTransport.spawn(
        config.command,
        config.args,
        env=config.env,
        grace_s=settings.kill_grace_s,
        max_line_length=settings.max_line_length,
        stderr_tail_chars=settings.stderr_tail_chars,
    )


# -- verification -------------------------------------------------------------


async def _verify_stdio(
    name: str,
    config: ServerConfig,
    settings: ProbeSettings,
    allow_list: CommandAllowList,
) -> VerificationResult:
    if not config.command:
        return VerificationResult(name, STATUS_FAILED, None, NO_COMMAND)

    try:
        allow_list.require(config.command)
    except CommandNotAllowedError as e:
        logger.warning("command_blocked", extra={"command": config.command, "reason": e.message})
        return VerificationResult(name, STATUS_FAILED, None, e.message)

    logger.debug("verify_command", extra={"command": config.command, "arg_count": len(config.args)})

    try:
        transport = await _spawn(config, settings)
    except SpawnError as e:
        logger.debug("spawn_failed", extra={"error": e.message})
        return VerificationResult(name, STATUS_FAILED, None, e.message)

    machine = StdioVerificationMachine(name, max_line_length=settings.max_line_length)
    request = build_request(
        1,
        "initialize",
        initialize_params(client_name=settings.client_name, client_version=settings.client_version),
    )

    async def pump() -> None:
        try:
            await transport.write(encode_line(request), close=True)
        except ProcessError as e:
            # The exit event carries the real outcome.
            logger.debug("stdin_write_failed", extra={"error": e.message})
        while not machine.done:
            machine.feed(await transport.events.get())

    timeout_s = settings.stdio_verify_timeout_ms / 1000
    try:
        await asyncio.wait_for(pump(), timeout=timeout_s)
    except TimeoutError:
        logger.debug("verify_timeout", extra={"timeout_ms": settings.stdio_verify_timeout_ms})
        machine.feed(TimerFired(timeout_s))
    finally:
        await transport.close()

    assert machine.result is not None
    return machine.result


async def _verify_http(
    name: str,
    config: ServerConfig,
    settings: ProbeSettings,
    http_client: httpx.AsyncClient | None,
) -> VerificationResult:
    if not config.url:
        return VerificationResult(name, STATUS_FAILED, None, NO_URL)

    logger.info("verify_http", extra={"url": config.url})
    machine = HttpVerificationMachine(
        name,
        client_name=settings.client_name,
        client_version=settings.client_version,
    )

    async with HttpTransport(
        config.url,
        headers=config.headers,
        settings=settings,
        client=http_client,
        retry=False,
    ) as transport:
        for outbound in machine.start():
            assert isinstance(outbound, OutboundRequest)
            try:
                exchange = await transport.request(
                    outbound.method,
                    outbound.params,
                    timeout_ms=settings.http_verify_timeout_ms,
                )
            except ProbeTimeoutError:
                machine.feed(TimerFired(settings.http_verify_timeout_ms / 1000))
            except ProbeError as e:
                machine.fail(e.message)
            else:
                machine.feed(MessageReceived(exchange.response))

    assert machine.result is not None
    return machine.result


async def verify_server(
    name: str,
    config: ServerConfig,
    *,
    settings: ProbeSettings | None = None,
    allow_list: CommandAllowList = DEFAULT_ALLOW_LIST,
    http_client: httpx.AsyncClient | None = None,
) -> VerificationResult:
    """Check whether one server is reachable and speaks MCP.

    stdio servers: `pending` means no answer within the timeout (or a clean
    exit without MCP output); `failed` is a definitive rejection.
    """

    settings = settings or ProbeSettings()
    with server_scope(server=name, transport=_transport_name(config), operation="verify"):
        logger.info("verify_started")

        try:
            if config.is_http:
                result = await _verify_http(name, config, settings, http_client)
            else:
                result = await _verify_stdio(name, config, settings, allow_list)
        except Exception as e:  # noqa: BLE001
            logger.exception("verify_crashed")
            result = VerificationResult(name, STATUS_FAILED, None, str(e) or type(e).__name__)

        logger.info("verify_finished", extra={"status": result.status, "error": result.error})
    return result


# -- tool discovery -----------------------------------------------------------


async def _tools_stdio(
    name: str,
    config: ServerConfig,
    settings: ProbeSettings,
    allow_list: CommandAllowList,
) -> ToolsResult:
    if not config.command:
        return ToolsResult(name, [], NO_COMMAND)

    try:
        allow_list.require(config.command)
    except CommandNotAllowedError as e:
        logger.warning("command_blocked", extra={"command": config.command, "reason": e.message})
        return ToolsResult(name, [], e.message)

    logger.debug("tools_command", extra={"command": config.command, "command_args": " ".join(config.args) or "(none)"})

    try:
        transport = await _spawn(config, settings)
    except SpawnError as e:
        return ToolsResult(name, [], f"Failed to spawn process: {e.message}")

    machine = ToolDiscoveryMachine(
        name,
        client_name=settings.client_name,
        client_version=settings.client_version,
    )
    ids: Iterator[int] = itertools.count(1)
    write_error: str | None = None

    async def send(outbound: list[Outbound], *, error_prefix: str) -> None:
        nonlocal write_error
        for message in outbound:
            if write_error is not None:
                return
            try:
                if isinstance(message, OutboundRequest):
                    request_id = next(ids)
                    logger.info("request_sent", extra={"method": message.method, "request_id": request_id})
                    await transport.write(encode_line(build_request(request_id, message.method, message.params)))
                    machine.mark_sent(request_id)
                else:
                    await transport.write(encode_line(build_notification(message.method)))
            except ProcessError as e:
                # The exit event carries the real outcome; this is only the fallback.
                logger.debug("stdin_write_failed", extra={"error": e.message})
                write_error = f"{error_prefix}: {e.message}"
                return

    async def pump() -> None:
        await send(machine.start(), error_prefix="Failed to write initialize request")
        while not machine.done:
            outbound = machine.feed(await transport.events.get())
            await send(outbound, error_prefix="Process error")

    try:
        await asyncio.wait_for(pump(), timeout=settings.tools_timeout_s)
    except TimeoutError:
        if write_error is not None:
            machine.fail(write_error)
        else:
            machine.feed(TimerFired(settings.tools_timeout_s))
    finally:
        await transport.close()

    assert machine.result is not None
    return machine.result


async def _tools_http(
    name: str,
    config: ServerConfig,
    settings: ProbeSettings,
    http_client: httpx.AsyncClient | None,
) -> ToolsResult:
    if not config.url:
        return ToolsResult(name, [], NO_URL, config.type)

    machine = ToolDiscoveryMachine(
        name,
        client_name=settings.client_name,
        client_version=settings.client_version,
        server_type=config.type,
    )

    async with HttpTransport(config.url, headers=config.headers, settings=settings, client=http_client) as transport:
        try:
            outbound = machine.start()
            while outbound and not machine.done:
                following: list[Outbound] = []
                for message in outbound:
                    if not isinstance(message, OutboundRequest):
                        try:
                            await transport.notify(message.method)
                        except ProbeError as e:
                            logger.warning("notification_failed", extra={"method": message.method, "error": e.message})
                        continue

                    exchange = await transport.request(message.method, message.params)
                    machine.mark_sent(exchange.request_id)
                    phase = machine.phase
                    following.extend(machine.feed(MessageReceived(exchange.response)))
                    if not machine.done and machine.phase is phase:
                        if phase is Phase.AWAITING_INITIALIZE:
                            machine.fail("Invalid initialize response: missing result")
                        else:
                            # A bare tools/list answer means "no tools".
                            logger.warning("tools_list_without_result")
                            machine.complete([])
                    if machine.done:
                        break
                outbound = following
        except ProbeError as e:
            machine.fail(e.message)

    assert machine.result is not None
    return machine.result


async def list_server_tools(
    name: str,
    config: ServerConfig,
    *,
    settings: ProbeSettings | None = None,
    allow_list: CommandAllowList = DEFAULT_ALLOW_LIST,
    http_client: httpx.AsyncClient | None = None,
) -> ToolsResult:
    """Run the full handshake and return the server's advertised tools.

    There is no pending state here: the result either has tools or an error.
    """

    settings = settings or ProbeSettings()
    with server_scope(server=name, transport=_transport_name(config), operation="tools"):
        logger.info("tools_started")

        try:
            if config.is_http:
                result = await _tools_http(name, config, settings, http_client)
            else:
                result = await _tools_stdio(name, config, settings, allow_list)
        except Exception as e:  # noqa: BLE001
            logger.exception("tools_crashed")
            result = ToolsResult(name, [], str(e) or type(e).__name__, config.type if config.is_http else None)

        if result.error:
            logger.error("tools_failed", extra={"error": result.error})
        else:
            logger.info("tools_fetched", extra={"count": len(result.tools)})
    return result

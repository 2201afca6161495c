"""Concurrent fan-out of verification / tool discovery over many servers."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Sequence, TypeVar

import httpx

from mcp_probe.probe.allowlist import DEFAULT_ALLOW_LIST, CommandAllowList
from mcp_probe.probe.verify import list_server_tools, verify_server
from mcp_probe.settings import ProbeSettings
from mcp_probe.types import STATUS_FAILED, ServerConfig, ToolsResult, VerificationResult

logger = logging.getLogger(__name__)

ServerList = Sequence[tuple[str, ServerConfig]]

_R = TypeVar("_R")


class VerificationOrchestrator:
    """One independent task per server; results are returned in input order.

    A crash, timeout or malformed output in one server never affects the
    others: each task owns its own transport and state.
    """

    def __init__(
        self,
        *,
        settings: ProbeSettings | None = None,
        allow_list: CommandAllowList = DEFAULT_ALLOW_LIST,
        http_client: httpx.AsyncClient | None = None,
        max_concurrency: int | None = None,
    ) -> None:
        if max_concurrency is not None and max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self._settings = settings or ProbeSettings()
        self._allow_list = allow_list
        self._http_client = http_client
        self._max_concurrency = max_concurrency

    async def _fan_out(
        self,
        servers: ServerList,
        run: Callable[[str, ServerConfig], Awaitable[_R]],
        on_crash: Callable[[str, ServerConfig, BaseException], _R],
    ) -> list[_R]:
        semaphore = asyncio.Semaphore(self._max_concurrency) if self._max_concurrency else None

        async def unit(name: str, config: ServerConfig) -> _R:
            try:
                if semaphore is None:
                    return await run(name, config)
                async with semaphore:
                    return await run(name, config)
            except Exception as e:  # noqa: BLE001
                logger.exception("unit_crashed", extra={"server": name})
                return on_crash(name, config, e)

        tasks = [asyncio.create_task(unit(name, config), name=f"mcp-probe:{name}") for name, config in servers]
        if not tasks:
            return []
        return list(await asyncio.gather(*tasks))

    async def verify_all(self, servers: ServerList) -> list[VerificationResult]:
        logger.info(
            "verify_all_started",
            extra={
                "servers": len(servers),
                "http_timeout_ms": self._settings.http_verify_timeout_ms,
                "stdio_timeout_ms": self._settings.stdio_verify_timeout_ms,
                "verify_timeout_ms": self._settings.verify_timeout_ms,
            },
        )

        async def run(name: str, config: ServerConfig) -> VerificationResult:
            return await verify_server(
                name,
                config,
                settings=self._settings,
                allow_list=self._allow_list,
                http_client=self._http_client,
            )

        results = await self._fan_out(
            servers,
            run,
            lambda name, _config, e: VerificationResult(name, STATUS_FAILED, None, str(e) or type(e).__name__),
        )
        logger.info(
            "verify_all_finished",
            extra={"servers": len(results), "connected": sum(r.status == "connected" for r in results)},
        )
        return results

    async def list_all_tools(self, servers: ServerList) -> list[ToolsResult]:
        async def run(name: str, config: ServerConfig) -> ToolsResult:
            return await list_server_tools(
                name,
                config,
                settings=self._settings,
                allow_list=self._allow_list,
                http_client=self._http_client,
            )

        return await self._fan_out(
            servers,
            run,
            lambda name, config, e: ToolsResult(
                name, [], str(e) or type(e).__name__, config.type if config.is_http else None
            ),
        )


async def get_servers_status(
    load_servers: Callable[[], ServerList],
    *,
    orchestrator: VerificationOrchestrator | None = None,
) -> list[VerificationResult]:
    """Load the server list and verify every entry.

    A loader failure is logged and yields an empty list.
    """

    try:
        servers = load_servers()
    except Exception:  # noqa: BLE001
        logger.exception("load_servers_failed")
        return []

    logger.info("servers_loaded", extra={"servers": len(servers)})
    return await (orchestrator or VerificationOrchestrator()).verify_all(servers)

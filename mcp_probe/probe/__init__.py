"""MCP server connectivity verification and tool discovery engine."""

from __future__ import annotations

from .allowlist import DEFAULT_ALLOW_LIST, CommandAllowList, CommandValidation
from .framing import SseEvent, parse_sse
from .orchestrator import VerificationOrchestrator, get_servers_status
from .verify import list_server_tools, verify_server

__all__ = [
    "DEFAULT_ALLOW_LIST",
    "CommandAllowList",
    "CommandValidation",
    "SseEvent",
    "VerificationOrchestrator",
    "get_servers_status",
    "list_server_tools",
    "parse_sse",
    "verify_server",
]

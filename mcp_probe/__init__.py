"""MCP server connectivity verification and tool discovery.

The package is deliberately not named `mcp` so it never shadows the upstream
MCP Python SDK.
"""

from __future__ import annotations

from .errors import ProbeError
from .probe import CommandAllowList, VerificationOrchestrator, list_server_tools, parse_sse, verify_server
from .settings import ProbeSettings
from .types import ServerConfig, ServerInfo, ToolsResult, VerificationResult

__version__ = "0.1.0"

__all__ = [
    "CommandAllowList",
    "ProbeError",
    "ProbeSettings",
    "ServerConfig",
    "ServerInfo",
    "ToolsResult",
    "VerificationOrchestrator",
    "VerificationResult",
    "__version__",
    "list_server_tools",
    "parse_sse",
    "verify_server",
]

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Mapping

ServerStatus = Literal["pending", "connected", "failed", "needs-auth"]

STATUS_PENDING: ServerStatus = "pending"
STATUS_CONNECTED: ServerStatus = "connected"
STATUS_FAILED: ServerStatus = "failed"
STATUS_NEEDS_AUTH: ServerStatus = "needs-auth"

HTTP_SERVER_TYPES = frozenset({"http", "sse", "streamable-http"})


@dataclass(frozen=True, slots=True)
class ServerConfig:
    """One declared MCP server.

    `type` selects the transport: `http`, `sse` and `streamable-http` use HTTP
    POST; anything else (including absence) launches a stdio child process.
    """

    type: str = "stdio"
    command: str | None = None
    args: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    url: str | None = None
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def is_http(self) -> bool:
        return self.type in HTTP_SERVER_TYPES

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "ServerConfig":
        """Build from a JSON/YAML-style dict. Unknown keys are ignored."""

        server_type = raw.get("type") or "stdio"
        command = raw.get("command")
        args = raw.get("args") or []
        env = raw.get("env") or {}
        url = raw.get("url")
        headers = raw.get("headers") or {}

        return cls(
            type=str(server_type),
            command=command if isinstance(command, str) else None,
            args=tuple(str(a) for a in args) if isinstance(args, (list, tuple)) else (),
            env={str(k): str(v) for k, v in env.items()} if isinstance(env, Mapping) else {},
            url=url if isinstance(url, str) else None,
            headers={str(k): str(v) for k, v in headers.items()} if isinstance(headers, Mapping) else {},
        )


@dataclass(frozen=True, slots=True)
class ServerInfo:
    name: str | None = None
    version: str | None = None

    @classmethod
    def from_mapping(cls, raw: Any) -> "ServerInfo | None":
        if not isinstance(raw, Mapping):
            return None
        name = raw.get("name")
        version = raw.get("version")
        return cls(
            name=str(name) if name is not None else None,
            version=str(version) if version is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "version": self.version}


@dataclass(frozen=True, slots=True)
class VerificationResult:
    name: str
    status: ServerStatus
    server_info: ServerInfo | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "name": self.name,
            "status": self.status,
            "serverInfo": self.server_info.to_dict() if self.server_info else None,
        }
        if self.error:
            out["error"] = self.error
        return out


@dataclass(frozen=True, slots=True)
class ToolsResult:
    """Outcome of one tool discovery call.

    `tools` holds the server's tool objects as returned (`name`, and usually
    `description` / `inputSchema`).
    """

    name: str
    tools: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None
    server_type: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name, "tools": list(self.tools), "error": self.error}
        if self.server_type is not None:
            out["serverType"] = self.server_type
        return out

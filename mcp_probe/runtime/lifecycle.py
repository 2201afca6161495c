from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Sequence

from mcp_probe.config.errors import ConfigError
from mcp_probe.config.loader import ServerEntry, load_claude_servers, load_servers_from_yaml
from mcp_probe.observability.logging import configure_logging
from mcp_probe.probe.orchestrator import VerificationOrchestrator
from mcp_probe.probe.verify import list_server_tools
from mcp_probe.settings import ProbeSettings
from mcp_probe.types import ServerConfig

logger = logging.getLogger(__name__)

_SECRET_MARKERS = ("key", "token", "secret", "password", "authorization")


def _redact_secrets(obj: Any) -> Any:
    """Best-effort redaction for human-facing config dumps."""

    if isinstance(obj, dict):
        out = {}
        for k, v in obj.items():
            if isinstance(k, str) and any(p in k.lower() for p in _SECRET_MARKERS):
                out[k] = "<redacted>"
            else:
                out[k] = _redact_secrets(v)
        return out
    if isinstance(obj, list):
        return [_redact_secrets(x) for x in obj]
    return obj


def _server_to_dict(name: str, cfg: ServerConfig) -> dict[str, Any]:
    return {
        "name": name,
        "type": cfg.type,
        "command": cfg.command,
        "args": list(cfg.args),
        "env": _redact_secrets(dict(cfg.env)),
        "url": cfg.url,
        "headers": _redact_secrets(dict(cfg.headers)),
    }


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mcp-probe",
        description="Verify MCP server connectivity and list advertised tools",
    )

    parser.add_argument(
        "--log-level",
        default="WARNING",
        help="Logging level (e.g. DEBUG, INFO, WARNING)",
    )

    source = parser.add_mutually_exclusive_group()
    source.add_argument(
        "--config",
        type=Path,
        action="append",
        help="YAML file with an mcpServers mapping (repeatable; later files override)",
    )
    source.add_argument(
        "--claude-json",
        type=Path,
        nargs="?",
        const=Path.home() / ".claude.json",
        help="Read servers from a ~/.claude.json style file (default when no --config)",
    )
    parser.add_argument("--cwd", default=None, help="Project directory used to select project-specific servers")

    sub = parser.add_subparsers(dest="command")

    status_p = sub.add_parser("status", help="Verify every configured server")
    status_p.set_defaults(command="status")

    tools_p = sub.add_parser("tools", help="List the tools of one server")
    tools_p.add_argument("server", help="Server name")
    tools_p.set_defaults(command="tools")

    print_p = sub.add_parser("print-config", help="Print the loaded server list")
    print_p.set_defaults(command="print-config")

    return parser


def _load_servers(ns: argparse.Namespace) -> list[ServerEntry]:
    if ns.config:
        return load_servers_from_yaml(ns.config)
    return load_claude_servers(ns.cwd, path=ns.claude_json)


def _dump(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, ensure_ascii=False, indent=2))
    sys.stdout.write("\n")


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entrypoint referenced by pyproject.toml."""

    parser = _build_parser()
    try:
        ns = parser.parse_args(list(argv) if argv is not None else None)
    except SystemExit as e:
        code = e.code
        return int(code) if isinstance(code, int) else 1

    settings = ProbeSettings.from_env(load_dotenv_file=True)
    configure_logging(level=ns.log_level, debug=settings.debug)

    try:
        servers = _load_servers(ns)
    except ConfigError as e:
        sys.stderr.write(f"Config error: {e}\n")
        return 2

    logger.info("servers_loaded", extra={"servers": [name for name, _ in servers]})

    command = ns.command or "status"

    if command == "print-config":
        _dump([_server_to_dict(name, cfg) for name, cfg in servers])
        return 0

    if command == "tools":
        by_name = dict(servers)
        cfg = by_name.get(ns.server)
        if cfg is None:
            sys.stderr.write(f"Unknown server: {ns.server}\n")
            return 1
        result = asyncio.run(list_server_tools(ns.server, cfg, settings=settings))
        _dump(result.to_dict())
        return 0

    orchestrator = VerificationOrchestrator(settings=settings)
    results = asyncio.run(orchestrator.verify_all(servers))
    _dump([r.to_dict() for r in results])
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

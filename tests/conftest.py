from __future__ import annotations

import sys
import textwrap
from pathlib import Path

import pytest

from mcp_probe.probe.allowlist import CommandAllowList, base_command_name
from mcp_probe.settings import ProbeSettings
from mcp_probe.types import ServerConfig


def pytest_configure() -> None:
    root = Path(__file__).resolve().parents[1]
    if str(root) not in sys.path:
        sys.path.insert(0, str(root))


FAKE_SERVER = textwrap.dedent(
    """
    import json
    import sys
    import time

    mode = sys.argv[1] if len(sys.argv) > 1 else "ok"


    def send(obj):
        sys.stdout.write(json.dumps(obj) + "\\n")
        sys.stdout.flush()


    if mode == "crash":
        sys.stdin.readline()
        sys.stderr.write("boom: missing API key\\n")
        sys.stderr.flush()
        sys.exit(1)

    if mode == "silent":
        time.sleep(60)
        sys.exit(0)

    if mode == "quiet-exit":
        sys.stderr.write("nothing to do\\n")
        sys.exit(0)

    initialized = False
    while True:
        line = sys.stdin.readline()
        if not line:
            break
        line = line.strip()
        if not line:
            continue
        msg = json.loads(line)
        method = msg.get("method")

        if method == "initialize":
            if mode == "noisy":
                sys.stdout.write("starting fake server...\\n")
                send({"jsonrpc": "2.0", "id": 99, "result": {}})
            if mode == "init-error":
                send({"jsonrpc": "2.0", "id": msg["id"], "error": {"code": -32603, "message": "bad init"}})
                continue
            send({
                "jsonrpc": "2.0",
                "id": msg["id"],
                "result": {
                    "protocolVersion": "2024-11-05",
                    "capabilities": {"tools": {}},
                    "serverInfo": {"name": "fake", "version": "1.2.3"},
                },
            })
        elif method == "notifications/initialized":
            initialized = True
        elif method == "tools/list":
            if not initialized:
                send({"jsonrpc": "2.0", "id": msg["id"], "error": {"code": -32002, "message": "not initialized"}})
                continue
            if mode == "stale":
                send({"jsonrpc": "2.0", "id": 1, "result": {"tools": [{"name": "stale"}]}})
            if mode == "no-tools":
                send({"jsonrpc": "2.0", "id": msg["id"], "result": {}})
                continue
            if mode == "hang-tools":
                time.sleep(60)
            send({
                "jsonrpc": "2.0",
                "id": msg["id"],
                "result": {
                    "tools": [
                        {"name": "echo", "description": "Echo text", "inputSchema": {"type": "object"}},
                        {"name": "add"},
                    ]
                },
            })
    """
)


@pytest.fixture()
def fake_server(tmp_path: Path) -> Path:
    script = tmp_path / "fake_mcp_server.py"
    script.write_text(FAKE_SERVER, encoding="utf-8")
    return script


@pytest.fixture()
def allow_python() -> CommandAllowList:
    return CommandAllowList().extended(base_command_name(sys.executable))


@pytest.fixture()
def fast_settings() -> ProbeSettings:
    return ProbeSettings(
        stdio_verify_timeout_ms=10000,
        http_verify_timeout_ms=2000,
        tools_timeout_s=10.0,
        session_retry_delay_s=0.01,
        network_retry_delay_s=0.01,
        kill_grace_s=0.2,
    )


@pytest.fixture()
def python_server(fake_server: Path):
    def make(mode: str = "ok") -> ServerConfig:
        return ServerConfig(command=sys.executable, args=(str(fake_server), mode))

    return make

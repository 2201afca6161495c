from __future__ import annotations

import json
from pathlib import Path

import pytest

from mcp_probe.config.errors import ConfigError
from mcp_probe.config.loader import (
    load_claude_servers,
    load_config,
    load_servers_from_yaml,
    servers_from_config,
)


def _write(tmp_path: Path, text: str, name: str = "servers.yaml") -> Path:
    p = tmp_path / name
    p.write_text(text.lstrip(), encoding="utf-8")
    return p


def test_load_config_expands_env_vars(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GITHUB_TOKEN", "abc123")

    cfg_path = _write(
        tmp_path,
        """
mcpServers:
  github:
    command: npx
    args:
      - -y
      - --token=${GITHUB_TOKEN}
    env:
      GITHUB_TOKEN: ${GITHUB_TOKEN}
""",
    )

    cfg = load_config(cfg_path, load_dotenv_file=False)
    assert cfg["mcpServers"]["github"]["env"]["GITHUB_TOKEN"] == "abc123"
    assert cfg["mcpServers"]["github"]["args"][1] == "--token=abc123"


def test_load_config_missing_env_var_is_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)

    cfg_path = _write(
        tmp_path,
        """
mcpServers:
  github:
    url: https://api.example.test/mcp?Authorization=${GITHUB_TOKEN}
""",
    )

    with pytest.raises(ConfigError) as ei:
        load_config(cfg_path, load_dotenv_file=False)

    msg = str(ei.value)
    assert "GITHUB_TOKEN" in msg
    assert "missing" in msg
    assert "mcpServers.github.url" in msg


def test_load_config_empty_env_var_is_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GITHUB_TOKEN", "")

    cfg_path = _write(
        tmp_path,
        """
mcpServers:
  github:
    headers:
      Authorization: Bearer ${GITHUB_TOKEN}
""",
    )

    with pytest.raises(ConfigError) as ei:
        load_config(cfg_path, load_dotenv_file=False)

    assert "empty" in str(ei.value)


def test_load_config_reads_dotenv(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("PROBE_TEST_DOTENV_VALUE", raising=False)
    dotenv = tmp_path / ".env"
    dotenv.write_text("PROBE_TEST_DOTENV_VALUE=from-dotenv\n", encoding="utf-8")
    cfg_path = _write(tmp_path, "value: ${PROBE_TEST_DOTENV_VALUE}\n")

    # monkeypatch restores the variable's absence on teardown.
    cfg = load_config(cfg_path, dotenv_path=dotenv)

    assert cfg["value"] == "from-dotenv"


def test_later_files_override_earlier(tmp_path: Path) -> None:
    base = _write(
        tmp_path,
        """
mcpServers:
  a:
    command: node
    args: [a.js]
  b:
    command: uvx
""",
        "base.yaml",
    )
    local = _write(
        tmp_path,
        """
mcpServers:
  a:
    args: [local.js]
""",
        "local.yaml",
    )

    servers = dict(load_servers_from_yaml([base, local], load_dotenv_file=False))

    assert servers["a"].command == "node"
    assert servers["a"].args == ("local.js",)
    assert servers["b"].command == "uvx"


@pytest.mark.parametrize("text", ["- a\n- b\n", "mcpServers: [\n"])
def test_invalid_yaml_shapes(tmp_path: Path, text: str) -> None:
    with pytest.raises(ConfigError):
        load_config(_write(tmp_path, text), load_dotenv_file=False)


def test_no_files_is_error() -> None:
    with pytest.raises(ConfigError):
        load_config([], load_dotenv_file=False)


def test_servers_from_config_preserves_order_and_skips_disabled() -> None:
    raw = {
        "mcpServers": {
            "zeta": {"command": "node", "args": ["z.js"], "env": {"PORT": 1}},
            "alpha": {"type": "http", "url": "https://a.test/mcp", "headers": {"X-Key": "k"}},
            "off": {"command": "npx"},
        },
        "disabledMcpServers": ["off"],
    }

    servers = servers_from_config(raw)

    assert [name for name, _ in servers] == ["zeta", "alpha"]
    zeta, alpha = servers[0][1], servers[1][1]
    assert zeta.type == "stdio"
    assert zeta.env == {"PORT": "1"}
    assert alpha.is_http
    assert alpha.headers == {"X-Key": "k"}


def test_servers_from_config_extra_disabled() -> None:
    raw = {"mcpServers": {"a": {"command": "node"}, "b": {"command": "node"}}}

    assert [n for n, _ in servers_from_config(raw, disabled=["a"])] == ["b"]


@pytest.mark.parametrize(
    ("raw", "path"),
    [
        ({"mcpServers": ["a"]}, "mcpServers"),
        ({"mcpServers": {"a": "node"}}, "mcpServers.a"),
        ({"mcpServers": {}, "disabledMcpServers": "a"}, "disabledMcpServers"),
    ],
)
def test_servers_from_config_rejects_bad_shapes(raw: dict, path: str) -> None:
    with pytest.raises(ConfigError) as ei:
        servers_from_config(raw)

    assert ei.value.path == path


def test_servers_from_config_empty() -> None:
    assert servers_from_config({}) == []


# -- ~/.claude.json -----------------------------------------------------------


def _claude_json(tmp_path: Path, data: object) -> Path:
    p = tmp_path / ".claude.json"
    p.write_text(json.dumps(data), encoding="utf-8")
    return p


GLOBAL = {
    "mcpServers": {
        "fs": {"command": "npx", "args": ["-y", "@modelcontextprotocol/server-filesystem"]},
        "web": {"type": "http", "url": "https://web.test/mcp"},
        "old": {"command": "node"},
    },
    "disabledMcpServers": ["old"],
}


def test_claude_json_global_servers(tmp_path: Path) -> None:
    servers = load_claude_servers(path=_claude_json(tmp_path, GLOBAL))

    assert [n for n, _ in servers] == ["fs", "web"]


def test_claude_json_project_servers_take_precedence(tmp_path: Path) -> None:
    data = {
        **GLOBAL,
        "projects": {"/work/app": {"mcpServers": {"local": {"command": "python", "args": ["srv.py"]}}}},
    }

    servers = load_claude_servers("/work/app/", path=_claude_json(tmp_path, data))

    assert [n for n, _ in servers] == ["local"]


def test_claude_json_project_disabled_list_is_unioned(tmp_path: Path) -> None:
    data = {**GLOBAL, "projects": {"/work/app": {"disabledMcpServers": ["web"]}}}

    servers = load_claude_servers("/work/app", path=_claude_json(tmp_path, data))

    assert [n for n, _ in servers] == ["fs"]


def test_claude_json_windows_project_path(tmp_path: Path) -> None:
    data = {**GLOBAL, "projects": {"C:\\work\\app": {"mcpServers": {"win": {"command": "node.exe"}}}}}

    servers = load_claude_servers("C:/work/app", path=_claude_json(tmp_path, data))

    assert [n for n, _ in servers] == ["win"]


def test_claude_json_unknown_project_falls_back_to_global(tmp_path: Path) -> None:
    data = {**GLOBAL, "projects": {"/elsewhere": {"mcpServers": {"x": {"command": "node"}}}}}

    servers = load_claude_servers("/work/app", path=_claude_json(tmp_path, data))

    assert [n for n, _ in servers] == ["fs", "web"]


def test_claude_json_missing_file(tmp_path: Path) -> None:
    assert load_claude_servers(path=tmp_path / "absent.json") == []


@pytest.mark.parametrize("content", ["{not json", "[1, 2]", '{"mcpServers": ["a"]}'])
def test_claude_json_invalid_content(tmp_path: Path, content: str) -> None:
    p = tmp_path / ".claude.json"
    p.write_text(content, encoding="utf-8")

    assert load_claude_servers(path=p) == []

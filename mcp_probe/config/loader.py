"""Server list sources: YAML files and `~/.claude.json`."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Sequence

import yaml
from dotenv import load_dotenv

from mcp_probe.config.errors import ConfigError
from mcp_probe.types import ServerConfig

logger = logging.getLogger(__name__)

_ENV_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

ServerEntry = tuple[str, ServerConfig]


@dataclass(frozen=True, slots=True)
class _MissingVar:
    name: str
    key_path: str
    file: Path
    empty: bool

    def describe(self) -> str:
        state = "empty" if self.empty else "missing"
        return f"- {self.name} ({state}) at {self.key_path or '<root>'} in {self.file}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, Any]) -> dict[str, Any]:
    """Recursive merge; nested mappings combine, everything else is replaced."""

    for key, value in overlay.items():
        current = target.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            target[key] = _merge_into(dict(current), value)
        else:
            target[key] = value
    return target


def _read_yaml_mapping(path: Path) -> Mapping[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
        data = yaml.safe_load(text) if text.strip() else None
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to read YAML config: {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"Top-level YAML must be a mapping/dict: {path}")
    return data


def _substitute(value: Any, key_path: str, file: Path, missing: list[_MissingVar]) -> Any:
    """Replace ${VAR} references in every string of a YAML tree.

    Unset or empty variables are recorded in `missing` and left in place.
    """

    if isinstance(value, str):

        def lookup(match: re.Match[str]) -> str:
            env_value = os.getenv(match.group(1))
            if not env_value:
                missing.append(_MissingVar(match.group(1), key_path, file, empty=env_value == ""))
                return match.group(0)
            return env_value

        return _ENV_REF.sub(lookup, value)

    if isinstance(value, Mapping):
        return {
            str(k): _substitute(v, f"{key_path}.{k}" if key_path else str(k), file, missing)
            for k, v in value.items()
        }

    if isinstance(value, list):
        return [_substitute(v, f"{key_path}[{i}]", file, missing) for i, v in enumerate(value)]

    return value


def load_config(
    paths: Path | Sequence[Path],
    *,
    load_dotenv_file: bool = True,
    dotenv_path: Path | None = None,
) -> dict[str, Any]:
    """Read one or more server-list YAML files into a single mapping.

    Every string may reference environment variables as `${NAME}`; a `.env`
    file is consulted first unless `load_dotenv_file` is False. Files are
    merged in order, later ones winning on conflicting keys.

    Raises:
        ConfigError: a file is unreadable or not a mapping, or a referenced
            variable is unset or empty.
    """

    files = [paths] if isinstance(paths, Path) else list(paths)
    if not files:
        raise ConfigError("No config files provided")

    if load_dotenv_file:
        load_dotenv(dotenv_path or Path.cwd() / ".env", override=False)

    merged: dict[str, Any] = {}
    missing: list[_MissingVar] = []
    for file in files:
        fragment = _substitute(_read_yaml_mapping(file), "", file, missing)
        _merge_into(merged, fragment)

    if missing:
        raise ConfigError(
            "\n".join(["Unresolved environment variables in config:", *(m.describe() for m in missing)])
        )
    return merged


def servers_from_config(raw: Mapping[str, Any], *, disabled: Sequence[str] = ()) -> list[ServerEntry]:
    """Turn an `mcpServers` style mapping into ordered (name, config) pairs.

    Servers listed in `disabledMcpServers` (or `disabled`) are skipped.
    """

    servers_raw = raw.get("mcpServers") or {}
    if not isinstance(servers_raw, Mapping):
        raise ConfigError("must be a mapping of server name -> config", path="mcpServers")

    disabled_raw = raw.get("disabledMcpServers") or []
    if not isinstance(disabled_raw, list):
        raise ConfigError("must be a list of server names", path="disabledMcpServers")
    skip = {str(x) for x in disabled_raw} | set(disabled)

    out: list[ServerEntry] = []
    for name, cfg in servers_raw.items():
        if not isinstance(name, str) or not name:
            raise ConfigError("server name must be a non-empty string", path="mcpServers")
        if not isinstance(cfg, Mapping):
            raise ConfigError("server config must be a mapping", path=f"mcpServers.{name}")
        if name in skip:
            continue
        out.append((name, ServerConfig.from_mapping(cfg)))
    return out


def load_servers_from_yaml(
    paths: Path | Sequence[Path],
    *,
    load_dotenv_file: bool = True,
) -> list[ServerEntry]:
    return servers_from_config(load_config(paths, load_dotenv_file=load_dotenv_file))


def _normalize_project_path(path: str) -> str:
    return path.replace("\\", "/").rstrip("/")


def _find_project(projects: Mapping[str, Any], cwd: str) -> Mapping[str, Any] | None:
    normalized = _normalize_project_path(cwd)
    exact = projects.get(normalized)
    if isinstance(exact, Mapping):
        return exact

    variants = {normalized, normalized.replace("/", "\\"), "/" + normalized}
    for project_path, project in projects.items():
        if project_path.replace("\\", "/") in variants and isinstance(project, Mapping):
            logger.info("project_config_found", extra={"project": project_path})
            return project
    return None


def default_claude_json_path() -> Path:
    return Path.home() / ".claude.json"


def load_claude_servers(cwd: str | Path | None = None, *, path: Path | None = None) -> list[ServerEntry]:
    """Read enabled MCP servers from a `~/.claude.json` style file.

    Project-specific servers are used when `projects[cwd]` declares any;
    otherwise the global servers apply, minus the union of the global and
    project disabled lists. Returns [] when the file is missing or invalid.
    """

    config_path = path or default_claude_json_path()
    if not config_path.exists():
        logger.info("claude_json_missing", extra={"path": str(config_path)})
        return []

    try:
        config = json.loads(config_path.read_text(encoding="utf-8"))
        if not isinstance(config, dict):
            raise ConfigError("top-level JSON must be an object", path=str(config_path))

        project: Mapping[str, Any] | None = None
        projects = config.get("projects")
        if cwd is not None and isinstance(projects, Mapping):
            project = _find_project(projects, str(cwd))

        if project is None:
            logger.info("mcp_config_scope", extra={"scope": "global"})
            servers = servers_from_config(config)
        elif project.get("mcpServers"):
            logger.info("mcp_config_scope", extra={"scope": "project"})
            servers = servers_from_config(project)
        else:
            logger.info("mcp_config_scope", extra={"scope": "global", "project_disabled": True})
            servers = servers_from_config(
                config,
                disabled=[str(x) for x in project.get("disabledMcpServers") or []],
            )
    except (OSError, ValueError, ConfigError) as e:
        logger.error("claude_json_load_failed", extra={"path": str(config_path), "error": str(e)})
        return []

    logger.info("mcp_servers_loaded", extra={"enabled": len(servers)})
    return servers

"""Server list loading.

- YAML files with an `mcpServers` mapping and strict ${ENV_VAR} expansion
- `~/.claude.json` with project-specific overrides
"""

from __future__ import annotations

from mcp_probe.config.errors import ConfigError
from mcp_probe.config.loader import (
    load_claude_servers,
    load_config,
    load_servers_from_yaml,
    servers_from_config,
)

__all__ = [
    "ConfigError",
    "load_claude_servers",
    "load_config",
    "load_servers_from_yaml",
    "servers_from_config",
]

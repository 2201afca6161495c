"""Engine timing knobs.

All values can be overridden through environment variables:

- MCP_HTTP_VERIFY_TIMEOUT  (ms, default 6000)
- MCP_STDIO_VERIFY_TIMEOUT (ms, default 30000)
- MCP_VERIFY_TIMEOUT       (ms, default 8000)
- MCP_DEBUG / DEBUG        ("true" enables debug logging)
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from dotenv import load_dotenv


_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


def _positive_int(raw: str | None, default: int) -> int:
    """Leading decimal integer of `raw` ("6000ms" -> 6000), else `default`."""

    match = _LEADING_INT.match(raw or "")
    if match is None:
        return default
    value = int(match.group(1))
    return value if value > 0 else default


@dataclass(frozen=True)
class ProbeSettings:
    http_verify_timeout_ms: int = 6000
    stdio_verify_timeout_ms: int = 30000
    verify_timeout_ms: int = 8000
    debug: bool = False

    # Tool discovery
    tools_timeout_s: float = 45.0
    http_base_timeout_ms: int = 10000
    http_timeout_step_ms: int = 5000
    max_retries: int = 2
    session_retry_delay_s: float = 0.5
    network_retry_delay_s: float = 1.0

    # stdio process handling
    kill_grace_s: float = 0.5
    max_line_length: int = 10000
    stderr_tail_chars: int = 500

    client_name: str = "mcp-probe"
    client_version: str = "0.1.0"

    def http_request_timeout_ms(self, retry_count: int) -> int:
        """10s, 15s, 20s for retry 0, 1, 2."""

        return self.http_base_timeout_ms + retry_count * self.http_timeout_step_ms

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        *,
        load_dotenv_file: bool = False,
        dotenv_path: Path | None = None,
    ) -> "ProbeSettings":
        if load_dotenv_file:
            load_dotenv(dotenv_path or Path.cwd() / ".env", override=False)

        env = os.environ if environ is None else environ
        return cls(
            http_verify_timeout_ms=_positive_int(env.get("MCP_HTTP_VERIFY_TIMEOUT"), cls.http_verify_timeout_ms),
            stdio_verify_timeout_ms=_positive_int(env.get("MCP_STDIO_VERIFY_TIMEOUT"), cls.stdio_verify_timeout_ms),
            verify_timeout_ms=_positive_int(env.get("MCP_VERIFY_TIMEOUT"), cls.verify_timeout_ms),
            debug=env.get("MCP_DEBUG") == "true" or env.get("DEBUG") == "true",
        )

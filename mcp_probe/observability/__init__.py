from __future__ import annotations

from .context import server_scope, snapshot
from .logging import JsonFormatter, configure_logging

__all__ = ["JsonFormatter", "configure_logging", "server_scope", "snapshot"]

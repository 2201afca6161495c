from __future__ import annotations


class ConfigError(Exception):
    """Raised when a server list cannot be loaded."""

    def __init__(self, message: str, *, path: str | None = None):
        super().__init__(f"{path}: {message}" if path else message)
        self.path = path

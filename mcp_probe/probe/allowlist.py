"""Launch command allow-list for stdio servers.

Only well-known interpreters and launchers may be spawned. The check runs
before any process is created.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from mcp_probe.errors import CommandNotAllowedError

DEFAULT_ALLOWED_COMMANDS: tuple[str, ...] = (
    "node",
    "npx",
    "npm",
    "pnpm",
    "yarn",
    "bunx",
    "bun",
    "python",
    "python3",
    "uvx",
    "uv",
    "deno",
    "docker",
    "cargo",
    "go",
)

# Windows launchers; "" means no extension.
DEFAULT_EXTENSIONS: tuple[str, ...] = ("", ".exe", ".cmd", ".bat")


@dataclass(frozen=True, slots=True)
class CommandValidation:
    valid: bool
    reason: str | None = None


def base_command_name(command: str) -> str:
    """Strip directory components, accepting both `/` and `\\` separators."""

    return command.split("/")[-1].split("\\")[-1]


class CommandAllowList:
    def __init__(
        self,
        commands: Iterable[str] = DEFAULT_ALLOWED_COMMANDS,
        *,
        extensions: Iterable[str] = DEFAULT_EXTENSIONS,
    ) -> None:
        # Ordered for stable, human-readable rejection messages.
        self._commands: tuple[str, ...] = tuple(dict.fromkeys(commands))
        self._extensions: tuple[str, ...] = tuple(dict.fromkeys(e.lower() for e in extensions))

    @property
    def commands(self) -> frozenset[str]:
        return frozenset(self._commands)

    def extended(self, *extra: str) -> "CommandAllowList":
        """Return a new allow-list with additional command names."""

        return CommandAllowList((*self._commands, *extra), extensions=self._extensions)

    def validate(self, command: str | None) -> CommandValidation:
        if not command or not isinstance(command, str):
            return CommandValidation(False, "Command is empty or invalid")

        base = base_command_name(command)
        if base in self._commands:
            return CommandValidation(True)

        dot = base.rfind(".")
        if dot > 0:
            stem = base[:dot]
            ext = base[dot:].lower()
            if ext not in self._extensions:
                allowed_ext = ", ".join(e for e in self._extensions if e)
                return CommandValidation(
                    False,
                    f'Invalid command extension "{ext}". Allowed extensions: {allowed_ext}',
                )
            if stem in self._commands:
                return CommandValidation(True)

        return CommandValidation(
            False,
            f'Command "{base}" is not in the allowed list. Allowed: {", ".join(self._commands)}',
        )

    def require(self, command: str | None) -> None:
        """Raise `CommandNotAllowedError` unless `command` may be spawned."""

        validation = self.validate(command)
        if not validation.valid:
            raise CommandNotAllowedError(command=str(command or ""), reason=validation.reason or "")


DEFAULT_ALLOW_LIST = CommandAllowList()

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator


_server: ContextVar[str | None] = ContextVar("server", default=None)
_transport: ContextVar[str | None] = ContextVar("transport", default=None)
_operation: ContextVar[str | None] = ContextVar("operation", default=None)


@contextmanager
def server_scope(*, server: str, transport: str, operation: str) -> Iterator[None]:
    """Bind per-server fields for the duration of the block.

    The previous values are restored on exit, so a direct `await` from a
    caller leaves the caller's own context untouched.
    """

    tokens = (_server.set(server), _transport.set(transport), _operation.set(operation))
    try:
        yield
    finally:
        for var, token in zip((_server, _transport, _operation), tokens):
            var.reset(token)


def snapshot() -> dict[str, object]:
    """Return a snapshot of current observability context for logging."""

    out: dict[str, object] = {}
    if (v := _server.get()) is not None:
        out["server"] = v
    if (v := _transport.get()) is not None:
        out["transport"] = v
    if (v := _operation.get()) is not None:
        out["operation"] = v
    return out

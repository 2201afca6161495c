"""Child-process transport for stdio MCP servers.

A `StdioTransport` owns exactly one child process for the duration of one
verification or discovery call. Output is surfaced as discrete events on an
asyncio queue so the caller can drive a state machine from a single loop.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import subprocess
import sys
from typing import Mapping, Sequence

from mcp_probe.errors import ProcessError, SpawnError
from mcp_probe.probe.framing import LineFramer
from mcp_probe.probe.handshake import ProcessExited, ProcessFailed, StdoutReceived

logger = logging.getLogger(__name__)

_READ_CHUNK = 65536
_SHELL_LAUNCHERS = frozenset({"npx", "npm", "pnpm", "yarn"})


StdioEvent = StdoutReceived | ProcessExited | ProcessFailed


def needs_shell(command: str, *, platform: str = sys.platform) -> bool:
    """Batch launchers and package-manager shims need a shell on Windows."""

    if platform != "win32":
        return False
    lowered = command.lower()
    return lowered.endswith(".cmd") or lowered.endswith(".bat") or command in _SHELL_LAUNCHERS


def merged_env(overrides: Mapping[str, str]) -> dict[str, str]:
    env = dict(os.environ)
    env.update(overrides)
    return env


class StderrTail:
    """Bounded stderr sink keeping the last `limit` characters."""

    def __init__(self, limit: int = 500) -> None:
        self._limit = limit
        self._text = ""

    def append(self, text: str) -> None:
        self._text = (self._text + text)[-self._limit :]

    @property
    def text(self) -> str:
        return self._text


class ProcessHandle:
    """Owns one child process and guarantees a single termination."""

    def __init__(self, process: asyncio.subprocess.Process, *, grace_s: float = 0.5) -> None:
        self._process = process
        self._grace_s = grace_s
        self._terminated = False

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def process(self) -> asyncio.subprocess.Process:
        return self._process

    @property
    def terminated(self) -> bool:
        return self._terminated

    async def terminate(self) -> None:
        """SIGTERM now, SIGKILL after the grace period. Repeated calls are no-ops."""

        if self._terminated:
            return
        self._terminated = True

        proc = self._process
        if proc.returncode is not None:
            return

        try:
            proc.terminate()
        except ProcessLookupError:
            return

        try:
            await asyncio.wait_for(proc.wait(), timeout=self._grace_s)
        except TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                return
            logger.debug("process_killed", extra={"pid": proc.pid, "signal": "SIGKILL"})
            await proc.wait()


class StdioTransport:
    """Spawned child process plus its event stream.

    Events are pushed to `events` by reader tasks. `ProcessExited` is only
    emitted after both output pipes reached EOF, so no late output can follow
    it.
    """

    def __init__(
        self,
        handle: ProcessHandle,
        *,
        max_line_length: int = 10000,
        stderr_tail_chars: int = 500,
    ) -> None:
        self.handle = handle
        self.events: asyncio.Queue[StdioEvent] = asyncio.Queue()
        self.framer = LineFramer(max_line_length=max_line_length)
        self.stderr = StderrTail(stderr_tail_chars)
        self._tasks: list[asyncio.Task[None]] = []

    @classmethod
    async def spawn(
        cls,
        command: str,
        args: Sequence[str],
        *,
        env: Mapping[str, str],
        grace_s: float = 0.5,
        max_line_length: int = 10000,
        stderr_tail_chars: int = 500,
    ) -> "StdioTransport":
        """Launch the child process.

        Raises:
            SpawnError: the OS refused to launch the command.
        """

        kwargs: dict[str, object] = {
            "stdin": asyncio.subprocess.PIPE,
            "stdout": asyncio.subprocess.PIPE,
            "stderr": asyncio.subprocess.PIPE,
            "env": merged_env(env),
        }
        if sys.platform == "win32":
            kwargs["creationflags"] = subprocess.CREATE_NO_WINDOW

        try:
            if needs_shell(command):
                logger.debug("spawn_using_shell", extra={"command": command})
                process = await asyncio.create_subprocess_shell(
                    subprocess.list2cmdline([command, *args]),
                    **kwargs,  # type: ignore[arg-type]
                )
            else:
                process = await asyncio.create_subprocess_exec(command, *args, **kwargs)  # type: ignore[arg-type]
        except OSError as e:
            raise SpawnError(str(e), command=command) from e

        logger.info("process_spawned", extra={"pid": process.pid, "command": command})
        transport = cls(
            ProcessHandle(process, grace_s=grace_s),
            max_line_length=max_line_length,
            stderr_tail_chars=stderr_tail_chars,
        )
        transport._start_readers()
        return transport

    def _start_readers(self) -> None:
        proc = self.handle.process
        stdout_task = asyncio.create_task(self._read_stdout(proc.stdout))
        stderr_task = asyncio.create_task(self._read_stderr(proc.stderr))
        self._tasks = [stdout_task, stderr_task, asyncio.create_task(self._wait_exit(stdout_task, stderr_task))]

    async def _read_stdout(self, stream: asyncio.StreamReader | None) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                break
            text = decoder.decode(chunk)
            if text:
                self.events.put_nowait(StdoutReceived(text, tuple(self.framer.feed(text))))
        tail = self.framer.flush()
        if tail:
            self.events.put_nowait(StdoutReceived("", (tail,)))

    async def _read_stderr(self, stream: asyncio.StreamReader | None) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                break
            text = decoder.decode(chunk)
            self.stderr.append(text)
            if text.strip():
                logger.debug("process_stderr", extra={"stderr": text.strip()[:200]})

    async def _wait_exit(self, *readers: asyncio.Task[None]) -> None:
        try:
            await asyncio.gather(*readers)
        except (OSError, ValueError) as e:
            self.events.put_nowait(ProcessFailed(str(e)))
            return
        code = await self.handle.process.wait()
        logger.debug("process_closed", extra={"code": code})
        self.events.put_nowait(ProcessExited(code, self.stderr.text))

    async def write(self, data: bytes, *, close: bool = False) -> None:
        """Write to the child's stdin.

        Raises:
            ProcessError: stdin is gone (process died or pipe closed).
        """

        stdin = self.handle.process.stdin
        if stdin is None or stdin.is_closing():
            raise ProcessError("stdin is not available")
        try:
            stdin.write(data)
            await stdin.drain()
            if close:
                stdin.close()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise ProcessError(str(e) or type(e).__name__) from e

    async def close(self) -> None:
        """Terminate the child and stop the reader tasks."""

        await self.handle.terminate()
        for task in self._tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

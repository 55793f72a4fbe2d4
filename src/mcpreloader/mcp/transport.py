"""
Transport layer for the child MCP server.

Implements StdioTransport: JSON-RPC over stdin/stdout pipes to a
subprocess. One line = one message. The pipes are exposed as the
anyio memory streams that mcp.ClientSession reads and writes, so the
SDK does the protocol work and this module only moves lines.

stderr is not protocol data. It is read by a single task and handed
to a sink line by line.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Callable

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from mcp import types
from mcp.shared.message import SessionMessage
from pydantic import ValidationError

from ..errors import ChildSpawnFailure
from ..models import ChildCommand

logger = logging.getLogger(__name__)

# asyncio's default 64 KiB line limit is too small for large tool results
STREAM_LIMIT = 16 * 1024 * 1024
GRACEFUL_EXIT_TIMEOUT = 5.0
TERMINATE_TIMEOUT = 2.0
STDERR_DRAIN_TIMEOUT = 1.0


@dataclass(frozen=True)
class TransportFeatures:
    """Optional capabilities a transport declares up front."""
    stderr: bool = False
    exit_status: bool = False


class StdioTransport:
    """
    JSON-RPC over stdin/stdout pipes to a subprocess.

    start() spawns the process and returns (read_stream, write_stream)
    for a ClientSession. wait() resolves when the process exits, which
    is how the supervisor notices crashes. close() shuts the process
    down: stdin is closed first, then SIGTERM, then SIGKILL.
    """

    features = TransportFeatures(stderr=True, exit_status=True)

    def __init__(
        self,
        command: ChildCommand,
        stderr_sink: Callable[[str], None] | None = None,
    ):
        self.command = command
        self._stderr_sink = stderr_sink
        self._process: asyncio.subprocess.Process | None = None
        self._pumps: list[asyncio.Task] = []
        self._stderr_pump: asyncio.Task | None = None
        self.returncode: int | None = None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    def is_alive(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def start(
        self,
    ) -> tuple[MemoryObjectReceiveStream[SessionMessage | Exception], MemoryObjectSendStream[SessionMessage]]:
        """Launch the child process and start the pipe pumps."""
        if self.is_alive():
            logger.warning("Transport already running, stopping first")
            await self.close()

        logger.info(f"Starting stdio transport: {self.command.describe()}")
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.command.command,
                *self.command.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE if self._stderr_sink else asyncio.subprocess.DEVNULL,
                env={**os.environ, **self.command.env},
                cwd=self.command.cwd,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise ChildSpawnFailure(f"Failed to spawn '{self.command.describe()}': {e}") from e

        self.returncode = None
        read_writer, read_stream = anyio.create_memory_object_stream(0)
        write_stream, write_reader = anyio.create_memory_object_stream(0)

        self._pumps = [
            asyncio.create_task(self._read_stdout(read_writer), name=f"stdout-{self.pid}"),
            asyncio.create_task(self._write_stdin(write_reader), name=f"stdin-{self.pid}"),
        ]
        if self._stderr_sink:
            self._stderr_pump = asyncio.create_task(self._relay_stderr(), name=f"stderr-{self.pid}")
            self._pumps.append(self._stderr_pump)

        logger.debug(f"Child process started (pid={self.pid})")
        return read_stream, write_stream

    async def wait(self) -> int:
        """Wait for the child process to exit and return its exit code."""
        if self._process is None:
            return self.returncode if self.returncode is not None else 0
        self.returncode = await self._process.wait()
        return self.returncode

    async def close(self, grace: float = GRACEFUL_EXIT_TIMEOUT) -> None:
        """Terminate the child process. Safe to call more than once."""
        process = self._process
        if process is None:
            return

        try:
            if process.returncode is None:
                if process.stdin and not process.stdin.is_closing():
                    process.stdin.close()
                try:
                    await asyncio.wait_for(process.wait(), timeout=grace if grace > 0 else 0.01)
                except asyncio.TimeoutError:
                    await self._terminate(process)
            self.returncode = process.returncode
        finally:
            if self._stderr_pump is not None and process.returncode is not None:
                # let the last lines written before exit reach the sink
                await asyncio.wait({self._stderr_pump}, timeout=STDERR_DRAIN_TIMEOUT)
            for task in self._pumps:
                task.cancel()
            await asyncio.gather(*self._pumps, return_exceptions=True)
            self._pumps = []
            self._stderr_pump = None
            self._process = None
            logger.info(f"Stdio transport stopped (exit code {self.returncode})")

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        try:
            process.terminate()
            await asyncio.wait_for(process.wait(), timeout=TERMINATE_TIMEOUT)
        except ProcessLookupError:
            return
        except asyncio.TimeoutError:
            logger.warning(f"Child (pid={process.pid}) ignored SIGTERM, killing")
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    # ── Pumps ──────────────────────────────────────────────

    async def _read_stdout(self, sink: MemoryObjectSendStream[SessionMessage | Exception]) -> None:
        stdout = self._process.stdout
        try:
            async with sink:
                while True:
                    try:
                        line = await stdout.readline()
                    except ValueError as e:
                        logger.error(f"Dropping oversized line from child: {e}")
                        continue
                    if not line:
                        break

                    text = line.decode("utf-8", errors="replace").strip()
                    if not text:
                        continue
                    try:
                        message = types.JSONRPCMessage.model_validate_json(text)
                    except ValidationError as exc:
                        logger.debug(f"Invalid JSON-RPC from child: {text[:200]}")
                        await sink.send(exc)
                        continue
                    await sink.send(SessionMessage(message))
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            pass
        logger.debug("Child stdout closed")

    async def _write_stdin(self, source: MemoryObjectReceiveStream[SessionMessage]) -> None:
        stdin = self._process.stdin
        try:
            async with source:
                async for session_message in source:
                    payload = session_message.message.model_dump_json(by_alias=True, exclude_none=True)
                    stdin.write((payload + "\n").encode("utf-8"))
                    await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug(f"Child stdin closed: {e}")
        except anyio.ClosedResourceError:
            pass

    async def _relay_stderr(self) -> None:
        stderr = self._process.stderr
        while True:
            try:
                line = await stderr.readline()
            except ValueError:
                continue
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                self._stderr_sink(text)

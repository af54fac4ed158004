from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from pathlib import Path

from flakeguard.errors import DriverError, TransportClosedError
from flakeguard.mcp_client.jsonrpc import JsonRpcMessage, decode_line

logger = logging.getLogger(__name__)

# chrome-devtools-mcp snapshots can be large; lift asyncio's 64 KiB line limit.
READ_LIMIT_BYTES = 16 * 1024 * 1024


class StdioTransport:
    """Newline-delimited JSON-RPC over the stdio of an MCP server subprocess."""

    def __init__(self, command: str, args: list[str], cwd: str | None = None) -> None:
        self.command = command
        self.args = args
        self.cwd = cwd
        self._process: asyncio.subprocess.Process | None = None

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def start(self) -> None:
        logger.debug(f"Starting MCP server: {self.command} {' '.join(self.args)}")
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                cwd=self.cwd or str(Path.cwd()),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
                limit=READ_LIMIT_BYTES,
            )
        except OSError as exc:
            raise DriverError(f"Could not start MCP server {self.command!r}: {exc}") from exc

    async def stop(self) -> None:
        if self._process is None:
            return
        process = self._process
        self._process = None
        if process.stdin is not None:
            process.stdin.close()
            with contextlib.suppress(OSError, ConnectionError):
                await process.stdin.wait_closed()
        if process.returncode is None and os.name == "nt":
            with contextlib.suppress(OSError, TimeoutError):
                killer = await asyncio.create_subprocess_exec(
                    "taskkill",
                    "/T",
                    "/F",
                    "/PID",
                    str(process.pid),
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.DEVNULL,
                )
                await asyncio.wait_for(killer.wait(), timeout=5)
        if process.returncode is None:
            process.terminate()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(process.wait(), timeout=5)
            if process.returncode is None:
                process.kill()
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(process.wait(), timeout=5)
        logger.debug(f"MCP server exited with code {process.returncode}")

    async def send(self, message: JsonRpcMessage) -> None:
        if self._process is None or self._process.stdin is None:
            raise TransportClosedError("Transport is not started")
        try:
            self._process.stdin.write(message.encode())
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise TransportClosedError(f"MCP server stdin closed: {exc}") from exc

    async def recv(self) -> dict:
        if self._process is None or self._process.stdout is None:
            raise TransportClosedError("Transport is not started")
        while True:
            line = await self._process.stdout.readline()
            if not line:
                raise TransportClosedError("MCP transport closed")
            if line.strip():
                return decode_line(line)

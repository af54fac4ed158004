from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from typing import Any, Protocol

from flakeguard.errors import DriverError
from flakeguard.mcp_client.jsonrpc import (
    JsonRpcMessage,
    build_notification,
    build_request,
    extract_result,
    is_notification,
    is_response,
)

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2025-06-18"
CLIENT_INFO = {"name": "flakeguard", "version": "0.1.0"}

NotificationHandler = Callable[[str, dict[str, Any]], None]


class Transport(Protocol):
    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def send(self, message: JsonRpcMessage) -> None: ...

    async def recv(self) -> dict: ...


class McpSession:
    def __init__(self, transport: Transport, timeout_seconds: float = 20.0) -> None:
        self.transport = transport
        self.timeout_seconds = timeout_seconds
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._notifications: list[NotificationHandler] = []
        self._reader_task: asyncio.Task[None] | None = None
        self._closed_reason: BaseException | None = None

    async def __aenter__(self) -> McpSession:
        await self.start()
        try:
            await self.initialize()
        except BaseException:
            await self.stop()
            raise
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def start(self) -> None:
        await self.transport.start()
        self._closed_reason = None
        self._reader_task = asyncio.create_task(self._reader_loop())

    async def stop(self) -> None:
        if self._reader_task is not None:
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError, TimeoutError):
                await asyncio.wait_for(self._reader_task, timeout=2)
            self._reader_task = None
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self.transport.stop(), timeout=8)
        self._fail_pending(DriverError("MCP session stopped"))

    def on_notification(self, handler: NotificationHandler) -> None:
        self._notifications.append(handler)

    async def initialize(self) -> Any:
        result = await self.request(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "clientInfo": CLIENT_INFO,
                "capabilities": {},
            },
        )
        await self.notify("notifications/initialized")
        return result

    async def list_tools(self) -> list[str]:
        result = await self.request("tools/list", {})
        tools = result.get("tools", []) if isinstance(result, dict) else []
        return [tool["name"] for tool in tools if isinstance(tool, dict) and tool.get("name")]

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> Any:
        logger.debug(f"MCP tool call: {name}")
        return await self.request("tools/call", {"name": name, "arguments": arguments})

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        await self.transport.send(build_notification(method, params))

    async def request(self, method: str, params: dict[str, Any] | None = None) -> Any:
        if self._closed_reason is not None:
            raise DriverError(f"MCP session is closed: {self._closed_reason}")
        req = build_request(method, params)
        loop = asyncio.get_running_loop()
        fut: asyncio.Future[Any] = loop.create_future()
        self._pending[req.id] = fut
        try:
            await self.transport.send(req)
            return await asyncio.wait_for(fut, timeout=self.timeout_seconds)
        except TimeoutError as exc:
            raise DriverError(f"MCP request {method!r} timed out after {self.timeout_seconds}s") from exc
        finally:
            self._pending.pop(req.id, None)

    async def _reader_loop(self) -> None:
        try:
            while True:
                message = await self.transport.recv()
                if is_response(message):
                    self._resolve(message)
                elif is_notification(message):
                    self._dispatch(message)
                else:
                    logger.debug(f"Ignoring unexpected MCP frame: {str(message)[:200]}")
        except DriverError as exc:
            logger.warning(f"MCP reader stopped: {exc}")
            self._closed_reason = exc
            self._fail_pending(exc)

    def _resolve(self, message: dict[str, Any]) -> None:
        future = self._pending.get(message["id"])
        if future is None or future.done():
            return
        try:
            future.set_result(extract_result(message))
        except DriverError as exc:
            future.set_exception(exc)

    def _dispatch(self, message: dict[str, Any]) -> None:
        method = str(message.get("method", ""))
        params = message.get("params") or {}
        for handler in self._notifications:
            handler(method, params)

    def _fail_pending(self, exc: BaseException) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(exc)
        self._pending.clear()

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from flakeguard.browser.driver import Predicate
from flakeguard.errors import DriverError, InvalidSelectorError
from flakeguard.mcp_client.session import McpSession

logger = logging.getLogger(__name__)

# Shared prologue: resolves the handle's node or reports it as stale.
_LOCATE = (
    "const nodes = Array.from(document.querySelectorAll(selector));"
    "const el = nodes[index];"
    "if (!el) return {ok:false, reason:'stale element', count: nodes.length};"
)


@dataclass(frozen=True, slots=True)
class ElementHandle:
    selector: str
    index: int = 0

    def __str__(self) -> str:
        return f"{self.selector}[{self.index}]"


class DevToolsDriver:
    """UIDriver backed by a chrome-devtools-mcp server.

    Every DOM operation is a small script sent through the ``evaluate_script``
    tool. Handles address nodes by selector and position, so a re-rendered
    node is looked up again on each call.
    """

    def __init__(
        self,
        session: McpSession,
        poll_interval: float = 0.2,
        busy_selector: str | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.session = session
        self.poll_interval = poll_interval
        self.busy_selector = busy_selector or None
        self._sleep = sleep

    async def open_url(self, url: str) -> None:
        raw = await self.session.call_tool("navigate_page", {"url": url})
        self._raise_for_tool_error("navigate_page", raw)

    async def find(self, selector: str) -> list[ElementHandle]:
        payload = await self._evaluate(
            "() => {"
            f"const selector = {json.dumps(selector)};"
            "try { return {ok:true, count: document.querySelectorAll(selector).length}; }"
            "catch (err) { return {ok:false, reason: String(err && err.message || err)}; }"
            "}"
        )
        if not payload.get("ok"):
            raise InvalidSelectorError(selector, str(payload.get("reason", "unknown error")))
        count = int(payload.get("count", 0))
        return [ElementHandle(selector, index) for index in range(count)]

    async def click(self, handle: ElementHandle) -> None:
        payload = await self._on_element(
            handle,
            "el.scrollIntoView({block:'center', inline:'center'});"
            "el.click();"
            "return {ok:true};",
        )
        self._warn_if_stale("click", handle, payload)

    async def select(self, handle: ElementHandle, value: str | None = None) -> None:
        payload = await self._on_element(
            handle,
            f"const value = {json.dumps(value)};"
            "el.scrollIntoView({block:'center', inline:'center'});"
            "if (el.tagName === 'SELECT' && value !== null) {"
            "el.value = value;"
            "el.dispatchEvent(new Event('input', {bubbles:true}));"
            "el.dispatchEvent(new Event('change', {bubbles:true}));"
            "} else {"
            "el.click();"
            "}"
            "return {ok:true};",
        )
        self._warn_if_stale("select", handle, payload)

    async def get_attribute(self, handle: ElementHandle, name: str) -> str | None:
        payload = await self._on_element(
            handle,
            f"return {{ok:true, value: el.getAttribute({json.dumps(name)})}};",
        )
        value = payload.get("value") if payload.get("ok") else None
        return None if value is None else str(value)

    async def get_text(self, handle: ElementHandle) -> str:
        payload = await self._on_element(
            handle,
            "return {ok:true, value: String(el.innerText ?? el.textContent ?? '')};",
        )
        return str(payload.get("value", "")) if payload.get("ok") else ""

    async def wait_until(self, predicate: Predicate, timeout: float) -> bool:
        deadline = time.monotonic() + max(timeout, 0)
        while True:
            if await self.page_settled() and await predicate():
                return True
            if time.monotonic() >= deadline:
                return False
            await self._sleep(max(self.poll_interval, 0.05))

    async def page_settled(self) -> bool:
        """True once the document is loaded and nothing matches ``busy_selector``."""
        payload = await self._evaluate(
            "() => {"
            f"const busySelector = {json.dumps(self.busy_selector)};"
            "const readyState = document.readyState || 'loading';"
            "let busy = false;"
            "if (busySelector) { try { busy = Boolean(document.querySelector(busySelector)); } catch (_) {} }"
            "return {ok:true, readyState, busy};"
            "}"
        )
        return payload.get("readyState") in {"interactive", "complete"} and not payload.get("busy", False)

    async def _on_element(self, handle: ElementHandle, body: str) -> dict[str, Any]:
        return await self._evaluate(
            "() => {"
            f"const selector = {json.dumps(handle.selector)};"
            f"const index = {int(handle.index)};"
            f"{_LOCATE}"
            f"{body}"
            "}"
        )

    async def _evaluate(self, script: str) -> dict[str, Any]:
        raw = await self.session.call_tool("evaluate_script", {"function": script})
        self._raise_for_tool_error("evaluate_script", raw)
        payload = self._extract_script_result_payload(raw)
        if payload is None:
            raise DriverError(f"evaluate_script returned no JSON object: {self._flatten_text(raw)[:200]}")
        return payload

    @staticmethod
    def _warn_if_stale(operation: str, handle: ElementHandle, payload: dict[str, Any]) -> None:
        if not payload.get("ok"):
            logger.warning(
                f"{operation} on {handle} not issued: {payload.get('reason', 'unknown')} "
                f"({payload.get('count', '?')} matches now)"
            )

    @classmethod
    def _raise_for_tool_error(cls, tool: str, raw: Any) -> None:
        if isinstance(raw, dict) and raw.get("isError") is True:
            message = cls._flatten_text(raw.get("content", [])).strip() or "tool reported an error"
            raise DriverError(f"MCP tool {tool!r} failed: {message[:500]}")

    @classmethod
    def _extract_script_result_payload(cls, raw: Any) -> dict[str, Any] | None:
        if not isinstance(raw, dict):
            return None
        structured = raw.get("structuredContent") or raw.get("result")
        if isinstance(structured, dict):
            return structured
        return cls._extract_json_object(cls._flatten_text(raw.get("content", [])))

    @staticmethod
    def _extract_json_object(text: str) -> dict[str, Any] | None:
        if not text:
            return None

        candidates: list[str] = []
        fenced = re.search(r"```json\s*(\{.*?\})\s*```", text, flags=re.DOTALL | re.IGNORECASE)
        if fenced:
            candidates.append(fenced.group(1))
        loose = re.search(r"(\{.*\})", text, flags=re.DOTALL)
        if loose:
            candidates.append(loose.group(1))

        for candidate in candidates:
            try:
                parsed = json.loads(candidate)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                return parsed
        return None

    @classmethod
    def _flatten_text(cls, value: Any) -> str:
        if isinstance(value, dict):
            if value.get("type") == "text":
                return str(value.get("text", ""))
            return "\n".join(filter(None, (cls._flatten_text(nested) for nested in value.values())))
        if isinstance(value, list):
            return "\n".join(filter(None, (cls._flatten_text(nested) for nested in value)))
        if isinstance(value, str):
            return value
        return ""

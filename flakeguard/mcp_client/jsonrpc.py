from __future__ import annotations

import itertools
import json
from dataclasses import dataclass
from typing import Any

from flakeguard.errors import DriverError, JsonRpcError

JSONRPC_VERSION = "2.0"
SERVER_ERROR = -32000

_request_ids = itertools.count(1)


@dataclass(slots=True)
class JsonRpcMessage:
    method: str
    params: dict[str, Any] | None = None
    id: int | None = None

    @property
    def is_notification(self) -> bool:
        return self.id is None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"jsonrpc": JSONRPC_VERSION, "method": self.method}
        if self.params is not None:
            payload["params"] = self.params
        if self.id is not None:
            payload["id"] = self.id
        return payload

    def encode(self) -> bytes:
        return (json.dumps(self.to_dict(), ensure_ascii=False) + "\n").encode("utf-8")


def build_request(method: str, params: dict[str, Any] | None = None) -> JsonRpcMessage:
    return JsonRpcMessage(method=method, params=params, id=next(_request_ids))


def build_notification(method: str, params: dict[str, Any] | None = None) -> JsonRpcMessage:
    return JsonRpcMessage(method=method, params=params)


def decode_line(line: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DriverError(f"Malformed JSON-RPC frame: {line[:200]!r}") from exc
    if not isinstance(payload, dict):
        raise DriverError(f"JSON-RPC frame is not an object: {payload!r}")
    return payload


def is_response(payload: dict[str, Any]) -> bool:
    return (
        payload.get("jsonrpc") == JSONRPC_VERSION
        and "id" in payload
        and ("result" in payload or "error" in payload)
    )


def is_notification(payload: dict[str, Any]) -> bool:
    return payload.get("jsonrpc") == JSONRPC_VERSION and "method" in payload and "id" not in payload


def extract_result(payload: dict[str, Any]) -> Any:
    if "error" in payload:
        err = payload["error"] or {}
        raise JsonRpcError(
            code=err.get("code", SERVER_ERROR),
            message=err.get("message", "Unknown JSON-RPC error"),
            data=err.get("data"),
        )
    return payload.get("result")

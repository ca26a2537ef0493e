"""
fleetcheck — newline-delimited JSON-RPC 2.0 framing for package workers.

File: src/fleetcheck/packages/rpc.py
Last updated: 2026-10-19

Purpose
- Encode requests and responses as one compact JSON object per line.
- Reassemble complete lines from arbitrarily split stdout/stdin chunks.
- Validate inbound messages at the process boundary.

Functional requirements
- ``encode_*`` output always ends in exactly one ``\\n`` and never contains another.
- ``parse_response`` accepts exactly one of ``result`` / ``error``.
- Malformed input raises ``RpcProtocolError``; callers decide whether to drop it.

Non-functional requirements
- Pure functions and a small stateful buffer; no I/O.
"""

from __future__ import annotations

import codecs
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Final, cast

from fleetcheck.packages.models import JSONValue

JSONRPC_VERSION: Final[str] = "2.0"
READY_MARKER: Final[str] = '"ready":true'

PARSE_ERROR: Final[int] = -32700
INVALID_REQUEST: Final[int] = -32600
METHOD_NOT_FOUND: Final[int] = -32601
INVALID_PARAMS: Final[int] = -32602
INTERNAL_ERROR: Final[int] = -32603


class RpcProtocolError(ValueError):
    """Raised when a line is not a well-formed JSON-RPC message."""

    def __init__(
        self,
        message: str,
        *,
        code: int = INVALID_REQUEST,
        request_id: int | None = None,
    ) -> None:
        self.code = code
        self.request_id = request_id
        super().__init__(message)


@dataclass(frozen=True, slots=True)
class RpcError:
    code: int
    message: str
    data: JSONValue = None


@dataclass(frozen=True, slots=True)
class RpcResponse:
    id: int | None
    result: JSONValue = None
    error: RpcError | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None


@dataclass(frozen=True, slots=True)
class RpcRequest:
    id: int | None
    method: str
    params: dict[str, JSONValue] = field(default_factory=dict)


class LineBuffer:
    """Accumulate stream chunks and hand back complete newline-terminated lines."""

    __slots__ = ("_decoder", "_partial")

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._partial = ""

    @property
    def pending(self) -> str:
        return self._partial

    def feed(self, chunk: bytes | str) -> list[str]:
        text = chunk if isinstance(chunk, str) else self._decoder.decode(chunk)
        if not text:
            return []
        data = self._partial + text
        *complete, self._partial = data.split("\n")
        lines: list[str] = []
        for line in complete:
            stripped = line.strip()
            if stripped:
                lines.append(stripped)
        return lines

    def flush(self) -> list[str]:
        """Return any unterminated trailing data as a final line."""

        tail = (self._partial + self._decoder.decode(b"", final=True)).strip()
        self._partial = ""
        return [tail] if tail else []


def _encode(payload: Mapping[str, object]) -> bytes:
    text = json.dumps(payload, ensure_ascii=False, separators=(",", ":"), allow_nan=False)
    return (text + "\n").encode("utf-8")


def encode_request(request_id: int, method: str, params: Mapping[str, JSONValue]) -> bytes:
    return _encode(
        {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method, "params": dict(params)}
    )


def encode_response(request_id: int | None, result: JSONValue) -> bytes:
    return _encode({"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result})


def encode_error(
    request_id: int | None,
    code: int,
    message: str,
    data: JSONValue = None,
) -> bytes:
    error: dict[str, JSONValue] = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return _encode({"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": error})


def encode_ready(package_name: str) -> bytes:
    # Compact separators keep READY_MARKER a literal substring of the line.
    return _encode({"ready": True, "packageName": package_name})


def _decode_object(line: str) -> dict[str, object]:
    try:
        payload = json.loads(line)
    except json.JSONDecodeError as exc:
        raise RpcProtocolError(f"Parse error: {exc.msg}", code=PARSE_ERROR) from exc
    if not isinstance(payload, dict):
        raise RpcProtocolError(
            f"message must be a JSON object, got {type(payload).__name__}",
            code=INVALID_REQUEST,
        )
    return payload


def _message_id(payload: Mapping[str, object]) -> int | None:
    raw_id = payload.get("id")
    if raw_id is None:
        return None
    if isinstance(raw_id, bool) or not isinstance(raw_id, int):
        raise RpcProtocolError(f"id must be an integer or null, got {raw_id!r}")
    return raw_id


def parse_response(line: str) -> RpcResponse:
    """Decode one inbound worker line into an ``RpcResponse``."""

    payload = _decode_object(line)
    if payload.get("jsonrpc") != JSONRPC_VERSION:
        raise RpcProtocolError("jsonrpc must be '2.0'")
    request_id = _message_id(payload)

    has_result = "result" in payload
    has_error = "error" in payload
    if has_result == has_error:
        raise RpcProtocolError(
            "response must carry exactly one of result or error", request_id=request_id
        )

    if has_error:
        error = payload["error"]
        if not isinstance(error, Mapping):
            raise RpcProtocolError("error must be an object", request_id=request_id)
        code = error.get("code")
        message = error.get("message")
        if isinstance(code, bool) or not isinstance(code, int):
            raise RpcProtocolError("error.code must be an integer", request_id=request_id)
        if not isinstance(message, str):
            raise RpcProtocolError("error.message must be a string", request_id=request_id)
        data = cast("JSONValue", error.get("data"))
        return RpcResponse(id=request_id, error=RpcError(code, message, data))

    return RpcResponse(id=request_id, result=cast("JSONValue", payload["result"]))


def parse_request(line: str) -> RpcRequest:
    """Decode one inbound host line into an ``RpcRequest``."""

    payload = _decode_object(line)
    request_id = _message_id(payload)
    if payload.get("jsonrpc") != JSONRPC_VERSION:
        raise RpcProtocolError("jsonrpc must be '2.0'", request_id=request_id)
    method = payload.get("method")
    if not isinstance(method, str) or not method:
        raise RpcProtocolError("method must be a non-empty string", request_id=request_id)
    params = payload.get("params", {})
    if params is None:
        params = {}
    if not isinstance(params, dict):
        raise RpcProtocolError(
            "params must be an object", code=INVALID_PARAMS, request_id=request_id
        )
    return RpcRequest(id=request_id, method=method, params=params)


__all__ = [
    "INTERNAL_ERROR",
    "INVALID_PARAMS",
    "INVALID_REQUEST",
    "JSONRPC_VERSION",
    "LineBuffer",
    "METHOD_NOT_FOUND",
    "PARSE_ERROR",
    "READY_MARKER",
    "RpcError",
    "RpcProtocolError",
    "RpcRequest",
    "RpcResponse",
    "encode_error",
    "encode_ready",
    "encode_request",
    "encode_response",
    "parse_request",
    "parse_response",
]

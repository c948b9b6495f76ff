"""
tools/protocol.py — JSON-RPC 2.0 Tool Protocol

Exposes a ToolDispatcher over JSON-RPC so it can live behind a process
boundary. Two methods:

  tools/list  → {"tools": [{"name", "description", "inputSchema"}]}
  tools/call  → {"content": [{"type": "text", "text": ...}], "isError": bool}
                params: {"name": str, "arguments": object}

Tool failures are results (isError=true), not JSON-RPC errors. JSON-RPC
errors are reserved for protocol problems:

  -32700 parse error · -32600 invalid request · -32601 unknown method
  -32602 invalid params · -32603 internal error

ToolProtocolServer.serve() speaks newline-delimited JSON over an asyncio
StreamReader/StreamWriter pair (stdio or TCP).
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Optional

from taskpilot.observability.logger import get_logger
from taskpilot.tools.dispatcher import ToolDispatcher, render_output
from taskpilot.tools.types import ToolResult

log = get_logger(__name__)

JSONRPC_VERSION = "2.0"


# ─────────────────────────────────────────────────────────────────────────────
# Error codes
# ─────────────────────────────────────────────────────────────────────────────

class ErrorCode(IntEnum):
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603


class Method:
    TOOLS_LIST = "tools/list"
    TOOLS_CALL = "tools/call"


@dataclass(eq=False)
class RpcError(Exception):
    code: ErrorCode
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"code": int(self.code), "message": self.message}


# ─────────────────────────────────────────────────────────────────────────────
# Envelope helpers
# ─────────────────────────────────────────────────────────────────────────────

def make_result(request_id: Any, result: dict[str, Any]) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def make_error(request_id: Any, code: ErrorCode, message: str) -> dict[str, Any]:
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "error": {"code": int(code), "message": message},
    }


def call_result(result: ToolResult) -> dict[str, Any]:
    """Map a ToolResult onto the tools/call result shape."""
    text = render_output(result.output) if result.success else (result.error or result.status.value)
    return {
        "content": [{"type": "text", "text": text}],
        "isError": not result.success,
    }


# ─────────────────────────────────────────────────────────────────────────────
# Server
# ─────────────────────────────────────────────────────────────────────────────

class ToolProtocolServer:
    """
    Usage:
        server = ToolProtocolServer(dispatcher)
        response = await server.handle({"jsonrpc": "2.0", "id": 1, "method": "tools/list"})
        await server.serve(reader, writer)
    """

    def __init__(self, dispatcher: ToolDispatcher):
        self.dispatcher = dispatcher

    async def handle(self, request: Any) -> Optional[dict[str, Any]]:
        """
        Handle one decoded request. Returns the response object, or None for
        a notification (a request without an "id").
        """
        if not isinstance(request, dict) or request.get("jsonrpc") != JSONRPC_VERSION \
                or not isinstance(request.get("method"), str):
            request_id = request.get("id") if isinstance(request, dict) else None
            return make_error(request_id, ErrorCode.INVALID_REQUEST, "Invalid Request")

        is_notification = "id" not in request
        request_id = request.get("id")
        method = request["method"]
        params = request.get("params") or {}

        try:
            result = await self._dispatch(method, params)
        except RpcError as e:
            log.warning("tool_protocol.rpc_error", method=method, code=int(e.code), error=e.message)
            return None if is_notification else make_error(request_id, e.code, e.message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("tool_protocol.internal_error", method=method, error=str(e), exc_info=True)
            return None if is_notification else make_error(
                request_id, ErrorCode.INTERNAL_ERROR, f"{type(e).__name__}: {e}"
            )

        return None if is_notification else make_result(request_id, result)

    async def handle_json(self, raw: str | bytes) -> Optional[str]:
        """Decode, handle and encode one JSON document (a single request or a batch)."""
        try:
            request = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            return json.dumps(make_error(None, ErrorCode.PARSE_ERROR, f"Parse error: {e}"))

        if isinstance(request, list):
            if not request:
                return json.dumps(make_error(None, ErrorCode.INVALID_REQUEST, "Invalid Request"))
            responses = [r for r in [await self.handle(item) for item in request] if r is not None]
            return json.dumps(responses) if responses else None

        response = await self.handle(request)
        return json.dumps(response) if response is not None else None

    async def serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Serve newline-delimited JSON-RPC until EOF on reader."""
        log.info("tool_protocol.serving", tools=len(self.dispatcher.list_available_tools()))
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                if not line.strip():
                    continue
                response = await self.handle_json(line)
                if response is not None:
                    writer.write(response.encode("utf-8") + b"\n")
                    await writer.drain()
        finally:
            log.info("tool_protocol.closed")

    # ── Methods ───────────────────────────────────────────────────────────────

    async def _dispatch(self, method: str, params: Any) -> dict[str, Any]:
        if not isinstance(params, dict):
            raise RpcError(ErrorCode.INVALID_PARAMS, "params must be an object")

        if method == Method.TOOLS_LIST:
            return {"tools": [s.to_protocol() for s in self.dispatcher.list_schemas()]}

        if method == Method.TOOLS_CALL:
            name = params.get("name")
            arguments = params.get("arguments") or {}
            if not isinstance(name, str) or not name:
                raise RpcError(ErrorCode.INVALID_PARAMS, "params.name must be a non-empty string")
            if not isinstance(arguments, dict):
                raise RpcError(ErrorCode.INVALID_PARAMS, "params.arguments must be an object")
            result = await self.dispatcher.execute(name, arguments)
            return call_result(result)

        raise RpcError(ErrorCode.METHOD_NOT_FOUND, f"Method not found: {method}")

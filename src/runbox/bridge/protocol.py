"""JSON-RPC 2.0 wire helpers shared by the bridge server and client.

Every successful result uses the same envelope::

    {"content": [{"type": "text", "text": "..."}], "metadata": {...}}
"""

from __future__ import annotations

from typing import Any

JSONRPC_VERSION = "2.0"
RPC_PATH = "/rpc"

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

METHODS = (
    "fs/read",
    "fs/write",
    "fs/list",
    "fs/exists",
    "fs/stat",
    "exec/run",
    "git/clone",
    "git/status",
    "git/commit",
    "git/push",
    "bridge/health",
    "bridge/logs",
)

# Seconds the server lets each git subcommand run
GIT_TIMEOUTS = {"clone": 60, "status": 10, "commit": 30, "push": 30}


def text_result(*texts: str, metadata: dict[str, Any] | None = None) -> dict[str, Any]:
    result: dict[str, Any] = {"content": [{"type": "text", "text": t} for t in texts]}
    if metadata is not None:
        result["metadata"] = metadata
    return result


def make_request(request_id: int, method: str, params: dict[str, Any]) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "method": method, "params": params}


def make_response(request_id: Any, result: dict[str, Any]) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def make_error(request_id: Any, code: int, message: str) -> dict[str, Any]:
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "error": {"code": code, "message": message},
    }


def first_text(result: dict[str, Any]) -> str | None:
    for item in result.get("content") or []:
        if isinstance(item, dict) and item.get("type") == "text":
            return item.get("text")
    return None

"""
Stdio tool server — the worker side of the bridge protocol.

A tool server is a standalone process that:
1. Reads JSON-RPC requests from stdin
2. Dispatches to registered ToolHandlers (optionally on a thread pool)
3. Writes JSON-RPC responses to stdout

To create a tool server:

    from toolbridge.mcp.server import StdioToolServer, ToolHandler

    class MyTool(ToolHandler):
        name = "my_tool"
        description = "Does something useful"
        parameters = {
            "input": {"type": "string", "description": "The input"},
        }

        def handle(self, params: dict) -> dict:
            return {"result": f"processed: {params['input']}"}

    if __name__ == "__main__":
        server = StdioToolServer()
        server.register(MyTool())
        server.run()
"""

from __future__ import annotations

import json
import logging
import sys
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Any, TextIO

logger = logging.getLogger(__name__)

PARSE_ERROR = -32700
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


class ToolHandler(ABC):
    """
    Base class for a tool implementation.

    Subclasses define what a tool does. The server handles transport.
    """

    name: str = ""
    description: str = ""
    parameters: dict[str, dict] = {}

    @abstractmethod
    def handle(self, params: dict[str, Any]) -> Any:
        """Execute the tool. The return value is JSON-serialized into the reply."""
        ...

    def get_schema(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": {
                "type": "object",
                "properties": self.parameters,
            },
        }


class RpcError(Exception):
    """Raised by dispatch to produce a JSON-RPC error with a specific code."""

    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code


class StdioToolServer:
    """
    JSON-RPC tool server that communicates via stdin/stdout.

    Protocol:
    - One JSON-RPC message per line
    - Methods:
        - "initialize"  -> server info and capabilities
        - "tools/list"  -> {"tools": [schema, ...]}
        - "tools/call"  -> the handler's return value
        - "ping"        -> health check
    - Messages without an id are notifications and get no reply.

    With ``workers > 1`` calls run on a thread pool, so replies may be
    written in a different order than the requests arrived.
    """

    def __init__(self, name: str = "toolbridge-server", version: str = "0.1.0", workers: int = 1):
        self.name = name
        self.version = version
        self._handlers: dict[str, ToolHandler] = {}
        self._write_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=workers) if workers > 1 else None
        self.stdout: TextIO = sys.stdout

    def register(self, handler: ToolHandler) -> None:
        if not handler.name:
            raise ValueError(f"ToolHandler {handler.__class__.__name__} has no name")
        self._handlers[handler.name] = handler
        logger.info(f"Registered tool: {handler.name}")

    def run(self, stdin: TextIO | None = None) -> None:
        """
        Main loop: read requests, dispatch, write responses.

        Blocks until stdin is closed (parent process terminates).
        """
        stdin = stdin or sys.stdin
        logger.info(
            f"Tool server starting with {len(self._handlers)} tools: "
            f"{list(self._handlers.keys())}"
        )

        for line in stdin:
            line = line.strip()
            if not line:
                continue

            try:
                request = json.loads(line)
            except json.JSONDecodeError as e:
                self._write_error(None, PARSE_ERROR, f"Parse error: {e}")
                continue

            if self._executor is not None:
                self._executor.submit(self.handle_message, request)
            else:
                self.handle_message(request)

        if self._executor is not None:
            self._executor.shutdown(wait=True)

    def handle_message(self, request: dict) -> None:
        request_id = request.get("id")
        method = request.get("method", "")
        params = request.get("params") or {}

        try:
            result = self._dispatch(method, params)
        except RpcError as e:
            if request_id is not None:
                self._write_error(request_id, e.code, str(e))
            return
        except Exception as e:
            logger.exception(f"Tool server error in {method}")
            if request_id is not None:
                self._write_error(request_id, INTERNAL_ERROR, str(e))
            return

        if request_id is not None:
            self._write_result(request_id, result)

    def _dispatch(self, method: str, params: dict) -> Any:
        if method == "initialize":
            return {
                "protocolVersion": params.get("protocolVersion", "2024-11-05"),
                "capabilities": {"tools": {}},
                "serverInfo": {"name": self.name, "version": self.version},
            }

        if method.startswith("notifications/"):
            return None

        if method == "ping":
            return {"status": "ok", "tools": list(self._handlers.keys())}

        if method == "tools/list":
            return {"tools": [h.get_schema() for h in self._handlers.values()]}

        if method == "tools/call":
            tool_name = params.get("name", "")
            handler = self._handlers.get(tool_name)
            if not handler:
                raise RpcError(
                    INVALID_PARAMS,
                    f"Unknown tool: '{tool_name}'. Available: {list(self._handlers.keys())}",
                )
            return handler.handle(params.get("arguments") or {})

        raise RpcError(METHOD_NOT_FOUND, f"Unknown method: '{method}'")

    def write_line(self, text: str) -> None:
        """Write one raw line to stdout (also used for diagnostics)."""
        with self._write_lock:
            self.stdout.write(text + "\n")
            self.stdout.flush()

    def _write_result(self, request_id: Any, result: Any) -> None:
        self.write_line(json.dumps({"jsonrpc": "2.0", "id": request_id, "result": result}))

    def _write_error(self, request_id: Any, code: int, message: str) -> None:
        self.write_line(json.dumps({
            "jsonrpc": "2.0",
            "id": request_id,
            "error": {"code": code, "message": message},
        }))

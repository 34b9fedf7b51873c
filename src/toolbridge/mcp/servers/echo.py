"""
Echo tool server — a stub worker for tests and local smoke runs.

Provides: echo, sleep, crash, noise, fail, get_selected_elements.
Calls run on a thread pool, so a slow call does not hold back a fast one.

Environment:
    ECHO_BANNER          print this non-protocol line to stdout at startup
    ECHO_EXIT_ON_START   exit immediately with this code

Run as:
    python -m toolbridge.mcp.servers.echo
"""

from __future__ import annotations

import logging
import os
import sys
import time
from typing import Any

from toolbridge.mcp.server import StdioToolServer, ToolHandler

logger = logging.getLogger(__name__)


class EchoTool(ToolHandler):
    name = "echo"
    description = "Return the arguments unchanged."
    parameters = {
        "marker": {"type": "string", "description": "Any value to echo back"},
    }

    def handle(self, params: dict[str, Any]) -> dict:
        return dict(params)


class SleepTool(ToolHandler):
    name = "sleep"
    description = "Wait for the given number of seconds, then echo the marker."
    parameters = {
        "seconds": {"type": "number", "description": "How long to wait"},
        "marker": {"type": "string", "description": "Value to return"},
    }

    def handle(self, params: dict[str, Any]) -> dict:
        seconds = float(params.get("seconds", 0))
        time.sleep(seconds)
        return {"marker": params.get("marker"), "slept": seconds}


class CrashTool(ToolHandler):
    name = "crash"
    description = "Terminate the worker process abruptly."
    parameters = {
        "code": {"type": "integer", "description": "Exit code"},
    }

    def handle(self, params: dict[str, Any]) -> dict:
        code = int(params.get("code", 3))
        sys.stderr.write(f"crash requested with code {code}\n")
        sys.stderr.flush()
        os._exit(code)


class NoiseTool(ToolHandler):
    name = "noise"
    description = "Write a non-protocol line to stdout before replying."
    parameters = {
        "text": {"type": "string", "description": "Line to print"},
    }

    def __init__(self, server: StdioToolServer):
        self.server = server

    def handle(self, params: dict[str, Any]) -> dict:
        self.server.write_line(params.get("text", "progress: working..."))
        return {"ok": True}


class FailTool(ToolHandler):
    name = "fail"
    description = "Raise an error inside the tool."
    parameters = {
        "message": {"type": "string", "description": "Error message"},
    }

    def handle(self, params: dict[str, Any]) -> dict:
        raise RuntimeError(params.get("message", "tool failed"))


class SelectedElementsTool(ToolHandler):
    name = "get_selected_elements"
    description = "Get currently selected elements."
    parameters = {
        "limit": {"type": "number", "description": "Maximum number of elements"},
    }

    def handle(self, params: dict[str, Any]) -> dict:
        return {"elements": []}


def main():
    logging.basicConfig(level=logging.INFO, stream=sys.stderr, format="%(levelname)s: %(message)s")

    exit_code = os.environ.get("ECHO_EXIT_ON_START")
    if exit_code:
        sys.exit(int(exit_code))

    server = StdioToolServer(name="echo", workers=8)
    banner = os.environ.get("ECHO_BANNER")
    if banner:
        server.write_line(banner)

    server.register(EchoTool())
    server.register(SleepTool())
    server.register(CrashTool())
    server.register(NoiseTool(server))
    server.register(FailTool())
    server.register(SelectedElementsTool())
    server.run()


if __name__ == "__main__":
    main()

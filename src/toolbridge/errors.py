"""
Caller-facing error taxonomy.

Every failure surfaced by the bridge is a BridgeError subclass with a
stable ``kind`` string, so an HTTP adapter can pick a status code
without inspecting the message text.
"""

from __future__ import annotations

from typing import Any


class BridgeError(Exception):
    """Root of all bridge errors."""
    kind: str = "bridge_error"
    status_hint: int = 500

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": str(self)}


class SpawnError(BridgeError):
    """The worker executable could not be launched or failed its handshake."""
    kind = "spawn_error"
    status_hint = 503


class MalformedFrame(BridgeError):
    """A delimited frame could not be parsed as structured data."""
    kind = "malformed_frame"
    status_hint = 502

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw


class BridgeTimeoutError(BridgeError, TimeoutError):
    """No reply arrived within the caller's timeout. The worker may still be healthy."""
    kind = "timeout"
    status_hint = 504


class WorkerUnavailable(BridgeError):
    """The worker is not running, crashed, or exhausted its restart budget."""
    kind = "worker_unavailable"
    status_hint = 503


class InvalidRequest(BridgeError, ValueError):
    kind = "invalid_request"
    status_hint = 400


class Overloaded(BridgeError):
    """The in-flight request bound is exhausted."""
    kind = "overloaded"
    status_hint = 429


class ToolCallError(BridgeError):
    """The worker answered with a JSON-RPC error payload."""
    kind = "tool_error"
    status_hint = 502

    def __init__(self, tool_name: str, error: dict | None):
        error = error or {}
        self.tool_name = tool_name
        self.code: int | None = error.get("code")
        self.data: Any = error.get("data")
        self.error_message: str = error.get("message", "unknown error")
        super().__init__(f"Tool call failed ({tool_name}): {self.error_message}")

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["code"] = self.code
        if self.data is not None:
            payload["data"] = self.data
        return payload

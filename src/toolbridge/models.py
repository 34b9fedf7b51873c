"""
Data models for the tool bridge.

Enums, dataclasses, and event types shared by the codec, router,
supervisor and facade.
"""

from __future__ import annotations

import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


# ── Enums ────────────────────────────────────────────────────

class WorkerState(str, Enum):
    STARTING = "Starting"
    READY = "Ready"
    DEGRADED = "Degraded"
    TERMINATED = "Terminated"


class ReplyKind(str, Enum):
    RESULT = "result"
    ERROR = "error"
    DIAGNOSTIC = "diagnostic"
    MALFORMED = "malformed"


# ── Core data models ─────────────────────────────────────────

@dataclass
class ToolDescriptor:
    """Metadata for one invocable tool. The input schema is opaque to the bridge."""
    name: str
    description: str = ""
    input_schema: dict = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    @classmethod
    def from_dict(cls, data: dict) -> ToolDescriptor:
        """
        Build a descriptor from a worker or config entry.

        Accepts MCP's ``inputSchema`` as well as ``input_schema`` and the
        older ``parameters`` key.
        """
        if not isinstance(data, dict):
            raise ValueError(f"Tool descriptor must be a mapping, got {type(data).__name__}")
        name = data.get("name")
        if not name:
            raise ValueError("Tool descriptor requires a 'name' field")

        schema = (
            data.get("inputSchema")
            or data.get("input_schema")
            or data.get("parameters")
            or {"type": "object", "properties": {}}
        )
        return cls(
            name=name,
            description=data.get("description", ""),
            input_schema=schema,
        )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


@dataclass
class Reply:
    """One decoded unit of worker output."""
    kind: ReplyKind
    id: int | str | None = None
    result: Any = None
    error: dict | None = None
    raw: str = ""
    message: dict | None = None  # parsed body of JSON diagnostics

    @property
    def is_error(self) -> bool:
        return self.kind == ReplyKind.ERROR

    @property
    def correlated(self) -> bool:
        return self.kind in (ReplyKind.RESULT, ReplyKind.ERROR)


@dataclass
class PendingRequest:
    """Bookkeeping for one in-flight request. The future is fulfilled exactly once."""
    id: int
    method: str
    params: dict
    created_at: float = field(default_factory=time.monotonic)
    future: Future = field(default_factory=Future)

    @property
    def tool_name(self) -> str | None:
        if self.method == "tools/call":
            return self.params.get("name")
        return None

    @property
    def age(self) -> float:
        return time.monotonic() - self.created_at


@dataclass
class WorkerCrashed:
    """Internal event broadcast when the worker exits without being asked to."""
    pid: int | None
    returncode: int | None
    stderr_tail: list[str] = field(default_factory=list)

    @property
    def signaled(self) -> bool:
        return self.returncode is not None and self.returncode < 0

    def describe(self) -> str:
        if self.signaled:
            how = f"killed by signal {-self.returncode}"
        else:
            how = f"exited with code {self.returncode}"
        text = f"worker pid={self.pid} {how}"
        if self.stderr_tail:
            text += f"; stderr: {self.stderr_tail[-1][:200]}"
        return text

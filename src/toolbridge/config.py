"""
Bridge configuration — declarative YAML-based worker definitions.

A bridge config declares which worker to launch and how to treat it:
  - launch command, environment, working directory
  - timeouts, in-flight bound, restart policy
  - optional static tool catalog (otherwise queried from the worker)

Example config (bridge.yaml):
    command: ["node", "./build/index.js"]
    handshake: true
    request_timeout: 30
    max_in_flight: 16
    restart:
      max_restarts: 3
      window: 60
    tools:
      - name: get_selected_elements
        description: Get currently selected elements
        inputSchema:
          type: object
          properties:
            limit: {type: number}
"""

from __future__ import annotations

import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .models import ToolDescriptor

logger = logging.getLogger(__name__)

DEFAULT_PROTOCOL_VERSION = "2024-11-05"


@dataclass
class RestartPolicy:
    """At most ``max_restarts`` automatic restarts within a rolling ``window`` (seconds)."""
    enabled: bool = True
    max_restarts: int = 3
    window: float = 60.0
    delay: float = 0.5

    @classmethod
    def from_dict(cls, data: dict | None) -> RestartPolicy:
        data = data or {}
        policy = cls(
            enabled=bool(data.get("enabled", True)),
            max_restarts=int(data.get("max_restarts", 3)),
            window=float(data.get("window", 60.0)),
            delay=float(data.get("delay", 0.5)),
        )
        if policy.max_restarts < 0:
            raise ValueError("restart.max_restarts must be >= 0")
        if policy.window <= 0:
            raise ValueError("restart.window must be > 0")
        return policy


@dataclass
class BridgeConfig:
    """
    Everything needed to run one bridge instance.

    Fields:
        command: Command to launch the worker (e.g., ["node", "./build/index.js"])
        env: Extra environment variables, merged over the parent environment
        cwd: Working directory for the worker
        request_timeout: Default seconds a caller waits for its reply
        max_in_flight: Bound on concurrently pending requests (excess -> Overloaded)
        serialize_dispatch: Allow only one request at a time at the worker
        handshake: Perform the MCP initialize handshake before going Ready
        grace_period: Seconds to wait for exit after closing stdin on graceful stop
        max_frame_bytes: Longest undelimited line accepted from the worker
        restart: Automatic restart policy
        tools: Static tool catalog; None means ask the worker via tools/list
    """
    command: list[str]
    env: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None

    request_timeout: float = 30.0
    max_in_flight: int = 32
    serialize_dispatch: bool = False

    handshake: bool = False
    protocol_version: str = DEFAULT_PROTOCOL_VERSION
    client_name: str = "toolbridge"
    client_version: str = "0.1.0"

    grace_period: float = 5.0
    max_frame_bytes: int = 16 * 1024 * 1024

    restart: RestartPolicy = field(default_factory=RestartPolicy)
    tools: list[ToolDescriptor] | None = None

    def __post_init__(self):
        if isinstance(self.command, str):
            self.command = shlex.split(self.command)
        if not self.command:
            raise ValueError("Bridge config requires a non-empty 'command'")
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be > 0")
        if self.max_in_flight < 1:
            raise ValueError("max_in_flight must be >= 1")
        if self.grace_period < 0:
            raise ValueError("grace_period must be >= 0")

    @classmethod
    def from_dict(cls, data: dict) -> BridgeConfig:
        """Create a BridgeConfig from a plain dict."""
        if "command" not in data:
            raise ValueError("Bridge config requires a 'command' field")

        tools = data.get("tools")
        return cls(
            command=data["command"],
            env={str(k): str(v) for k, v in (data.get("env") or {}).items()},
            cwd=data.get("cwd"),
            request_timeout=float(data.get("request_timeout", 30.0)),
            max_in_flight=int(data.get("max_in_flight", 32)),
            serialize_dispatch=bool(data.get("serialize_dispatch", False)),
            handshake=bool(data.get("handshake", False)),
            protocol_version=data.get("protocol_version", DEFAULT_PROTOCOL_VERSION),
            client_name=data.get("client_name", "toolbridge"),
            client_version=data.get("client_version", "0.1.0"),
            grace_period=float(data.get("grace_period", 5.0)),
            max_frame_bytes=int(data.get("max_frame_bytes", 16 * 1024 * 1024)),
            restart=RestartPolicy.from_dict(data.get("restart")),
            tools=[ToolDescriptor.from_dict(t) for t in tools] if tools is not None else None,
        )

    @classmethod
    def from_yaml(cls, path: str | Path) -> BridgeConfig:
        """Load a bridge config from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Bridge config not found: {path}")

        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)

        if not isinstance(data, dict):
            raise ValueError(f"Bridge config must be a YAML mapping, got {type(data).__name__}")

        logger.info(f"Loaded bridge config from {path}")
        return cls.from_dict(data)

    def process_env(self) -> dict[str, str]:
        """Environment for the worker: parent environment plus overrides."""
        return {**os.environ, **self.env}

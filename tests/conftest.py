"""
Shared fixtures: an echo-worker config factory and a bridge factory
that always stops what it started.
"""

import sys
import time
from pathlib import Path

import pytest

from toolbridge import BridgeConfig, ToolBridge

SRC_DIR = Path(__file__).parent.parent / "src"


def _echo_config(env: dict | None = None, **overrides) -> BridgeConfig:
    data = {
        "command": [sys.executable, "-m", "toolbridge.mcp.servers.echo"],
        "env": {"PYTHONPATH": str(SRC_DIR), **(env or {})},
        "request_timeout": 10,
        "grace_period": 2,
        "restart": {"delay": 0},
    }
    data.update(overrides)
    return BridgeConfig.from_dict(data)


@pytest.fixture
def echo_config():
    """Factory: echo_config(env=..., **config_fields) -> BridgeConfig."""
    return _echo_config


@pytest.fixture
def make_bridge():
    """Factory for started bridges; every bridge is stopped at teardown."""
    bridges = []

    def _make(config: BridgeConfig | None = None, start: bool = True, **overrides) -> ToolBridge:
        bridge = ToolBridge(config or _echo_config(**overrides))
        bridges.append(bridge)
        if start:
            bridge.start()
        return bridge

    yield _make

    for bridge in bridges:
        bridge.stop(graceful=False)


@pytest.fixture
def wait_until():
    """Poll a predicate until it holds or the timeout passes."""

    def _wait(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()

    return _wait

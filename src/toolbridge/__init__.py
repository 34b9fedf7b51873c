"""
Tool Bridge — a synchronous front for a long-lived tool-server process.

Usage:
    from toolbridge import BridgeConfig, ToolBridge

    config = BridgeConfig.from_yaml("bridge.yaml")
    bridge = ToolBridge(config).start()

    tools = bridge.list_tools()
    result = bridge.invoke("get_selected_elements", {"limit": 5})
    state = bridge.health()["state"]

    bridge.stop()

    # Or expose the worker's tools to a LangChain agent
    from toolbridge.tools import bridge_tools
    lc_tools = bridge_tools(bridge)
"""

from .models import (
    PendingRequest,
    Reply,
    ReplyKind,
    ToolDescriptor,
    WorkerCrashed,
    WorkerState,
)
from .errors import (
    BridgeError,
    BridgeTimeoutError,
    InvalidRequest,
    MalformedFrame,
    Overloaded,
    SpawnError,
    ToolCallError,
    WorkerUnavailable,
)
from .config import BridgeConfig, RestartPolicy
from .bridge import ToolBridge

__version__ = "0.1.0"

__all__ = [
    # Core
    "ToolBridge",
    # Config
    "BridgeConfig",
    "RestartPolicy",
    # Models
    "PendingRequest",
    "Reply",
    "ToolDescriptor",
    "WorkerCrashed",
    # Enums
    "ReplyKind",
    "WorkerState",
    # Errors
    "BridgeError",
    "BridgeTimeoutError",
    "InvalidRequest",
    "MalformedFrame",
    "Overloaded",
    "SpawnError",
    "ToolCallError",
    "WorkerUnavailable",
]

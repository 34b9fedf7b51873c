"""
Worker channel infrastructure.

Provides:
- codec — newline-delimited JSON-RPC framing (encode / pure decode)
- WorkerSupervisor — worker process lifecycle and restart policy
- CorrelationRouter — id-based matching of replies to waiting callers
- StdioToolServer / ToolHandler — framework for building worker processes
"""

from .codec import FrameDecoder, JsonRpcRequest, decode, encode, encode_notification
from .router import CorrelationRouter
from .server import StdioToolServer, ToolHandler
from .supervisor import WorkerProcess, WorkerSupervisor

__all__ = [
    "FrameDecoder",
    "JsonRpcRequest",
    "decode",
    "encode",
    "encode_notification",
    "CorrelationRouter",
    "StdioToolServer",
    "ToolHandler",
    "WorkerProcess",
    "WorkerSupervisor",
]

"""
Tool bridge — the synchronous contract consumed by the HTTP adapter.

Usage:
    config = BridgeConfig(command=["node", "./build/index.js"], handshake=True)
    with ToolBridge(config) as bridge:
        tools = bridge.list_tools()
        result = bridge.invoke("get_selected_elements", {"limit": 5})
        print(bridge.health())

One bridge owns one worker process. Create it once, start() it, and
inject it wherever requests are served; stop() it on shutdown.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any

from .config import BridgeConfig
from .errors import BridgeTimeoutError, InvalidRequest, MalformedFrame, SpawnError, ToolCallError
from .mcp.codec import encode_notification
from .mcp.router import CorrelationRouter
from .mcp.supervisor import WorkerSupervisor
from .models import ToolDescriptor, WorkerCrashed

logger = logging.getLogger(__name__)


class ToolBridge:
    """
    Composes the supervisor, codec and router behind three operations:
    list_tools(), invoke() and health().
    """

    def __init__(self, config: BridgeConfig):
        self.config = config
        self.server_info: dict | None = None

        self._tools_lock = threading.Lock()
        self._tools_cache: list[ToolDescriptor] | None = None

        self.supervisor = WorkerSupervisor(
            config,
            on_output=self._on_output,
            on_eof=self._on_eof,
            on_crash=self._on_crash,
            on_session=self._on_session,
            handshake=self._handshake if config.handshake else None,
        )
        self.router = CorrelationRouter(
            self.supervisor.write,
            max_in_flight=config.max_in_flight,
            default_timeout=config.request_timeout,
            serialize_dispatch=config.serialize_dispatch,
            max_frame_bytes=config.max_frame_bytes,
        )

    # ── Lifecycle ────────────────────────────────────────────

    def start(self) -> ToolBridge:
        self.supervisor.start()
        return self

    def stop(self, graceful: bool = True) -> None:
        self.supervisor.stop(graceful=graceful)
        self.router.fail_all("Bridge stopped")

    def restart(self) -> None:
        """Operator-triggered restart; also the way out of an exhausted restart budget."""
        self.router.fail_all("Worker restarting")
        self.supervisor.restart()

    def __enter__(self) -> ToolBridge:
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    # ── Public contract ──────────────────────────────────────

    def list_tools(self, timeout: float | None = None) -> list[ToolDescriptor]:
        """
        Return the tool catalog.

        Served from the static catalog when one is configured, otherwise
        fetched with one tools/list round trip and cached until the
        worker session changes. Time spent waiting behind a concurrent
        discovery counts against ``timeout``.
        """
        if self.config.tools is not None:
            return list(self.config.tools)

        timeout = self.config.request_timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        if not self._tools_lock.acquire(timeout=timeout):
            raise BridgeTimeoutError(
                f"tools/list not answered within {timeout}s (discovery already in progress)"
            )
        try:
            if self._tools_cache is not None:
                return list(self._tools_cache)

            session = self.supervisor.session
            remaining = max(0.0, deadline - time.monotonic())
            reply = self.router.send("tools/list", {}, timeout=remaining)
            if reply.is_error:
                raise ToolCallError("tools/list", reply.error)

            tools = _parse_tool_list(reply.result)
            if self.supervisor.session == session:
                self._tools_cache = tools
            logger.info(f"Discovered {len(tools)} tools: {[t.name for t in tools]}")
            return list(tools)
        finally:
            self._tools_lock.release()

    def invoke(
        self,
        tool_name: str,
        arguments: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Call a tool and return its result payload verbatim."""
        if not isinstance(tool_name, str) or not tool_name.strip():
            raise InvalidRequest("toolName is required")
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise InvalidRequest(
                f"arguments must be an object, got {type(arguments).__name__}"
            )

        reply = self.router.send(
            "tools/call",
            {"name": tool_name, "arguments": arguments},
            timeout=timeout,
        )
        if reply.is_error:
            raise ToolCallError(tool_name, reply.error)
        return reply.result

    def health(self) -> dict:
        """Current worker state. No side effects."""
        return {
            "state": self.supervisor.state.value,
            "pid": self.supervisor.pid,
            "session": self.supervisor.session,
            "restarts": self.supervisor.restart_count,
            "in_flight": self.router.in_flight,
        }

    # ── Supervisor callbacks ─────────────────────────────────

    def _on_output(self, chunk: bytes) -> None:
        self.router.feed(chunk)

    def _on_eof(self) -> None:
        self.router.flush()

    def _on_session(self, session: int) -> None:
        self.router.reset_decoder()
        self._tools_cache = None
        self.server_info = None

    def _on_crash(self, event: WorkerCrashed) -> None:
        self.router.fail_all(f"Worker unavailable: {event.describe()}")
        self._tools_cache = None

    def _handshake(self) -> None:
        reply = self.router.send(
            "initialize",
            {
                "protocolVersion": self.config.protocol_version,
                "capabilities": {},
                "clientInfo": {
                    "name": self.config.client_name,
                    "version": self.config.client_version,
                },
            },
            writer=self.supervisor.write_startup,
        )
        if reply.is_error:
            raise SpawnError(f"initialize rejected: {reply.error}")

        self.server_info = reply.result if isinstance(reply.result, dict) else {}
        self.supervisor.write_startup(encode_notification("notifications/initialized"))
        logger.info(f"Handshake complete: {self.server_info.get('serverInfo', {})}")


def _parse_tool_list(result: Any) -> list[ToolDescriptor]:
    if isinstance(result, dict):
        result = result.get("tools", [])
    if not isinstance(result, list):
        raise MalformedFrame(f"tools/list returned {type(result).__name__}, expected a list")
    try:
        return [ToolDescriptor.from_dict(entry) for entry in result]
    except ValueError as e:
        raise MalformedFrame(f"Invalid tool descriptor in tools/list reply: {e}") from e

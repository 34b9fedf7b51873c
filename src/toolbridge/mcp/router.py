"""
Correlation router — matches worker replies to waiting callers.

Each outbound request gets a fresh integer id and a PendingRequest
whose future is fulfilled exactly once: by the matching reply, by a
worker crash, or abandoned on timeout. Replies are matched by id,
never by position, so the worker may answer in any order.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable

from ..errors import BridgeTimeoutError, MalformedFrame, Overloaded, WorkerUnavailable
from ..models import PendingRequest, Reply, ReplyKind
from .codec import DEFAULT_MAX_FRAME_BYTES, FrameDecoder, encode

logger = logging.getLogger(__name__)
worker_logger = logging.getLogger("toolbridge.worker")


def _log_diagnostic(reply: Reply) -> None:
    worker_logger.info(reply.raw)


class CorrelationRouter:
    """
    Multiplexes concurrent callers onto one worker channel.

    The id -> PendingRequest map is the only shared mutable state and
    is guarded by a single lock. The decoder is fed only from the
    supervisor's stdout reader thread.
    """

    def __init__(
        self,
        writer: Callable[[bytes], None],
        max_in_flight: int = 32,
        default_timeout: float = 30.0,
        serialize_dispatch: bool = False,
        max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES,
        on_diagnostic: Callable[[Reply], None] | None = None,
    ):
        self._writer = writer
        self.max_in_flight = max_in_flight
        self.default_timeout = default_timeout
        self.on_diagnostic = on_diagnostic or _log_diagnostic

        self._lock = threading.Lock()
        self._pending: dict[int | str, PendingRequest] = {}
        self._ids = itertools.count(1)
        self._decoder = FrameDecoder(max_frame_bytes)
        self._dispatch_lock = threading.Lock() if serialize_dispatch else None

        self.unmatched_count = 0
        self.malformed_count = 0
        self.diagnostic_count = 0

    # ── Outbound ─────────────────────────────────────────────

    def send(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
        writer: Callable[[bytes], None] | None = None,
    ) -> Reply:
        """
        Send a request and block until its reply arrives.

        Returns the correlated Reply (result or error payload).
        Raises Overloaded, WorkerUnavailable, BridgeTimeoutError or MalformedFrame.
        """
        timeout = self.default_timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        pending = self._register(method, params or {})

        try:
            if self._dispatch_lock is None:
                return self._dispatch(pending, deadline, timeout, writer)

            if not self._dispatch_lock.acquire(timeout=timeout):
                raise BridgeTimeoutError(
                    f"Request {pending.id} ({method}) not dispatched within {timeout}s"
                )
            try:
                return self._dispatch(pending, deadline, timeout, writer)
            finally:
                self._dispatch_lock.release()
        finally:
            with self._lock:
                self._pending.pop(pending.id, None)

    def _register(self, method: str, params: dict) -> PendingRequest:
        with self._lock:
            if len(self._pending) >= self.max_in_flight:
                raise Overloaded(
                    f"{len(self._pending)} requests in flight (limit {self.max_in_flight})"
                )
            request_id = next(self._ids)
            pending = PendingRequest(id=request_id, method=method, params=params)
            self._pending[request_id] = pending
        return pending

    def _dispatch(
        self,
        pending: PendingRequest,
        deadline: float,
        timeout: float,
        writer: Callable[[bytes], None] | None,
    ) -> Reply:
        if pending.future.done():
            # Failed (e.g. by a crash) while queued behind the dispatch lock.
            return pending.future.result()

        frame = encode(pending.id, pending.method, pending.params)
        (writer or self._writer)(frame)
        logger.debug(f"-> {pending.method} id={pending.id}")

        remaining = max(0.0, deadline - time.monotonic())
        try:
            return pending.future.result(timeout=remaining)
        except FutureTimeoutError:
            with self._lock:
                self._pending.pop(pending.id, None)
                resolved = pending.future.done()
            if resolved:
                return pending.future.result()
            label = pending.tool_name or pending.method
            raise BridgeTimeoutError(
                f"No reply to request {pending.id} ({label}) within {timeout}s"
            ) from None

    # ── Inbound ──────────────────────────────────────────────

    def feed(self, chunk: bytes) -> None:
        """Decode a chunk of worker stdout and route every reply in it."""
        for reply in self._decoder.feed(chunk):
            self.on_reply(reply)

    def flush(self) -> None:
        """Route whatever the decoder still holds as a final line (worker stdout EOF)."""
        for reply in self._decoder.flush():
            self.on_reply(reply)

    def on_reply(self, reply: Reply) -> None:
        """Resolve the matching PendingRequest. Never raises into the read loop."""
        try:
            self._route(reply)
        except Exception:
            logger.exception(f"Failed to route reply: {reply.raw[:200]}")

    def _route(self, reply: Reply) -> None:
        if reply.kind == ReplyKind.DIAGNOSTIC:
            self.diagnostic_count += 1
            self.on_diagnostic(reply)
            return

        if reply.kind == ReplyKind.MALFORMED:
            self.malformed_count += 1
            message = (reply.error or {}).get("message", "malformed frame")
            error = MalformedFrame(f"Malformed reply to request {reply.id}: {message}", raw=reply.raw)
            if reply.id is None or not self._resolve(reply.id, error=error):
                logger.warning(f"Discarding malformed frame: {message}: {reply.raw[:200]}")
            return

        if not self._resolve(reply.id, reply=reply):
            self.unmatched_count += 1
            logger.warning(f"Discarding unmatched reply id={reply.id!r}")
            return

        logger.debug(f"<- id={reply.id} ({reply.kind.value})")

    def _resolve(
        self,
        request_id: int | str,
        reply: Reply | None = None,
        error: Exception | None = None,
    ) -> bool:
        # Pop and fulfil under one lock so a timing-out caller sees a consistent future.
        with self._lock:
            pending = self._pending.pop(request_id, None)
            if pending is None:
                return False
            if error is not None:
                pending.future.set_exception(error)
            else:
                pending.future.set_result(reply)
        return True

    # ── Session control ──────────────────────────────────────

    def fail_all(self, reason: str) -> int:
        """Resolve every pending request with WorkerUnavailable. Returns how many."""
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
            for request in pending:
                request.future.set_exception(WorkerUnavailable(reason))

        if pending:
            logger.warning(f"Failed {len(pending)} pending request(s): {reason}")
        return len(pending)

    def reset_decoder(self) -> None:
        """Drop partial bytes left over from a previous worker session."""
        self._decoder.reset()

    @property
    def in_flight(self) -> int:
        with self._lock:
            return len(self._pending)

    def pending_ids(self) -> list[int | str]:
        with self._lock:
            return list(self._pending.keys())

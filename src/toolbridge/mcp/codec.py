"""
Frame codec for JSON-RPC over stdio.

One line = one message. Requests are serialized with ``json.dumps``,
which escapes every control character inside strings, so an encoded
frame can never contain a raw newline before its terminator.

Decoding is a pure function of (buffered bytes, new chunk) so it can
be exercised with injected byte sequences; FrameDecoder wraps it for
the reader thread.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from ..errors import MalformedFrame
from ..models import Reply, ReplyKind

logger = logging.getLogger(__name__)

DELIMITER = b"\n"
DEFAULT_MAX_FRAME_BYTES = 16 * 1024 * 1024


@dataclass
class JsonRpcRequest:
    """JSON-RPC 2.0 request (or notification when id is None)."""
    method: str
    params: dict[str, Any]
    id: int | str | None = None

    def to_json(self) -> str:
        message: dict[str, Any] = {"jsonrpc": "2.0", "method": self.method}
        if self.id is not None:
            message["id"] = self.id
        message["params"] = self.params
        return json.dumps(message, separators=(",", ":"), ensure_ascii=False)

    def to_frame(self) -> bytes:
        frame = self.to_json().encode("utf-8")
        if DELIMITER in frame:
            raise MalformedFrame(f"Encoded frame for {self.method!r} contains a raw delimiter")
        return frame + DELIMITER


def encode(correlation_id: int | str, method: str, payload: dict[str, Any] | None) -> bytes:
    """Encode one request as a newline-terminated frame."""
    return JsonRpcRequest(method=method, params=payload or {}, id=correlation_id).to_frame()


def encode_notification(method: str, payload: dict[str, Any] | None = None) -> bytes:
    """Encode a notification (no id, no reply expected)."""
    return JsonRpcRequest(method=method, params=payload or {}).to_frame()


def parse_line(line: bytes) -> Reply | None:
    """
    Classify one delimited line.

    Returns None for blank lines. Non-JSON text and JSON messages that
    cannot be correlated (notifications, worker-initiated requests,
    errors with a null id) come back as DIAGNOSTIC replies; text that
    opens like a JSON object but does not parse comes back as MALFORMED.
    """
    text = line.decode("utf-8", errors="replace").strip()
    if not text:
        return None

    if not text.startswith("{"):
        return Reply(kind=ReplyKind.DIAGNOSTIC, raw=text)

    try:
        message = json.loads(text)
    except json.JSONDecodeError as e:
        return Reply(
            kind=ReplyKind.MALFORMED,
            raw=text,
            error={"message": f"Invalid JSON: {e}"},
        )

    if not isinstance(message, dict):
        return Reply(kind=ReplyKind.MALFORMED, raw=text, error={"message": "Frame is not an object"})

    msg_id = message.get("id")
    if msg_id is None or "method" in message:
        return Reply(kind=ReplyKind.DIAGNOSTIC, raw=text, message=message)

    if message.get("error") is not None:
        error = message["error"]
        if not isinstance(error, dict):
            error = {"message": str(error)}
        return Reply(kind=ReplyKind.ERROR, id=msg_id, error=error, raw=text)

    if "result" in message:
        return Reply(kind=ReplyKind.RESULT, id=msg_id, result=message["result"], raw=text)

    return Reply(
        kind=ReplyKind.MALFORMED,
        id=msg_id,
        raw=text,
        error={"message": "Reply carries neither 'result' nor 'error'"},
    )


def decode(
    buffer: bytes,
    chunk: bytes,
    max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES,
) -> tuple[list[Reply], bytes]:
    """
    Split accumulated bytes into complete replies.

    ``buffer`` is the leftover of a previous call and holds no delimiter,
    so only ``chunk`` is searched; a chunk without one just extends the
    leftover. Returns the replies found in ``buffer + chunk`` and the
    trailing bytes that do not yet form a complete line. An undelimited
    tail longer than ``max_frame_bytes`` is reported as MALFORMED and dropped.
    """
    replies: list[Reply] = []

    if DELIMITER in chunk:
        *lines, leftover = (buffer + chunk).split(DELIMITER)
        for line in lines:
            reply = parse_line(line)
            if reply is not None:
                replies.append(reply)
    else:
        leftover = buffer + chunk

    if len(leftover) > max_frame_bytes:
        replies.append(Reply(
            kind=ReplyKind.MALFORMED,
            raw=leftover[:200].decode("utf-8", errors="replace"),
            error={"message": f"Frame exceeds {max_frame_bytes} bytes without a delimiter"},
        ))
        leftover = b""

    return replies, leftover


class FrameDecoder:
    """
    Stateful wrapper around decode() owned by a single reader thread.

    Undelimited chunks are kept as a list and joined once, when the
    chunk that completes the line arrives.
    """

    def __init__(self, max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES):
        self.max_frame_bytes = max_frame_bytes
        self._parts: list[bytes] = []
        self._size = 0

    def feed(self, chunk: bytes) -> list[Reply]:
        if DELIMITER not in chunk and self._size + len(chunk) <= self.max_frame_bytes:
            if chunk:
                self._parts.append(chunk)
                self._size += len(chunk)
            return []
        return self._decode(chunk)

    def flush(self) -> list[Reply]:
        """Treat whatever is buffered as a final line (used at EOF)."""
        if not self._size:
            return []
        return self._decode(DELIMITER)

    def reset(self) -> None:
        self._parts = []
        self._size = 0

    def _decode(self, chunk: bytes) -> list[Reply]:
        replies, leftover = decode(b"".join(self._parts), chunk, self.max_frame_bytes)
        self._parts = [leftover] if leftover else []
        self._size = len(leftover)
        return replies

    @property
    def pending_bytes(self) -> int:
        return self._size

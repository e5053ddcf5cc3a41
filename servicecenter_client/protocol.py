# =============================================================================
# Service Center Client -- Wire Protocol Codec
# =============================================================================
#
# Outgoing (client -> server):
#   JSON text: {"t": type, "id": request_id, "p": payload, "ts": ..., "v": 1}
#
# Incoming (server -> client):
#   Text:   JSON object ("rid" names the request it answers), or a
#           "batch" object wrapping several messages
#   Binary: C: (zlib), M: (msgpack), raw zlib (0x78), plain UTF-8 JSON
# =============================================================================

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from ._logging import logger
from .compression import CompressionHandler
from .constants import (
    MAX_INBOUND_MESSAGE_SIZE,
    MSG_BATCH,
    PREFIX_COMPRESSED,
    PREFIX_MSGPACK,
    PROTOCOL_VERSION,
    ZLIB_MAGIC,
    ZLIB_METHODS,
)
from .errors import ServiceCenterProtocolError

try:
    import orjson

    def _json_loads(data: str | bytes) -> Any:
        return orjson.loads(data)

    def _json_dumps(obj: Any) -> str:
        return orjson.dumps(obj).decode()

except ImportError:

    def _json_loads(data: str | bytes) -> Any:
        return json.loads(data)

    def _json_dumps(obj: Any) -> str:
        return json.dumps(obj, separators=(",", ":"))

try:
    import msgpack
except ImportError:
    msgpack = None


@dataclass(frozen=True, slots=True)
class ClientMessage:
    """An outgoing request. ``request_id`` correlates the server's response."""

    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass(frozen=True, slots=True)
class ServerMessage:
    """A decoded inbound message.

    Attributes:
        type: Message type, e.g. ``"service_snapshot"``.
        payload: Message body.
        request_id: Id of the request this answers, ``None`` for pushes.
        timestamp: Server timestamp, if sent.
        version: Wire protocol version.
    """

    type: str
    payload: dict[str, Any]
    request_id: str | None = None
    timestamp: str | None = None
    version: int = PROTOCOL_VERSION


class MessageCodec:
    """Encode client requests and decode server messages.

    Args:
        compression: Zlib handler for compressed frames.
        max_message_size: Frames (and inflated payloads) above this size
            are dropped.
    """

    def __init__(
        self,
        compression: CompressionHandler | None = None,
        *,
        max_message_size: int = MAX_INBOUND_MESSAGE_SIZE,
    ) -> None:
        self._compression = compression or CompressionHandler()
        self._max_message_size = max_message_size

    def encode(self, message: ClientMessage) -> str:
        try:
            return _json_dumps(
                {
                    "t": message.type,
                    "id": message.request_id,
                    "p": message.payload,
                    "ts": datetime.now(UTC).isoformat(),
                    "v": PROTOCOL_VERSION,
                }
            )
        except TypeError as exc:
            raise ServiceCenterProtocolError(
                f"Cannot encode {message.type} payload: {exc}"
            ) from exc

    def decode(self, data: str | bytes) -> list[ServerMessage]:
        """Decode one frame. Returns an empty list when the frame is dropped."""
        if len(data) > self._max_message_size:
            logger.warning(
                "Inbound frame exceeds max size (%d > %d bytes), dropping",
                len(data),
                self._max_message_size,
            )
            return []
        if isinstance(data, str):
            return self._decode_text(data)
        return self._decode_binary(data)

    # -- Text decoding ---------------------------------------------------------

    def _decode_text(self, data: str | bytes) -> list[ServerMessage]:
        try:
            parsed = _json_loads(data)
        except ValueError as exc:
            logger.debug("Failed to parse JSON: %s", exc)
            return []
        return self._parsed_to_messages(parsed)

    # -- Binary decoding -------------------------------------------------------

    def _decode_binary(self, data: bytes) -> list[ServerMessage]:
        if data[:2] == PREFIX_COMPRESSED:
            return self._decode_compressed(data[2:])

        if data[:2] == PREFIX_MSGPACK:
            if msgpack is None:
                logger.warning("Received msgpack frame but msgpack not available")
                return []
            try:
                parsed = msgpack.unpackb(data[2:], raw=False)
            except Exception as exc:
                logger.warning("Corrupt msgpack frame (%d bytes): %s", len(data), exc)
                return []
            return self._parsed_to_messages(parsed)

        if len(data) >= 2 and data[0] == ZLIB_MAGIC and data[1] in ZLIB_METHODS:
            return self._decode_compressed(data)

        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError:
            logger.debug("Unable to decode binary frame (%d bytes)", len(data))
            return []
        return self._decode_text(text)

    def _decode_compressed(self, data: bytes) -> list[ServerMessage]:
        try:
            inflated = self._compression.decompress(data, self._max_message_size)
        except Exception:
            logger.warning("Corrupt compressed frame (%d bytes), dropping", len(data))
            return []
        if len(inflated) > self._max_message_size:
            logger.warning(
                "Decompressed message exceeds max size (%d bytes), dropping",
                self._max_message_size,
            )
            return []
        return self._decode_text(inflated)

    # -- Helpers ---------------------------------------------------------------

    def _parsed_to_messages(self, parsed: Any) -> list[ServerMessage]:
        if not isinstance(parsed, dict):
            return []

        t = parsed.get("t") or parsed.get("type")
        if not t:
            logger.debug("Message without type, dropping")
            return []
        p = parsed.get("p")
        if p is None:
            p = parsed.get("payload") or {}

        if t == MSG_BATCH and isinstance(p, dict):
            messages: list[ServerMessage] = []
            for item in p.get("messages") or ():
                messages.extend(self._parsed_to_messages(item))
            return messages

        return [
            ServerMessage(
                type=str(t),
                payload=p if isinstance(p, dict) else {"data": p},
                request_id=parsed.get("rid"),
                timestamp=parsed.get("ts"),
                version=parsed.get("v", PROTOCOL_VERSION),
            )
        ]

# =============================================================================
# Service Center Client -- Transport
# =============================================================================
#
# The byte-level channel is pluggable: anything satisfying ``Transport``
# can open a ``Channel`` to an endpoint. ``WebSocketTransport`` is the
# default. Keep-alive, TLS and size limits are handed to the transport
# as-is; the application heartbeat lives in ConnectionManager.
# =============================================================================

from __future__ import annotations

import asyncio
import ssl
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, AsyncIterator, Protocol, runtime_checkable

import websockets
import websockets.asyncio.client
from websockets.exceptions import InvalidStatus

from ._logging import logger
from .errors import (
    ServiceCenterAuthError,
    ServiceCenterConfigError,
    ServiceCenterConnectionError,
)
from .protocol import ClientMessage, MessageCodec, ServerMessage
from .types import Endpoint

if TYPE_CHECKING:
    from .config import ClientConfig


@runtime_checkable
class Channel(Protocol):
    """One open bidirectional stream of frames."""

    async def send(self, data: str | bytes) -> None: ...

    def __aiter__(self) -> AsyncIterator[str | bytes]: ...

    async def close(self) -> None: ...


@runtime_checkable
class Transport(Protocol):
    """Opens channels. Must raise on failure rather than return ``None``."""

    async def open(self, endpoint: Endpoint, options: TransportOptions) -> Channel: ...


def build_ssl_context(config: ClientConfig) -> ssl.SSLContext | None:
    """SSL context for ``enable_tls``, or ``None`` for plaintext."""
    if not config.enable_tls:
        return None
    try:
        context = ssl.create_default_context(cafile=config.tls_ca_file)
        if config.tls_cert_file and config.tls_key_file:
            context.load_cert_chain(config.tls_cert_file, config.tls_key_file)
    except (OSError, ssl.SSLError) as exc:
        raise ServiceCenterConfigError(f"Cannot load TLS material: {exc}") from exc
    return context


@dataclass(frozen=True)
class TransportOptions:
    """Settings passed through to the transport unmodified.

    Attributes:
        path: Stream path on the server.
        headers: Credential and client metadata headers.
        ssl: TLS context, ``None`` for plaintext.
        open_timeout: Deadline for opening the channel.
        keep_alive_time: Transport ping interval.
        keep_alive_timeout: Transport ping ack deadline.
        keep_alive_without_calls: Ping even with no active calls.
        max_message_size: Inbound frame cap in bytes.
    """

    path: str
    headers: dict[str, str] = field(default_factory=dict)
    ssl: ssl.SSLContext | None = None
    open_timeout: float = 30.0
    keep_alive_time: float = 30.0
    keep_alive_timeout: float = 10.0
    keep_alive_without_calls: bool = True
    max_message_size: int = 16 * 1024 * 1024

    @classmethod
    def from_config(cls, config: ClientConfig) -> TransportOptions:
        headers = dict(config.auth_metadata())
        headers["x-client-id"] = config.client_id
        headers["x-namespace-id"] = config.namespace_id
        return cls(
            path=config.stream_path,
            headers=headers,
            ssl=build_ssl_context(config),
            open_timeout=config.request_timeout,
            keep_alive_time=config.keep_alive_time,
            keep_alive_timeout=config.keep_alive_timeout,
            keep_alive_without_calls=config.keep_alive_without_calls,
            max_message_size=config.max_inbound_message_size,
        )


class WebSocketTransport:
    """Default transport: one WebSocket per session.

    The stream itself is a long-lived call, so the connection is never
    idle and ``keep_alive_without_calls`` has no separate effect here.
    """

    async def open(self, endpoint: Endpoint, options: TransportOptions) -> Channel:
        scheme = "wss" if options.ssl is not None else "ws"
        uri = f"{scheme}://{endpoint.host}:{endpoint.port}{options.path}"
        try:
            return await websockets.asyncio.client.connect(
                uri,
                additional_headers=options.headers,
                ssl=options.ssl,
                max_size=options.max_message_size,
                ping_interval=options.keep_alive_time,
                ping_timeout=options.keep_alive_timeout,
                open_timeout=options.open_timeout,
            )
        except InvalidStatus as exc:
            status = exc.response.status_code
            if status in (401, 403):
                raise ServiceCenterAuthError(
                    f"Server {endpoint} rejected credentials (HTTP {status})"
                ) from exc
            raise ServiceCenterConnectionError(
                f"Server {endpoint} refused the stream (HTTP {status})"
            ) from exc
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as exc:
            raise ServiceCenterConnectionError(
                f"Failed to connect to {endpoint}: {exc}"
            ) from exc


class TransportSession:
    """A live channel to one endpoint plus the codec that frames it.

    Owned by exactly one ConnectionManager; never reused after close.
    """

    def __init__(self, endpoint: Endpoint, channel: Channel, codec: MessageCodec) -> None:
        self.endpoint = endpoint
        self._channel = channel
        self._codec = codec
        self._closed = False
        self.frames_received = 0
        self.bytes_received = 0
        self.messages_sent = 0

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, message: ClientMessage) -> None:
        """Encode and write one request. Raises on transport failure."""
        if self._closed:
            raise ServiceCenterConnectionError(f"Session to {self.endpoint} is closed")
        await self._channel.send(self._codec.encode(message))
        self.messages_sent += 1

    async def messages(self) -> AsyncIterator[ServerMessage]:
        """Decoded inbound messages until the channel ends.

        Ends normally on a clean close and raises on a broken one.
        """
        async for frame in self._channel:
            self.frames_received += 1
            self.bytes_received += len(frame)
            for message in self._codec.decode(frame):
                yield message

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._channel.close()
        except Exception as exc:
            logger.debug("Error closing session to %s: %s", self.endpoint, exc)

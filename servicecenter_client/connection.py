# =============================================================================
# Service Center Client -- Connection Manager
# =============================================================================
#
# Stream lifecycle: connect, handshake, heartbeat, reconnect.
#
# Each session runs three tasks: a receive loop that feeds decoded
# messages to the client, a writer loop that drains the session outbox,
# and a heartbeat loop started once the handshake succeeds. Reconnects
# run on their own timer task so a stuck attempt never blocks the
# receive path. ConnectionManager is the only writer of the state.
# =============================================================================

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Any, Callable

from ._logging import logger
from .address_pool import AddressPool
from .compression import CompressionHandler
from .constants import (
    AUTH_ERROR_CODES,
    CLIENT_LANGUAGE,
    CLIENT_VERSION,
    MSG_ERROR,
    MSG_HANDSHAKE,
    MSG_HANDSHAKE_ACK,
    MSG_PING,
    MSG_PONG,
    MSG_RESPONSE,
    MSG_SERVER_CLOSE,
    PROTOCOL_VERSION,
)
from .errors import (
    ClientClosedError,
    ReconnectExhaustedError,
    ServiceCenterAuthError,
    ServiceCenterConnectionError,
    ServiceCenterProtocolError,
    ServiceCenterRequestError,
    ServiceCenterTimeoutError,
)
from .protocol import ClientMessage, MessageCodec, ServerMessage
from .transport import Transport, TransportOptions, TransportSession, WebSocketTransport
from .types import ConnectionState, ConnectionStats, Endpoint

if TYPE_CHECKING:
    from .config import ClientConfig


class ConnectionManager:
    """Owns the connection state machine and the live TransportSession.

    ``AsyncServiceCenterClient`` builds one of these and reacts to its
    callbacks; nothing else changes the connection state.

    Args:
        config: Validated client settings.
        transport: Channel factory, ``WebSocketTransport`` by default.
        codec: Wire codec; built from the config when omitted.
        address_pool: Endpoint rotation; built from the config when omitted.
        on_message: Called with every push that is not a response,
            pong or server close.
        on_state_change: Called with the new state on every transition.
        on_connected: Called with ``reconnected`` after each successful
            handshake.
        on_disconnected: Called with ``(cause, fatal)`` when an established
            connection is lost, or when the client closes for good.
        heartbeat_payload: Returns extra fields for each ping.
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        transport: Transport | None = None,
        codec: MessageCodec | None = None,
        address_pool: AddressPool | None = None,
        on_message: Callable[[ServerMessage], Any] | None = None,
        on_state_change: Callable[[ConnectionState], Any] | None = None,
        on_connected: Callable[[bool], Any] | None = None,
        on_disconnected: Callable[[Exception, bool], Any] | None = None,
        heartbeat_payload: Callable[[], dict[str, Any]] | None = None,
    ) -> None:
        self._config = config
        self._transport: Transport = transport or WebSocketTransport()
        self._options = TransportOptions.from_config(config)
        self._codec = codec or MessageCodec(
            CompressionHandler(), max_message_size=config.max_inbound_message_size
        )
        self._pool = address_pool or AddressPool(config.endpoints)

        # Callbacks
        self._on_message = on_message
        self._on_state_change = on_state_change
        self._on_connected = on_connected
        self._on_disconnected = on_disconnected
        self._heartbeat_payload = heartbeat_payload

        # State
        self._state = ConnectionState.DISCONNECTED
        self._session: TransportSession | None = None
        self._outbox: asyncio.Queue[ClientMessage] | None = None
        self._pending: dict[str, tuple[asyncio.Future[dict[str, Any]], asyncio.TimerHandle]] = {}
        self._connected_event = asyncio.Event()
        self._connection_id: str | None = None
        self._connected_at: float | None = None
        self._last_received = 0.0
        self._reconnect_attempts = 0

        # Counters
        self._reconnect_count = 0
        self._messages_sent = 0
        self._messages_received = 0
        self._bytes_received = 0
        self._last_latency_ms: float | None = None

        # Tasks
        self._recv_task: asyncio.Task[None] | None = None
        self._writer_task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._background_tasks: set[asyncio.Task[Any]] = set()

    def _fire_task(self, coro: Any) -> None:
        """Schedule a coroutine with a strong reference to prevent GC."""
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    # -- Properties -----------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._session is not None and self._state == ConnectionState.CONNECTED

    @property
    def is_closed(self) -> bool:
        return self._state == ConnectionState.CLOSED

    @property
    def connection_id(self) -> str | None:
        return self._connection_id

    @property
    def current_endpoint(self) -> Endpoint | None:
        return self._session.endpoint if self._session is not None else None

    @property
    def address_pool(self) -> AddressPool:
        return self._pool

    @property
    def reconnect_attempts(self) -> int:
        """Consecutive failed attempts since the last successful connect."""
        return self._reconnect_attempts

    @property
    def reconnect_count(self) -> int:
        """Successful reconnects over the lifetime of this manager."""
        return self._reconnect_count

    def get_stats(self) -> ConnectionStats:
        bytes_received = self._bytes_received
        if self._session is not None:
            bytes_received += self._session.bytes_received
        return ConnectionStats(
            messages_received=self._messages_received,
            messages_sent=self._messages_sent,
            bytes_received=bytes_received,
            reconnect_count=self._reconnect_count,
            connected_since=self._connected_at if self.is_connected else None,
            last_latency_ms=self._last_latency_ms,
        )

    # -- Connect / Close ------------------------------------------------------

    async def connect(self) -> bool:
        """Open a session to the current endpoint and complete the handshake.

        Returns:
            ``True`` once connected. ``False`` when the attempt failed and
            a background reconnect was scheduled instead.

        Raises:
            ClientClosedError: The manager is closed.
            ServiceCenterAuthError: The server rejected the credentials.
                The manager is closed as well.
        """
        if self._state == ConnectionState.CLOSED:
            raise ClientClosedError("Client has been closed")
        if self._state != ConnectionState.DISCONNECTED:
            return self.is_connected
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return False

        self._set_state(ConnectionState.CONNECTING)
        try:
            await self._establish(reconnected=False)
        except ServiceCenterAuthError as exc:
            logger.error("Authentication rejected: %s", exc)
            self._shutdown_fatal(exc)
            raise
        except ClientClosedError:
            raise
        except Exception as exc:
            if self._state == ConnectionState.CLOSED:
                raise ClientClosedError("Client closed while connecting") from exc
            logger.warning("Initial connect failed: %s", exc)
            # The backoff wait is already part of the reconnect cycle
            if not self._reconnect_exhausted():
                self._set_state(ConnectionState.RECONNECTING)
            self._schedule_reconnect()
            return False
        return True

    async def wait_connected(self, timeout: float | None = None) -> bool:
        """Wait until CONNECTED. Returns ``False`` on timeout."""
        if self.is_connected:
            return True
        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return self.is_connected

    async def close(self) -> None:
        """Move to CLOSED and release every task and the session.

        Safe to call while a reconnect attempt is in flight: the attempt
        sees CLOSED and abandons its session.
        """
        self._set_state(ConnectionState.CLOSED)
        self._connected_event.clear()

        to_await: list[asyncio.Task[Any]] = []
        current = asyncio.current_task()
        reconnect = self._reconnect_task
        self._reconnect_task = None
        if reconnect is not None and reconnect is not current and not reconnect.done():
            reconnect.cancel()
            to_await.append(reconnect)

        session = self._session
        if session is not None:
            to_await.extend(self._detach(session, ClientClosedError("Client closed")))
        self._fail_pending(ClientClosedError("Client closed"))

        if to_await:
            await asyncio.gather(*to_await, return_exceptions=True)
        if session is not None:
            await session.close()
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
        logger.info("Connection manager closed")

    # -- Requests -------------------------------------------------------------

    def request(self, msg_type: str, payload: dict[str, Any]) -> asyncio.Future[dict[str, Any]]:
        """Enqueue a request on the live session.

        The returned future resolves with the response payload, or fails
        with the per-request error (rejection, timeout, lost connection).
        """
        if self._state == ConnectionState.CLOSED:
            raise ClientClosedError("Client has been closed")
        session = self._session
        if session is None or self._state != ConnectionState.CONNECTED:
            raise ServiceCenterConnectionError("Not connected")
        return self._request_on(session, msg_type, payload)

    def send_nowait(self, msg_type: str, payload: dict[str, Any]) -> bool:
        """Enqueue a message that expects no response."""
        if self._outbox is None:
            return False
        self._outbox.put_nowait(ClientMessage(msg_type, payload))
        return True

    def _request_on(
        self, session: TransportSession, msg_type: str, payload: dict[str, Any]
    ) -> asyncio.Future[dict[str, Any]]:
        assert self._outbox is not None and session is self._session
        message = ClientMessage(msg_type, payload)
        loop = asyncio.get_running_loop()
        future: asyncio.Future[dict[str, Any]] = loop.create_future()
        timer = loop.call_later(
            self._config.request_timeout, self._expire_request, message.request_id
        )
        self._pending[message.request_id] = (future, timer)
        self._outbox.put_nowait(message)
        return future

    def _expire_request(self, request_id: str) -> None:
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return
        future, _ = entry
        if not future.done():
            future.set_exception(
                ServiceCenterTimeoutError(
                    f"Request {request_id} timed out after {self._config.request_timeout}s"
                )
            )

    def _resolve_pending(self, message: ServerMessage) -> None:
        future, timer = self._pending.pop(message.request_id)
        timer.cancel()
        if future.done():
            return
        payload = message.payload
        if message.type == MSG_ERROR or payload.get("success") is False:
            future.set_exception(_request_error(payload))
        else:
            future.set_result(payload)

    def _fail_request(self, request_id: str, exc: Exception) -> None:
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return
        future, timer = entry
        timer.cancel()
        if not future.done():
            future.set_exception(exc)

    def _fail_pending(self, exc: Exception) -> None:
        pending, self._pending = self._pending, {}
        for future, timer in pending.values():
            timer.cancel()
            if not future.done():
                future.set_exception(exc)

    # -- Internal: session setup ----------------------------------------------

    async def _establish(self, *, reconnected: bool) -> None:
        endpoint = self._pool.select()
        logger.debug("Connecting to %s", endpoint)
        try:
            channel = await asyncio.wait_for(
                self._transport.open(endpoint, self._options),
                timeout=self._config.request_timeout,
            )
        except Exception as exc:
            self._pool.record_failure(endpoint)
            if isinstance(exc, (ServiceCenterAuthError, ServiceCenterConnectionError)):
                raise
            if isinstance(exc, asyncio.TimeoutError):
                raise ServiceCenterConnectionError(
                    f"Timed out connecting to {endpoint}"
                ) from exc
            raise ServiceCenterConnectionError(
                f"Failed to connect to {endpoint}: {exc}"
            ) from exc

        session = TransportSession(endpoint, channel, self._codec)
        if self._state == ConnectionState.CLOSED:
            await session.close()
            raise ClientClosedError("Client closed while connecting")

        self._attach(session)
        try:
            ack = await self._request_on(session, MSG_HANDSHAKE, self._handshake_payload())
        except BaseException as exc:
            await self._teardown(session)
            if isinstance(exc, ClientClosedError) or not isinstance(exc, Exception):
                raise
            self._pool.record_failure(endpoint)
            if isinstance(exc, ServiceCenterRequestError):
                raise ServiceCenterConnectionError(
                    f"Handshake with {endpoint} rejected: {exc}"
                ) from exc
            if isinstance(exc, ServiceCenterTimeoutError):
                raise ServiceCenterConnectionError(
                    f"Handshake with {endpoint} timed out"
                ) from exc
            raise

        if self._state == ConnectionState.CLOSED or session is not self._session:
            await self._teardown(session)
            raise ClientClosedError("Client closed while connecting")

        self._connection_id = ack.get("connection_id")
        self._pool.record_success(endpoint)
        self._reconnect_attempts = 0
        self._connected_at = time.monotonic()
        if reconnected:
            self._reconnect_count += 1
        self._set_state(ConnectionState.CONNECTED)
        self._connected_event.set()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(session))
        logger.info(
            "Connected to %s (connection_id=%s)", endpoint, self._connection_id
        )

        if self._on_connected:
            try:
                self._on_connected(reconnected)
            except Exception:
                logger.exception("Error in on_connected callback")

    def _handshake_payload(self) -> dict[str, Any]:
        config = self._config
        return {
            "client_id": config.client_id,
            "client_version": CLIENT_VERSION,
            "client_language": CLIENT_LANGUAGE,
            "protocol_version": PROTOCOL_VERSION,
            "namespace_id": config.namespace_id,
            "heartbeat_interval": config.heartbeat_interval,
            "metadata": dict(config.metadata),
            "subscribe_types": ["registry", "config"],
        }

    def _attach(self, session: TransportSession) -> None:
        self._session = session
        self._outbox = asyncio.Queue()
        self._last_received = time.monotonic()
        self._recv_task = asyncio.create_task(self._recv_loop(session))
        self._writer_task = asyncio.create_task(self._writer_loop(session, self._outbox))

    def _detach(self, session: TransportSession, exc: Exception) -> list[asyncio.Task[Any]]:
        """Drop *session* and fail its in-flight requests.

        Returns the tasks that were cancelled. Never cancels the caller.
        """
        self._session = None
        self._outbox = None
        self._connection_id = None
        self._bytes_received += session.bytes_received

        current = asyncio.current_task()
        cancelled: list[asyncio.Task[Any]] = []
        for task in (self._recv_task, self._writer_task, self._heartbeat_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
                cancelled.append(task)
        self._recv_task = self._writer_task = self._heartbeat_task = None

        self._fail_pending(exc)
        return cancelled

    async def _teardown(self, session: TransportSession) -> None:
        if self._session is session:
            self._detach(session, ServiceCenterConnectionError(f"Session to {session.endpoint} abandoned"))
        await session.close()

    # -- Internal: receive / send ---------------------------------------------

    async def _recv_loop(self, session: TransportSession) -> None:
        """Drain inbound messages until the channel ends or breaks."""
        try:
            async for message in session.messages():
                self._last_received = time.monotonic()
                self._messages_received += 1
                self._handle_message(session, message)
                if session is not self._session:
                    return
            cause = ServiceCenterConnectionError(f"Server {session.endpoint} closed the stream")
        except asyncio.CancelledError:
            return
        except Exception as exc:
            logger.debug("Receive loop error: %s", exc)
            cause = ServiceCenterConnectionError(f"Stream from {session.endpoint} failed: {exc}")
            cause.__cause__ = exc
        self._on_session_lost(session, cause)

    async def _writer_loop(self, session: TransportSession, outbox: asyncio.Queue[ClientMessage]) -> None:
        try:
            while True:
                message = await outbox.get()
                try:
                    await session.send(message)
                except ServiceCenterProtocolError as exc:
                    logger.warning("Dropping %s request: %s", message.type, exc)
                    self._fail_request(message.request_id, exc)
                    continue
                self._messages_sent += 1
        except asyncio.CancelledError:
            return
        except Exception as exc:
            logger.debug("Send failed: %s", exc)
            cause = ServiceCenterConnectionError(f"Send to {session.endpoint} failed: {exc}")
            cause.__cause__ = exc
            self._on_session_lost(session, cause)

    def _handle_message(self, session: TransportSession, message: ServerMessage) -> None:
        if message.request_id is not None and message.request_id in self._pending:
            self._resolve_pending(message)
            return

        if message.type == MSG_PONG:
            self._record_pong_latency(message.payload.get("timestamp"))
            return

        if message.type == MSG_SERVER_CLOSE:
            reason = message.payload.get("reason") or "no reason given"
            logger.info("Server %s closed the session: %s", session.endpoint, reason)
            self._on_session_lost(
                session, ServiceCenterConnectionError(f"Server closed the session: {reason}")
            )
            return

        if message.type == MSG_ERROR:
            logger.warning(
                "Server error: code=%s message=%s",
                message.payload.get("code"),
                message.payload.get("message"),
            )
            return

        if message.type in (MSG_RESPONSE, MSG_HANDSHAKE_ACK):
            logger.debug("Response for unknown request %s, dropping", message.request_id)
            return

        if self._on_message:
            try:
                self._on_message(message)
            except Exception:
                logger.exception("Error handling %s message", message.type)

    def _record_pong_latency(self, timestamp: Any) -> None:
        try:
            latency = time.time() * 1000 - float(timestamp)
        except (TypeError, ValueError):
            return
        if 0 <= latency < 60000:
            self._last_latency_ms = latency

    # -- Internal: heartbeat --------------------------------------------------

    async def _heartbeat_loop(self, session: TransportSession) -> None:
        """Ping every heartbeat_interval; drop the session when idle too long."""
        interval = self._config.heartbeat_interval
        while True:
            try:
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                return

            if session is not self._session:
                return

            idle = time.monotonic() - self._last_received
            if idle > self._config.heartbeat_timeout:
                logger.warning("Heartbeat timeout (%.1fs idle) on %s", idle, session.endpoint)
                self._on_session_lost(
                    session, ServiceCenterConnectionError(f"Heartbeat timeout after {idle:.1f}s")
                )
                return

            payload: dict[str, Any] = {"timestamp": int(time.time() * 1000)}
            if self._heartbeat_payload:
                payload.update(self._heartbeat_payload())
            self.send_nowait(MSG_PING, payload)

    # -- Internal: reconnection -----------------------------------------------

    def _on_session_lost(self, session: TransportSession, cause: Exception) -> None:
        if session is not self._session:
            return
        was_connected = self._state == ConnectionState.CONNECTED
        self._detach(session, ServiceCenterConnectionError(f"Connection to {session.endpoint} lost"))
        self._fire_task(session.close())
        # A half-open session fails its handshake; _establish reports that
        if not was_connected:
            return

        logger.warning("Connection to %s lost: %s", session.endpoint, cause)
        self._pool.record_failure(session.endpoint)
        self._connected_event.clear()
        self._set_state(ConnectionState.DISCONNECTED)
        self._notify_disconnected(cause, fatal=False)
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._state == ConnectionState.CLOSED:
            return

        cfg = self._config
        if self._reconnect_exhausted():
            logger.error("Max reconnect attempts (%d) reached", cfg.max_reconnect_attempts)
            self._shutdown_fatal(ReconnectExhaustedError(self._reconnect_attempts))
            return

        logger.info(
            "Reconnecting in %.1fs (attempt %d/%s)",
            cfg.reconnect_interval,
            self._reconnect_attempts + 1,
            "inf" if cfg.reconnect_unbounded else cfg.max_reconnect_attempts,
        )
        self._reconnect_task = asyncio.ensure_future(self._reconnect_after(cfg.reconnect_interval))

    def _reconnect_exhausted(self) -> bool:
        cfg = self._config
        return not cfg.reconnect_unbounded and self._reconnect_attempts >= cfg.max_reconnect_attempts

    async def _reconnect_after(self, delay: float) -> None:
        """Wait, then try one reconnect."""
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return
        if self._state == ConnectionState.CLOSED:
            return

        self._reconnect_attempts += 1
        self._set_state(ConnectionState.RECONNECTING)
        try:
            await self._establish(reconnected=True)
        except asyncio.CancelledError:
            return
        except ClientClosedError:
            return
        except ServiceCenterAuthError as exc:
            logger.error("Authentication rejected during reconnect: %s", exc)
            self._shutdown_fatal(exc)
        except Exception as exc:
            if self._state == ConnectionState.CLOSED:
                return
            logger.warning("Reconnect attempt %d failed: %s", self._reconnect_attempts, exc)
            self._set_state(ConnectionState.DISCONNECTED)
            self._schedule_reconnect()

    def _shutdown_fatal(self, cause: Exception) -> None:
        """Close for good and report *cause* as a fatal disconnect."""
        self._set_state(ConnectionState.CLOSED)
        self._connected_event.clear()
        self._fail_pending(ClientClosedError(str(cause)))
        self._notify_disconnected(cause, fatal=True)

    def _notify_disconnected(self, cause: Exception, *, fatal: bool) -> None:
        if self._on_disconnected:
            try:
                self._on_disconnected(cause, fatal)
            except Exception:
                logger.exception("Error in on_disconnected callback")

    # -- State management -----------------------------------------------------

    def _set_state(self, new_state: ConnectionState) -> None:
        if new_state == self._state or self._state == ConnectionState.CLOSED:
            return
        old = self._state
        self._state = new_state
        logger.debug("State: %s -> %s", old.value, new_state.value)
        if self._on_state_change:
            self._on_state_change(new_state)


def _request_error(payload: dict[str, Any]) -> Exception:
    code = payload.get("code")
    message = str(payload.get("message") or "request rejected")
    if code in AUTH_ERROR_CODES:
        return ServiceCenterAuthError(message)
    return ServiceCenterRequestError(message, code)

# =============================================================================
# Service Center Client -- Synchronous Wrapper
# =============================================================================
#
# Thread-based wrapper around AsyncServiceCenterClient for blocking usage.
#
#   servicecenter-client    event loop running the async client
#   servicecenter-listener  runs listener hooks and on_state_change
#
# Hooks never run on the loop thread, so they may call back into the
# blocking API.
# =============================================================================

from __future__ import annotations

import asyncio
import concurrent.futures
import inspect
import queue
import threading
from functools import partial
from typing import Any, Callable, Coroutine, TypeVar

from ._logging import logger
from .client import AsyncServiceCenterClient
from .config import ClientConfig
from .dispatcher import resolve_hook
from .errors import ClientClosedError, ServiceCenterError, ServiceCenterTimeoutError
from .transport import Transport
from .types import (
    ConfigHistory,
    ConfigInfo,
    ConfigVersion,
    ConnectionState,
    NodeInfo,
    ServiceInfo,
    SubscriptionKey,
    SubscriptionKind,
)

T = TypeVar("T")


async def _await(awaitable: Any) -> Any:
    return await awaitable


class _ListenerProxy:
    """Stands in for a user listener and forwards hooks to the listener thread."""

    def __init__(self, owner: SyncServiceCenterClient, listener: Any) -> None:
        self._owner = owner
        self.listener = listener
        self.active = True

    def on_service_change(self, event: Any) -> None:
        self._owner._post(self, "on_service_change", (event,))

    def on_config_change(self, event: Any) -> None:
        self._owner._post(self, "on_config_change", (event,))

    def on_disconnected(self, cause: Exception) -> None:
        self._owner._post(self, "on_disconnected", (cause,))

    def on_reconnected(self) -> None:
        self._owner._post(self, "on_reconnected", ())


class SyncServiceCenterClient:
    """Blocking / thread-based service center client.

    Runs an :class:`AsyncServiceCenterClient` on a private event loop in
    a background thread. All public methods are thread-safe and block
    until complete. Listener hooks and ``on_state_change`` run in order
    on a separate listener thread and may call any method of this client.
    A hook that returns a coroutine has it run on the event loop.

    Args:
        config: Validated settings. Defaults to ``ClientConfig()``.
        transport: Channel factory. Defaults to the WebSocket transport.
        on_state_change: Called on the listener thread with each new state.

    Example::

        client = SyncServiceCenterClient(ClientConfig(server_address="registry:12004"))
        client.connect()
        client.subscribe_service("orders", OrdersWatcher())
        print(client.get_service("billing").nodes)
        client.close()
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        transport: Transport | None = None,
        on_state_change: Callable[[ConnectionState], Any] | None = None,
    ) -> None:
        self._config = config or ClientConfig()
        self._transport = transport
        self._on_state_change = on_state_change

        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._client: AsyncServiceCenterClient | None = None
        self._started = threading.Event()
        self._start_error: Exception | None = None
        self._closed = False

        self._events: queue.Queue[Callable[[], None] | None] = queue.Queue()
        self._listener_thread: threading.Thread | None = None
        self._proxies: dict[SubscriptionKey, _ListenerProxy] = {}
        self._proxies_lock = threading.Lock()

    def __enter__(self) -> SyncServiceCenterClient:
        self.connect()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # -- Lifecycle ------------------------------------------------------------

    def connect(self, timeout: float | None = None) -> bool:
        """Start the background threads and connect. Blocks until done.

        Returns ``False`` when the first attempt failed and the client is
        reconnecting in the background.
        """
        if self._closed:
            raise ClientClosedError("Client has been closed")
        if self._thread is None:
            self._listener_thread = threading.Thread(
                target=self._run_listeners, daemon=True, name="servicecenter-listener"
            )
            self._listener_thread.start()
            self._thread = threading.Thread(
                target=self._run_loop, daemon=True, name="servicecenter-client"
            )
            self._thread.start()
            self._started.wait()
            if self._start_error is not None:
                raise self._start_error
        return self._call(self._require().connect(), timeout or self._connect_timeout())

    def wait_connected(self, timeout: float | None = None) -> bool:
        return self._call(
            self._require().wait_connected(timeout),
            None if timeout is None else timeout + 1.0,
        )

    def close(self, timeout: float = 5.0) -> None:
        """Close the client and stop the background threads.

        Hooks still queued for delivery are dropped. May be called from a
        listener hook.
        """
        if self._closed:
            return
        if threading.current_thread() is self._thread:
            raise ServiceCenterError("close() called from the client's event loop thread")
        self._closed = True
        with self._proxies_lock:
            proxies, self._proxies = list(self._proxies.values()), {}
        for proxy in proxies:
            proxy.active = False

        loop, client = self._loop, self._client
        if loop is not None and client is not None:
            future = asyncio.run_coroutine_threadsafe(client.close(), loop)
            try:
                future.result(timeout=timeout)
            except Exception as exc:
                logger.warning("Error while closing client: %s", exc)
            loop.call_soon_threadsafe(loop.stop)
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)

        self._events.put(None)
        listener_thread = self._listener_thread
        if (
            listener_thread is not None
            and listener_thread is not threading.current_thread()
            and listener_thread.is_alive()
        ):
            listener_thread.join(timeout=timeout)

    # -- Subscriptions --------------------------------------------------------

    def subscribe_service(
        self,
        service_name: str,
        listener: Any,
        *,
        namespace_id: str | None = None,
        group_name: str | None = None,
        wait: bool = False,
    ) -> None:
        """Subscribe; with ``wait=True`` also block for the server ack."""
        client = self._require()
        key = self._key(SubscriptionKind.SERVICE, service_name, namespace_id, group_name)
        ack = self._call(
            client.subscribe_service(
                service_name,
                self._bind(key, listener),
                namespace_id=namespace_id,
                group_name=group_name,
            )
        )
        if wait:
            self._call(_await(ack), self._config.request_timeout + 1.0)

    def unsubscribe_service(
        self,
        service_name: str,
        *,
        namespace_id: str | None = None,
        group_name: str | None = None,
    ) -> None:
        client = self._require()
        self._unbind(self._key(SubscriptionKind.SERVICE, service_name, namespace_id, group_name))
        self._call(
            client.unsubscribe_service(
                service_name, namespace_id=namespace_id, group_name=group_name
            )
        )

    def watch_config(
        self,
        config_data_id: str,
        listener: Any,
        *,
        namespace_id: str | None = None,
        group_name: str | None = None,
        wait: bool = False,
    ) -> None:
        client = self._require()
        key = self._key(SubscriptionKind.CONFIG, config_data_id, namespace_id, group_name)
        ack = self._call(
            client.watch_config(
                config_data_id,
                self._bind(key, listener),
                namespace_id=namespace_id,
                group_name=group_name,
            )
        )
        if wait:
            self._call(_await(ack), self._config.request_timeout + 1.0)

    def unwatch_config(
        self,
        config_data_id: str,
        *,
        namespace_id: str | None = None,
        group_name: str | None = None,
    ) -> None:
        client = self._require()
        self._unbind(self._key(SubscriptionKind.CONFIG, config_data_id, namespace_id, group_name))
        self._call(
            client.unwatch_config(
                config_data_id, namespace_id=namespace_id, group_name=group_name
            )
        )

    # -- Registration / queries -----------------------------------------------

    def register_node(self, service_name: str, ip_address: str, port_number: int, **kwargs: Any) -> str:
        """Blocking :meth:`AsyncServiceCenterClient.register_node`."""
        return self._request(
            self._require().register_node(service_name, ip_address, port_number, **kwargs)
        )

    def deregister_node(self, node_id: str) -> bool:
        return self._request(self._require().deregister_node(node_id))

    def register_service(self, service_name: str, **kwargs: Any) -> str | None:
        return self._request(self._require().register_service(service_name, **kwargs))

    def unregister_service(self, service_name: str, **kwargs: Any) -> None:
        self._request(self._require().unregister_service(service_name, **kwargs))

    def get_service(self, service_name: str, **kwargs: Any) -> ServiceInfo:
        return self._request(self._require().get_service(service_name, **kwargs))

    def discover_nodes(self, service_name: str, **kwargs: Any) -> list[NodeInfo]:
        return self._request(self._require().discover_nodes(service_name, **kwargs))

    def get_config(self, config_data_id: str, **kwargs: Any) -> ConfigInfo | None:
        return self._request(self._require().get_config(config_data_id, **kwargs))

    def save_config(self, config_data_id: str, content: str, **kwargs: Any) -> ConfigVersion:
        return self._request(self._require().save_config(config_data_id, content, **kwargs))

    def delete_config(self, config_data_id: str, **kwargs: Any) -> None:
        self._request(self._require().delete_config(config_data_id, **kwargs))

    def list_configs(self, **kwargs: Any) -> list[ConfigInfo]:
        return self._request(self._require().list_configs(**kwargs))

    def get_config_history(self, config_data_id: str, **kwargs: Any) -> list[ConfigHistory]:
        return self._request(self._require().get_config_history(config_data_id, **kwargs))

    def rollback_config(self, config_data_id: str, target_version: int, **kwargs: Any) -> ConfigVersion:
        return self._request(
            self._require().rollback_config(config_data_id, target_version, **kwargs)
        )

    # -- Properties -----------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.is_connected

    @property
    def state(self) -> ConnectionState:
        if self._client:
            return self._client.state
        return ConnectionState.DISCONNECTED

    @property
    def subscriptions(self) -> list[SubscriptionKey]:
        if self._client:
            return self._client.subscriptions
        return []

    def get_stats(self) -> dict[str, Any]:
        if self._client:
            return self._client.get_stats()
        return {}

    # -- Internal: listener thread --------------------------------------------

    def _key(
        self,
        kind: SubscriptionKind,
        name: str,
        namespace_id: str | None,
        group_name: str | None,
    ) -> SubscriptionKey:
        if not name:
            raise ValueError(f"{kind.value} name must not be empty")
        return SubscriptionKey(
            kind,
            namespace_id or self._config.namespace_id,
            group_name or self._config.group_name,
            name,
        )

    def _bind(self, key: SubscriptionKey, listener: Any) -> _ListenerProxy:
        if listener is None:
            raise ValueError("listener must not be None")
        proxy = _ListenerProxy(self, listener)
        with self._proxies_lock:
            previous = self._proxies.get(key)
            self._proxies[key] = proxy
        if previous is not None:
            previous.active = False
        return proxy

    def _unbind(self, key: SubscriptionKey) -> None:
        with self._proxies_lock:
            proxy = self._proxies.pop(key, None)
        if proxy is not None:
            proxy.active = False

    def _post(self, proxy: _ListenerProxy, name: str, args: tuple[Any, ...]) -> None:
        self._events.put(partial(self._run_hook, proxy, name, args))

    def _post_state(self, state: ConnectionState) -> None:
        if self._on_state_change is not None:
            self._events.put(partial(self._run_state_callback, state))

    def _run_listeners(self) -> None:
        """Listener thread: run queued hooks until close()."""
        while True:
            item = self._events.get()
            if item is None:
                return
            item()

    def _run_hook(self, proxy: _ListenerProxy, name: str, args: tuple[Any, ...]) -> None:
        if not proxy.active:
            return
        hook = resolve_hook(proxy.listener, name)
        if hook is None:
            return
        try:
            result = hook(*args)
        except Exception:
            logger.error("Listener %s raised", name, exc_info=True)
            return
        if inspect.isawaitable(result):
            self._wait_result(name, result)

    def _run_state_callback(self, state: ConnectionState) -> None:
        try:
            result = self._on_state_change(state)
        except Exception:
            logger.exception("Error in on_state_change callback")
            return
        if inspect.isawaitable(result):
            self._wait_result("on_state_change", result)

    def _wait_result(self, name: str, awaitable: Any) -> None:
        loop = self._loop
        if loop is None:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        future = asyncio.run_coroutine_threadsafe(_await(awaitable), loop)
        # The loop stops on close(); stop waiting then
        while not self._closed:
            try:
                future.result(timeout=0.1)
            except concurrent.futures.TimeoutError:
                continue
            except concurrent.futures.CancelledError:
                return
            except Exception:
                logger.error("Listener %s raised", name, exc_info=True)
            return
        future.cancel()

    # -- Internal: event loop -------------------------------------------------

    def _require(self) -> AsyncServiceCenterClient:
        if self._closed:
            raise ClientClosedError("Client has been closed")
        if self._client is None or self._loop is None:
            raise ClientClosedError("Client is not started, call connect() first")
        return self._client

    def _request(self, coro: Coroutine[Any, Any, T]) -> T:
        return self._call(coro, self._config.request_timeout + 1.0)

    def _call(self, coro: Coroutine[Any, Any, T], timeout: float | None = 5.0) -> T:
        assert self._loop is not None
        if threading.current_thread() is self._thread:
            coro.close()
            raise ServiceCenterError("Blocking call from the client's event loop thread")
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise ServiceCenterTimeoutError(f"Operation timed out after {timeout}s") from None

    def _connect_timeout(self) -> float:
        # Channel open plus handshake, each bounded by request_timeout
        return self._config.request_timeout * 2 + 1.0

    def _run_loop(self) -> None:
        """Background thread: run the event loop until close()."""
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        try:
            self._client = loop.run_until_complete(self._create_client())
            self._started.set()
            loop.run_forever()
        except Exception as exc:
            self._start_error = exc
            logger.error("Background loop error: %s", exc)
        finally:
            self._started.set()
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.close()
            self._loop = None

    async def _create_client(self) -> AsyncServiceCenterClient:
        return AsyncServiceCenterClient(
            self._config,
            transport=self._transport,
            on_state_change=self._post_state,
        )

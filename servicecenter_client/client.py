# =============================================================================
# Service Center Client -- Async Client
# =============================================================================
#
# Primary public API. Ties the connection, the subscription registry,
# the diff/dedup stages and the dispatcher together:
#
#   ConnectionManager -> _on_message -> diff_service / ConfigChangeDetector
#                     -> EventDispatcher -> listener hooks
#
# On every (re)connect the registered nodes are re-registered first,
# then every subscription is replayed in registration order.
# =============================================================================

from __future__ import annotations

import asyncio
import dataclasses
from functools import partial
from typing import Any, Callable

from ._logging import logger
from .config import ClientConfig
from .config_detector import ConfigChangeDetector
from .connection import ConnectionManager
from .constants import (
    MSG_CONFIG_DELETED,
    MSG_CONFIG_PUSH,
    MSG_DELETE_CONFIG,
    MSG_DEREGISTER_NODE,
    MSG_DISCOVER_NODES,
    MSG_GET_CONFIG,
    MSG_GET_CONFIG_HISTORY,
    MSG_GET_SERVICE,
    MSG_LIST_CONFIGS,
    MSG_REGISTER_NODE,
    MSG_REGISTER_SERVICE,
    MSG_ROLLBACK_CONFIG,
    MSG_SAVE_CONFIG,
    MSG_SERVICE_SNAPSHOT,
    MSG_SUBSCRIBE_SERVICE,
    MSG_UNREGISTER_SERVICE,
    MSG_UNSUBSCRIBE_SERVICE,
    MSG_UNWATCH_CONFIG,
    MSG_WATCH_CONFIG,
)
from .diff import diff_service
from .dispatcher import EventDispatcher
from .errors import ClientClosedError, ServiceCenterConnectionError
from .protocol import ServerMessage
from .registry import SubscriptionRegistry
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

_SUBSCRIBE_TYPES = {
    SubscriptionKind.SERVICE: MSG_SUBSCRIBE_SERVICE,
    SubscriptionKind.CONFIG: MSG_WATCH_CONFIG,
}
_UNSUBSCRIBE_TYPES = {
    SubscriptionKind.SERVICE: MSG_UNSUBSCRIBE_SERVICE,
    SubscriptionKind.CONFIG: MSG_UNWATCH_CONFIG,
}


def _mark_retrieved(future: asyncio.Future[Any]) -> None:
    # Callers may drop an ack; keep asyncio from logging its exception
    if not future.cancelled():
        future.exception()


class AsyncServiceCenterClient:
    """Async service discovery and config client.

    Args:
        config: Validated settings. Defaults to ``ClientConfig()``.
        transport: Channel factory. Defaults to the WebSocket transport.
        on_state_change: Called with every connection state transition.

    Example::

        config = ClientConfig(server_address="10.0.0.1:12004,10.0.0.2:12004")
        async with AsyncServiceCenterClient(config) as client:
            await client.subscribe_service("orders", on_orders_change)
            node_id = await client.register_node("billing", "10.0.1.7", 8080)
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        transport: Transport | None = None,
        on_state_change: Callable[[ConnectionState], Any] | None = None,
    ) -> None:
        self._config = config or ClientConfig()
        self._registry = SubscriptionRegistry()
        self._dispatcher = EventDispatcher(self._registry)
        self._detector = ConfigChangeDetector(self._registry)

        # Subscribe acks not yet settled, by key
        self._acks: dict[SubscriptionKey, asyncio.Future[None]] = {}
        # node_id -> register_node payload, replayed after reconnect
        self._registered_nodes: dict[str, dict[str, Any]] = {}
        self._user_state_callback = on_state_change
        self._closed = False

        self._connection = ConnectionManager(
            self._config,
            transport=transport,
            on_message=self._on_message,
            on_state_change=self._on_state_change,
            on_connected=self._on_connected,
            on_disconnected=self._on_disconnected,
            heartbeat_payload=self._heartbeat_payload,
        )

        self._handlers: dict[str, Callable[[dict[str, Any]], None]] = {
            MSG_SERVICE_SNAPSHOT: self._handle_service_snapshot,
            MSG_CONFIG_PUSH: self._handle_config_push,
            MSG_CONFIG_DELETED: self._handle_config_deleted,
        }

    # -- Context manager ------------------------------------------------------

    async def __aenter__(self) -> AsyncServiceCenterClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # -- Connect / Close ------------------------------------------------------

    async def connect(self) -> bool:
        """Connect to the first reachable endpoint.

        Returns ``False`` when the first attempt failed; the client then
        keeps reconnecting in the background and replays subscriptions
        once a session is up.
        """
        self._ensure_open()
        return await self._connection.connect()

    async def wait_connected(self, timeout: float | None = None) -> bool:
        return await self._connection.wait_connected(timeout)

    async def close(self) -> None:
        """Close the connection and drop every subscription. Idempotent."""
        if self._closed:
            return
        self._closed = True
        await self._connection.close()

        acks, self._acks = self._acks, {}
        for ack in acks.values():
            if not ack.done():
                ack.cancel()
        removed = self._registry.clear()
        self._registered_nodes.clear()
        await self._dispatcher.close()
        logger.info("Client closed (%d subscriptions dropped)", len(removed))

    # -- Properties -----------------------------------------------------------

    @property
    def config(self) -> ClientConfig:
        return self._config

    @property
    def state(self) -> ConnectionState:
        return self._connection.state

    @property
    def is_connected(self) -> bool:
        return self._connection.is_connected

    @property
    def connection_id(self) -> str | None:
        return self._connection.connection_id

    @property
    def subscriptions(self) -> list[SubscriptionKey]:
        """Active subscription keys in registration order."""
        return self._registry.keys()

    @property
    def registered_nodes(self) -> list[str]:
        return list(self._registered_nodes)

    # -- Subscriptions --------------------------------------------------------

    async def subscribe_service(
        self,
        service_name: str,
        listener: Any,
        *,
        namespace_id: str | None = None,
        group_name: str | None = None,
    ) -> asyncio.Future[None]:
        """Register *listener* for changes of *service_name*.

        Subscribing an already subscribed service replaces its listener.
        Returns as soon as the request is queued; the returned future
        resolves when the server acknowledges the subscription, or fails
        with that request's error. It is not needed for delivery.
        """
        key = self._key(SubscriptionKind.SERVICE, service_name, namespace_id, group_name)
        return self._subscribe(key, listener)

    async def unsubscribe_service(
        self,
        service_name: str,
        *,
        namespace_id: str | None = None,
        group_name: str | None = None,
    ) -> asyncio.Future[None]:
        """Stop delivery for *service_name*. Unknown services are a no-op."""
        key = self._key(SubscriptionKind.SERVICE, service_name, namespace_id, group_name)
        return self._unsubscribe(key)

    async def watch_config(
        self,
        config_data_id: str,
        listener: Any,
        *,
        namespace_id: str | None = None,
        group_name: str | None = None,
    ) -> asyncio.Future[None]:
        """Register *listener* for content changes of one config item."""
        key = self._key(SubscriptionKind.CONFIG, config_data_id, namespace_id, group_name)
        return self._subscribe(key, listener)

    async def unwatch_config(
        self,
        config_data_id: str,
        *,
        namespace_id: str | None = None,
        group_name: str | None = None,
    ) -> asyncio.Future[None]:
        key = self._key(SubscriptionKind.CONFIG, config_data_id, namespace_id, group_name)
        return self._unsubscribe(key)

    # -- Registration ---------------------------------------------------------

    async def register_node(
        self,
        service_name: str,
        ip_address: str,
        port_number: int,
        *,
        metadata: dict[str, str] | None = None,
        weight: float = 1.0,
        healthy: bool = True,
        ephemeral: bool = True,
        namespace_id: str | None = None,
        group_name: str | None = None,
    ) -> str:
        """Register an instance of *service_name* and return its node id.

        The configured client metadata is merged under *metadata*. The
        node is registered again, under the same id, after every
        reconnect until :meth:`deregister_node` is called.
        """
        self._ensure_open()
        key = self._key(SubscriptionKind.SERVICE, service_name, namespace_id, group_name)
        node = NodeInfo(
            ip_address,
            port_number,
            metadata=metadata or {},
            healthy=healthy,
            weight=weight,
            ephemeral=ephemeral,
        )
        payload = {**self._key_payload(key), "node": self._node_payload(node)}
        result = await self._connection.request(MSG_REGISTER_NODE, payload)
        return self._track_node(key, payload, result)

    async def deregister_node(self, node_id: str) -> bool:
        """Remove a node registered by this client.

        Returns ``False`` for an id this client never registered.
        """
        self._ensure_open()
        payload = self._registered_nodes.pop(node_id, None)
        if payload is None:
            return False
        if self._connection.is_connected:
            request = {key: value for key, value in payload.items() if key != "node"}
            request["node_id"] = node_id
            await self._connection.request(MSG_DEREGISTER_NODE, request)
        logger.info("Deregistered node %s", node_id)
        return True

    async def register_service(
        self,
        service_name: str,
        *,
        metadata: dict[str, str] | None = None,
        node: NodeInfo | None = None,
        namespace_id: str | None = None,
        group_name: str | None = None,
    ) -> str | None:
        """Create or update a service, optionally with a first node.

        A node passed here is tracked like one from :meth:`register_node`:
        re-registered after reconnects and covered by heartbeats.

        Returns:
            The node id when *node* was given, else ``None``.
        """
        self._ensure_open()
        key = self._key(SubscriptionKind.SERVICE, service_name, namespace_id, group_name)
        payload = {**self._key_payload(key), "metadata": dict(metadata or {})}
        if node is not None:
            payload["node"] = self._node_payload(node)
        result = await self._connection.request(MSG_REGISTER_SERVICE, payload)
        if node is None:
            logger.info("Registered service %s", key)
            return None
        node_payload = {**self._key_payload(key), "node": payload["node"]}
        return self._track_node(key, node_payload, result)

    async def unregister_service(
        self,
        service_name: str,
        *,
        node_id: str | None = None,
        namespace_id: str | None = None,
        group_name: str | None = None,
    ) -> None:
        """Remove a service, or only *node_id* from it when given."""
        self._ensure_open()
        key = self._key(SubscriptionKind.SERVICE, service_name, namespace_id, group_name)
        payload = self._key_payload(key)
        if node_id is not None:
            self._registered_nodes.pop(node_id, None)
            payload["node_id"] = node_id
        await self._connection.request(MSG_UNREGISTER_SERVICE, payload)
        logger.info("Unregistered %s%s", key, f" node {node_id}" if node_id else "")

    # -- Queries --------------------------------------------------------------

    async def get_service(
        self,
        service_name: str,
        *,
        namespace_id: str | None = None,
        group_name: str | None = None,
    ) -> ServiceInfo:
        """Fetch the current nodes of a service without subscribing."""
        self._ensure_open()
        key = self._key(SubscriptionKind.SERVICE, service_name, namespace_id, group_name)
        result = await self._connection.request(MSG_GET_SERVICE, self._key_payload(key))
        return self._service_info(key, result.get("service") or result)

    async def get_config(
        self,
        config_data_id: str,
        *,
        namespace_id: str | None = None,
        group_name: str | None = None,
    ) -> ConfigInfo | None:
        """Fetch one config item. ``None`` when it does not exist."""
        self._ensure_open()
        key = self._key(SubscriptionKind.CONFIG, config_data_id, namespace_id, group_name)
        result = await self._connection.request(MSG_GET_CONFIG, self._key_payload(key))
        data = result.get("config")
        if not data:
            return None
        return self._config_info(key, data)

    async def discover_nodes(
        self,
        service_name: str,
        *,
        healthy_only: bool = True,
        namespace_id: str | None = None,
        group_name: str | None = None,
    ) -> list[NodeInfo]:
        """Fetch the nodes of a service, only the healthy ones by default."""
        self._ensure_open()
        key = self._key(SubscriptionKind.SERVICE, service_name, namespace_id, group_name)
        payload = {**self._key_payload(key), "healthy_only": healthy_only}
        result = await self._connection.request(MSG_DISCOVER_NODES, payload)
        return [NodeInfo.from_payload(node) for node in result.get("nodes") or ()]

    # -- Config management ----------------------------------------------------

    async def save_config(
        self,
        config_data_id: str,
        content: str,
        *,
        content_type: str = "text",
        description: str = "",
        namespace_id: str | None = None,
        group_name: str | None = None,
    ) -> ConfigVersion:
        """Create or update a config item.

        Watchers of the item, this client's included, see the change as a
        regular push; the returned version is not fed to them.
        """
        self._ensure_open()
        key = self._key(SubscriptionKind.CONFIG, config_data_id, namespace_id, group_name)
        payload = {
            **self._key_payload(key),
            "content": content,
            "content_type": content_type,
            "description": description,
        }
        result = await self._connection.request(MSG_SAVE_CONFIG, payload)
        return ConfigVersion.from_payload(result)

    async def delete_config(
        self,
        config_data_id: str,
        *,
        namespace_id: str | None = None,
        group_name: str | None = None,
    ) -> None:
        self._ensure_open()
        key = self._key(SubscriptionKind.CONFIG, config_data_id, namespace_id, group_name)
        await self._connection.request(MSG_DELETE_CONFIG, self._key_payload(key))

    async def list_configs(
        self,
        *,
        search_key: str = "",
        page_num: int = 1,
        page_size: int = 100,
        namespace_id: str | None = None,
        group_name: str | None = None,
    ) -> list[ConfigInfo]:
        """List config items of a namespace and group, one page at a time."""
        self._ensure_open()
        scope = {
            "namespace_id": namespace_id or self._config.namespace_id,
            "group_name": group_name or self._config.group_name,
        }
        payload = {**scope, "search_key": search_key, "page_num": page_num, "page_size": page_size}
        result = await self._connection.request(MSG_LIST_CONFIGS, payload)
        return [ConfigInfo.from_payload({**scope, **item}) for item in result.get("configs") or ()]

    async def get_config_history(
        self,
        config_data_id: str,
        *,
        limit: int = 100,
        namespace_id: str | None = None,
        group_name: str | None = None,
    ) -> list[ConfigHistory]:
        """Stored revisions of a config item, newest first as the server sends them."""
        self._ensure_open()
        key = self._key(SubscriptionKind.CONFIG, config_data_id, namespace_id, group_name)
        payload = {**self._key_payload(key), "limit": limit}
        result = await self._connection.request(MSG_GET_CONFIG_HISTORY, payload)
        scope = self._key_payload(key)
        return [ConfigHistory.from_payload({**scope, **item}) for item in result.get("history") or ()]

    async def rollback_config(
        self,
        config_data_id: str,
        target_version: int,
        *,
        changed_by: str = "system",
        change_reason: str = "rollback",
        namespace_id: str | None = None,
        group_name: str | None = None,
    ) -> ConfigVersion:
        """Restore the content of *target_version* as a new version."""
        self._ensure_open()
        key = self._key(SubscriptionKind.CONFIG, config_data_id, namespace_id, group_name)
        payload = {
            **self._key_payload(key),
            "target_version": target_version,
            "changed_by": changed_by,
            "change_reason": change_reason,
        }
        result = await self._connection.request(MSG_ROLLBACK_CONFIG, payload)
        return ConfigVersion.from_payload(result)

    # -- Stats ----------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        """Return client statistics."""
        stats = self._connection.get_stats()
        endpoint = self._connection.current_endpoint
        return {
            "state": self._connection.state.value,
            "endpoint": endpoint.address if endpoint else None,
            "connection_id": self._connection.connection_id,
            "subscriptions": len(self._registry),
            "registered_nodes": len(self._registered_nodes),
            "messages_received": stats.messages_received,
            "messages_sent": stats.messages_sent,
            "bytes_received": stats.bytes_received,
            "reconnect_count": stats.reconnect_count,
            "reconnect_attempts": self._connection.reconnect_attempts,
            "last_latency_ms": stats.last_latency_ms,
            "address_pool": self._connection.address_pool.get_stats(),
        }

    # -- Internal: subscribe / unsubscribe ------------------------------------

    def _subscribe(self, key: SubscriptionKey, listener: Any) -> asyncio.Future[None]:
        self._ensure_open()
        if listener is None:
            raise ValueError("listener must not be None")

        ack: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        ack.add_done_callback(_mark_retrieved)
        previous = self._acks.pop(key, None)
        if previous is not None and not previous.done():
            previous.cancel()
        self._acks[key] = ack

        self._registry.register(key, listener)
        logger.debug("Subscribed %s", key)
        if self._connection.is_connected:
            self._issue(key, ack, replay=False)
        return ack

    def _unsubscribe(self, key: SubscriptionKey) -> asyncio.Future[None]:
        self._ensure_open()
        done: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        done.add_done_callback(_mark_retrieved)

        entry = self._registry.remove(key)
        ack = self._acks.pop(key, None)
        if ack is not None and not ack.done():
            ack.cancel()
        if entry is None or not self._connection.is_connected:
            done.set_result(None)
            return done

        logger.debug("Unsubscribed %s", key)
        request = self._connection.request(_UNSUBSCRIBE_TYPES[key.kind], self._key_payload(key))
        request.add_done_callback(partial(self._on_unsubscribe_ack, done))
        return done

    def _issue(
        self, key: SubscriptionKey, ack: asyncio.Future[None] | None, *, replay: bool
    ) -> None:
        request = self._connection.request(_SUBSCRIBE_TYPES[key.kind], self._key_payload(key))
        request.add_done_callback(partial(self._on_subscribe_ack, key, ack, replay))

    def _on_subscribe_ack(
        self,
        key: SubscriptionKey,
        ack: asyncio.Future[None] | None,
        replay: bool,
        request: asyncio.Future[dict[str, Any]],
    ) -> None:
        if request.cancelled() or self._closed:
            return
        exc = request.exception()
        if isinstance(exc, (ServiceCenterConnectionError, ClientClosedError)):
            # The next session replays this key
            return
        if exc is None:
            self._settle_ack(key, ack, None)
            return
        if key not in self._registry:
            return

        logger.warning("Subscribe %s rejected: %s", key, exc)
        self._settle_ack(key, ack, exc)
        if replay:
            self._dispatcher.notify_disconnected(key, exc)

    @staticmethod
    def _on_unsubscribe_ack(
        done: asyncio.Future[None], request: asyncio.Future[dict[str, Any]]
    ) -> None:
        if done.done():
            return
        if request.cancelled():
            done.cancel()
            return
        exc = request.exception()
        if exc is None or isinstance(exc, ServiceCenterConnectionError):
            # A lost session forgets the subscription anyway
            done.set_result(None)
        else:
            done.set_exception(exc)

    def _settle_ack(
        self, key: SubscriptionKey, ack: asyncio.Future[None] | None, exc: BaseException | None
    ) -> None:
        if ack is None:
            return
        if self._acks.get(key) is ack:
            del self._acks[key]
        if ack.done():
            return
        if exc is None:
            ack.set_result(None)
        else:
            ack.set_exception(exc)

    # -- Internal: connection callbacks ---------------------------------------

    def _on_connected(self, reconnected: bool) -> None:
        entries = self._registry.entries()
        if reconnected:
            for entry in entries:
                self._dispatcher.notify_reconnected(entry.key)

        for node_id, payload in self._registered_nodes.items():
            request = self._connection.request(MSG_REGISTER_NODE, payload)
            request.add_done_callback(partial(_log_failure, f"re-register node {node_id}"))

        for entry in entries:
            self._issue(entry.key, self._acks.get(entry.key), replay=reconnected)
        if entries:
            logger.info("Replayed %d subscriptions", len(entries))

    def _on_disconnected(self, cause: Exception, fatal: bool) -> None:
        for entry in self._registry.entries():
            self._dispatcher.notify_disconnected(entry.key, cause)
        if fatal:
            acks, self._acks = self._acks, {}
            for ack in acks.values():
                if not ack.done():
                    ack.set_exception(cause)

    def _on_state_change(self, state: ConnectionState) -> None:
        if self._user_state_callback:
            try:
                self._user_state_callback(state)
            except Exception:
                logger.exception("Error in on_state_change callback")

    def _heartbeat_payload(self) -> dict[str, Any]:
        return {"node_ids": list(self._registered_nodes)}

    # -- Internal: message routing --------------------------------------------

    def _on_message(self, message: ServerMessage) -> None:
        handler = self._handlers.get(message.type)
        if handler is None:
            logger.debug("Unhandled message type: %s", message.type)
            return
        handler(message.payload)

    def _handle_service_snapshot(self, payload: dict[str, Any]) -> None:
        data = payload.get("service") or payload
        key = self._key(
            SubscriptionKind.SERVICE,
            str(data.get("service_name", "")),
            data.get("namespace_id"),
            data.get("group_name"),
        )
        self._apply_service(key, self._service_info(key, data))

    def _handle_config_push(self, payload: dict[str, Any]) -> None:
        data = payload.get("config") or payload
        key = self._key(
            SubscriptionKind.CONFIG,
            str(data.get("config_data_id", "")),
            data.get("namespace_id"),
            data.get("group_name"),
        )
        if payload.get("deleted") or data.get("deleted"):
            self._apply_config_delete(key)
        else:
            self._apply_config(key, self._config_info(key, data))

    def _handle_config_deleted(self, payload: dict[str, Any]) -> None:
        data = payload.get("config") or payload
        key = self._key(
            SubscriptionKind.CONFIG,
            str(data.get("config_data_id", "")),
            data.get("namespace_id"),
            data.get("group_name"),
        )
        self._apply_config_delete(key)

    def _apply_service(self, key: SubscriptionKey, service: ServiceInfo) -> None:
        registered, previous = self._registry.swap_nodes(key, service.nodes)
        if not registered:
            logger.debug("Snapshot for unsubscribed %s, dropping", key)
            return
        for event in diff_service(service, previous, service.nodes):
            self._dispatcher.dispatch(key, event)

    def _apply_config(self, key: SubscriptionKey, config: ConfigInfo) -> None:
        event = self._detector.on_push(key, config)
        if event is not None:
            self._dispatcher.dispatch(key, event)

    def _apply_config_delete(self, key: SubscriptionKey) -> None:
        event = self._detector.on_delete(key)
        if event is not None:
            self._dispatcher.dispatch(key, event)

    # -- Helpers --------------------------------------------------------------

    def _ensure_open(self) -> None:
        if self._closed or self._connection.is_closed:
            raise ClientClosedError("Client has been closed")

    def _node_payload(self, node: NodeInfo) -> dict[str, Any]:
        merged = {**self._config.metadata, **node.metadata}
        return dataclasses.replace(node, metadata=merged).to_payload()

    def _track_node(
        self, key: SubscriptionKey, payload: dict[str, Any], result: dict[str, Any]
    ) -> str:
        node = payload["node"]
        node_id = str(result.get("node_id") or node.get("node_id") or f"{node['ip']}:{node['port']}")
        node["node_id"] = node_id
        self._registered_nodes[node_id] = payload
        logger.info("Registered node %s for %s", node_id, key)
        return node_id

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

    @staticmethod
    def _key_payload(key: SubscriptionKey) -> dict[str, Any]:
        field = "service_name" if key.kind == SubscriptionKind.SERVICE else "config_data_id"
        return {
            "namespace_id": key.namespace_id,
            "group_name": key.group_name,
            field: key.name,
        }

    @staticmethod
    def _service_info(key: SubscriptionKey, data: dict[str, Any]) -> ServiceInfo:
        return dataclasses.replace(
            ServiceInfo.from_payload(data),
            namespace_id=key.namespace_id,
            group_name=key.group_name,
            service_name=key.name,
        )

    @staticmethod
    def _config_info(key: SubscriptionKey, data: dict[str, Any]) -> ConfigInfo:
        return dataclasses.replace(
            ConfigInfo.from_payload(data),
            namespace_id=key.namespace_id,
            group_name=key.group_name,
            config_data_id=key.name,
        )


def _log_failure(what: str, future: asyncio.Future[Any]) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None and not isinstance(exc, (ServiceCenterConnectionError, ClientClosedError)):
        logger.warning("Failed to %s: %s", what, exc)

"""Service discovery and configuration center client.

Async usage::

    from servicecenter_client import ClientConfig, ServiceChangeAdapter, connect

    class Orders(ServiceChangeAdapter):
        def on_node_added(self, node, all_nodes):
            print("up", node.ip_address, node.port_number)

    async with connect(ClientConfig(server_address="registry:12004")) as client:
        await client.subscribe_service("orders", Orders())
        await client.register_node("billing", "10.0.1.7", 8080)

Sync usage::

    from servicecenter_client import SyncServiceCenterClient

    client = SyncServiceCenterClient(ClientConfig(server_address="registry:12004"))
    client.connect()
    config = client.get_config("app.yaml")
    client.close()

Optional extras::

    pip install servicecenter-client[fast]   # orjson + msgpack codecs
"""

from ._version import __version__
from .address_pool import AddressPool
from .client import AsyncServiceCenterClient
from .config import ClientConfig, parse_server_address
from .errors import (
    ClientClosedError,
    ReconnectExhaustedError,
    ServiceCenterAuthError,
    ServiceCenterConfigError,
    ServiceCenterConnectionError,
    ServiceCenterError,
    ServiceCenterProtocolError,
    ServiceCenterRequestError,
    ServiceCenterTimeoutError,
)
from .listener import (
    ConfigChangeAdapter,
    ConfigChangeListener,
    ServiceChangeAdapter,
    ServiceChangeListener,
)
from .sync_client import SyncServiceCenterClient
from .transport import Channel, Transport, TransportOptions, WebSocketTransport
from .types import (
    ConfigChangeEvent,
    ConfigEventType,
    ConfigInfo,
    ConfigHistory,
    ConfigVersion,
    ConnectionState,
    ConnectionStats,
    Endpoint,
    NodeInfo,
    ServiceChangeEvent,
    ServiceEventType,
    ServiceInfo,
    SubscriptionKey,
    SubscriptionKind,
)


def connect(
    config: ClientConfig | None = None,
    **kwargs,
) -> AsyncServiceCenterClient:
    """Create a service center client.

    Use as an async context manager. Keyword arguments are forwarded
    to :class:`AsyncServiceCenterClient`: ``transport`` and
    ``on_state_change``.

    Args:
        config: Client settings. Defaults to ``ClientConfig()``.
        **kwargs: Passed to :class:`AsyncServiceCenterClient`.

    Returns:
        An :class:`AsyncServiceCenterClient` instance.

    Raises:
        ServiceCenterAuthError: If the server rejects the credentials.
        ClientClosedError: If the client is closed while connecting.

    Example::

        async with connect(ClientConfig(namespace_id="prod")) as client:
            await client.watch_config("app.yaml", on_config_change)
    """
    return AsyncServiceCenterClient(config, **kwargs)


__all__ = [
    "__version__",
    "connect",
    "AsyncServiceCenterClient",
    "SyncServiceCenterClient",
    "ClientConfig",
    "parse_server_address",
    "AddressPool",
    "Transport",
    "Channel",
    "TransportOptions",
    "WebSocketTransport",
    "ServiceChangeListener",
    "ServiceChangeAdapter",
    "ConfigChangeListener",
    "ConfigChangeAdapter",
    "ConnectionState",
    "ConnectionStats",
    "Endpoint",
    "NodeInfo",
    "ServiceInfo",
    "ServiceChangeEvent",
    "ServiceEventType",
    "ConfigInfo",
    "ConfigVersion",
    "ConfigHistory",
    "ConfigChangeEvent",
    "ConfigEventType",
    "SubscriptionKey",
    "SubscriptionKind",
    "ServiceCenterError",
    "ServiceCenterConfigError",
    "ServiceCenterConnectionError",
    "ReconnectExhaustedError",
    "ServiceCenterAuthError",
    "ServiceCenterTimeoutError",
    "ServiceCenterRequestError",
    "ServiceCenterProtocolError",
    "ClientClosedError",
]

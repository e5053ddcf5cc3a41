# =============================================================================
# Service Center Client -- Listener Contracts
# =============================================================================
#
# A listener has one mandatory entry point that receives every event.
# The adapters route that entry point to one hook per event type; a hook
# left alone does nothing. Any hook may be a coroutine function.
# =============================================================================

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from .types import (
    ConfigChangeEvent,
    ConfigEventType,
    ConfigInfo,
    NodeInfo,
    ServiceChangeEvent,
    ServiceEventType,
    ServiceInfo,
)


class ServiceChangeListener(ABC):
    """Receives service events for one subscribed service."""

    @abstractmethod
    def on_service_change(self, event: ServiceChangeEvent) -> Any:
        """Called once per event, in the order events were derived."""

    def on_disconnected(self, cause: Exception) -> Any:
        """The connection was lost, or this subscription's replay was rejected."""

    def on_reconnected(self) -> Any:
        """A new session is up; subscriptions are about to be replayed."""


class ConfigChangeListener(ABC):
    """Receives config events for one watched config item."""

    @abstractmethod
    def on_config_change(self, event: ConfigChangeEvent) -> Any:
        """Called once per event, in the order events were derived."""

    def on_disconnected(self, cause: Exception) -> Any:
        pass

    def on_reconnected(self) -> Any:
        pass


class ServiceChangeAdapter(ServiceChangeListener):
    """Routes each event type to its own hook.

    Example::

        class Watcher(ServiceChangeAdapter):
            def on_node_added(self, node, all_nodes):
                pool[node.identity] = node

            def on_node_removed(self, node, all_nodes):
                pool.pop(node.identity, None)
    """

    def on_service_change(self, event: ServiceChangeEvent) -> Any:
        route = _SERVICE_ROUTES.get(event.event_type)
        if route is None:
            return None
        return route(self, event)

    def on_service_added(self, service: ServiceInfo, all_nodes: tuple[NodeInfo, ...]) -> Any:
        pass

    def on_service_updated(self, service: ServiceInfo, all_nodes: tuple[NodeInfo, ...]) -> Any:
        pass

    def on_service_deleted(self, service: ServiceInfo) -> Any:
        pass

    def on_node_added(self, node: NodeInfo, all_nodes: tuple[NodeInfo, ...]) -> Any:
        pass

    def on_node_updated(self, node: NodeInfo, all_nodes: tuple[NodeInfo, ...]) -> Any:
        pass

    def on_node_removed(self, node: NodeInfo, all_nodes: tuple[NodeInfo, ...]) -> Any:
        pass


class ConfigChangeAdapter(ConfigChangeListener):
    """Routes CONFIG_UPDATED and CONFIG_DELETED to separate hooks."""

    def on_config_change(self, event: ConfigChangeEvent) -> Any:
        if event.event_type == ConfigEventType.CONFIG_UPDATED and event.config is not None:
            return self.on_config_updated(event.config, event.content_md5)
        if event.event_type == ConfigEventType.CONFIG_DELETED:
            return self.on_config_deleted(
                event.namespace_id, event.group_name, event.config_data_id
            )
        return None

    def on_config_updated(self, config: ConfigInfo, content_md5: str | None) -> Any:
        pass

    def on_config_deleted(self, namespace_id: str, group_name: str, config_data_id: str) -> Any:
        pass


_SERVICE_ROUTES = {
    ServiceEventType.SERVICE_ADDED: lambda listener, e: listener.on_service_added(e.service, e.all_nodes),
    ServiceEventType.SERVICE_UPDATED: lambda listener, e: listener.on_service_updated(e.service, e.all_nodes),
    ServiceEventType.SERVICE_DELETED: lambda listener, e: listener.on_service_deleted(e.service),
    ServiceEventType.NODE_ADDED: lambda listener, e: listener.on_node_added(e.changed_node, e.all_nodes),
    ServiceEventType.NODE_UPDATED: lambda listener, e: listener.on_node_updated(e.changed_node, e.all_nodes),
    ServiceEventType.NODE_REMOVED: lambda listener, e: listener.on_node_removed(e.changed_node, e.all_nodes),
}

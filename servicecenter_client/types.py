# =============================================================================
# Service Center Client -- Type Definitions
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class ConnectionState(str, Enum):
    """Connection lifecycle state.

    Typical flow: CONNECTING -> CONNECTED -> DISCONNECTED -> RECONNECTING
    -> CONNECTED. CLOSED is terminal, no transition leaves it.
    """

    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class SubscriptionKind(str, Enum):
    """What a subscription key names: a service or a config data id."""

    SERVICE = "service"
    CONFIG = "config"


class ServiceEventType(str, Enum):
    SERVICE_ADDED = "SERVICE_ADDED"
    SERVICE_UPDATED = "SERVICE_UPDATED"
    SERVICE_DELETED = "SERVICE_DELETED"
    NODE_ADDED = "NODE_ADDED"
    NODE_UPDATED = "NODE_UPDATED"
    NODE_REMOVED = "NODE_REMOVED"


class ConfigEventType(str, Enum):
    CONFIG_UPDATED = "CONFIG_UPDATED"
    CONFIG_DELETED = "CONFIG_DELETED"


@dataclass(frozen=True, slots=True)
class Endpoint:
    """One registry server address."""

    host: str
    port: int

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    def __str__(self) -> str:
        return self.address


@dataclass(frozen=True, slots=True)
class SubscriptionKey:
    """Identity of a subscription: kind plus (namespace, group, name).

    ``name`` is a service name for SERVICE keys and a config data id for
    CONFIG keys.
    """

    kind: SubscriptionKind
    namespace_id: str
    group_name: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.namespace_id}/{self.group_name}/{self.name}"


@dataclass(frozen=True, slots=True)
class NodeInfo:
    """A service instance.

    Identity is the ``(ip_address, port_number)`` pair. Two nodes with the
    same identity but different attributes are the same node, updated.

    Attributes:
        ip_address: Instance IP or hostname.
        port_number: Instance port.
        metadata: Free-form string labels.
        healthy: Health flag as reported by the server.
        weight: Load-balancing weight.
        ephemeral: Whether the node expires without heartbeats.
        node_id: Server-assigned id, when known.
        instance_status: ``"UP"`` / ``"DOWN"`` style status string.
    """

    ip_address: str
    port_number: int
    metadata: dict[str, str] = field(default_factory=dict)
    healthy: bool = True
    weight: float = 1.0
    ephemeral: bool = True
    node_id: str | None = None
    instance_status: str = "UP"

    @property
    def identity(self) -> tuple[str, int]:
        return (self.ip_address, self.port_number)

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> NodeInfo:
        return cls(
            ip_address=str(data.get("ip") or data.get("ip_address") or ""),
            port_number=int(data.get("port") or data.get("port_number") or 0),
            metadata={str(k): str(v) for k, v in (data.get("metadata") or {}).items()},
            healthy=bool(data.get("healthy", True)),
            weight=float(data.get("weight", 1.0)),
            ephemeral=bool(data.get("ephemeral", True)),
            node_id=data.get("node_id"),
            instance_status=str(data.get("status", "UP")),
        )

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "ip": self.ip_address,
            "port": self.port_number,
            "metadata": dict(self.metadata),
            "healthy": self.healthy,
            "weight": self.weight,
            "ephemeral": self.ephemeral,
            "status": self.instance_status,
        }
        if self.node_id:
            payload["node_id"] = self.node_id
        return payload


@dataclass(frozen=True, slots=True)
class ServiceInfo:
    """A service snapshot: scoping plus its current nodes."""

    namespace_id: str
    group_name: str
    service_name: str
    nodes: tuple[NodeInfo, ...] = ()
    metadata: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> ServiceInfo:
        return cls(
            namespace_id=str(data.get("namespace_id", "")),
            group_name=str(data.get("group_name", "")),
            service_name=str(data.get("service_name", "")),
            nodes=tuple(NodeInfo.from_payload(n) for n in data.get("nodes") or ()),
            metadata={str(k): str(v) for k, v in (data.get("metadata") or {}).items()},
        )


@dataclass(frozen=True, slots=True)
class ServiceChangeEvent:
    """A service change derived from a snapshot push.

    Attributes:
        event_type: See :class:`ServiceEventType`.
        service: The service the change belongs to.
        all_nodes: Node list after applying this event; for
            ``SERVICE_DELETED`` and ``NODE_REMOVED`` the list before removal.
        changed_node: The single node for ``NODE_*`` events, else ``None``.
        timestamp: ISO-8601 time the event was derived.
    """

    event_type: ServiceEventType
    service: ServiceInfo
    all_nodes: tuple[NodeInfo, ...]
    changed_node: NodeInfo | None = None
    timestamp: str = field(default_factory=_now_iso)

    @property
    def namespace_id(self) -> str:
        return self.service.namespace_id

    @property
    def group_name(self) -> str:
        return self.service.group_name

    @property
    def service_name(self) -> str:
        return self.service.service_name


@dataclass(frozen=True, slots=True)
class ConfigInfo:
    """A configuration item as pushed or fetched from the server."""

    namespace_id: str
    group_name: str
    config_data_id: str
    content: str = ""
    content_md5: str | None = None
    content_type: str = "text"
    version: int = 0
    description: str = ""

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> ConfigInfo:
        return cls(
            namespace_id=str(data.get("namespace_id", "")),
            group_name=str(data.get("group_name", "")),
            config_data_id=str(data.get("config_data_id", "")),
            content=str(data.get("content") or ""),
            content_md5=data.get("content_md5") or None,
            content_type=str(data.get("content_type", "text")),
            version=int(data.get("version", 0)),
            description=str(data.get("description", "")),
        )


@dataclass(frozen=True, slots=True)
class ConfigVersion:
    """Version and content hash the server assigned after a write."""

    version: int
    content_md5: str | None = None

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> ConfigVersion:
        return cls(
            version=int(data.get("version") or data.get("new_version") or 0),
            content_md5=data.get("content_md5") or None,
        )


@dataclass(frozen=True, slots=True)
class ConfigHistory:
    """One stored revision of a config item.

    Attributes:
        change_type: Server label for the change, e.g. ``"UPDATE"``.
        change_time: Server timestamp string, passed through unparsed.
    """

    config_history_id: int
    namespace_id: str
    group_name: str
    config_data_id: str
    version: int
    content: str = ""
    content_md5: str | None = None
    content_type: str = "text"
    change_type: str = ""
    change_reason: str = ""
    changed_by: str = ""
    change_time: str = ""

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> ConfigHistory:
        return cls(
            config_history_id=int(data.get("config_history_id") or 0),
            namespace_id=str(data.get("namespace_id", "")),
            group_name=str(data.get("group_name", "")),
            config_data_id=str(data.get("config_data_id", "")),
            version=int(data.get("version") or 0),
            content=str(data.get("content") or ""),
            content_md5=data.get("content_md5") or None,
            content_type=str(data.get("content_type", "text")),
            change_type=str(data.get("change_type", "")),
            change_reason=str(data.get("change_reason", "")),
            changed_by=str(data.get("changed_by", "")),
            change_time=str(data.get("change_time", "")),
        )


@dataclass(frozen=True, slots=True)
class ConfigChangeEvent:
    """A config change after content-hash deduplication."""

    event_type: ConfigEventType
    namespace_id: str
    group_name: str
    config_data_id: str
    config: ConfigInfo | None = None
    content_md5: str | None = None
    timestamp: str = field(default_factory=_now_iso)


@dataclass
class ConnectionStats:
    """Counters for a single client."""

    messages_received: int = 0
    messages_sent: int = 0
    bytes_received: int = 0
    reconnect_count: int = 0
    connected_since: float | None = None
    last_latency_ms: float | None = None

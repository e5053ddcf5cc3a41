# =============================================================================
# Service Center Client -- Configuration
# =============================================================================
#
# One immutable, validated settings record. Every check runs in
# __post_init__, so an invalid value never produces a usable object.
# dataclasses.replace() goes through the same checks.
# =============================================================================

from __future__ import annotations

import base64
import re
import uuid
from dataclasses import dataclass, field

from .constants import (
    DEFAULT_GROUP,
    DEFAULT_NAMESPACE,
    DEFAULT_SERVER_ADDRESS,
    DEFAULT_STREAM_PATH,
    HEARTBEAT_INTERVAL,
    HEARTBEAT_TIMEOUT_FACTOR,
    KEEP_ALIVE_TIME,
    KEEP_ALIVE_TIMEOUT,
    KEEP_ALIVE_WITHOUT_CALLS,
    MAX_INBOUND_MESSAGE_SIZE,
    RECONNECT_INTERVAL,
    RECONNECT_MAX_ATTEMPTS,
    REQUEST_TIMEOUT,
)
from .errors import ServiceCenterConfigError
from .types import Endpoint

_ADDRESS_RE = re.compile(r"^([^:\s]+):(\d+)$")


def parse_server_address(value: str) -> tuple[Endpoint, ...]:
    """Parse ``"host:port"`` or ``"host1:port1,host2:port2"`` into endpoints.

    Raises:
        ServiceCenterConfigError: On an empty item, a missing or
            non-numeric port, or a port outside 1..65535.
    """
    if not value or not value.strip():
        raise ServiceCenterConfigError("server_address must not be empty")

    endpoints: list[Endpoint] = []
    for item in value.split(","):
        item = item.strip()
        if not item:
            raise ServiceCenterConfigError(
                f"server_address contains an empty item: {value!r}"
            )
        match = _ADDRESS_RE.match(item)
        if match is None:
            raise ServiceCenterConfigError(
                f"malformed server address {item!r}, expected 'host:port'"
            )
        port = int(match.group(2))
        if not 1 <= port <= 65535:
            raise ServiceCenterConfigError(
                f"port must be in 1-65535, got {port} in {item!r}"
            )
        endpoints.append(Endpoint(match.group(1), port))
    return tuple(endpoints)


@dataclass(frozen=True)
class ClientConfig:
    """Client settings, validated on construction and immutable afterwards.

    Attributes:
        server_address: ``"host:port"`` or comma-separated cluster list.
        enable_tls: Use an encrypted channel.
        tls_ca_file: CA bundle used to verify the server.
        tls_cert_file: Client certificate for mutual TLS.
        tls_key_file: Private key for ``tls_cert_file``.
        auth_token: Bearer token credential.
        user_id: User id for basic credentials (wins over the token).
        password: Password for ``user_id``.
        namespace_id: Default namespace for keys that omit one.
        group_name: Default group; blank means ``DEFAULT_GROUP``.
        heartbeat_interval: Seconds between application heartbeats.
        reconnect_interval: Seconds to wait before each reconnect attempt.
        max_reconnect_attempts: Consecutive attempts allowed, ``-1`` unbounded.
        request_timeout: Per-request deadline in seconds.
        keep_alive_time: Transport keep-alive ping interval in seconds.
        keep_alive_timeout: Transport keep-alive ack deadline in seconds.
        keep_alive_without_calls: Keep pinging an idle channel.
        max_inbound_message_size: Largest accepted inbound frame in bytes.
        metadata: Labels attached to registration requests.
        stream_path: Path of the streaming endpoint on each server.
        client_id: Identifier sent in the handshake.
    """

    server_address: str = DEFAULT_SERVER_ADDRESS
    enable_tls: bool = False
    tls_ca_file: str | None = None
    tls_cert_file: str | None = None
    tls_key_file: str | None = None
    auth_token: str | None = None
    user_id: str | None = None
    password: str | None = None
    namespace_id: str = DEFAULT_NAMESPACE
    group_name: str = DEFAULT_GROUP
    heartbeat_interval: float = HEARTBEAT_INTERVAL
    reconnect_interval: float = RECONNECT_INTERVAL
    max_reconnect_attempts: int = RECONNECT_MAX_ATTEMPTS
    request_timeout: float = REQUEST_TIMEOUT
    keep_alive_time: float = KEEP_ALIVE_TIME
    keep_alive_timeout: float = KEEP_ALIVE_TIMEOUT
    keep_alive_without_calls: bool = KEEP_ALIVE_WITHOUT_CALLS
    max_inbound_message_size: int = MAX_INBOUND_MESSAGE_SIZE
    metadata: dict[str, str] = field(default_factory=dict)
    stream_path: str = DEFAULT_STREAM_PATH
    client_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self) -> None:
        parse_server_address(self.server_address)

        if not self.namespace_id or not self.namespace_id.strip():
            raise ServiceCenterConfigError("namespace_id must not be empty")
        if not self.group_name or not self.group_name.strip():
            object.__setattr__(self, "group_name", DEFAULT_GROUP)

        for name in (
            "heartbeat_interval",
            "reconnect_interval",
            "request_timeout",
            "keep_alive_time",
            "keep_alive_timeout",
            "max_inbound_message_size",
        ):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ServiceCenterConfigError(f"{name} must be a number")
            if value <= 0:
                raise ServiceCenterConfigError(f"{name} must be > 0, got {value}")

        if self.max_reconnect_attempts < -1:
            raise ServiceCenterConfigError(
                "max_reconnect_attempts must be >= 0, or -1 for unbounded"
            )

        if bool(self.tls_cert_file) != bool(self.tls_key_file):
            raise ServiceCenterConfigError(
                "tls_cert_file and tls_key_file must be set together"
            )
        if not self.enable_tls and (
            self.tls_ca_file or self.tls_cert_file or self.tls_key_file
        ):
            raise ServiceCenterConfigError("TLS files given but enable_tls is False")

        if not self.stream_path.startswith("/"):
            raise ServiceCenterConfigError("stream_path must start with '/'")

        # Detach from the caller's dict
        object.__setattr__(self, "metadata", dict(self.metadata))

    @property
    def endpoints(self) -> tuple[Endpoint, ...]:
        return parse_server_address(self.server_address)

    @property
    def reconnect_unbounded(self) -> bool:
        return self.max_reconnect_attempts < 0

    @property
    def heartbeat_timeout(self) -> float:
        return self.heartbeat_interval * HEARTBEAT_TIMEOUT_FACTOR

    def auth_metadata(self) -> dict[str, str]:
        """Credential attached to every request.

        User id + password (Basic) wins over a token (Bearer) when both
        are configured.
        """
        if self.user_id and self.password:
            raw = f"{self.user_id}:{self.password}".encode("utf-8")
            return {"authorization": "Basic " + base64.b64encode(raw).decode("ascii")}
        if self.auth_token:
            return {"authorization": f"Bearer {self.auth_token}"}
        return {}

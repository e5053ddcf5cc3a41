# =============================================================================
# Service Center Client -- Address Pool
# =============================================================================
#
# Candidate registry endpoints with per-endpoint health counters.
# The current endpoint is sticky until it fails, then the pool rotates
# to the next one in configured order.
# =============================================================================

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Iterable

from .types import Endpoint


@dataclass
class EndpointHealth:
    """Health counters for a single endpoint."""

    endpoint: Endpoint
    consecutive_failures: int = 0
    total_connections: int = 0
    failed_connections: int = 0
    last_failure: float | None = None
    last_success: float | None = None


class AddressPool:
    """Ordered list of registry endpoints with rotate-on-failure selection.

    Args:
        endpoints: Endpoints in configured order. Must not be empty.
    """

    def __init__(self, endpoints: Iterable[Endpoint]) -> None:
        self._endpoints: list[EndpointHealth] = [EndpointHealth(ep) for ep in endpoints]
        if not self._endpoints:
            raise ValueError("No endpoints configured")
        self._index = 0

    @property
    def endpoints(self) -> list[Endpoint]:
        return [h.endpoint for h in self._endpoints]

    @property
    def current(self) -> Endpoint:
        return self._endpoints[self._index].endpoint

    def __len__(self) -> int:
        return len(self._endpoints)

    def select(self) -> Endpoint:
        """Endpoint to use for the next connect attempt."""
        return self.current

    def record_success(self, endpoint: Endpoint) -> None:
        health = self._find(endpoint)
        if health is None:
            return
        health.last_success = time.monotonic()
        health.consecutive_failures = 0
        health.total_connections += 1

    def record_failure(self, endpoint: Endpoint) -> Endpoint:
        """Count a failure and rotate past *endpoint*.

        Returns:
            The endpoint that will be tried next.
        """
        health = self._find(endpoint)
        if health is not None:
            health.last_failure = time.monotonic()
            health.consecutive_failures += 1
            health.total_connections += 1
            health.failed_connections += 1
        if self.current == endpoint:
            self._index = (self._index + 1) % len(self._endpoints)
        return self.current

    def get_stats(self) -> list[dict[str, Any]]:
        return [
            {
                "endpoint": h.endpoint.address,
                "current": h.endpoint == self.current,
                "failures": h.failed_connections,
                "successes": h.total_connections - h.failed_connections,
                "consecutive_failures": h.consecutive_failures,
            }
            for h in self._endpoints
        ]

    def _find(self, endpoint: Endpoint) -> EndpointHealth | None:
        for health in self._endpoints:
            if health.endpoint == endpoint:
                return health
        return None

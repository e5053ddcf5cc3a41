# =============================================================================
# Service Center Client -- Subscription Registry
# =============================================================================
#
# Active subscriptions in registration order, with the last state seen
# for each key. Touched from application threads (subscribe/unsubscribe)
# and from the receive task (state swaps), so every access goes through
# one lock. Listener callbacks are never invoked while it is held.
# =============================================================================

from __future__ import annotations

import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any

from .types import NodeInfo, SubscriptionKey


@dataclass
class Subscription:
    """Registry entry: the caller's listener plus the last observed state."""

    key: SubscriptionKey
    listener: Any
    last_nodes: tuple[NodeInfo, ...] | None = None
    last_md5: str | None = None


class SubscriptionRegistry:
    """Thread-safe ordered mapping of SubscriptionKey to Subscription."""

    def __init__(self) -> None:
        self._entries: OrderedDict[SubscriptionKey, Subscription] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def register(self, key: SubscriptionKey, listener: Any) -> bool:
        """Add *key* or replace its listener.

        A replaced entry keeps its position and forgets its last state,
        so the next push is delivered to the new listener in full.

        Returns:
            ``True`` when *key* was not registered before.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._entries[key] = Subscription(key, listener)
                return True
            entry.listener = listener
            entry.last_nodes = None
            entry.last_md5 = None
            return False

    def remove(self, key: SubscriptionKey) -> Subscription | None:
        """Drop *key*. Unknown keys are ignored."""
        with self._lock:
            return self._entries.pop(key, None)

    def get(self, key: SubscriptionKey) -> Subscription | None:
        with self._lock:
            return self._entries.get(key)

    def listener_for(self, key: SubscriptionKey) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            return entry.listener if entry is not None else None

    def entries(self) -> list[Subscription]:
        """Snapshot of all entries in registration order."""
        with self._lock:
            return list(self._entries.values())

    def keys(self) -> list[SubscriptionKey]:
        with self._lock:
            return list(self._entries)

    def swap_nodes(
        self, key: SubscriptionKey, nodes: tuple[NodeInfo, ...]
    ) -> tuple[bool, tuple[NodeInfo, ...]]:
        """Store *nodes* as the latest snapshot for *key*.

        Returns:
            ``(registered, previous)``; ``previous`` is empty on the first
            push. Nothing is stored when *key* is not registered.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False, ()
            previous = entry.last_nodes or ()
            entry.last_nodes = nodes
            return True, previous

    def swap_config_md5(self, key: SubscriptionKey, md5: str | None) -> tuple[bool, str | None]:
        """Store *md5* for *key* and return ``(registered, previous)``."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False, None
            previous = entry.last_md5
            entry.last_md5 = md5
            return True, previous

    def clear(self) -> list[Subscription]:
        """Drop every entry. Returns what was removed."""
        with self._lock:
            removed = list(self._entries.values())
            self._entries.clear()
            return removed

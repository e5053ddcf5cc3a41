# =============================================================================
# Service Center Client -- Event Dispatch
# =============================================================================
#
# Delivers events to the listener registered for a key. Delivery is
# synchronous until a hook returns an awaitable; from then on later
# deliveries for that key wait behind it, so per-key order holds.
# Different keys never wait for each other.
# =============================================================================

from __future__ import annotations

import asyncio
import inspect
from functools import partial
from typing import Any, Awaitable, Callable

from ._logging import logger
from .registry import SubscriptionRegistry
from .types import ConfigChangeEvent, ServiceChangeEvent, SubscriptionKey

_CHANGE_HOOKS = ("on_service_change", "on_config_change")


class EventDispatcher:
    """Invoke listener hooks, isolating every listener failure.

    A listener is either a ``ServiceChangeListener`` /
    ``ConfigChangeListener`` or a plain callable taking the event.
    """

    def __init__(self, registry: SubscriptionRegistry) -> None:
        self._registry = registry
        self._tails: dict[SubscriptionKey, asyncio.Future[None]] = {}

    def dispatch(self, key: SubscriptionKey, event: ServiceChangeEvent | ConfigChangeEvent) -> None:
        name = "on_service_change" if isinstance(event, ServiceChangeEvent) else "on_config_change"
        self._deliver(key, name, (event,))

    def notify_disconnected(self, key: SubscriptionKey, cause: Exception) -> None:
        self._deliver(key, "on_disconnected", (cause,))

    def notify_reconnected(self, key: SubscriptionKey) -> None:
        self._deliver(key, "on_reconnected", ())

    @property
    def pending(self) -> int:
        """Keys with a coroutine delivery still running."""
        return sum(1 for tail in self._tails.values() if not tail.done())

    async def drain(self) -> None:
        """Wait until every queued delivery has finished."""
        while True:
            running = [tail for tail in self._tails.values() if not tail.done()]
            if not running:
                return
            await asyncio.wait(running)

    async def close(self) -> None:
        """Cancel deliveries that have not finished yet."""
        tails = list(self._tails.values())
        self._tails.clear()
        for tail in tails:
            tail.cancel()
        if tails:
            await asyncio.gather(*tails, return_exceptions=True)

    # -- Internal ---------------------------------------------------------------

    def _deliver(self, key: SubscriptionKey, name: str, args: tuple[Any, ...]) -> None:
        listener = self._registry.listener_for(key)
        if resolve_hook(listener, name) is None:
            return
        tail = self._tails.get(key)
        if tail is not None and not tail.done():
            self._chain(key, asyncio.ensure_future(self._call_after(tail, key, listener, name, args)))
            return

        result = self._invoke(key, listener, name, args)
        if inspect.isawaitable(result):
            self._chain(key, asyncio.ensure_future(self._await_result(key, name, result)))

    def _chain(self, key: SubscriptionKey, task: asyncio.Future[None]) -> None:
        self._tails[key] = task
        task.add_done_callback(partial(self._release, key))

    def _release(self, key: SubscriptionKey, task: asyncio.Future[None]) -> None:
        if self._tails.get(key) is task:
            del self._tails[key]

    async def _call_after(
        self,
        tail: asyncio.Future[None],
        key: SubscriptionKey,
        listener: Any,
        name: str,
        args: tuple[Any, ...],
    ) -> None:
        await asyncio.wait([tail])
        # The key may have been unsubscribed or handed to a new listener
        # while this delivery was queued
        if self._registry.listener_for(key) is not listener:
            logger.debug("Dropping queued %s for %s: listener changed", name, key)
            return
        result = self._invoke(key, listener, name, args)
        if inspect.isawaitable(result):
            await self._await_result(key, name, result)

    @staticmethod
    def _invoke(key: SubscriptionKey, listener: Any, name: str, args: tuple[Any, ...]) -> Any:
        hook = resolve_hook(listener, name)
        if hook is None:
            return None
        try:
            return hook(*args)
        except Exception:
            logger.error("Listener %s for %s raised", name, key, exc_info=True)
            return None

    @staticmethod
    async def _await_result(key: SubscriptionKey, name: str, result: Awaitable[Any]) -> None:
        try:
            await result
        except Exception:
            logger.error("Listener %s for %s raised", name, key, exc_info=True)


def resolve_hook(listener: Any, name: str) -> Callable[..., Any] | None:
    """Bound hook *name* of *listener*; a plain callable only gets change events."""
    if listener is None:
        return None
    hook = getattr(listener, name, None)
    if hook is None and name in _CHANGE_HOOKS and callable(listener):
        hook = listener
    return hook


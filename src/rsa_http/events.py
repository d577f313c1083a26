"""
One-shot lifecycle notifications for key discovery.

Subscriptions fire once and are then dropped: they mirror a single handshake,
not a recurring stream. ``once()`` offers the same notification as an
awaitable future.
"""

from __future__ import annotations

import asyncio
import enum
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from rsa_http._logging import get_logger

__all__ = [
    "DiscoveryEvent",
    "EventBus",
    "Subscription",
]

_logger = get_logger(__name__)


class DiscoveryEvent(str, enum.Enum):
    """Discovery lifecycle transitions."""

    CONNECTING = "connecting"
    CONNECTED = "connected"


EventCallback = Callable[[Any], Any]
"""Callback invoked with the bus scope (the owning client)."""


@dataclass(eq=False)
class Subscription:
    """A pending one-shot callback."""

    event: DiscoveryEvent
    callback: EventCallback


class EventBus:
    """Minimal publish/subscribe register with one-shot subscriptions."""

    def __init__(self, scope: Any = None) -> None:
        """
        Args:
            scope: Object passed to every callback (typically the owning client)
        """
        self.scope = scope
        self._subscriptions: dict[DiscoveryEvent, list[Subscription]] = {}

    def on(self, event: DiscoveryEvent | str, callback: EventCallback) -> Subscription:
        """Register ``callback`` for the next emission of ``event``."""
        subscription = Subscription(event=DiscoveryEvent(event), callback=callback)
        self._subscriptions.setdefault(subscription.event, []).append(subscription)
        return subscription

    def off(self, subscription: Subscription) -> None:
        """Drop a pending subscription (no-op if it already fired)."""
        pending = self._subscriptions.get(subscription.event, [])
        if subscription in pending:
            pending.remove(subscription)

    def once(self, event: DiscoveryEvent | str) -> asyncio.Future[Any]:
        """Future resolved with the bus scope on the next emission of ``event``."""
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()

        def _resolve(scope: Any) -> None:
            if not future.done():
                future.set_result(scope)

        self.on(event, _resolve)
        return future

    def emit(self, event: DiscoveryEvent | str) -> int:
        """
        Fire and remove every subscription for ``event``.

        Subscriptions added by a callback during emission wait for the next one.
        A callback that raises is logged and does not stop the others.

        Returns:
            Number of callbacks invoked
        """
        name = DiscoveryEvent(event)
        fired = self._subscriptions.pop(name, [])
        _logger.debug("Event emitted: event=%s subscribers=%d", name.value, len(fired))
        for subscription in fired:
            try:
                subscription.callback(self.scope)
            except Exception:
                _logger.exception("Event callback failed: event=%s", name.value)
        return len(fired)

"""Explicit unsubscribe handles for listener registrations."""

import logging
from typing import Callable

logger = logging.getLogger(__name__)


class Subscription:
    """Handle returned by every listener registration.

    Calling `unsubscribe()` removes the listener. Safe to call multiple times.
    """

    def __init__(self, remover: Callable[[], None]):
        self._remover: Callable[[], None] | None = remover

    @property
    def active(self) -> bool:
        return self._remover is not None

    def unsubscribe(self) -> None:
        remover, self._remover = self._remover, None
        if remover is not None:
            remover()


class SubscriptionGroup:
    """Collects subscriptions so they can be released together on teardown."""

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    def __len__(self) -> int:
        return len(self._subscriptions)

    def add(self, subscription: Subscription) -> Subscription:
        self._subscriptions.append(subscription)
        return subscription

    def release(self) -> None:
        """Unsubscribe everything collected so far."""
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            try:
                subscription.unsubscribe()
            except Exception as e:
                logger.warning(f"Failed to release subscription: {e}")


def subscribe(registry: dict, key, listener) -> Subscription:
    """Add `listener` to the list stored under `key` in `registry`."""
    registry.setdefault(key, []).append(listener)

    def remove() -> None:
        listeners = registry.get(key)
        if listeners and listener in listeners:
            listeners.remove(listener)
            if not listeners:
                del registry[key]

    return Subscription(remove)

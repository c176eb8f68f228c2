"""In-process change feed delivering invalidation signals.

Signals say *that* something changed, never *what* it changed to. Consumers
react by re-fetching from the store and re-evaluating.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass

from exam_portal.core.services.store_ports import ChangeScope

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ChangeSignal:
    scope: ChangeScope
    subject_id: str | None = None


class Subscription:
    """Cancellable, unbounded async iterator of change signals."""

    def __init__(self, feed: ChangeFeed, scopes: frozenset[ChangeScope]) -> None:
        self._feed = feed
        self._scopes = scopes
        self._queue: asyncio.Queue[ChangeSignal | None] = asyncio.Queue()
        self._cancelled = False

    @property
    def scopes(self) -> frozenset[ChangeScope]:
        return self._scopes

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def wants(self, signal: ChangeSignal) -> bool:
        return not self._cancelled and signal.scope in self._scopes

    def deliver(self, signal: ChangeSignal) -> None:
        self._queue.put_nowait(signal)

    def pending(self) -> int:
        return self._queue.qsize()

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._feed.unsubscribe(self)
        # Wake a consumer blocked on the queue so its loop can end.
        self._queue.put_nowait(None)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> ChangeSignal:
        if self._cancelled and self._queue.empty():
            raise StopAsyncIteration
        signal = await self._queue.get()
        if signal is None:
            raise StopAsyncIteration
        return signal

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.cancel()


class ChangeFeed:
    """Fan-out of change signals to every matching subscription."""

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    def subscribe(self, scopes: Iterable[ChangeScope]) -> Subscription:
        scope_set = frozenset(scopes)
        if not scope_set:
            raise ValueError("A subscription needs at least one scope.")
        subscription = Subscription(self, scope_set)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(self, scope: ChangeScope, subject_id: str | None = None) -> int:
        """Deliver a signal and return how many subscriptions received it."""
        signal = ChangeSignal(scope=scope, subject_id=subject_id)
        delivered = 0
        for subscription in list(self._subscriptions):
            if subscription.wants(signal):
                subscription.deliver(signal)
                delivered += 1
        logger.debug("Published %s change for %s to %d subscriber(s)", scope.value, subject_id, delivered)
        return delivered

    def subscriber_count(self) -> int:
        return len(self._subscriptions)

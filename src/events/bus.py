# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

"""In-process publish/subscribe router for live progress events.

Subscriptions are handle objects kept in an arena indexed by id. A handle is
matched by topic (exact, ``prefix.*`` or ``*``) and, optionally, by session.
Publishing is synchronous and fire-and-forget: handlers must not block, and a
coroutine returned by a handler is scheduled as a background task.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

from src.agent.errors import SubscriberError

from .types import BaseEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[BaseEvent], Union[None, Awaitable[None]]]

WILDCARD = "*"


@dataclass(eq=False)
class Subscription:
    id: int
    topic: str
    session_id: Optional[str]
    handler: EventHandler
    _bus: Optional["EventBus"] = field(default=None, repr=False)

    @property
    def active(self) -> bool:
        return self._bus is not None

    def matches(self, event: BaseEvent) -> bool:
        if self.session_id is not None and event.session_id != self.session_id:
            return False
        return topic_matches(self.topic, event.type)

    def close(self) -> bool:
        """Detach from the bus. Returns False when already closed."""
        bus, self._bus = self._bus, None
        if bus is None:
            return False
        return bus._remove(self.id)


def topic_matches(pattern: str, topic: str) -> bool:
    if pattern == WILDCARD or pattern == topic:
        return True
    if pattern.endswith(".*"):
        return topic.startswith(pattern[:-1])
    return False


class EventBus:
    """Topic and session keyed event router with isolated subscribers."""

    def __init__(self) -> None:
        self._subscriptions: dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self._published = 0
        self._failures = 0

    def subscribe(
        self,
        topic: str,
        handler: EventHandler,
        *,
        session_id: Optional[str] = None,
    ) -> Subscription:
        with self._lock:
            subscription = Subscription(
                id=next(self._ids),
                topic=topic,
                session_id=session_id,
                handler=handler,
                _bus=self,
            )
            self._subscriptions[subscription.id] = subscription
        logger.debug("Subscribed %s to %s (session=%s)", subscription.id, topic, session_id)
        return subscription

    def subscribe_global(self, handler: EventHandler) -> Subscription:
        return self.subscribe(WILDCARD, handler)

    def subscribe_session(self, session_id: str, handler: EventHandler) -> Subscription:
        return self.subscribe(WILDCARD, handler, session_id=session_id)

    def unsubscribe(self, subscription: Subscription) -> bool:
        return subscription.close()

    def _remove(self, subscription_id: int) -> bool:
        with self._lock:
            removed = self._subscriptions.pop(subscription_id, None)
        if removed is not None:
            logger.debug("Unsubscribed %s from %s", subscription_id, removed.topic)
        return removed is not None

    def publish(self, event: BaseEvent) -> int:
        """Deliver ``event`` to current subscribers; returns how many matched."""
        with self._lock:
            targets = [sub for sub in self._subscriptions.values() if sub.matches(event)]
            self._published += 1

        for subscription in targets:
            try:
                result = subscription.handler(event)
            except Exception as exc:
                self._record_failure(subscription, event, exc)
                continue
            if inspect.isawaitable(result):
                self._schedule(subscription, event, result)
        return len(targets)

    def subscriber_count(self, session_id: Optional[str] = None) -> int:
        with self._lock:
            if session_id is None:
                return len(self._subscriptions)
            return sum(1 for sub in self._subscriptions.values() if sub.session_id == session_id)

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "subscriptions": len(self._subscriptions),
                "published": self._published,
                "failures": self._failures,
                "pending": len(self._background_tasks),
            }

    async def drain(self) -> None:
        """Wait for coroutine deliveries that are still running."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    def clear(self) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions.values())
            self._subscriptions.clear()
        for subscription in subscriptions:
            subscription._bus = None

    def _schedule(self, subscription: Subscription, event: BaseEvent, awaitable: Awaitable[None]) -> None:
        async def _deliver() -> None:
            try:
                await awaitable
            except Exception as exc:
                self._record_failure(subscription, event, exc)

        task = asyncio.ensure_future(_deliver())
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    def _record_failure(self, subscription: Subscription, event: BaseEvent, exc: Exception) -> None:
        with self._lock:
            self._failures += 1
        error = SubscriberError(f"Subscriber {subscription.id} failed on {event.type}: {exc}")
        logger.warning("%s", error, exc_info=exc)

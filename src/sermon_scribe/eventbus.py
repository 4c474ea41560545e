"""Async event bus fanning session events out to UI and CLI consumers."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import MutableMapping
from typing import Protocol

logger = logging.getLogger(__name__)

WILDCARD_SUFFIX = ".*"


class ConsumerCallback(Protocol):
    """Protocol describing consumer callbacks invoked for topic events."""

    async def __call__(self, event: object) -> None:  # pragma: no cover - protocol signature
        """Consume a single event dispatched by the event bus."""

        ...


class EventBus:
    """Topic event bus; ``"transcript.*"`` subscribes to every ``transcript.`` topic.

    A consumer that raises is logged and does not prevent delivery to the others,
    so a broken renderer can never stall the transcription path.
    """

    def __init__(self) -> None:
        """Initialise the event bus without subscribers."""

        self._subscribers: MutableMapping[str, list[ConsumerCallback]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def subscribe(self, topic: str, callback: ConsumerCallback) -> None:
        """Register *callback* for *topic* (exact name or ``prefix.*`` pattern)."""

        async with self._lock:
            if callback not in self._subscribers[topic]:
                self._subscribers[topic].append(callback)

    async def unsubscribe(self, topic: str, callback: ConsumerCallback) -> None:
        """Remove *callback* subscription for *topic* if present."""

        async with self._lock:
            callbacks = self._subscribers.get(topic)
            if not callbacks:
                return
            if callback in callbacks:
                callbacks.remove(callback)
            if not callbacks:
                self._subscribers.pop(topic, None)

    async def publish(self, topic: str, event: object) -> None:
        """Dispatch *event* to subscribers of *topic* and of matching wildcards."""

        async with self._lock:
            callbacks = [
                callback
                for pattern, registered in self._subscribers.items()
                if _matches(pattern, topic)
                for callback in registered
            ]
        if not callbacks:
            return
        results = await asyncio.gather(
            *(callback(event) for callback in callbacks), return_exceptions=True
        )
        for result in results:
            if isinstance(result, Exception):
                logger.error(
                    "Consumer for topic %s failed: %s: %s",
                    topic,
                    result.__class__.__name__,
                    result,
                )

    async def topics(self) -> dict[str, int]:
        """Return a snapshot of subscribed topic patterns and subscriber counts."""

        async with self._lock:
            return {topic: len(callbacks) for topic, callbacks in self._subscribers.items()}


def _matches(pattern: str, topic: str) -> bool:
    if pattern.endswith(WILDCARD_SUFFIX):
        return topic.startswith(pattern[: -len(WILDCARD_SUFFIX)] + ".")
    return pattern == topic

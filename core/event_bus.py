"""In-process async publish/subscribe event sink."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from core.events import EngineEvent

logger = logging.getLogger(__name__)

# Subscribe to this key to receive every event regardless of type
ALL_EVENTS = "*"


class EventSink(Protocol):
    """Outbound port the engine publishes to. It never reads events back."""

    async def publish(self, event: EngineEvent) -> None: ...


class NullEventSink:
    """Drops every event. Used when nothing downstream is listening."""

    async def publish(self, event: EngineEvent) -> None:
        return None


class EventBus:
    """Lightweight pub/sub backed by asyncio.Queue.

    Keys are event types (``"execution.failure"`` …) or ``ALL_EVENTS``.
    Multiple subscribers may register for the same key; each receives its own
    copy of every event.
    """

    def __init__(self) -> None:
        self._queues: dict[str, list[asyncio.Queue]] = defaultdict(list)

    def subscribe(self, key: str = ALL_EVENTS) -> asyncio.Queue:
        """Return a queue that will receive all future events for *key*."""
        q: asyncio.Queue = asyncio.Queue()
        self._queues[key].append(q)
        return q

    def unsubscribe(self, key: str, q: asyncio.Queue) -> None:
        try:
            self._queues[key].remove(q)
        except ValueError:
            pass

    async def publish(self, event: EngineEvent) -> None:
        """Deliver *event* to every subscriber of its type and of ``ALL_EVENTS``."""
        targets = list(self._queues.get(event.type, [])) + list(self._queues.get(ALL_EVENTS, []))
        for q in targets:
            await q.put(event)
        logger.debug("Event published", extra={"event_type": event.type, "subscribers": len(targets)})

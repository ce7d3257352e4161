"""In-process live-update hub: topic -> bounded subscriber queues."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from copy_trading.utils.logging import get_logger

SIGNALS_TOPIC = "signals"

SIGNAL_NEW = "signal:new"
COPY_TRADE_NOTIFICATION = "copyTrade:notification"
COPY_TRADE_EXECUTED = "copyTrade:executed"
COPY_TRADE_FAILED = "copyTrade:failed"
COPY_TRADE_ERROR = "copyTrade:error"


def symbol_topic(symbol: str) -> str:
    return f"signal:{symbol.upper()}"


def user_topic(user_id: str) -> str:
    return f"user:{user_id}"


@dataclass(slots=True)
class Event:
    """One published event."""

    topic: str
    event_type: str
    payload: dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class BroadcastHub:
    """Best-effort publisher.

    ``publish`` never awaits: a full subscriber queue drops the event for that
    subscriber only.
    """

    def __init__(self, queue_size: int = 100) -> None:
        self._queue_size = queue_size
        self._subscribers: dict[str, set[asyncio.Queue[Event]]] = {}
        self._logger = get_logger("copy_trading.events.broadcast")
        self.published = 0
        self.dropped = 0

    def subscribe(self, topic: str, maxsize: int | None = None) -> asyncio.Queue[Event]:
        queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize or self._queue_size)
        self._subscribers.setdefault(topic, set()).add(queue)
        return queue

    def unsubscribe(self, topic: str, queue: asyncio.Queue[Event]) -> None:
        subscribers = self._subscribers.get(topic)
        if not subscribers:
            return
        subscribers.discard(queue)
        if not subscribers:
            del self._subscribers[topic]

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, ()))

    def publish(self, topic: str, event_type: str, payload: dict[str, Any]) -> int:
        """Deliver to every subscriber of ``topic``; return how many received it."""
        event = Event(topic=topic, event_type=event_type, payload=payload)
        delivered = 0
        for queue in list(self._subscribers.get(topic, ())):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                self.dropped += 1
                self._logger.debug("broadcast_dropped", topic=topic, event_type=event_type)
                continue
            delivered += 1
        self.published += 1
        return delivered

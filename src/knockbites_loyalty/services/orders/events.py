from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator
from uuid import UUID

from loguru import logger

from knockbites_loyalty.core.settings import settings
from knockbites_loyalty.services.orders.tracking import OrderTrackingState


class OrderEventHub:
    """In-process fan-out of order tracking snapshots to live subscribers.

    Slow subscribers lose their oldest queued snapshot rather than blocking
    publishers; the poll backstop recovers anything dropped.
    """

    def __init__(self, *, queue_size: int | None = None) -> None:
        self._queue_size = max(queue_size or settings.order_event_queue_size, 1)
        self._subscribers: dict[UUID, set[asyncio.Queue[OrderTrackingState]]] = defaultdict(set)

    def publish(self, state: OrderTrackingState) -> int:
        queues = list(self._subscribers.get(state.order_id, ()))
        for queue in queues:
            if queue.full():
                queue.get_nowait()
                logger.debug("Dropped queued order snapshot", order_id=str(state.order_id))
            queue.put_nowait(state)
        return len(queues)

    def subscriber_count(self, order_id: UUID) -> int:
        return len(self._subscribers.get(order_id, ()))

    @asynccontextmanager
    async def subscription(self, order_id: UUID) -> AsyncIterator[asyncio.Queue[OrderTrackingState]]:
        queue: asyncio.Queue[OrderTrackingState] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers[order_id].add(queue)
        try:
            yield queue
        finally:
            listeners = self._subscribers.get(order_id)
            if listeners is not None:
                listeners.discard(queue)
                if not listeners:
                    self._subscribers.pop(order_id, None)


_HUB = OrderEventHub()


def get_order_event_hub() -> OrderEventHub:
    return _HUB


__all__ = ["OrderEventHub", "get_order_event_hub"]

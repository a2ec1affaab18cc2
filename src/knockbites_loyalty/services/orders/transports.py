"""Push and poll transports feeding the order status synchronizer."""

from __future__ import annotations

import json
from typing import AsyncIterator, Callable
from uuid import UUID

import httpx
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from knockbites_loyalty.core.settings import settings
from knockbites_loyalty.models.order import Order
from knockbites_loyalty.services.orders.errors import OrderNotFoundError, TransportError
from knockbites_loyalty.services.orders.events import OrderEventHub, get_order_event_hub
from knockbites_loyalty.services.orders.tracking import OrderTrackingState

ORDER_STATUS_EVENT = "order.status"


class InProcessOrderTransport:
    """Reads the order table directly and subscribes to the in-process hub."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        *,
        hub: OrderEventHub | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._hub = hub or get_order_event_hub()

    async def fetch(self, order_id: UUID) -> OrderTrackingState:
        try:
            async with self._session_factory() as session:
                order = await session.get(Order, order_id)
        except SQLAlchemyError as exc:
            raise TransportError(f"Failed to load order {order_id}") from exc
        if order is None:
            raise OrderNotFoundError(f"Order {order_id} not found")
        return OrderTrackingState.from_order(order)

    async def subscribe(self, order_id: UUID) -> AsyncIterator[OrderTrackingState]:
        async with self._hub.subscription(order_id) as queue:
            while True:
                yield await queue.get()


def parse_sse_lines(lines: list[str]) -> tuple[str | None, str | None]:
    """Collapse one server-sent-event frame into ``(event, data)``."""

    event_type: str | None = None
    data_lines: list[str] = []
    for line in lines:
        if not line or line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if field == "event":
            event_type = value
        elif field == "data":
            data_lines.append(value)
    return event_type, "\n".join(data_lines) if data_lines else None


class HttpOrderTrackingTransport:
    """Tracking client for the public orders API (poll + SSE push)."""

    def __init__(
        self,
        base_url: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        api_prefix: str = "/api/v1",
        timeout_seconds: float | None = None,
    ) -> None:
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout_seconds or settings.order_tracking_request_timeout_seconds,
        )
        self._prefix = api_prefix.rstrip("/")

    async def fetch(self, order_id: UUID) -> OrderTrackingState:
        url = f"{self._prefix}/orders/{order_id}/tracking"
        try:
            response = await self._client.get(url)
        except httpx.HTTPError as exc:
            raise TransportError(f"Tracking poll failed: {exc}") from exc

        if response.status_code == 404:
            raise OrderNotFoundError(f"Order {order_id} not found")
        if response.status_code >= 400:
            raise TransportError(f"Tracking poll returned HTTP {response.status_code}")
        try:
            return OrderTrackingState.from_payload(response.json())
        except (KeyError, TypeError, AttributeError, ValueError) as exc:
            raise TransportError("Malformed tracking payload") from exc

    async def subscribe(self, order_id: UUID) -> AsyncIterator[OrderTrackingState]:
        url = f"{self._prefix}/orders/{order_id}/events"
        frame: list[str] = []
        try:
            async with self._client.stream(
                "GET", url, headers={"Accept": "text/event-stream"}, timeout=None
            ) as response:
                if response.status_code >= 400:
                    raise TransportError(f"Tracking stream returned HTTP {response.status_code}")
                async for line in response.aiter_lines():
                    if line:
                        frame.append(line)
                        continue
                    event_type, data = parse_sse_lines(frame)
                    frame = []
                    if event_type != ORDER_STATUS_EVENT or data is None:
                        continue
                    try:
                        yield OrderTrackingState.from_payload(json.loads(data))
                    except (KeyError, TypeError, AttributeError, ValueError):
                        logger.warning("Skipping malformed tracking frame", order_id=str(order_id))
        except httpx.HTTPError as exc:
            raise TransportError(f"Tracking stream failed: {exc}") from exc

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


__all__ = [
    "HttpOrderTrackingTransport",
    "InProcessOrderTransport",
    "ORDER_STATUS_EVENT",
    "parse_sse_lines",
]

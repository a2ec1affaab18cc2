"""Pickup tracking: one merge rule for push and poll updates.

The synchronizer owns a push subscription and a fixed-interval poll under a
single lifetime. Both feed ``merge_order_state`` so a late poll can never
move the displayed status backwards.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Protocol
from uuid import UUID

from loguru import logger

from knockbites_loyalty.core.settings import settings
from knockbites_loyalty.models.order import Order, OrderStatus
from knockbites_loyalty.observability.orders import get_order_tracking_store
from knockbites_loyalty.services.orders.errors import OrderNotFoundError, TransportError

FORWARD_SEQUENCE: tuple[OrderStatus, ...] = (
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PREPARING,
    OrderStatus.READY,
    OrderStatus.COMPLETED,
)
TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})


def _ensure_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True, slots=True)
class OrderTrackingState:
    order_id: UUID
    status: OrderStatus
    updated_at: datetime

    @classmethod
    def from_order(cls, order: Order) -> "OrderTrackingState":
        return cls(
            order_id=order.id,
            status=OrderStatus(order.status),
            updated_at=_ensure_aware(order.updated_at),
        )

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "OrderTrackingState":
        """Parse the camelCase tracking payload served by the orders API.

        Raises ``ValueError`` for anything that is not a well-formed payload.
        """

        if not isinstance(payload, Mapping):
            raise ValueError(f"Tracking payload must be an object, got {type(payload).__name__}")
        try:
            updated_at = payload["updatedAt"]
        except KeyError as exc:
            raise ValueError("Tracking payload is missing updatedAt") from exc
        if isinstance(updated_at, str):
            updated_at = datetime.fromisoformat(updated_at.replace("Z", "+00:00"))
        elif not isinstance(updated_at, datetime):
            raise ValueError("Tracking payload updatedAt must be an ISO timestamp")
        return cls(
            order_id=UUID(str(payload["orderId"])),
            status=OrderStatus(payload["status"]),
            updated_at=_ensure_aware(updated_at),
        )

    def as_payload(self) -> dict[str, Any]:
        return {
            "orderId": str(self.order_id),
            "status": self.status.value,
            "updatedAt": self.updated_at.isoformat(),
        }

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class MergeOutcome(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    STALE = "stale"
    REJECTED = "rejected"


@dataclass(frozen=True, slots=True)
class MergeResult:
    state: OrderTrackingState | None
    outcome: MergeOutcome

    @property
    def changed(self) -> bool:
        return self.outcome == MergeOutcome.ACCEPTED


def is_reachable(current: OrderStatus, target: OrderStatus) -> bool:
    """Whether ``target`` lies ahead of ``current`` along allowed edges.

    Snapshots may skip states the client never observed, so any later
    forward state counts, and cancellation is reachable from every
    non-terminal state.
    """

    if current in TERMINAL_STATUSES or current == target:
        return False
    if target == OrderStatus.CANCELLED:
        return True
    return FORWARD_SEQUENCE.index(target) > FORWARD_SEQUENCE.index(current)


def merge_order_state(
    held: OrderTrackingState | None, incoming: OrderTrackingState
) -> MergeResult:
    if held is None:
        return MergeResult(state=incoming, outcome=MergeOutcome.ACCEPTED)
    if incoming.order_id != held.order_id:
        return MergeResult(state=held, outcome=MergeOutcome.REJECTED)
    if incoming.updated_at < held.updated_at:
        return MergeResult(state=held, outcome=MergeOutcome.STALE)
    if incoming.status == held.status:
        return MergeResult(
            state=replace(held, updated_at=incoming.updated_at),
            outcome=MergeOutcome.DUPLICATE,
        )
    if not is_reachable(held.status, incoming.status):
        return MergeResult(state=held, outcome=MergeOutcome.REJECTED)
    return MergeResult(state=incoming, outcome=MergeOutcome.ACCEPTED)


class OrderTrackingTransport(Protocol):
    async def fetch(self, order_id: UUID) -> OrderTrackingState:
        """Return the current snapshot; raise OrderNotFoundError or TransportError."""

    def subscribe(self, order_id: UUID) -> AsyncIterator[OrderTrackingState]:
        """Yield pushed updates until the stream ends; raise TransportError on failure."""


UpdateCallback = Callable[[OrderTrackingState], Awaitable[None]]
ErrorCallback = Callable[[Exception], Awaitable[None]]


class OrderStatusSynchronizer:
    """Keeps one order's tracking state current from push and poll transports."""

    def __init__(
        self,
        order_id: UUID,
        transport: OrderTrackingTransport,
        *,
        on_update: UpdateCallback,
        on_error: ErrorCallback | None = None,
        poll_interval_seconds: float | None = None,
        max_missed_polls: int | None = None,
        resubscribe_delay_seconds: float | None = None,
        initial_state: OrderTrackingState | None = None,
    ) -> None:
        self.order_id = order_id
        self._transport = transport
        self._on_update = on_update
        self._on_error = on_error
        self.poll_interval_seconds = (
            poll_interval_seconds
            if poll_interval_seconds is not None
            else settings.order_tracking_poll_interval_seconds
        )
        self.max_missed_polls = max(
            max_missed_polls if max_missed_polls is not None else settings.order_tracking_max_missed_polls,
            1,
        )
        self.resubscribe_delay_seconds = (
            resubscribe_delay_seconds
            if resubscribe_delay_seconds is not None
            else self.poll_interval_seconds
        )
        self._state = initial_state
        self._missed_polls = 0
        self._apply_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._push_task: asyncio.Task | None = None
        self._poll_task: asyncio.Task | None = None
        self._supervisor: asyncio.Task | None = None

    @property
    def state(self) -> OrderTrackingState | None:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._supervisor is not None and not self._supervisor.done()

    def start(self) -> None:
        if self.is_running:
            return
        if self._state is not None and self._state.is_terminal:
            logger.info("Order already terminal; tracking not started", order_id=str(self.order_id))
            return
        self._stop_event = asyncio.Event()
        self._push_task = asyncio.create_task(self._push_loop())
        self._poll_task = asyncio.create_task(self._poll_loop())
        self._supervisor = asyncio.create_task(self._supervise())
        logger.info(
            "Order tracking started",
            order_id=str(self.order_id),
            poll_interval_seconds=self.poll_interval_seconds,
        )

    async def stop(self) -> None:
        """Tear down the subscription and the poll timer together."""

        self._stop_event.set()
        if asyncio.current_task() in (self._push_task, self._poll_task):
            return
        if self._supervisor is not None:
            await self._supervisor
            self._supervisor = None

    async def wait_closed(self) -> None:
        if self._supervisor is not None:
            await asyncio.shield(self._supervisor)

    async def apply(self, incoming: OrderTrackingState, *, source: str) -> MergeResult:
        async with self._apply_lock:
            result = merge_order_state(self._state, incoming)
            self._state = result.state
            get_order_tracking_store().record_merge(result.outcome.value, source)
            if result.outcome in (MergeOutcome.STALE, MergeOutcome.REJECTED):
                logger.debug(
                    "Discarded order tracking update",
                    order_id=str(self.order_id),
                    source=source,
                    outcome=result.outcome.value,
                    incoming_status=incoming.status.value,
                )
            if result.changed:
                await self._on_update(result.state)
            if self._state is not None and self._state.is_terminal:
                self._stop_event.set()
            return result

    async def poll_once(self) -> MergeResult | None:
        try:
            incoming = await self._transport.fetch(self.order_id)
        except OrderNotFoundError as exc:
            self._missed_polls += 1
            logger.warning(
                "Tracked order not found",
                order_id=str(self.order_id),
                missed_polls=self._missed_polls,
            )
            if self._missed_polls >= self.max_missed_polls:
                await self._fail(exc)
            return None
        except TransportError as exc:
            get_order_tracking_store().record_transport_error("poll")
            logger.warning("Order tracking poll failed", order_id=str(self.order_id), error=str(exc))
            return None

        self._missed_polls = 0
        return await self.apply(incoming, source="poll")

    async def _push_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                async for incoming in self._transport.subscribe(self.order_id):
                    await self.apply(incoming, source="push")
                    if self._stop_event.is_set():
                        return
            except TransportError as exc:
                get_order_tracking_store().record_transport_error("push")
                logger.warning(
                    "Order tracking subscription failed",
                    order_id=str(self.order_id),
                    error=str(exc),
                )
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.resubscribe_delay_seconds)
            except asyncio.TimeoutError:
                continue

    async def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.poll_once()
            except Exception as exc:
                get_order_tracking_store().record_transport_error("poll")
                logger.exception("Order tracking poll crashed", order_id=str(self.order_id), error=str(exc))
            if self._stop_event.is_set():
                break
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def _supervise(self) -> None:
        try:
            await self._stop_event.wait()
        finally:
            tasks = [task for task in (self._push_task, self._poll_task) if task is not None]
            for task in tasks:
                if not task.done():
                    task.cancel()
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for outcome in results:
                if isinstance(outcome, Exception):
                    logger.opt(exception=outcome).error(
                        "Order tracking task crashed", order_id=str(self.order_id)
                    )
            self._push_task = None
            self._poll_task = None
            logger.info(
                "Order tracking stopped",
                order_id=str(self.order_id),
                status=self._state.status.value if self._state else None,
            )

    async def _fail(self, exc: Exception) -> None:
        if self._on_error is not None:
            await self._on_error(exc)
        else:
            logger.error("Order tracking gave up", order_id=str(self.order_id), error=str(exc))
        self._stop_event.set()


__all__ = [
    "FORWARD_SEQUENCE",
    "MergeOutcome",
    "MergeResult",
    "OrderStatusSynchronizer",
    "OrderTrackingState",
    "OrderTrackingTransport",
    "TERMINAL_STATUSES",
    "is_reachable",
    "merge_order_state",
]

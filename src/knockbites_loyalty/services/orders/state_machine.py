"""Fulfillment-side order transitions and the loyalty completion hook."""

from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from knockbites_loyalty.models.order import Order, OrderStatus
from knockbites_loyalty.observability.orders import get_order_tracking_store
from knockbites_loyalty.services.loyalty.awards import AwardService, OrderCompletionEvent
from knockbites_loyalty.services.loyalty.errors import LoyaltyError
from knockbites_loyalty.services.loyalty.events import (
    TierChangeEvent,
    TierEventDispatcher,
    get_tier_event_dispatcher,
)
from knockbites_loyalty.services.loyalty.referrals import ReferralRewardCoordinator
from knockbites_loyalty.services.orders.errors import InvalidOrderTransitionError, OrderNotFoundError
from knockbites_loyalty.services.orders.events import OrderEventHub, get_order_event_hub
from knockbites_loyalty.services.orders.tracking import OrderTrackingState


class OrderStateMachine:
    """Applies single-step status changes and publishes them to trackers."""

    _ALLOWED_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
        OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
        OrderStatus.CONFIRMED: {OrderStatus.PREPARING, OrderStatus.CANCELLED},
        OrderStatus.PREPARING: {OrderStatus.READY, OrderStatus.CANCELLED},
        OrderStatus.READY: {OrderStatus.COMPLETED, OrderStatus.CANCELLED},
        OrderStatus.COMPLETED: set(),
        OrderStatus.CANCELLED: set(),
    }

    def __init__(
        self,
        session: AsyncSession,
        *,
        hub: OrderEventHub | None = None,
        dispatcher: TierEventDispatcher | None = None,
    ) -> None:
        self._session = session
        self._hub = hub or get_order_event_hub()
        self._dispatcher = dispatcher or get_tier_event_dispatcher()

    async def transition(
        self,
        *,
        order_id: UUID,
        target_status: OrderStatus,
        now: datetime | None = None,
    ) -> OrderTrackingState:
        """Move the order one edge forward; completion also posts loyalty effects."""

        now = now or datetime.now(timezone.utc)
        order = await self._get_order(order_id)
        current_status = OrderStatus(order.status)
        if target_status not in self._ALLOWED_TRANSITIONS.get(current_status, set()):
            raise InvalidOrderTransitionError(current_status, target_status)

        order.status = target_status
        order.updated_at = now

        tier_events: list[TierChangeEvent] = []
        if target_status == OrderStatus.COMPLETED:
            tier_events = await self._apply_loyalty(order, now)

        await self._session.commit()

        state = OrderTrackingState(order_id=order.id, status=target_status, updated_at=now)
        delivered = self._hub.publish(state)
        get_order_tracking_store().record_transition(target_status.value)
        logger.info(
            "Order status transitioned",
            order_id=str(order.id),
            from_status=current_status.value,
            to_status=target_status.value,
            subscribers=delivered,
        )
        for event in tier_events:
            await self._dispatcher.dispatch(event)
        return state

    async def get_tracking_state(self, order_id: UUID) -> OrderTrackingState:
        return OrderTrackingState.from_order(await self._get_order(order_id))

    async def _apply_loyalty(self, order: Order, now: datetime) -> list[TierChangeEvent]:
        if order.customer_id is None and order.loyalty_account_id is None:
            return []

        awards = AwardService(self._session, dispatcher=self._dispatcher)
        try:
            async with self._session.begin_nested():
                earned, events = await awards.record_order_completion(
                    OrderCompletionEvent(
                        order_id=str(order.id),
                        store_id=order.store_id,
                        order_total=order.total,
                        customer_id=order.customer_id,
                        account_id=order.loyalty_account_id,
                        completed_at=now,
                    )
                )
        except LoyaltyError as exc:
            self._log_skipped("earn", order, exc)
            return []
        if earned is None:
            return events
        order.loyalty_account_id = earned.account_id

        referrals = ReferralRewardCoordinator(self._session, dispatcher=self._dispatcher)
        try:
            async with self._session.begin_nested():
                await referrals.handle_order_completed(
                    earned.account_id, order.total, str(order.id), now=now
                )
        except LoyaltyError as exc:
            self._log_skipped("referral", order, exc)
            return events
        return events + referrals.pending_events

    @staticmethod
    def _log_skipped(step: str, order: Order, exc: LoyaltyError) -> None:
        logger.warning(
            "Skipped loyalty effects for completed order",
            order_id=str(order.id),
            step=step,
            error=exc.kind,
            detail=str(exc),
        )

    async def _get_order(self, order_id: UUID) -> Order:
        stmt = select(Order).where(Order.id == order_id)
        result = await self._session.execute(stmt)
        order = result.scalar_one_or_none()
        if not order:
            raise OrderNotFoundError(f"Order {order_id} not found")
        return order


__all__ = ["OrderStateMachine"]

"""Order tracking reads, live status stream and fulfillment transitions."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from knockbites_loyalty.api.dependencies.security import require_operator_api_key
from knockbites_loyalty.db.session import get_session
from knockbites_loyalty.models.order import OrderStatus
from knockbites_loyalty.services.orders import (
    InvalidOrderTransitionError,
    OrderNotFoundError,
    OrderStateMachine,
    OrderTrackingState,
    get_order_event_hub,
)
from knockbites_loyalty.services.orders.transports import ORDER_STATUS_EVENT


router = APIRouter(prefix="/orders", tags=["orders"])

HEARTBEAT_SECONDS = 15.0


class TrackingResponse(BaseModel):
    orderId: UUID
    status: OrderStatus
    updatedAt: datetime

    @classmethod
    def from_state(cls, state: OrderTrackingState) -> "TrackingResponse":
        return cls(orderId=state.order_id, status=state.status, updatedAt=state.updated_at)


class StatusUpdateRequest(BaseModel):
    status: OrderStatus = Field(..., description="Next order status")


def _format_sse(event_type: str, payload: dict[str, Any]) -> str:
    """Serialize a payload to an SSE data frame."""

    return f"event: {event_type}\ndata: {json.dumps(payload)}\n\n"


@router.get("/{order_id}/tracking", response_model=TrackingResponse)
async def get_order_tracking(
    order_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> TrackingResponse:
    try:
        state = await OrderStateMachine(db).get_tracking_state(order_id)
    except OrderNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found") from exc
    return TrackingResponse.from_state(state)


@router.get("/{order_id}/events")
async def stream_order_events(
    order_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> StreamingResponse:
    """Server-sent events: the current snapshot, then each status change until terminal."""

    try:
        snapshot = await OrderStateMachine(db).get_tracking_state(order_id)
    except OrderNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found") from exc
    hub = get_order_event_hub()

    async def event_generator():
        try:
            async with hub.subscription(order_id) as queue:
                yield _format_sse(ORDER_STATUS_EVENT, snapshot.as_payload())
                if snapshot.is_terminal:
                    return
                while True:
                    try:
                        state = await asyncio.wait_for(queue.get(), timeout=HEARTBEAT_SECONDS)
                    except asyncio.TimeoutError:
                        yield _format_sse("heartbeat", {"orderId": str(order_id)})
                        continue
                    yield _format_sse(ORDER_STATUS_EVENT, state.as_payload())
                    if state.is_terminal:
                        return
        except asyncio.CancelledError:  # pragma: no cover - client disconnected
            return

    headers = {
        "Cache-Control": "no-cache",
        "Content-Type": "text/event-stream",
    }
    return StreamingResponse(event_generator(), headers=headers, media_type="text/event-stream")


@router.post(
    "/{order_id}/status",
    response_model=TrackingResponse,
    dependencies=[Depends(require_operator_api_key)],
)
async def update_order_status(
    order_id: UUID,
    payload: StatusUpdateRequest,
    db: AsyncSession = Depends(get_session),
) -> TrackingResponse:
    """Advance an order; completing it posts loyalty points for the customer."""

    try:
        state = await OrderStateMachine(db).transition(order_id=order_id, target_status=payload.status)
    except OrderNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found") from exc
    except InvalidOrderTransitionError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return TrackingResponse.from_state(state)

from decimal import Decimal
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from knockbites_loyalty.models.order import Order


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


async def _seed_order(session_factory, **fields) -> str:
    async with session_factory() as session:
        order = Order(order_number=f"KB-{uuid4().hex[:6].upper()}", store_id=1, total=Decimal("18.00"), **fields)
        session.add(order)
        await session.commit()
        return str(order.id)


@pytest.mark.asyncio
async def test_tracking_reflects_fulfillment_transitions(app_with_db, loyalty_program) -> None:
    app, session_factory = app_with_db
    customer_id = uuid4()
    order_id = await _seed_order(session_factory, customer_id=customer_id)

    async with _client(app) as client:
        tracking = await client.get(f"/api/v1/orders/{order_id}/tracking")
        assert tracking.status_code == 200
        assert tracking.json()["status"] == "pending"

        for status in ("confirmed", "preparing", "ready", "completed"):
            response = await client.post(f"/api/v1/orders/{order_id}/status", json={"status": status})
            assert response.status_code == 200
            assert response.json()["status"] == status

        again = await client.post(f"/api/v1/orders/{order_id}/status", json={"status": "cancelled"})
        assert again.status_code == 409

        tracking = await client.get(f"/api/v1/orders/{order_id}/tracking")
        assert tracking.json()["status"] == "completed"


@pytest.mark.asyncio
async def test_unknown_order_returns_404(app_with_db) -> None:
    app, _ = app_with_db
    missing = uuid4()

    async with _client(app) as client:
        assert (await client.get(f"/api/v1/orders/{missing}/tracking")).status_code == 404
        assert (await client.get(f"/api/v1/orders/{missing}/events")).status_code == 404
        update = await client.post(f"/api/v1/orders/{missing}/status", json={"status": "confirmed"})
        assert update.status_code == 404


@pytest.mark.asyncio
async def test_event_stream_closes_after_terminal_snapshot(app_with_db) -> None:
    app, session_factory = app_with_db
    order_id = await _seed_order(session_factory)

    async with _client(app) as client:
        cancel = await client.post(f"/api/v1/orders/{order_id}/status", json={"status": "cancelled"})
        assert cancel.status_code == 200

        stream = await client.get(f"/api/v1/orders/{order_id}/events")

    assert stream.status_code == 200
    assert stream.headers["content-type"].startswith("text/event-stream")
    frames = [frame for frame in stream.text.split("\n\n") if frame]
    assert len(frames) == 1
    assert frames[0].startswith("event: order.status\ndata: ")
    assert '"status": "cancelled"' in frames[0]

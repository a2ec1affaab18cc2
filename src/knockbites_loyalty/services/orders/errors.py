from __future__ import annotations

from knockbites_loyalty.models.order import OrderStatus


class OrderStateError(RuntimeError):
    """Base exception for order state failures."""


class InvalidOrderTransitionError(OrderStateError):
    """Raised when fulfillment requests an edge the order lifecycle does not allow."""

    def __init__(self, current_status: OrderStatus, requested_status: OrderStatus) -> None:
        message = f"Cannot transition order from {current_status.value} to {requested_status.value}"
        super().__init__(message)
        self.current_status = current_status
        self.requested_status = requested_status


class OrderNotFoundError(OrderStateError):
    """The order does not exist (or is no longer visible to the tracking client)."""


class TransportError(OrderStateError):
    """A push or poll transport failed; tracking retries on the next cycle."""


__all__ = [
    "InvalidOrderTransitionError",
    "OrderNotFoundError",
    "OrderStateError",
    "TransportError",
]

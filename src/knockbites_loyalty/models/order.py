"""Order record as seen by pickup tracking."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Enum as SqlEnum, ForeignKey, Integer, Numeric, String, func
from sqlalchemy.dialects.postgresql import UUID

from knockbites_loyalty.db.base import Base, utcnow


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Order(Base):
    """Order owned by fulfillment; loyalty only reads it and reacts to completion."""

    __tablename__ = "orders"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    order_number = Column(String, nullable=False, unique=True, index=True)
    store_id = Column(Integer, nullable=False, index=True)
    customer_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    loyalty_account_id = Column(
        UUID(as_uuid=True),
        ForeignKey("loyalty_accounts.id", ondelete="SET NULL"),
        nullable=True,
    )
    status = Column(
        SqlEnum(
            OrderStatus,
            name="order_status",
            values_callable=lambda enum_cls: [member.value for member in enum_cls],
        ),
        nullable=False,
        default=OrderStatus.PENDING,
        server_default=OrderStatus.PENDING.value,
    )
    total = Column(Numeric(10, 2), nullable=False, default=0, server_default="0")
    estimated_ready_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

"""Loyalty program, ledger and referral models."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from knockbites_loyalty.db.base import Base, utcnow


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class LoyaltyTransactionType(str, Enum):
    """Kinds of ledger entries and the sign each one carries."""

    EARN = "earn"
    REDEEM = "redeem"
    BONUS = "bonus"
    EXPIRE = "expire"
    ADJUSTMENT = "adjustment"


class ReferralRewardType(str, Enum):
    POINTS = "points"
    DISCOUNT = "discount"
    FREE_ITEM = "free_item"
    CREDIT = "credit"


class ReferralStatus(str, Enum):
    """Lifecycle statuses for referrals."""

    PENDING = "pending"
    COMPLETED = "completed"
    REWARDED = "rewarded"
    EXPIRED = "expired"


class LoyaltyRewardType(str, Enum):
    DISCOUNT = "discount"
    FREE_ITEM = "free_item"
    FREE_DELIVERY = "free_delivery"
    GIFT_CARD = "gift_card"
    MERCHANDISE = "merchandise"


class LoyaltyProgram(Base):
    """Per-store loyalty configuration."""

    __tablename__ = "loyalty_programs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    store_id = Column(Integer, nullable=False, unique=True, index=True)
    name = Column(String, nullable=False)
    points_per_dollar = Column(Numeric(8, 2), nullable=False, default=1, server_default="1")
    welcome_bonus_points = Column(Integer, nullable=False, default=0, server_default="0")
    referral_bonus_points = Column(Integer, nullable=False, default=0, server_default="0")
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)

    tiers = relationship(
        "LoyaltyTier",
        back_populates="program",
        cascade="all, delete-orphan",
        order_by="LoyaltyTier.min_points",
    )


class LoyaltyTier(Base):
    """Tier thresholds and perks; ordered by `min_points` within a program."""

    __tablename__ = "loyalty_tiers"
    __table_args__ = (
        UniqueConstraint("program_id", "name", name="uq_loyalty_tiers_program_name"),
        UniqueConstraint("program_id", "min_points", name="uq_loyalty_tiers_program_min_points"),
        CheckConstraint("min_points >= 0", name="ck_loyalty_tiers_min_points_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    program_id = Column(
        UUID(as_uuid=True),
        ForeignKey("loyalty_programs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = Column(String, nullable=False)
    min_points = Column(Integer, nullable=False)
    discount_percentage = Column(Numeric(5, 2), nullable=False, default=0, server_default="0")
    free_delivery = Column(Boolean, nullable=False, default=False, server_default="false")
    priority_support = Column(Boolean, nullable=False, default=False, server_default="false")
    early_access_promos = Column(Boolean, nullable=False, default=False, server_default="false")
    birthday_reward_points = Column(Integer, nullable=False, default=0, server_default="0")
    tier_color = Column(String, nullable=True)
    sort_order = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    program = relationship("LoyaltyProgram", back_populates="tiers")


class LoyaltyAccount(Base):
    """A customer's membership in one program; balances are a ledger projection."""

    __tablename__ = "loyalty_accounts"
    __table_args__ = (
        UniqueConstraint("customer_id", "program_id", name="uq_loyalty_accounts_customer_program"),
        CheckConstraint("total_points >= 0", name="ck_loyalty_accounts_total_points_non_negative"),
        CheckConstraint("lifetime_points >= 0", name="ck_loyalty_accounts_lifetime_points_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    customer_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    program_id = Column(
        UUID(as_uuid=True),
        ForeignKey("loyalty_programs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    current_tier_id = Column(
        UUID(as_uuid=True),
        ForeignKey("loyalty_tiers.id", ondelete="SET NULL"),
        nullable=True,
    )
    total_points = Column(Integer, nullable=False, default=0, server_default="0")
    lifetime_points = Column(Integer, nullable=False, default=0, server_default="0")
    total_orders = Column(Integer, nullable=False, default=0, server_default="0")
    total_spent = Column(Numeric(14, 2), nullable=False, default=0, server_default="0")
    referral_code = Column(String, nullable=True, unique=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    joined_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    last_order_at = Column(DateTime(timezone=True), nullable=True)
    last_tier_change_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)

    transactions = relationship(
        "LoyaltyTransaction", back_populates="account", cascade="all, delete-orphan"
    )


class LoyaltyTransaction(Base):
    """Append-only ledger entry. The integer id is the per-store logical clock."""

    __tablename__ = "loyalty_transactions"
    __table_args__ = (
        UniqueConstraint(
            "account_id",
            "order_id",
            "transaction_type",
            name="uq_loyalty_transactions_account_order_type",
        ),
        UniqueConstraint(
            "account_id",
            "idempotency_key",
            name="uq_loyalty_transactions_account_idempotency_key",
        ),
        CheckConstraint("points <> 0", name="ck_loyalty_transactions_points_nonzero"),
    )

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    account_id = Column(
        UUID(as_uuid=True),
        ForeignKey("loyalty_accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    order_id = Column(String, nullable=True)
    transaction_type = Column(
        SqlEnum(
            LoyaltyTransactionType,
            name="loyalty_transaction_type",
            values_callable=_enum_values,
        ),
        nullable=False,
    )
    points = Column(Integer, nullable=False)
    reason = Column(Text, nullable=True)
    balance_after = Column(Integer, nullable=False)
    idempotency_key = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    account = relationship("LoyaltyAccount", back_populates="transactions")


class LoyaltyReward(Base):
    """Catalog item a member can exchange points for."""

    __tablename__ = "loyalty_rewards"
    __table_args__ = (
        UniqueConstraint("program_id", "name", name="uq_loyalty_rewards_program_name"),
        CheckConstraint("points_cost > 0", name="ck_loyalty_rewards_points_cost_positive"),
        CheckConstraint(
            "stock_quantity IS NULL OR stock_quantity >= 0",
            name="ck_loyalty_rewards_stock_non_negative",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    program_id = Column(
        UUID(as_uuid=True),
        ForeignKey("loyalty_programs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    points_cost = Column(Integer, nullable=False)
    reward_type = Column(
        SqlEnum(LoyaltyRewardType, name="loyalty_reward_type", values_callable=_enum_values),
        nullable=False,
    )
    reward_value = Column(String, nullable=True)
    image_url = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    # NULL means unlimited.
    stock_quantity = Column(Integer, nullable=True)
    redemption_count = Column(Integer, nullable=False, default=0, server_default="0")
    sort_order = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)


class ReferralProgram(Base):
    """Per-store referral rules."""

    __tablename__ = "referral_programs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    store_id = Column(Integer, nullable=False, unique=True, index=True)
    referrer_reward_type = Column(
        SqlEnum(ReferralRewardType, name="referral_reward_type", values_callable=_enum_values),
        nullable=False,
        default=ReferralRewardType.POINTS,
    )
    referrer_reward_value = Column(Numeric(10, 2), nullable=False, default=0, server_default="0")
    referee_reward_type = Column(
        SqlEnum(ReferralRewardType, name="referral_reward_type", values_callable=_enum_values),
        nullable=False,
        default=ReferralRewardType.POINTS,
    )
    referee_reward_value = Column(Numeric(10, 2), nullable=False, default=0, server_default="0")
    min_order_value = Column(Numeric(10, 2), nullable=False, default=0, server_default="0")
    max_referrals_per_customer = Column(Integer, nullable=True)
    referral_ttl_days = Column(Integer, nullable=False, default=30, server_default="30")
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)


class Referral(Base):
    """A referrer/referee pairing moving pending -> completed -> rewarded."""

    __tablename__ = "referrals"
    __table_args__ = (
        UniqueConstraint("program_id", "referee_account_id", name="uq_referrals_program_referee"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    program_id = Column(
        UUID(as_uuid=True),
        ForeignKey("referral_programs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    referral_code = Column(String, nullable=False, index=True)
    referrer_account_id = Column(
        UUID(as_uuid=True),
        ForeignKey("loyalty_accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    referee_account_id = Column(
        UUID(as_uuid=True),
        ForeignKey("loyalty_accounts.id", ondelete="CASCADE"),
        nullable=False,
    )
    status = Column(
        SqlEnum(ReferralStatus, name="referral_status", values_callable=_enum_values),
        nullable=False,
        default=ReferralStatus.PENDING,
        server_default=ReferralStatus.PENDING.value,
    )
    referrer_rewarded = Column(Boolean, nullable=False, default=False, server_default="false")
    referee_rewarded = Column(Boolean, nullable=False, default=False, server_default="false")
    qualifying_order_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    rewarded_at = Column(DateTime(timezone=True), nullable=True)

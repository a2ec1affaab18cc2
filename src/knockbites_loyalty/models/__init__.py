"""SQLAlchemy models package."""

from .loyalty import (  # noqa: F401
    LoyaltyAccount,
    LoyaltyProgram,
    LoyaltyReward,
    LoyaltyRewardType,
    LoyaltyTier,
    LoyaltyTransaction,
    LoyaltyTransactionType,
    Referral,
    ReferralProgram,
    ReferralRewardType,
    ReferralStatus,
)
from .order import Order, OrderStatus  # noqa: F401

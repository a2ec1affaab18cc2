"""Loyalty service exports."""

from .awards import (  # noqa: F401
    AwardService,
    BalanceSnapshot,
    BulkAwardOutcome,
    HistoryPage,
    OrderCompletionEvent,
    OrderEarnResult,
    decode_history_cursor,
    encode_history_cursor,
)
from .events import TierChangeEvent, TierEventDispatcher, get_tier_event_dispatcher  # noqa: F401
from .ledger import LedgerAppendResult, TransactionLedger  # noqa: F401
from .programs import (  # noqa: F401
    LoyaltyProgramService,
    MemberListing,
    MemberPage,
    calculate_points_earned,
    decode_member_cursor,
    encode_member_cursor,
)
from .projector import (  # noqa: F401
    BalanceProjector,
    ProjectedBalance,
    ReconciliationReport,
    fold_transactions,
)
from .referrals import ReferralRewardCoordinator  # noqa: F401
from .rewards import RewardCatalog, RewardRedemption  # noqa: F401
from .tiers import TierDistributionEntry, TierResolver, resolve_tier, validate_tier_ladder  # noqa: F401

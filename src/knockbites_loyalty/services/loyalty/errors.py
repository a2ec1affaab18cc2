"""Loyalty domain errors.

Every error carries a stable ``kind`` that bulk operations report per item and
that the HTTP layer maps to a status code.
"""

from __future__ import annotations

from uuid import UUID


class LoyaltyError(RuntimeError):
    """Base error for loyalty operations."""

    kind = "loyalty_error"


class LoyaltyValidationError(LoyaltyError):
    kind = "validation"


class InsufficientBalanceError(LoyaltyError):
    kind = "insufficient_balance"

    def __init__(self, account_id: UUID, requested: int, available: int | None = None) -> None:
        self.account_id = account_id
        self.requested = requested
        self.available = available
        detail = f"Account {account_id} cannot cover {requested} points"
        if available is not None:
            detail += f" (available {available})"
        super().__init__(detail)


class UnknownAccountError(LoyaltyError):
    kind = "unknown_account"

    def __init__(self, account_id: UUID | str) -> None:
        self.account_id = account_id
        super().__init__(f"Loyalty account {account_id} not found")


class InactiveAccountError(LoyaltyError):
    kind = "inactive_account"

    def __init__(self, account_id: UUID) -> None:
        self.account_id = account_id
        super().__init__(f"Loyalty account {account_id} is inactive")


class UnknownProgramError(LoyaltyError):
    kind = "unknown_program"


class TierConfigurationError(LoyaltyError):
    kind = "tier_configuration"


class TierNotFoundError(TierConfigurationError):
    kind = "unknown_tier"


class ConsistencyError(LoyaltyError):
    """Stored projection disagrees with the ledger. Reported, never auto-corrected."""

    kind = "consistency"


class ReferralError(LoyaltyError):
    kind = "referral"


class UnknownReferralCodeError(ReferralError):
    kind = "unknown_referral_code"


class ReferralNotFoundError(ReferralError):
    kind = "referral_not_found"


class ReferralProgramInactiveError(ReferralError):
    kind = "referral_program_inactive"


class SelfReferralError(ReferralError):
    kind = "self_referral"


class AlreadyReferredError(ReferralError):
    kind = "already_referred"


class ReferralLimitReachedError(ReferralError):
    kind = "referral_limit_reached"


class InvalidReferralTransitionError(ReferralError):
    kind = "invalid_referral_transition"


class RewardNotFoundError(LoyaltyError):
    kind = "unknown_reward"

    def __init__(self, reward_id: UUID | str) -> None:
        self.reward_id = reward_id
        super().__init__(f"Loyalty reward {reward_id} not found")


class RewardUnavailableError(LoyaltyError):
    kind = "reward_unavailable"


__all__ = [
    "AlreadyReferredError",
    "ConsistencyError",
    "InactiveAccountError",
    "InsufficientBalanceError",
    "InvalidReferralTransitionError",
    "LoyaltyError",
    "LoyaltyValidationError",
    "ReferralError",
    "ReferralLimitReachedError",
    "ReferralNotFoundError",
    "ReferralProgramInactiveError",
    "RewardNotFoundError",
    "RewardUnavailableError",
    "SelfReferralError",
    "TierConfigurationError",
    "TierNotFoundError",
    "UnknownAccountError",
    "UnknownProgramError",
    "UnknownReferralCodeError",
]

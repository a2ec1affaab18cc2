from __future__ import annotations

from fastapi import HTTPException, status

from knockbites_loyalty.services.loyalty.errors import LoyaltyError

_STATUS_BY_KIND: dict[str, int] = {
    "validation": status.HTTP_400_BAD_REQUEST,
    "tier_configuration": status.HTTP_400_BAD_REQUEST,
    "self_referral": status.HTTP_400_BAD_REQUEST,
    "unknown_account": status.HTTP_404_NOT_FOUND,
    "unknown_program": status.HTTP_404_NOT_FOUND,
    "unknown_tier": status.HTTP_404_NOT_FOUND,
    "unknown_referral_code": status.HTTP_404_NOT_FOUND,
    "referral_not_found": status.HTTP_404_NOT_FOUND,
    "unknown_reward": status.HTTP_404_NOT_FOUND,
    "insufficient_balance": status.HTTP_409_CONFLICT,
    "inactive_account": status.HTTP_409_CONFLICT,
    "already_referred": status.HTTP_409_CONFLICT,
    "referral_limit_reached": status.HTTP_409_CONFLICT,
    "referral_program_inactive": status.HTTP_409_CONFLICT,
    "invalid_referral_transition": status.HTTP_409_CONFLICT,
    "reward_unavailable": status.HTTP_409_CONFLICT,
    "consistency": status.HTTP_409_CONFLICT,
}


def loyalty_http_error(exc: LoyaltyError) -> HTTPException:
    return HTTPException(
        status_code=_STATUS_BY_KIND.get(exc.kind, status.HTTP_400_BAD_REQUEST),
        detail={"error": exc.kind, "message": str(exc)},
    )

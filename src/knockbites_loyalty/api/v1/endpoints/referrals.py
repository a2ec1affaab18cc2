"""Referral program lookup, code application and reward retries."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from knockbites_loyalty.api.dependencies.security import require_operator_api_key
from knockbites_loyalty.api.errors import loyalty_http_error
from knockbites_loyalty.db.session import get_session
from knockbites_loyalty.models.loyalty import Referral, ReferralProgram
from knockbites_loyalty.services.loyalty import ReferralRewardCoordinator
from knockbites_loyalty.services.loyalty.errors import LoyaltyError


router = APIRouter(prefix="/referrals", tags=["referrals"])


class ReferralProgramResponse(BaseModel):
    id: UUID
    storeId: int
    referrerRewardType: str
    referrerRewardValue: float
    refereeRewardType: str
    refereeRewardValue: float
    minOrderValue: float
    maxReferralsPerCustomer: Optional[int]
    referralTtlDays: int
    isActive: bool

    @classmethod
    def from_record(cls, record: ReferralProgram) -> "ReferralProgramResponse":
        return cls(
            id=record.id,
            storeId=record.store_id,
            referrerRewardType=record.referrer_reward_type.value,
            referrerRewardValue=float(record.referrer_reward_value),
            refereeRewardType=record.referee_reward_type.value,
            refereeRewardValue=float(record.referee_reward_value),
            minOrderValue=float(record.min_order_value),
            maxReferralsPerCustomer=record.max_referrals_per_customer,
            referralTtlDays=record.referral_ttl_days,
            isActive=record.is_active,
        )


class ReferralResponse(BaseModel):
    id: UUID
    referralCode: str
    referrerAccountId: UUID
    refereeAccountId: UUID
    status: str
    referrerRewarded: bool
    refereeRewarded: bool
    expiresAt: Optional[datetime]
    completedAt: Optional[datetime]
    rewardedAt: Optional[datetime]

    @classmethod
    def from_record(cls, record: Referral) -> "ReferralResponse":
        return cls(
            id=record.id,
            referralCode=record.referral_code,
            referrerAccountId=record.referrer_account_id,
            refereeAccountId=record.referee_account_id,
            status=record.status.value,
            referrerRewarded=record.referrer_rewarded,
            refereeRewarded=record.referee_rewarded,
            expiresAt=record.expires_at,
            completedAt=record.completed_at,
            rewardedAt=record.rewarded_at,
        )


class ApplyReferralRequest(BaseModel):
    code: str = Field(..., min_length=1, description="Referral code shared by the referrer")
    refereeAccountId: UUID


@router.get("/stores/{store_id}/program", response_model=ReferralProgramResponse)
async def get_referral_program(
    store_id: int,
    db: AsyncSession = Depends(get_session),
) -> ReferralProgramResponse:
    program = await ReferralRewardCoordinator(db).get_referral_program(store_id)
    if program is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Referral program not found")
    return ReferralProgramResponse.from_record(program)


@router.post("/apply", response_model=ReferralResponse, status_code=status.HTTP_201_CREATED)
async def apply_referral_code(
    payload: ApplyReferralRequest,
    db: AsyncSession = Depends(get_session),
) -> ReferralResponse:
    coordinator = ReferralRewardCoordinator(db)
    try:
        referral = await coordinator.apply_referral(payload.code, payload.refereeAccountId)
    except LoyaltyError as exc:
        await db.rollback()
        raise loyalty_http_error(exc) from exc
    await db.commit()
    return ReferralResponse.from_record(referral)


@router.get("/accounts/{account_id}", response_model=List[ReferralResponse])
async def list_account_referrals(
    account_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> List[ReferralResponse]:
    referrals = await ReferralRewardCoordinator(db).list_for_referrer(account_id)
    return [ReferralResponse.from_record(referral) for referral in referrals]


@router.post(
    "/{referral_id}/reward",
    response_model=ReferralResponse,
    dependencies=[Depends(require_operator_api_key)],
)
async def reward_referral(
    referral_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> ReferralResponse:
    """Retry rewarding a completed referral; already rewarded referrals are returned unchanged."""

    coordinator = ReferralRewardCoordinator(db)
    try:
        referral = await coordinator.reward(referral_id)
    except LoyaltyError as exc:
        await db.rollback()
        raise loyalty_http_error(exc) from exc
    await db.commit()
    await coordinator.publish_pending()
    return ReferralResponse.from_record(referral)

"""API endpoints for loyalty balances, awards, tiers, rewards and programs."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from knockbites_loyalty.api.dependencies.security import require_operator_api_key
from knockbites_loyalty.api.errors import loyalty_http_error
from knockbites_loyalty.db.session import SessionFactory, get_session, get_session_factory
from knockbites_loyalty.models.loyalty import (
    LoyaltyAccount,
    LoyaltyProgram,
    LoyaltyReward,
    LoyaltyRewardType,
    LoyaltyTier,
    LoyaltyTransaction,
)
from knockbites_loyalty.services.loyalty import (
    AwardService,
    BalanceProjector,
    LoyaltyProgramService,
    RewardCatalog,
    TierResolver,
    get_tier_event_dispatcher,
)
from knockbites_loyalty.services.loyalty.errors import LoyaltyError, UnknownProgramError


router = APIRouter(prefix="/loyalty", tags=["loyalty"])


class TransactionResponse(BaseModel):
    id: int
    accountId: UUID
    orderId: Optional[str]
    transactionType: str
    points: int
    reason: Optional[str]
    balanceAfter: int
    createdAt: datetime

    @classmethod
    def from_record(cls, record: LoyaltyTransaction) -> "TransactionResponse":
        return cls(
            id=record.id,
            accountId=record.account_id,
            orderId=record.order_id,
            transactionType=record.transaction_type.value,
            points=record.points,
            reason=record.reason,
            balanceAfter=record.balance_after,
            createdAt=record.created_at,
        )


class BalanceResponse(BaseModel):
    accountId: UUID
    totalPoints: int
    lifetimePoints: int
    tierId: Optional[UUID]
    tierName: Optional[str]
    isActive: bool


class HistoryResponse(BaseModel):
    entries: List[TransactionResponse]
    nextCursor: Optional[str]


class AccountResponse(BaseModel):
    id: UUID
    customerId: UUID
    programId: UUID
    currentTierId: Optional[UUID]
    totalPoints: int
    lifetimePoints: int
    totalOrders: int
    referralCode: Optional[str]
    isActive: bool
    joinedAt: datetime

    @classmethod
    def from_record(cls, record: LoyaltyAccount) -> "AccountResponse":
        return cls(
            id=record.id,
            customerId=record.customer_id,
            programId=record.program_id,
            currentTierId=record.current_tier_id,
            totalPoints=record.total_points,
            lifetimePoints=record.lifetime_points,
            totalOrders=record.total_orders,
            referralCode=record.referral_code,
            isActive=record.is_active,
            joinedAt=record.joined_at,
        )


class EnrollRequest(BaseModel):
    customerId: UUID
    programId: UUID


class RedeemRequest(BaseModel):
    points: int = Field(..., gt=0)
    orderId: Optional[str] = None
    reason: Optional[str] = None
    idempotencyKey: Optional[str] = Field(None, max_length=128)


class ExpireRequest(BaseModel):
    points: int = Field(..., gt=0)
    reason: str = Field(..., min_length=1)
    idempotencyKey: Optional[str] = Field(None, max_length=128)


class AwardRequest(BaseModel):
    accountId: UUID
    points: int = Field(..., description="Positive to credit, negative to correct")
    reason: str = Field(..., min_length=1)
    idempotencyKey: Optional[str] = Field(None, max_length=128)


class BulkAwardRequest(BaseModel):
    accountIds: List[UUID] = Field(..., min_length=1)
    points: int = Field(..., gt=0)
    reason: str = Field(..., min_length=1)
    idempotencyKey: Optional[str] = Field(None, max_length=128)


class BulkAwardOutcomeResponse(BaseModel):
    accountId: UUID
    succeeded: bool
    transactionId: Optional[int] = None
    balanceAfter: Optional[int] = None
    replayed: bool = False
    error: Optional[str] = None
    message: Optional[str] = None


class BulkAwardResponse(BaseModel):
    succeeded: int
    failed: int
    outcomes: List[BulkAwardOutcomeResponse]


class ReconciliationResponse(BaseModel):
    accountId: UUID
    drifted: bool
    storedTotalPoints: int
    storedLifetimePoints: int
    derivedTotalPoints: int
    derivedLifetimePoints: int
    entryCount: int
    snapshotMismatches: List[int]


class ProgramResponse(BaseModel):
    id: UUID
    storeId: int
    name: str
    pointsPerDollar: float
    welcomeBonusPoints: int
    referralBonusPoints: int
    isActive: bool

    @classmethod
    def from_record(cls, record: LoyaltyProgram) -> "ProgramResponse":
        return cls(
            id=record.id,
            storeId=record.store_id,
            name=record.name,
            pointsPerDollar=float(record.points_per_dollar),
            welcomeBonusPoints=record.welcome_bonus_points,
            referralBonusPoints=record.referral_bonus_points,
            isActive=record.is_active,
        )


class ProgramUpdateRequest(BaseModel):
    name: Optional[str] = None
    pointsPerDollar: Optional[float] = Field(None, ge=0)
    welcomeBonusPoints: Optional[int] = Field(None, ge=0)
    referralBonusPoints: Optional[int] = Field(None, ge=0)
    isActive: Optional[bool] = None


class TierResponse(BaseModel):
    id: UUID
    programId: UUID
    name: str
    minPoints: int
    discountPercentage: float
    freeDelivery: bool
    prioritySupport: bool
    earlyAccessPromos: bool
    birthdayRewardPoints: int
    tierColor: Optional[str]
    sortOrder: int

    @classmethod
    def from_record(cls, record: LoyaltyTier) -> "TierResponse":
        return cls(
            id=record.id,
            programId=record.program_id,
            name=record.name,
            minPoints=record.min_points,
            discountPercentage=float(record.discount_percentage or 0),
            freeDelivery=record.free_delivery,
            prioritySupport=record.priority_support,
            earlyAccessPromos=record.early_access_promos,
            birthdayRewardPoints=record.birthday_reward_points,
            tierColor=record.tier_color,
            sortOrder=record.sort_order,
        )


class TierCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    minPoints: int = Field(..., ge=0)
    discountPercentage: float = Field(0, ge=0, le=100)
    freeDelivery: bool = False
    prioritySupport: bool = False
    earlyAccessPromos: bool = False
    birthdayRewardPoints: int = Field(0, ge=0)
    tierColor: Optional[str] = None
    sortOrder: int = 0


class TierUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    minPoints: Optional[int] = Field(None, ge=0)
    discountPercentage: Optional[float] = Field(None, ge=0, le=100)
    freeDelivery: Optional[bool] = None
    prioritySupport: Optional[bool] = None
    earlyAccessPromos: Optional[bool] = None
    birthdayRewardPoints: Optional[int] = Field(None, ge=0)
    tierColor: Optional[str] = None
    sortOrder: Optional[int] = None


class TierDistributionItem(BaseModel):
    tierId: Optional[UUID]
    tierName: str
    minPoints: Optional[int]
    memberCount: int
    share: float


class TierDistributionResponse(BaseModel):
    programId: UUID
    totalMembers: int
    tiers: List[TierDistributionItem]


class RewardResponse(BaseModel):
    id: UUID
    programId: UUID
    name: str
    description: Optional[str]
    pointsCost: int
    rewardType: str
    rewardValue: Optional[str]
    imageUrl: Optional[str]
    isActive: bool
    stockQuantity: Optional[int]
    redemptionCount: int
    sortOrder: int

    @classmethod
    def from_record(cls, record: LoyaltyReward) -> "RewardResponse":
        return cls(
            id=record.id,
            programId=record.program_id,
            name=record.name,
            description=record.description,
            pointsCost=record.points_cost,
            rewardType=record.reward_type.value,
            rewardValue=record.reward_value,
            imageUrl=record.image_url,
            isActive=record.is_active,
            stockQuantity=record.stock_quantity,
            redemptionCount=record.redemption_count,
            sortOrder=record.sort_order,
        )


class RewardCreateRequest(BaseModel):
    name: str = Field(..., min_length=1)
    pointsCost: int = Field(..., gt=0)
    rewardType: LoyaltyRewardType
    description: Optional[str] = None
    rewardValue: Optional[str] = None
    imageUrl: Optional[str] = None
    isActive: bool = True
    stockQuantity: Optional[int] = Field(None, ge=0, description="Omit for unlimited stock")
    sortOrder: int = 0


class RewardUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    pointsCost: Optional[int] = Field(None, gt=0)
    rewardType: Optional[LoyaltyRewardType] = None
    description: Optional[str] = None
    rewardValue: Optional[str] = None
    imageUrl: Optional[str] = None
    isActive: Optional[bool] = None
    stockQuantity: Optional[int] = Field(None, ge=0, description="Send null for unlimited stock")
    sortOrder: Optional[int] = None


class RewardRedeemRequest(BaseModel):
    idempotencyKey: Optional[str] = Field(None, max_length=128)


class RewardRedemptionResponse(BaseModel):
    reward: RewardResponse
    transaction: TransactionResponse
    replayed: bool


class MemberResponse(BaseModel):
    account: AccountResponse
    tierName: Optional[str]


class MemberPageResponse(BaseModel):
    members: List[MemberResponse]
    nextCursor: Optional[str]


_REWARD_FIELD_NAMES = {
    "name": "name",
    "pointsCost": "points_cost",
    "rewardType": "reward_type",
    "description": "description",
    "rewardValue": "reward_value",
    "imageUrl": "image_url",
    "isActive": "is_active",
    "stockQuantity": "stock_quantity",
    "sortOrder": "sort_order",
}


def _reward_fields(payload: BaseModel) -> dict[str, object]:
    data = payload.model_dump(exclude_unset=True)
    return {_REWARD_FIELD_NAMES[key]: value for key, value in data.items()}


_TIER_FIELD_NAMES = {
    "name": "name",
    "minPoints": "min_points",
    "discountPercentage": "discount_percentage",
    "freeDelivery": "free_delivery",
    "prioritySupport": "priority_support",
    "earlyAccessPromos": "early_access_promos",
    "birthdayRewardPoints": "birthday_reward_points",
    "tierColor": "tier_color",
    "sortOrder": "sort_order",
}


def _tier_fields(payload: BaseModel) -> dict[str, object]:
    data = payload.model_dump(exclude_unset=True)
    return {_TIER_FIELD_NAMES[key]: value for key, value in data.items()}


async def _commit_ladder_change(db: AsyncSession, program_id: UUID) -> None:
    events = await TierResolver(db).resync_program_tiers(program_id)
    await db.commit()
    dispatcher = get_tier_event_dispatcher()
    for event in events:
        await dispatcher.dispatch(event)


@router.post("/accounts", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
async def enroll_account(
    payload: EnrollRequest,
    db: AsyncSession = Depends(get_session),
) -> AccountResponse:
    """Enroll a customer in a store program (idempotent per customer and program)."""

    try:
        account = await AwardService(db).enroll(payload.customerId, payload.programId)
    except LoyaltyError as exc:
        raise loyalty_http_error(exc) from exc
    return AccountResponse.from_record(account)


@router.get("/accounts/{account_id}/balance", response_model=BalanceResponse)
async def get_account_balance(
    account_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> BalanceResponse:
    try:
        snapshot = await AwardService(db).get_balance(account_id)
    except LoyaltyError as exc:
        raise loyalty_http_error(exc) from exc
    return BalanceResponse(
        accountId=snapshot.account_id,
        totalPoints=snapshot.total_points,
        lifetimePoints=snapshot.lifetime_points,
        tierId=snapshot.tier_id,
        tierName=snapshot.tier_name,
        isActive=snapshot.is_active,
    )


@router.get("/accounts/{account_id}/history", response_model=HistoryResponse)
async def get_account_history(
    account_id: UUID,
    limit: int = Query(25, ge=1, le=100),
    cursor: str | None = Query(None, description="Opaque cursor for pagination"),
    db: AsyncSession = Depends(get_session),
) -> HistoryResponse:
    """Return ledger entries newest first."""

    try:
        page = await AwardService(db).get_history(account_id, limit=limit, cursor=cursor)
    except LoyaltyError as exc:
        raise loyalty_http_error(exc) from exc
    return HistoryResponse(
        entries=[TransactionResponse.from_record(entry) for entry in page.entries],
        nextCursor=page.next_cursor,
    )


@router.post("/accounts/{account_id}/redeem", response_model=TransactionResponse)
async def redeem_points(
    account_id: UUID,
    payload: RedeemRequest,
    db: AsyncSession = Depends(get_session),
) -> TransactionResponse:
    try:
        transaction = await AwardService(db).redeem(
            account_id,
            payload.points,
            order_id=payload.orderId,
            reason=payload.reason,
            idempotency_key=payload.idempotencyKey,
        )
    except LoyaltyError as exc:
        raise loyalty_http_error(exc) from exc
    return TransactionResponse.from_record(transaction)


@router.post(
    "/accounts/{account_id}/expire",
    response_model=TransactionResponse,
    dependencies=[Depends(require_operator_api_key)],
)
async def expire_points(
    account_id: UUID,
    payload: ExpireRequest,
    db: AsyncSession = Depends(get_session),
) -> TransactionResponse:
    try:
        transaction = await AwardService(db).expire_points(
            account_id,
            payload.points,
            payload.reason,
            idempotency_key=payload.idempotencyKey,
        )
    except LoyaltyError as exc:
        raise loyalty_http_error(exc) from exc
    return TransactionResponse.from_record(transaction)


@router.get(
    "/accounts/{account_id}/reconciliation",
    response_model=ReconciliationResponse,
    dependencies=[Depends(require_operator_api_key)],
)
async def reconcile_account(
    account_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> ReconciliationResponse:
    """Compare the stored balance with a fold of the ledger. Read-only."""

    try:
        report = await BalanceProjector(db).reconcile(account_id)
    except LoyaltyError as exc:
        raise loyalty_http_error(exc) from exc
    return ReconciliationResponse(
        accountId=report.account_id,
        drifted=report.drifted,
        storedTotalPoints=report.stored.total_points,
        storedLifetimePoints=report.stored.lifetime_points,
        derivedTotalPoints=report.derived.total_points,
        derivedLifetimePoints=report.derived.lifetime_points,
        entryCount=report.entry_count,
        snapshotMismatches=list(report.snapshot_mismatches),
    )


@router.post(
    "/awards",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_operator_api_key)],
)
async def award_points(
    payload: AwardRequest,
    db: AsyncSession = Depends(get_session),
) -> TransactionResponse:
    try:
        transaction = await AwardService(db).award_single(
            payload.accountId,
            payload.points,
            payload.reason,
            idempotency_key=payload.idempotencyKey,
        )
    except LoyaltyError as exc:
        raise loyalty_http_error(exc) from exc
    return TransactionResponse.from_record(transaction)


@router.post(
    "/awards/bulk",
    response_model=BulkAwardResponse,
    dependencies=[Depends(require_operator_api_key)],
)
async def award_points_bulk(
    payload: BulkAwardRequest,
    db: AsyncSession = Depends(get_session),
    session_factory: SessionFactory = Depends(get_session_factory),
) -> BulkAwardResponse:
    """Award many accounts; per-account failures are reported, not raised."""

    service = AwardService(db, session_factory=session_factory)
    try:
        outcomes = await service.award_bulk(
            payload.accountIds,
            payload.points,
            payload.reason,
            idempotency_key=payload.idempotencyKey,
        )
    except LoyaltyError as exc:
        raise loyalty_http_error(exc) from exc
    succeeded = sum(1 for outcome in outcomes if outcome.succeeded)
    return BulkAwardResponse(
        succeeded=succeeded,
        failed=len(outcomes) - succeeded,
        outcomes=[
            BulkAwardOutcomeResponse(
                accountId=outcome.account_id,
                succeeded=outcome.succeeded,
                transactionId=outcome.transaction_id,
                balanceAfter=outcome.balance_after,
                replayed=outcome.replayed,
                error=outcome.error_kind,
                message=outcome.error_message,
            )
            for outcome in outcomes
        ],
    )


@router.get("/stores/{store_id}/program", response_model=ProgramResponse)
async def get_store_program(
    store_id: int,
    db: AsyncSession = Depends(get_session),
) -> ProgramResponse:
    program = await LoyaltyProgramService(db).get_for_store(store_id)
    if program is None:
        raise loyalty_http_error(UnknownProgramError(f"Store {store_id} has no loyalty program"))
    return ProgramResponse.from_record(program)


@router.patch(
    "/programs/{program_id}",
    response_model=ProgramResponse,
    dependencies=[Depends(require_operator_api_key)],
)
async def update_program(
    program_id: UUID,
    payload: ProgramUpdateRequest,
    db: AsyncSession = Depends(get_session),
) -> ProgramResponse:
    try:
        program = await LoyaltyProgramService(db).update(
            program_id,
            name=payload.name,
            points_per_dollar=payload.pointsPerDollar,
            welcome_bonus_points=payload.welcomeBonusPoints,
            referral_bonus_points=payload.referralBonusPoints,
            is_active=payload.isActive,
        )
    except LoyaltyError as exc:
        raise loyalty_http_error(exc) from exc
    await db.commit()
    return ProgramResponse.from_record(program)


@router.get("/programs/{program_id}/tiers", response_model=List[TierResponse])
async def list_program_tiers(
    program_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> List[TierResponse]:
    tiers = await TierResolver(db).list_tiers(program_id)
    return [TierResponse.from_record(tier) for tier in tiers]


@router.post(
    "/programs/{program_id}/tiers",
    response_model=TierResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_operator_api_key)],
)
async def create_program_tier(
    program_id: UUID,
    payload: TierCreateRequest,
    db: AsyncSession = Depends(get_session),
) -> TierResponse:
    try:
        tier = await TierResolver(db).create_tier(program_id, **_tier_fields(payload))
        await _commit_ladder_change(db, program_id)
    except LoyaltyError as exc:
        await db.rollback()
        raise loyalty_http_error(exc) from exc
    return TierResponse.from_record(tier)


@router.patch(
    "/tiers/{tier_id}",
    response_model=TierResponse,
    dependencies=[Depends(require_operator_api_key)],
)
async def update_tier(
    tier_id: UUID,
    payload: TierUpdateRequest,
    db: AsyncSession = Depends(get_session),
) -> TierResponse:
    try:
        tier = await TierResolver(db).update_tier(tier_id, **_tier_fields(payload))
        await _commit_ladder_change(db, tier.program_id)
    except LoyaltyError as exc:
        await db.rollback()
        raise loyalty_http_error(exc) from exc
    return TierResponse.from_record(tier)


@router.delete(
    "/tiers/{tier_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_operator_api_key)],
)
async def delete_tier(
    tier_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> Response:
    try:
        program_id = await TierResolver(db).delete_tier(tier_id)
        await _commit_ladder_change(db, program_id)
    except LoyaltyError as exc:
        await db.rollback()
        raise loyalty_http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/programs/{program_id}/tier-distribution", response_model=TierDistributionResponse)
async def get_tier_distribution(
    program_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> TierDistributionResponse:
    """Members per tier, aggregated in the database."""

    try:
        entries = await TierResolver(db).tier_distribution(program_id)
    except LoyaltyError as exc:
        raise loyalty_http_error(exc) from exc
    return TierDistributionResponse(
        programId=program_id,
        totalMembers=sum(entry.member_count for entry in entries),
        tiers=[
            TierDistributionItem(
                tierId=entry.tier_id,
                tierName=entry.tier_name,
                minPoints=entry.min_points,
                memberCount=entry.member_count,
                share=entry.share,
            )
            for entry in entries
        ],
    )


@router.get(
    "/programs/{program_id}/accounts",
    response_model=MemberPageResponse,
    dependencies=[Depends(require_operator_api_key)],
)
async def list_program_members(
    program_id: UUID,
    search: str | None = Query(None, description="Referral code prefix or exact customer id"),
    tier_id: UUID | None = Query(None, alias="tierId"),
    limit: int = Query(25, ge=1, le=100),
    cursor: str | None = Query(None, description="Opaque cursor for pagination"),
    db: AsyncSession = Depends(get_session),
) -> MemberPageResponse:
    """Members ordered by lifetime points, highest first."""

    try:
        page = await LoyaltyProgramService(db).list_members(
            program_id, search=search, tier_id=tier_id, limit=limit, cursor=cursor
        )
    except LoyaltyError as exc:
        raise loyalty_http_error(exc) from exc
    return MemberPageResponse(
        members=[
            MemberResponse(account=AccountResponse.from_record(entry.account), tierName=entry.tier_name)
            for entry in page.entries
        ],
        nextCursor=page.next_cursor,
    )


@router.get("/programs/{program_id}/rewards", response_model=List[RewardResponse])
async def list_program_rewards(
    program_id: UUID,
    include_inactive: bool = Query(False, alias="includeInactive"),
    db: AsyncSession = Depends(get_session),
) -> List[RewardResponse]:
    rewards = await RewardCatalog(db).list_rewards(program_id, include_inactive=include_inactive)
    return [RewardResponse.from_record(reward) for reward in rewards]


@router.post(
    "/programs/{program_id}/rewards",
    response_model=RewardResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_operator_api_key)],
)
async def create_program_reward(
    program_id: UUID,
    payload: RewardCreateRequest,
    db: AsyncSession = Depends(get_session),
) -> RewardResponse:
    try:
        reward = await RewardCatalog(db).create_reward(program_id, **_reward_fields(payload))
        await db.commit()
    except LoyaltyError as exc:
        await db.rollback()
        raise loyalty_http_error(exc) from exc
    return RewardResponse.from_record(reward)


@router.patch(
    "/rewards/{reward_id}",
    response_model=RewardResponse,
    dependencies=[Depends(require_operator_api_key)],
)
async def update_reward(
    reward_id: UUID,
    payload: RewardUpdateRequest,
    db: AsyncSession = Depends(get_session),
) -> RewardResponse:
    try:
        reward = await RewardCatalog(db).update_reward(reward_id, **_reward_fields(payload))
        await db.commit()
    except LoyaltyError as exc:
        await db.rollback()
        raise loyalty_http_error(exc) from exc
    return RewardResponse.from_record(reward)


@router.delete(
    "/rewards/{reward_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_operator_api_key)],
)
async def delete_reward(
    reward_id: UUID,
    db: AsyncSession = Depends(get_session),
) -> Response:
    try:
        await RewardCatalog(db).delete_reward(reward_id)
        await db.commit()
    except LoyaltyError as exc:
        await db.rollback()
        raise loyalty_http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/accounts/{account_id}/rewards/{reward_id}/redeem",
    response_model=RewardRedemptionResponse,
)
async def redeem_reward(
    account_id: UUID,
    reward_id: UUID,
    payload: RewardRedeemRequest | None = None,
    db: AsyncSession = Depends(get_session),
) -> RewardRedemptionResponse:
    """Exchange points for a catalog reward; recorded as a REDEEM ledger entry."""

    idempotency_key = payload.idempotencyKey if payload is not None else None
    try:
        redemption = await RewardCatalog(db).redeem_reward(
            account_id, reward_id, idempotency_key=idempotency_key
        )
    except LoyaltyError as exc:
        raise loyalty_http_error(exc) from exc
    return RewardRedemptionResponse(
        reward=RewardResponse.from_record(redemption.reward),
        transaction=TransactionResponse.from_record(redemption.transaction),
        replayed=redemption.replayed,
    )

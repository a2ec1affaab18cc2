from decimal import Decimal
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from knockbites_loyalty.models.loyalty import LoyaltyAccount, ReferralProgram


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_apply_and_list_referrals(app_with_db, loyalty_program, make_account) -> None:
    app, session_factory = app_with_db
    referrer_id = await make_account()
    referee_id = await make_account()

    async with session_factory() as session:
        session.add(
            ReferralProgram(
                store_id=loyalty_program.store_id,
                referrer_reward_value=Decimal("200"),
                referee_reward_value=Decimal("100"),
                max_referrals_per_customer=5,
            )
        )
        await session.commit()
        code = (await session.get(LoyaltyAccount, referrer_id)).referral_code

    async with _client(app) as client:
        program = await client.get(f"/api/v1/referrals/stores/{loyalty_program.store_id}/program")
        assert program.status_code == 200
        assert program.json()["referrerRewardValue"] == 200.0
        assert program.json()["maxReferralsPerCustomer"] == 5

        assert (await client.get("/api/v1/referrals/stores/77/program")).status_code == 404

        applied = await client.post(
            "/api/v1/referrals/apply",
            json={"code": code, "refereeAccountId": str(referee_id)},
        )
        assert applied.status_code == 201
        referral = applied.json()
        assert referral["status"] == "pending"

        duplicate = await client.post(
            "/api/v1/referrals/apply",
            json={"code": code, "refereeAccountId": str(referee_id)},
        )
        assert duplicate.status_code == 409
        assert duplicate.json()["detail"]["error"] == "already_referred"

        unknown = await client.post(
            "/api/v1/referrals/apply",
            json={"code": "ZZZZZZZZ", "refereeAccountId": str(referee_id)},
        )
        assert unknown.status_code == 404

        self_referral = await client.post(
            "/api/v1/referrals/apply",
            json={"code": code, "refereeAccountId": str(referrer_id)},
        )
        assert self_referral.status_code == 400

        pending_reward = await client.post(f"/api/v1/referrals/{referral['id']}/reward")
        assert pending_reward.status_code == 409

        missing_reward = await client.post(f"/api/v1/referrals/{uuid4()}/reward")
        assert missing_reward.status_code == 404

        listed = await client.get(f"/api/v1/referrals/accounts/{referrer_id}")
        assert listed.status_code == 200
        assert [item["id"] for item in listed.json()] == [referral["id"]]

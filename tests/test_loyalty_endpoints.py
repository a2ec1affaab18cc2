from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from knockbites_loyalty.core.settings import settings


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_enroll_award_and_read_balance(app_with_db, loyalty_program) -> None:
    app, _ = app_with_db
    customer_id = str(uuid4())

    async with _client(app) as client:
        enroll = await client.post(
            "/api/v1/loyalty/accounts",
            json={"customerId": customer_id, "programId": str(loyalty_program.program_id)},
        )
        assert enroll.status_code == 201
        account = enroll.json()
        assert account["customerId"] == customer_id
        assert account["referralCode"]

        award = await client.post(
            "/api/v1/loyalty/awards",
            json={"accountId": account["id"], "points": 500, "reason": "welcome bonus"},
        )
        assert award.status_code == 201
        assert award.json()["transactionType"] == "bonus"
        assert award.json()["balanceAfter"] == 500

        balance = await client.get(f"/api/v1/loyalty/accounts/{account['id']}/balance")
        assert balance.status_code == 200
        payload = balance.json()
        assert payload["totalPoints"] == 500
        assert payload["lifetimePoints"] == 500
        assert payload["tierName"] == "Silver"


@pytest.mark.asyncio
async def test_redeem_conflict_keeps_balance(app_with_db, make_account) -> None:
    app, _ = app_with_db
    account_id = str(await make_account())

    async with _client(app) as client:
        await client.post(
            "/api/v1/loyalty/awards",
            json={"accountId": account_id, "points": 500, "reason": "seed"},
        )
        redeem = await client.post(
            f"/api/v1/loyalty/accounts/{account_id}/redeem",
            json={"points": 600, "orderId": "KB-77"},
        )
        assert redeem.status_code == 409
        assert redeem.json()["detail"]["error"] == "insufficient_balance"

        ok = await client.post(
            f"/api/v1/loyalty/accounts/{account_id}/redeem",
            json={"points": 200, "orderId": "KB-78"},
        )
        assert ok.status_code == 200
        assert ok.json()["points"] == -200

        balance = await client.get(f"/api/v1/loyalty/accounts/{account_id}/balance")
        assert balance.json()["totalPoints"] == 300


@pytest.mark.asyncio
async def test_history_pagination_and_errors(app_with_db, make_account) -> None:
    app, _ = app_with_db
    account_id = str(await make_account())

    async with _client(app) as client:
        for points in (5, 10, 15):
            await client.post(
                "/api/v1/loyalty/awards",
                json={"accountId": account_id, "points": points, "reason": f"grant {points}"},
            )

        first = await client.get(f"/api/v1/loyalty/accounts/{account_id}/history", params={"limit": 2})
        assert first.status_code == 200
        body = first.json()
        assert [entry["points"] for entry in body["entries"]] == [15, 10]

        second = await client.get(
            f"/api/v1/loyalty/accounts/{account_id}/history",
            params={"limit": 2, "cursor": body["nextCursor"]},
        )
        assert [entry["points"] for entry in second.json()["entries"]] == [5]
        assert second.json()["nextCursor"] is None

        missing = await client.get(f"/api/v1/loyalty/accounts/{uuid4()}/history")
        assert missing.status_code == 404
        assert missing.json()["detail"]["error"] == "unknown_account"


@pytest.mark.asyncio
async def test_bulk_award_reports_partial_failures(app_with_db, make_account, monkeypatch) -> None:
    monkeypatch.setattr(settings, "bulk_award_concurrency", 1)
    app, _ = app_with_db
    good = [str(await make_account()) for _ in range(2)]
    missing = str(uuid4())

    async with _client(app) as client:
        response = await client.post(
            "/api/v1/loyalty/awards/bulk",
            json={"accountIds": [*good, missing], "points": 30, "reason": "Launch week"},
        )

    assert response.status_code == 200
    body = response.json()
    assert body["succeeded"] == 2
    assert body["failed"] == 1
    failure = next(item for item in body["outcomes"] if not item["succeeded"])
    assert failure["accountId"] == missing
    assert failure["error"] == "unknown_account"


@pytest.mark.asyncio
async def test_operator_routes_require_api_key(app_with_db, make_account, monkeypatch) -> None:
    monkeypatch.setattr(settings, "operator_api_key", "ops-secret")
    app, _ = app_with_db
    account_id = str(await make_account())
    payload = {"accountId": account_id, "points": 10, "reason": "goodwill"}

    async with _client(app) as client:
        denied = await client.post("/api/v1/loyalty/awards", json=payload)
        assert denied.status_code == 401

        allowed = await client.post(
            "/api/v1/loyalty/awards", json=payload, headers={"X-API-Key": "ops-secret"}
        )
        assert allowed.status_code == 201


@pytest.mark.asyncio
async def test_expire_and_reconcile(app_with_db, make_account) -> None:
    app, _ = app_with_db
    account_id = str(await make_account())

    async with _client(app) as client:
        await client.post(
            "/api/v1/loyalty/awards",
            json={"accountId": account_id, "points": 80, "reason": "seed"},
        )
        expire = await client.post(
            f"/api/v1/loyalty/accounts/{account_id}/expire",
            json={"points": 100, "reason": "Annual expiry"},
        )
        assert expire.status_code == 200
        assert expire.json()["points"] == -80

        report = await client.get(f"/api/v1/loyalty/accounts/{account_id}/reconciliation")
        assert report.status_code == 200
        body = report.json()
        assert body["drifted"] is False
        assert body["derivedTotalPoints"] == 0
        assert body["entryCount"] == 2


@pytest.mark.asyncio
async def test_program_and_tier_management(app_with_db, loyalty_program, make_account) -> None:
    app, _ = app_with_db
    program_id = str(loyalty_program.program_id)
    account_id = str(await make_account())

    async with _client(app) as client:
        program = await client.get(f"/api/v1/loyalty/stores/{loyalty_program.store_id}/program")
        assert program.status_code == 200
        assert program.json()["pointsPerDollar"] == 1.0

        assert (await client.get("/api/v1/loyalty/stores/404/program")).status_code == 404

        patched = await client.patch(f"/api/v1/loyalty/programs/{program_id}", json={"pointsPerDollar": 2})
        assert patched.status_code == 200
        assert patched.json()["pointsPerDollar"] == 2.0

        await client.post(
            "/api/v1/loyalty/awards",
            json={"accountId": account_id, "points": 150, "reason": "seed"},
        )

        created = await client.post(
            f"/api/v1/loyalty/programs/{program_id}/tiers",
            json={"name": "Copper", "minPoints": 100, "discountPercentage": 2.5},
        )
        assert created.status_code == 201
        copper_id = created.json()["id"]

        duplicate = await client.post(
            f"/api/v1/loyalty/programs/{program_id}/tiers",
            json={"name": "Tin", "minPoints": 100},
        )
        assert duplicate.status_code == 400
        assert duplicate.json()["detail"]["error"] == "tier_configuration"

        balance = await client.get(f"/api/v1/loyalty/accounts/{account_id}/balance")
        assert balance.json()["tierName"] == "Copper"

        renamed = await client.patch(f"/api/v1/loyalty/tiers/{copper_id}", json={"minPoints": 200})
        assert renamed.status_code == 200
        balance = await client.get(f"/api/v1/loyalty/accounts/{account_id}/balance")
        assert balance.json()["tierName"] == "Bronze"

        distribution = await client.get(f"/api/v1/loyalty/programs/{program_id}/tier-distribution")
        assert distribution.status_code == 200
        body = distribution.json()
        assert body["totalMembers"] == 1
        assert {item["tierName"]: item["memberCount"] for item in body["tiers"]}["Bronze"] == 1

        deleted = await client.delete(f"/api/v1/loyalty/tiers/{copper_id}")
        assert deleted.status_code == 204
        missing = await client.delete(f"/api/v1/loyalty/tiers/{copper_id}")
        assert missing.status_code == 404

        tiers = await client.get(f"/api/v1/loyalty/programs/{program_id}/tiers")
        assert [tier["name"] for tier in tiers.json()] == ["Bronze", "Silver", "Gold"]


@pytest.mark.asyncio
async def test_reward_catalog_and_redemption(app_with_db, loyalty_program, make_account) -> None:
    app, _ = app_with_db
    account_id = str(await make_account())
    program_id = str(loyalty_program.program_id)

    async with _client(app) as client:
        await client.post(
            "/api/v1/loyalty/awards",
            json={"accountId": account_id, "points": 250, "reason": "seed"},
        )
        created = await client.post(
            f"/api/v1/loyalty/programs/{program_id}/rewards",
            json={"name": "Free Burger", "pointsCost": 200, "rewardType": "free_item", "stockQuantity": 1},
        )
        assert created.status_code == 201
        reward = created.json()
        assert reward["stockQuantity"] == 1

        invalid = await client.post(
            f"/api/v1/loyalty/programs/{program_id}/rewards",
            json={"name": "Mystery", "pointsCost": 10, "rewardType": "lottery"},
        )
        assert invalid.status_code == 422

        listed = await client.get(f"/api/v1/loyalty/programs/{program_id}/rewards")
        assert [item["name"] for item in listed.json()] == ["Free Burger"]

        redeemed = await client.post(
            f"/api/v1/loyalty/accounts/{account_id}/rewards/{reward['id']}/redeem",
            json={"idempotencyKey": "pos-1"},
        )
        assert redeemed.status_code == 200
        body = redeemed.json()
        assert body["transaction"]["transactionType"] == "redeem"
        assert body["transaction"]["balanceAfter"] == 50
        assert body["reward"]["stockQuantity"] == 0

        sold_out = await client.post(f"/api/v1/loyalty/accounts/{account_id}/rewards/{reward['id']}/redeem")
        assert sold_out.status_code == 409
        assert sold_out.json()["detail"]["error"] == "reward_unavailable"

        restocked = await client.patch(f"/api/v1/loyalty/rewards/{reward['id']}", json={"stockQuantity": None})
        assert restocked.status_code == 200
        assert restocked.json()["stockQuantity"] is None

        deleted = await client.delete(f"/api/v1/loyalty/rewards/{reward['id']}")
        assert deleted.status_code == 204
        missing = await client.post(f"/api/v1/loyalty/accounts/{account_id}/rewards/{reward['id']}/redeem")
        assert missing.status_code == 404
        assert missing.json()["detail"]["error"] == "unknown_reward"

        balance = await client.get(f"/api/v1/loyalty/accounts/{account_id}/balance")
        assert balance.json()["totalPoints"] == 50


@pytest.mark.asyncio
async def test_member_listing_pages_and_filters(app_with_db, loyalty_program, make_account) -> None:
    app, _ = app_with_db
    customer_id = uuid4()
    account_ids = [str(await make_account(customer_id=customer_id)), str(await make_account()), str(await make_account())]
    program_id = str(loyalty_program.program_id)

    async with _client(app) as client:
        for account_id, points in zip(account_ids, (100, 600, 50)):
            await client.post(
                "/api/v1/loyalty/awards",
                json={"accountId": account_id, "points": points, "reason": "seed"},
            )

        first = await client.get(f"/api/v1/loyalty/programs/{program_id}/accounts", params={"limit": 2})
        assert first.status_code == 200
        page = first.json()
        assert [member["account"]["id"] for member in page["members"]] == [account_ids[1], account_ids[0]]
        assert page["members"][0]["tierName"] == "Silver"

        rest = await client.get(
            f"/api/v1/loyalty/programs/{program_id}/accounts",
            params={"limit": 2, "cursor": page["nextCursor"]},
        )
        assert [member["account"]["id"] for member in rest.json()["members"]] == [account_ids[2]]
        assert rest.json()["nextCursor"] is None

        found = await client.get(
            f"/api/v1/loyalty/programs/{program_id}/accounts", params={"search": str(customer_id)}
        )
        assert [member["account"]["id"] for member in found.json()["members"]] == [account_ids[0]]

        by_tier = await client.get(
            f"/api/v1/loyalty/programs/{program_id}/accounts",
            params={"tierId": str(loyalty_program.tier_ids["Silver"])},
        )
        assert [member["account"]["id"] for member in by_tier.json()["members"]] == [account_ids[1]]

        unknown = await client.get(f"/api/v1/loyalty/programs/{uuid4()}/accounts")
        assert unknown.status_code == 404
        bad_cursor = await client.get(
            f"/api/v1/loyalty/programs/{program_id}/accounts", params={"cursor": "%%%"}
        )
        assert bad_cursor.status_code == 400

from decimal import Decimal

import jwt
import pytest

from xnrt_ledger.infra.config.settings import settings


@pytest.mark.asyncio
async def test_register_returns_user_and_token(client, house):
    response = await client.post("/api/v1/users/register", json={"referralCode": house.referral_code.lower()})

    assert response.status_code == 201
    data = response.json()
    assert data["user"]["referred_by"] == str(house.id)
    assert data["user"]["is_admin"] is False
    assert data["token"]["token_type"] == "bearer"

    payload = jwt.decode(
        data["token"]["access_token"], settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM]
    )
    assert payload["sub"] == data["user"]["id"]


@pytest.mark.asyncio
async def test_register_with_unknown_referral_code(client, house):
    response = await client.post("/api/v1/users/register", json={"referralCode": "NOSUCHCODE"})

    assert response.status_code == 422
    data = response.json()
    assert data["success"] is False
    assert data["error"]["code"] == "INVALID_INPUT"
    assert data["error"]["message"] == "Invalid referral code"


@pytest.mark.asyncio
async def test_me_and_balance(client, make_user, auth_headers):
    user = await make_user(main_balance=Decimal("250"))

    me = await client.get("/api/v1/users/me", headers=auth_headers(user))
    balance = await client.get("/api/v1/balance", headers=auth_headers(user))

    assert me.status_code == 200
    assert me.json()["referral_code"] == user.referral_code
    assert balance.status_code == 200
    assert Decimal(balance.json()["main_balance"]) == Decimal("250")
    assert Decimal(balance.json()["staking_balance"]) == Decimal("0")


@pytest.mark.asyncio
async def test_missing_token_is_unauthorized(client):
    response = await client.get("/api/v1/balance")

    assert response.status_code == 401
    data = response.json()
    assert data["success"] is False
    assert data["error"]["code"] == "UNAUTHORIZED"
    assert "timestamp" in data["error"]


@pytest.mark.asyncio
async def test_tampered_token_is_rejected(client, make_user):
    user = await make_user()
    token = jwt.encode({"sub": str(user.id)}, "wrong-secret", algorithm="HS256")

    response = await client.get("/api/v1/balance", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401
    assert response.json()["success"] is False


@pytest.mark.asyncio
async def test_referral_stats(client, make_user, auth_headers):
    sponsor = await make_user()
    await make_user(referrer=sponsor)

    response = await client.get("/api/v1/referrals/stats", headers=auth_headers(sponsor))

    assert response.status_code == 200
    data = response.json()
    assert data["referral_code"] == sponsor.referral_code
    assert data["level_counts"] == {"1": 1, "2": 0, "3": 0}

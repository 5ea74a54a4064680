"""API tests for the Crolars wallet endpoints."""

import pytest

from crolars.config import get_settings

WALLET = "/api/v1/gamification/crolars"


@pytest.fixture
def low_spend_limit(monkeypatch):
    monkeypatch.setenv("CROLARS_SPEND_LIMIT", "2")
    get_settings.cache_clear()
    yield
    monkeypatch.delenv("CROLARS_SPEND_LIMIT")
    get_settings.cache_clear()


class TestWallet:
    @pytest.mark.asyncio
    async def test_requires_auth(self, client) -> None:
        response = await client.get(WALLET)
        assert response.status_code in (401, 403)

    @pytest.mark.asyncio
    async def test_empty_wallet(self, client, make_user, auth_headers) -> None:
        user = await make_user()
        response = await client.get(WALLET, headers=auth_headers(user))
        assert response.status_code == 200
        body = response.json()
        assert body["balance"] == 0
        assert body["transactions"] == []
        assert body["total"] == 0

    @pytest.mark.asyncio
    async def test_admin_credit_then_user_spend(self, client, make_user, auth_headers) -> None:
        admin = await make_user("root", is_admin=True)
        user = await make_user("alice")

        response = await client.post(
            WALLET,
            json={"amount": 100, "type": "EARNED", "description": "Contest prize", "user_id": user.id},
            headers=auth_headers(admin),
        )
        assert response.status_code == 201
        assert response.json()["balance"] == 100

        response = await client.post(
            WALLET, json={"amount": 40, "type": "SPENT", "description": "Avatar frame"}, headers=auth_headers(user),
        )
        assert response.status_code == 201
        body = response.json()
        assert body["balance"] == 60
        assert body["transaction"]["signed_amount"] == -40

        wallet = (await client.get(WALLET, headers=auth_headers(user))).json()
        assert wallet["balance"] == 60
        assert [t["type"] for t in wallet["transactions"]] == ["SPENT", "EARNED"]
        assert wallet["stats"]["EARNED"] == {"total": 100, "count": 1}

        filtered = (await client.get(WALLET, params={"type": "SPENT"}, headers=auth_headers(user))).json()
        assert filtered["total"] == 1

    @pytest.mark.asyncio
    async def test_insufficient_funds(self, client, make_user, auth_headers) -> None:
        user = await make_user()
        response = await client.post(
            WALLET, json={"amount": 5, "type": "SPENT", "description": "Too much"}, headers=auth_headers(user),
        )
        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "insufficient_funds"
        assert (body["required"], body["available"]) == (5, 0)

    @pytest.mark.asyncio
    async def test_user_cannot_mint(self, client, make_user, auth_headers) -> None:
        user = await make_user()
        response = await client.post(
            WALLET, json={"amount": 500, "type": "BONUS", "description": "Free money"}, headers=auth_headers(user),
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_user_cannot_touch_other_wallet(self, client, make_user, auth_headers) -> None:
        alice = await make_user("alice")
        bob = await make_user("bob")
        response = await client.post(
            WALLET,
            json={"amount": 1, "type": "SPENT", "description": "x", "user_id": bob.id},
            headers=auth_headers(alice),
        )
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_unknown_target(self, client, make_user, auth_headers) -> None:
        admin = await make_user("root", is_admin=True)
        response = await client.post(
            WALLET,
            json={"amount": 1, "type": "EARNED", "description": "x", "user_id": 9999},
            headers=auth_headers(admin),
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_validation(self, client, make_user, auth_headers) -> None:
        user = await make_user()
        response = await client.post(
            WALLET, json={"amount": 0, "type": "SPENT", "description": "x"}, headers=auth_headers(user),
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_banned_user(self, client, make_user, auth_headers) -> None:
        user = await make_user("mallory", is_banned=True)
        response = await client.get(WALLET, headers=auth_headers(user))
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_spend_rate_limit(self, low_spend_limit, client, make_user, auth_headers) -> None:
        admin = await make_user("root", is_admin=True)
        headers = auth_headers(admin)
        for _ in range(2):
            response = await client.post(WALLET, json={"amount": 1, "type": "EARNED", "description": "x"}, headers=headers)
            assert response.status_code == 201
        response = await client.post(WALLET, json={"amount": 1, "type": "EARNED", "description": "x"}, headers=headers)
        assert response.status_code == 429
        assert response.json()["code"] == "rate_limited"
        assert int(response.headers["Retry-After"]) >= 1

    @pytest.mark.asyncio
    async def test_rate_limiter_outage_fails_closed(self, client, make_user, auth_headers, fake_redis) -> None:
        user = await make_user()
        fake_redis.fail = True
        response = await client.post(
            WALLET, json={"amount": 1, "type": "SPENT", "description": "x"}, headers=auth_headers(user),
        )
        assert response.status_code == 503
        assert response.json()["code"] == "storage_unavailable"

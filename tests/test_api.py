"""HTTP surface: auth, error envelope and the main player and admin flows."""

import pytest


async def register(client, email: str, **extra) -> dict:
    payload = {"name": "Ada", "email": email, "password": "hunter22", **extra}
    r = await client.post("/v1/auth/register", json=payload, headers={"CF-IPCountry": "gb"})
    assert r.status_code == 201, r.text
    # Use the bearer token rather than the cookie jar
    client.cookies.clear()
    data = r.json()
    return {"id": data["user"]["id"], "headers": {"Authorization": f"Bearer {data['token']}"}}


@pytest.fixture
async def player(client):
    return await register(client, "ada@example.com", paypal_email="ada.pay@example.com")


@pytest.fixture
async def admin(client, services):
    user = await register(client, "root@example.com")
    await services.accounts.admin_update(user["id"], {"role": "admin"}, None)
    return user


async def test_register_sets_country_and_hides_secrets(client):
    r = await client.post(
        "/v1/auth/register",
        json={"name": "Bo", "email": "BO@Example.com", "password": "secret1"},
        headers={"CF-IPCountry": "fr"},
    )
    assert r.status_code == 201
    user = r.json()["user"]
    assert user["email"] == "bo@example.com"
    assert user["country"] == "FR"
    assert user["balance"] == 0
    assert "password_hash" not in user
    assert "dropstrike_session" in r.cookies

    dup = await client.post("/v1/auth/register", json={"name": "Bo", "email": "bo@example.com", "password": "secret1"})
    assert dup.status_code == 409


async def test_login_and_bad_credentials(client, player):
    ok = await client.post("/v1/auth/login", json={"email": "ada@example.com", "password": "hunter22"})
    assert ok.status_code == 200
    assert ok.json()["user"]["id"] == player["id"]

    bad = await client.post("/v1/auth/login", json={"email": "ada@example.com", "password": "wrong-pass"})
    assert bad.status_code == 401
    assert bad.json()["error"]["code"] == "UNAUTHORIZED"


async def test_unauthenticated_and_non_admin(client, player):
    r = await client.get("/v1/users/balance", headers={"X-Request-ID": "req-123"})
    assert r.status_code == 401
    body = r.json()
    assert body["error"]["code"] == "UNAUTHORIZED"
    assert body["request_id"] == "req-123"

    r = await client.get("/v1/users/balance", headers={"Authorization": "Bearer not-a-token"})
    assert r.status_code == 401

    r = await client.get("/v1/admin/config", headers=player["headers"])
    assert r.status_code == 403
    assert r.json()["error"]["code"] == "FORBIDDEN"


async def test_validation_errors_use_the_envelope(client, player):
    r = await client.post("/v1/payouts/request", json={"amount_usd": "-1"}, headers=player["headers"])
    assert r.status_code == 422
    assert r.json()["error"]["code"] == "VALIDATION_ERROR"


async def test_profile_round_trip(client, player):
    r = await client.put("/v1/auth/profile", json={"name": "Ada L."}, headers=player["headers"])
    assert r.status_code == 200
    r = await client.get("/v1/auth/profile", headers=player["headers"])
    assert r.json()["user"]["name"] == "Ada L."


async def test_claim_then_payout_lifecycle(client, player, make_ad_unit, services):
    await make_ad_unit("rv-api", coin_reward=600)
    claim = await client.post("/v1/ads/claim", json={"ad_unit_id": "rv-api", "idempotency_key": "k1"}, headers=player["headers"])
    assert claim.status_code == 200
    assert claim.json()["coins_granted"] == 600
    again = await client.post("/v1/ads/claim", json={"ad_unit_id": "rv-api", "idempotency_key": "k1"}, headers=player["headers"])
    assert again.json()["duplicate"] is True

    await services.balances.credit(player["id"], 600, kind="bonus", source="daily_bonus")
    r = await client.get("/v1/users/balance", headers=player["headers"])
    assert r.json()["balance"] == 1200

    too_much = await client.post("/v1/payouts/request", json={"amount_usd": "5.00"}, headers=player["headers"])
    assert too_much.status_code == 400
    err = too_much.json()["error"]
    assert err["code"] == "INSUFFICIENT_BALANCE"
    assert err["details"] == {"required": 5000, "current": 1200, "shortfall": 3800}

    r = await client.post("/v1/payouts/request", json={"amount_usd": "1.00"}, headers=player["headers"])
    assert r.status_code == 201, r.text
    body = r.json()
    payout_id = body["payout"]["id"]
    assert body["payout"]["status"] == "pending"
    assert body["payout"]["destination_address"] == "ada.pay@example.com"
    assert body["remaining_coins"] == 200

    history = await client.get("/v1/payouts/history", headers=player["headers"])
    assert [p["id"] for p in history.json()["payouts"]] == [payout_id]

    cancel = await client.post(f"/v1/payouts/{payout_id}/cancel", headers=player["headers"])
    assert cancel.status_code == 200
    assert cancel.json()["balance"] == 1200
    twice = await client.post(f"/v1/payouts/{payout_id}/cancel", headers=player["headers"])
    assert twice.status_code == 409

    r = await client.get("/v1/users/transactions", headers=player["headers"])
    assert r.status_code == 200


async def test_admin_config_and_balance_tools(client, player, admin):
    r = await client.put("/v1/admin/config", json={"min_payout_usd": "2.00"}, headers=admin["headers"])
    assert r.status_code == 200
    r = await client.get("/v1/admin/config", headers=admin["headers"])
    assert r.json()["policy"]["min_payout_usd"] in ("2.00", "2.0", "2")

    r = await client.put("/v1/admin/config", json={}, headers=admin["headers"])
    assert r.status_code == 400

    r = await client.post(
        f"/v1/users/admin/{player['id']}/adjust-balance",
        json={"target_balance": 75, "note": "support credit"},
        headers=admin["headers"],
    )
    assert r.status_code == 200
    assert r.json()["balance"] == 75
    assert r.json()["entry"]["source"] == "admin_adjustment"

    r = await client.post(f"/v1/users/admin/{player['id']}/reconcile", headers=admin["headers"])
    assert r.json()["ok"] is True
    r = await client.post("/v1/admin/reconcile", headers=admin["headers"])
    assert r.json() == {"mismatches": []}


async def test_leaderboard_is_public(client, player, services):
    await services.balances.credit(player["id"], 40)
    r = await client.get("/v1/leaderboard/all-time")
    assert r.status_code == 200
    board = r.json()
    assert board["leaderboard"][0]["account_id"] == player["id"]
    assert board["current_user"] is None

    mine = await client.get("/v1/leaderboard/daily", headers=player["headers"])
    assert mine.json()["current_user"]["rank"] == 1
    assert (await client.get("/v1/leaderboard/yearly")).status_code == 400


async def test_logout_invalidates_token(client, player):
    r = await client.post("/v1/auth/logout", headers=player["headers"])
    assert r.status_code == 200
    r = await client.get("/v1/auth/profile", headers=player["headers"])
    assert r.status_code == 401

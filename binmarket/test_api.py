"""
API tests. Uses httpx AsyncClient over FastAPI's ASGI transport.

Covers:
- Registration, API keys and key rotation
- Public market data (no auth)
- Full market lifecycle via HTTP: create, initialize, trade, resolve, redeem
- Engine errors mapped to status codes and error codes
- Auth boundaries (no key, wrong key, admin key on user endpoints)
- Admin operations
- Rate limiting
"""

import asyncio
import os

import pytest
from httpx import ASGITransport, AsyncClient

# Set admin key before importing app
os.environ["BINMARKET_ADMIN_KEY"] = "test-admin-key"
os.environ["BINMARKET_STATE"] = "/tmp/binmarket_test_state.json"
os.environ["INITIAL_COLLATERAL"] = "1000"

from binmarket.api import app
from binmarket.auth import AuthStore
from binmarket.middleware import rate_limiter
from binmarket.models import reset_counters
from binmarket.registry import MarketRegistry


STATE_FILE = "/tmp/binmarket_test_state.json"
ADMIN_HEADERS = {"Authorization": "Bearer test-admin-key"}


@pytest.fixture
async def client():
    """Fresh app state for each test."""
    reset_counters()
    app.state.registry = MarketRegistry()
    app.state.auth_store = AuthStore()
    app.state.lock = asyncio.Lock()

    rate_limiter.buckets.clear()

    try:
        os.remove(STATE_FILE)
    except FileNotFoundError:
        pass

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def _register(client: AsyncClient, username="alice") -> tuple[str, int]:
    """Helper: register a user, return (api_key, account_id)."""
    resp = await client.post("/v1/auth/register", json={"username": username})
    assert resp.status_code == 200
    data = resp.json()
    return data["api_key"], data["account_id"]


def _user_headers(api_key: str) -> dict:
    return {"Authorization": f"Bearer {api_key}"}


async def _open_market(client: AsyncClient, key: str, deposit="100") -> int:
    """Helper: create and initialize a market owned by `key`'s account."""
    resp = await client.post("/v1/markets", headers=_user_headers(key),
                             json={"question": "Will it rain?"})
    assert resp.status_code == 200
    market_id = resp.json()["market_id"]
    resp = await client.post(f"/v1/markets/{market_id}/initialize",
                             headers=_user_headers(key),
                             json={"deposit": deposit})
    assert resp.status_code == 200
    return market_id


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

class TestHealth:
    async def test_health(self, client):
        resp = await client.get("/v1/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "markets": 0, "accounts": 0}


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------

class TestRegister:
    async def test_register_creates_funded_account(self, client):
        key, account_id = await _register(client)
        assert len(key) > 20

        resp = await client.get("/v1/me", headers=_user_headers(key))
        assert resp.status_code == 200
        data = resp.json()
        assert data["account_id"] == account_id
        assert data["balance"] == "1000"
        assert data["positions"] == {}

    async def test_username_taken(self, client):
        await _register(client, "alice")
        resp = await client.post("/v1/auth/register",
                                 json={"username": "alice"})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "username_taken"

    async def test_invalid_username(self, client):
        resp = await client.post("/v1/auth/register", json={"username": "  "})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_username"

    async def test_different_users_different_accounts(self, client):
        _, a = await _register(client, "alice")
        _, b = await _register(client, "bob")
        assert a != b

    async def test_rotate_key(self, client):
        old_key, account_id = await _register(client)
        resp = await client.post("/v1/auth/rotate",
                                 headers=_user_headers(old_key))
        assert resp.status_code == 200
        new_key = resp.json()["api_key"]
        assert new_key != old_key
        assert resp.json()["account_id"] == account_id

        resp = await client.get("/v1/me", headers=_user_headers(old_key))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_api_key"

        resp = await client.get("/v1/me", headers=_user_headers(new_key))
        assert resp.status_code == 200
        assert resp.json()["account_id"] == account_id

    async def test_rotate_requires_auth(self, client):
        resp = await client.post("/v1/auth/rotate")
        assert resp.status_code == 401


# ---------------------------------------------------------------------------
# Auth Boundaries
# ---------------------------------------------------------------------------

class TestAuthBoundaries:
    async def test_no_auth_on_protected(self, client):
        resp = await client.get("/v1/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "auth_required"

    async def test_bad_key(self, client):
        resp = await client.get("/v1/me",
                                headers={"Authorization": "Bearer bad-key"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_api_key"

    async def test_admin_key_rejected_on_user_endpoint(self, client):
        resp = await client.get("/v1/me", headers=ADMIN_HEADERS)
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_api_key"

    async def test_user_key_rejected_on_admin_endpoint(self, client):
        key, account_id = await _register(client)
        resp = await client.post("/v1/admin/markets",
                                 headers=_user_headers(key),
                                 json={"question": "Test?",
                                       "owner": account_id})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "admin_required"

    async def test_trading_requires_auth(self, client):
        resp = await client.post("/v1/markets/1/buy",
                                 json={"side": "yes", "payment": "10"})
        assert resp.status_code == 401

    async def test_public_endpoints_no_auth(self, client):
        resp = await client.get("/v1/health")
        assert resp.status_code == 200

        resp = await client.get("/v1/markets")
        assert resp.status_code == 200
        assert resp.json() == []


# ---------------------------------------------------------------------------
# Public Market Data
# ---------------------------------------------------------------------------

class TestPublicMarketData:
    async def test_market_detail_public(self, client):
        key, account_id = await _register(client)
        market_id = await _open_market(client, key)

        resp = await client.get(f"/v1/markets/{market_id}")
        assert resp.status_code == 200
        data = resp.json()
        assert data["owner"] == account_id
        assert data["state"] == "open"
        assert data["outcome"] is None
        assert data["yes_pool"] == "50"
        assert data["no_pool"] == "50"
        assert data["total_yes_supply"] == "50"
        assert data["collateral_reserve"] == "100"
        assert data["num_events"] == 1

    async def test_market_not_found(self, client):
        resp = await client.get("/v1/markets/999")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "market_not_found"

    async def test_list_markets_filters(self, client):
        alice, alice_id = await _register(client, "alice")
        bob, bob_id = await _register(client, "bob")
        await _open_market(client, alice)
        resp = await client.post("/v1/markets", headers=_user_headers(bob),
                                 json={"question": "Unopened?"})
        assert resp.status_code == 200

        resp = await client.get("/v1/markets")
        assert len(resp.json()) == 2

        resp = await client.get("/v1/markets", params={"state": "open"})
        assert [m["owner"] for m in resp.json()] == [alice_id]

        resp = await client.get("/v1/markets",
                                params={"state": "uninitialized"})
        assert [m["owner"] for m in resp.json()] == [bob_id]

        resp = await client.get("/v1/markets", params={"owner": bob_id})
        assert [m["question"] for m in resp.json()] == ["Unopened?"]

    async def test_positions_public(self, client):
        alice, alice_id = await _register(client, "alice")
        bob, bob_id = await _register(client, "bob")
        market_id = await _open_market(client, alice)
        await client.post(f"/v1/markets/{market_id}/buy",
                          headers=_user_headers(bob),
                          json={"side": "no", "payment": "10"})

        resp = await client.get(f"/v1/markets/{market_id}/positions")
        assert resp.status_code == 200
        positions = {p["account_id"]: p["positions"] for p in resp.json()}
        assert positions[alice_id] == {"yes": "50", "no": "50"}
        assert positions[bob_id] == {"yes": "0", "no": "10"}

    async def test_events_since(self, client):
        alice, _ = await _register(client, "alice")
        bob, bob_id = await _register(client, "bob")
        market_id = await _open_market(client, alice)

        resp = await client.get(f"/v1/markets/{market_id}/events")
        events = resp.json()
        assert [e["kind"] for e in events] == ["market_initialized"]
        cursor = events[-1]["event_id"]

        await client.post(f"/v1/markets/{market_id}/buy",
                          headers=_user_headers(bob),
                          json={"side": "yes", "payment": "10"})
        resp = await client.get(f"/v1/markets/{market_id}/events",
                                params={"since": cursor})
        events = resp.json()
        assert len(events) == 1
        assert events[0]["kind"] == "shares_bought"
        assert events[0]["account_id"] == bob_id
        assert events[0]["data"] == {"side": "yes", "payment": "10",
                                     "shares": "10"}


# ---------------------------------------------------------------------------
# Market Lifecycle
# ---------------------------------------------------------------------------

class TestMarketLifecycle:
    async def test_initialize_buy_resolve_redeem(self, client):
        alice, alice_id = await _register(client, "alice")
        bob, bob_id = await _register(client, "bob")

        resp = await client.post("/v1/markets", headers=_user_headers(alice),
                                 json={"question": "Will it rain?",
                                       "description": "Any rainfall counts."})
        assert resp.status_code == 200
        market_id = resp.json()["market_id"]
        assert resp.json()["owner"] == alice_id

        resp = await client.post(f"/v1/markets/{market_id}/initialize",
                                 headers=_user_headers(alice),
                                 json={"deposit": "100"})
        assert resp.status_code == 200
        assert resp.json()["data"] == {"deposit": "100", "yes_shares": "50",
                                       "no_shares": "50"}

        resp = await client.post(f"/v1/markets/{market_id}/buy",
                                 headers=_user_headers(bob),
                                 json={"side": "yes", "payment": "10",
                                       "min_out": "10"})
        assert resp.status_code == 200
        assert resp.json()["data"]["shares"] == "10"

        resp = await client.get(f"/v1/markets/{market_id}")
        assert resp.json()["yes_pool"] == "60"
        assert resp.json()["collateral_reserve"] == "110"

        resp = await client.post(f"/v1/markets/{market_id}/resolve",
                                 headers=_user_headers(alice),
                                 json={"outcome": "yes"})
        assert resp.status_code == 200
        assert resp.json()["kind"] == "market_resolved"

        resp = await client.post(f"/v1/markets/{market_id}/redeem",
                                 headers=_user_headers(bob))
        assert resp.status_code == 200
        assert resp.json()["data"]["payout"] == "18"

        resp = await client.get("/v1/me", headers=_user_headers(bob))
        assert resp.json()["balance"] == "1008"

        resp = await client.post(f"/v1/markets/{market_id}/redeem",
                                 headers=_user_headers(alice))
        assert resp.json()["data"]["payout"] == "92"

        resp = await client.get(f"/v1/markets/{market_id}")
        data = resp.json()
        assert data["state"] == "resolved"
        assert data["outcome"] == "yes"
        assert data["collateral_reserve"] == "0"
        assert data["resolved_at"] is not None

    async def test_buy_then_sell(self, client):
        alice, _ = await _register(client, "alice")
        bob, _ = await _register(client, "bob")
        market_id = await _open_market(client, alice)

        await client.post(f"/v1/markets/{market_id}/buy",
                          headers=_user_headers(bob),
                          json={"side": "yes", "payment": "10"})
        resp = await client.post(f"/v1/markets/{market_id}/sell",
                                 headers=_user_headers(bob),
                                 json={"side": "yes", "shares": "10"})
        assert resp.status_code == 200
        assert resp.json()["data"]["payout"] == "8"

        resp = await client.get("/v1/me", headers=_user_headers(bob))
        assert resp.json()["balance"] == "998"
        assert resp.json()["positions"] == {}

    async def test_me_shows_positions(self, client):
        alice, _ = await _register(client, "alice")
        market_id = await _open_market(client, alice)
        resp = await client.get("/v1/me", headers=_user_headers(alice))
        data = resp.json()
        assert data["balance"] == "900"
        assert data["positions"] == {str(market_id): {"yes": "50",
                                                      "no": "50"}}


    async def test_my_transactions(self, client):
        alice, _ = await _register(client, "alice")
        bob, bob_id = await _register(client, "bob")
        market_id = await _open_market(client, alice)
        await client.post(f"/v1/markets/{market_id}/buy",
                          headers=_user_headers(bob),
                          json={"side": "yes", "payment": "10"})

        resp = await client.get("/v1/me/transactions",
                                headers=_user_headers(bob))
        assert resp.status_code == 200
        txs = resp.json()
        assert [(t["reason"], t["delta"]) for t in txs] == [
            ("mint", "1000"), ("buy", "-10")]

        resp = await client.get("/v1/me/transactions",
                                headers=_user_headers(bob),
                                params={"market_id": market_id})
        txs = resp.json()
        assert len(txs) == 1
        assert txs[0]["market_id"] == market_id

    async def test_state_saved_after_mutation(self, client):
        alice, _ = await _register(client, "alice")
        await _open_market(client, alice)
        assert os.path.exists(STATE_FILE)


# ---------------------------------------------------------------------------
# Market Errors
# ---------------------------------------------------------------------------

class TestMarketErrors:
    async def _setup(self, client):
        alice, _ = await _register(client, "alice")
        bob, bob_id = await _register(client, "bob")
        market_id = await _open_market(client, alice)
        return alice, bob, bob_id, market_id

    async def _post(self, client, key, market_id, action, body=None):
        return await client.post(f"/v1/markets/{market_id}/{action}",
                                 headers=_user_headers(key), json=body)

    async def test_initialize_not_owner(self, client):
        alice, bob, _, _ = await self._setup(client)
        resp = await client.post("/v1/markets", headers=_user_headers(alice),
                                 json={"question": "Second?"})
        market_id = resp.json()["market_id"]
        resp = await self._post(client, bob, market_id, "initialize",
                                {"deposit": "100"})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "not_owner"

    async def test_initialize_twice(self, client):
        alice, _, _, market_id = await self._setup(client)
        resp = await self._post(client, alice, market_id, "initialize",
                                {"deposit": "100"})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "already_initialized"

    async def test_zero_deposit(self, client):
        alice, _, _, _ = await self._setup(client)
        resp = await client.post("/v1/markets", headers=_user_headers(alice),
                                 json={"question": "Second?"})
        market_id = resp.json()["market_id"]
        resp = await self._post(client, alice, market_id, "initialize",
                                {"deposit": "0"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "zero_deposit"

    async def test_buy_insufficient_collateral(self, client):
        _, bob, _, market_id = await self._setup(client)
        resp = await self._post(client, bob, market_id, "buy",
                                {"side": "yes", "payment": "5000"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "insufficient_collateral"

    async def test_buy_invalid_side(self, client):
        _, bob, _, market_id = await self._setup(client)
        resp = await self._post(client, bob, market_id, "buy",
                                {"side": "maybe", "payment": "10"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_side"

    @pytest.mark.parametrize("payment", ["abc", "-5", "1.5"])
    async def test_buy_invalid_amount(self, client, payment):
        _, bob, _, market_id = await self._setup(client)
        resp = await self._post(client, bob, market_id, "buy",
                                {"side": "yes", "payment": payment})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_amount"

    async def test_buy_market_not_found(self, client):
        _, bob, _, _ = await self._setup(client)
        resp = await self._post(client, bob, 999, "buy",
                                {"side": "yes", "payment": "10"})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "market_not_found"

    async def test_buy_slippage(self, client):
        _, bob, _, market_id = await self._setup(client)
        resp = await self._post(client, bob, market_id, "buy",
                                {"side": "yes", "payment": "10",
                                 "min_out": "11"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "slippage_exceeded"

        resp = await client.get(f"/v1/markets/{market_id}")
        assert resp.json()["yes_pool"] == "50"

    async def test_sell_more_than_held(self, client):
        _, bob, _, market_id = await self._setup(client)
        await self._post(client, bob, market_id, "buy",
                         {"side": "yes", "payment": "10"})
        resp = await self._post(client, bob, market_id, "sell",
                                {"side": "yes", "shares": "11"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "insufficient_balance"

    async def test_sell_payout_refused(self, client):
        _, bob, bob_id, market_id = await self._setup(client)
        await self._post(client, bob, market_id, "buy",
                         {"side": "yes", "payment": "10"})
        ledger = app.state.registry.collateral
        ledger.get_account(bob_id).accepts_payments = False

        resp = await self._post(client, bob, market_id, "sell",
                                {"side": "yes", "shares": "10"})
        assert resp.status_code == 502
        assert resp.json()["error"]["code"] == "payout_failed"
        assert ledger.balance_of(bob_id) == 990

    async def test_buy_after_resolution(self, client):
        alice, bob, _, market_id = await self._setup(client)
        await self._post(client, alice, market_id, "resolve",
                         {"outcome": "no"})
        resp = await self._post(client, bob, market_id, "buy",
                                {"side": "yes", "payment": "10"})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "not_open"

    async def test_resolve_not_owner(self, client):
        _, bob, _, market_id = await self._setup(client)
        resp = await self._post(client, bob, market_id, "resolve",
                                {"outcome": "yes"})
        assert resp.status_code == 403

    async def test_resolve_twice(self, client):
        alice, _, _, market_id = await self._setup(client)
        await self._post(client, alice, market_id, "resolve",
                         {"outcome": "yes"})
        resp = await self._post(client, alice, market_id, "resolve",
                                {"outcome": "no"})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "already_resolved"

        resp = await client.get(f"/v1/markets/{market_id}")
        assert resp.json()["outcome"] == "yes"

    async def test_redeem_before_resolution(self, client):
        alice, _, _, market_id = await self._setup(client)
        resp = await self._post(client, alice, market_id, "redeem")
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "not_resolved"

    async def test_redeem_losing_side(self, client):
        alice, bob, _, market_id = await self._setup(client)
        await self._post(client, bob, market_id, "buy",
                         {"side": "yes", "payment": "10"})
        await self._post(client, alice, market_id, "resolve",
                         {"outcome": "no"})
        resp = await self._post(client, bob, market_id, "redeem")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "nothing_to_redeem"


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

class TestAdmin:
    async def test_create_account_and_mint(self, client):
        resp = await client.post("/v1/admin/accounts", headers=ADMIN_HEADERS)
        assert resp.status_code == 200
        account_id = resp.json()["account_id"]

        resp = await client.post("/v1/admin/mint", headers=ADMIN_HEADERS,
                                 json={"account_id": account_id,
                                       "amount": "500"})
        assert resp.status_code == 200
        assert resp.json() == {"account_id": account_id, "balance": "500"}

    async def test_create_refusing_account(self, client):
        resp = await client.post("/v1/admin/accounts", headers=ADMIN_HEADERS,
                                 json={"accepts_payments": False})
        account_id = resp.json()["account_id"]
        acc = app.state.registry.collateral.get_account(account_id)
        assert acc.accepts_payments is False

    async def test_mint_unknown_account(self, client):
        resp = await client.post("/v1/admin/mint", headers=ADMIN_HEADERS,
                                 json={"account_id": 999, "amount": "10"})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "account_not_found"

    async def test_mint_zero(self, client):
        _, account_id = await _register(client)
        resp = await client.post("/v1/admin/mint", headers=ADMIN_HEADERS,
                                 json={"account_id": account_id,
                                       "amount": "0"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "zero_deposit"

    async def test_create_market_for_owner(self, client):
        key, account_id = await _register(client)
        resp = await client.post("/v1/admin/markets", headers=ADMIN_HEADERS,
                                 json={"question": "Admin made?",
                                       "owner": account_id})
        assert resp.status_code == 200
        market_id = resp.json()["market_id"]

        # The owner, not the admin, initializes it.
        resp = await client.post(f"/v1/markets/{market_id}/initialize",
                                 headers=_user_headers(key),
                                 json={"deposit": "10"})
        assert resp.status_code == 200

    async def test_create_market_unknown_owner(self, client):
        resp = await client.post("/v1/admin/markets", headers=ADMIN_HEADERS,
                                 json={"question": "Orphan?", "owner": 999})
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "account_not_found"

    async def test_wrong_admin_key(self, client):
        resp = await client.post("/v1/admin/accounts",
                                 headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "admin_required"


# ---------------------------------------------------------------------------
# Rate Limiting
# ---------------------------------------------------------------------------

class TestRateLimiting:
    async def test_rate_limit_headers(self, client):
        key, _ = await _register(client)
        resp = await client.get("/v1/me", headers=_user_headers(key))
        assert resp.status_code == 200
        assert "x-ratelimit-limit" in resp.headers
        assert "x-ratelimit-remaining" in resp.headers

    async def test_rate_limit_enforced(self, client):
        key, _ = await _register(client)
        headers = _user_headers(key)

        rate_limiter.rate = 2
        rate_limiter.buckets.clear()
        try:
            assert (await client.get("/v1/me", headers=headers)).status_code == 200
            assert (await client.get("/v1/me", headers=headers)).status_code == 200

            resp = await client.get("/v1/me", headers=headers)
            assert resp.status_code == 429
            assert resp.json()["error"]["code"] == "rate_limited"
        finally:
            rate_limiter.rate = 60
            rate_limiter.buckets.clear()

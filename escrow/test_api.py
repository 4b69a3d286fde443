"""
API tests. Uses httpx AsyncClient with FastAPI's ASGI transport.

Covers:
- Public reads (health, balances, listings)
- Full native and token lifecycles via HTTP
- Caller identity (X-Account) and buyer/seller boundaries
- Engine error translation (status codes and error codes)
- Admin faucet endpoints
"""

import asyncio
import os

import pytest
from httpx import ASGITransport, AsyncClient

# Set admin key before importing app
os.environ["ESCROW_ADMIN_KEY"] = "test-admin-key"
os.environ["ESCROW_STATE"] = "/tmp/escrow_test_state.json"

from escrow.api import app
from escrow.collateral_ledger import CollateralLedger
from escrow.listing_registry import ListingRegistry
from escrow.models import NATIVE, reset_counters


ADMIN_HEADERS = {"Authorization": "Bearer test-admin-key"}


@pytest.fixture
async def client():
    """Fresh app state for each test."""
    reset_counters()
    app.state.registry = ListingRegistry(CollateralLedger())
    app.state.lock = asyncio.Lock()

    try:
        os.remove("/tmp/escrow_test_state.json")
    except FileNotFoundError:
        pass

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


def _as(account: str) -> dict:
    return {"X-Account": account}


async def _fund(client, address, amount="1000"):
    resp = await client.post("/v1/admin/fund", headers=ADMIN_HEADERS,
                             json={"address": address, "amount": amount})
    assert resp.status_code == 200
    return resp.json()


async def _collateral(client, owner, asset=NATIVE):
    resp = await client.get(f"/v1/accounts/{owner}/collateral",
                            params={"asset": asset})
    assert resp.status_code == 200
    data = resp.json()
    return data["open"], data["locked"]


async def _list(client, seller="alice", price="100", value="100", **extra):
    body = {"item_reference": "bike", "price": price, "value": value, **extra}
    return await client.post("/v1/items", headers=_as(seller), json=body)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

class TestHealth:
    async def test_health(self, client):
        resp = await client.get("/v1/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["sellers"] == 0
        assert data["listings"] == 0
        assert data["assets"] == ["native"]


# ---------------------------------------------------------------------------
# Collateral
# ---------------------------------------------------------------------------

class TestCollateral:
    async def test_deposit_and_withdraw(self, client):
        await _fund(client, "alice")
        resp = await client.post("/v1/collateral/deposit", headers=_as("alice"),
                                 json={"amount": "300", "value": "300"})
        assert resp.status_code == 200
        assert resp.json()["open"] == "300"

        resp = await client.post("/v1/collateral/withdraw",
                                 headers=_as("alice"), json={"amount": "100"})
        assert resp.status_code == 200
        assert resp.json() == {"owner": "alice", "asset": "native",
                               "open": "200", "locked": "0"}

    async def test_withdraw_too_much(self, client):
        await _fund(client, "alice")
        await client.post("/v1/collateral/deposit", headers=_as("alice"),
                          json={"amount": "50", "value": "50"})
        resp = await client.post("/v1/collateral/withdraw",
                                 headers=_as("alice"), json={"amount": "51"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "insufficient_open"
        assert await _collateral(client, "alice") == ("50", "0")

    async def test_short_value(self, client):
        await _fund(client, "alice")
        resp = await client.post("/v1/collateral/deposit", headers=_as("alice"),
                                 json={"amount": "300", "value": "10"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "insufficient_value_sent"

    async def test_unfunded_wallet(self, client):
        resp = await client.post("/v1/collateral/deposit", headers=_as("alice"),
                                 json={"amount": "300", "value": "300"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "transfer_failed"

    @pytest.mark.parametrize("amount", ["abc", "-3", "1.5"])
    async def test_bad_amount_strings(self, client, amount):
        resp = await client.post("/v1/collateral/deposit", headers=_as("alice"),
                                 json={"amount": amount, "value": "0"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_amount"

    async def test_unknown_owner_reads_zero(self, client):
        assert await _collateral(client, "nobody") == ("0", "0")


# ---------------------------------------------------------------------------
# Listing lifecycle
# ---------------------------------------------------------------------------

class TestLifecycle:
    async def test_full_native_lifecycle(self, client):
        await _fund(client, "alice")
        await _fund(client, "bob")

        resp = await _list(client)
        assert resp.status_code == 200
        item = resp.json()
        assert item["index"] == 0
        assert item["state"] == "listed"
        assert item["item_reference"].startswith("0x" + b"bike".hex())
        assert await _collateral(client, "alice") == ("0", "100")

        resp = await client.post("/v1/sellers/alice/items/0/buy",
                                 headers=_as("bob"), json={"value": "200"})
        assert resp.status_code == 200
        assert resp.json()["state"] == "buy_committed"
        assert resp.json()["buyer"] == "bob"
        assert await _collateral(client, "bob") == ("0", "200")

        resp = await client.post("/v1/items/0/sent", headers=_as("alice"))
        assert resp.json()["state"] == "sent"

        resp = await client.post("/v1/sellers/alice/items/0/received",
                                 headers=_as("bob"))
        assert resp.status_code == 200
        assert resp.json()["state"] == "received"

        assert await _collateral(client, "alice") == ("200", "0")
        assert await _collateral(client, "bob") == ("100", "0")

    async def test_update_price_up_and_down(self, client):
        await _fund(client, "alice")
        await _list(client)

        resp = await client.patch("/v1/items/0/price", headers=_as("alice"),
                                  json={"price": "150", "value": "50"})
        assert resp.status_code == 200
        assert resp.json()["price"] == "150"
        assert await _collateral(client, "alice") == ("0", "150")

        resp = await client.patch("/v1/items/0/price", headers=_as("alice"),
                                  json={"price": "100"})
        assert resp.status_code == 200
        assert await _collateral(client, "alice") == ("50", "100")

    async def test_cancel_then_buy_conflicts(self, client):
        await _fund(client, "alice")
        await _fund(client, "bob")
        await _list(client)

        resp = await client.post("/v1/items/0/cancel", headers=_as("alice"))
        assert resp.json()["state"] == "canceled"
        assert await _collateral(client, "alice") == ("100", "0")

        resp = await client.post("/v1/sellers/alice/items/0/buy",
                                 headers=_as("bob"), json={"value": "200"})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "invalid_state"

    async def test_cancel_buy(self, client):
        await _fund(client, "alice")
        await _fund(client, "bob")
        await _list(client)
        await client.post("/v1/sellers/alice/items/0/buy",
                          headers=_as("bob"), json={"value": "200"})

        resp = await client.post("/v1/sellers/alice/items/0/cancel-buy",
                                 headers=_as("bob"))
        assert resp.status_code == 200
        assert resp.json()["state"] == "listed"
        assert resp.json()["buyer"] is None
        assert await _collateral(client, "bob") == ("200", "0")

    async def test_items_listing(self, client):
        await _fund(client, "alice")
        await _list(client)
        await _list(client, price="5", value="5")

        resp = await client.get("/v1/sellers/alice/items")
        assert [i["price"] for i in resp.json()] == ["100", "5"]

        resp = await client.get("/v1/sellers/alice/items/1")
        assert resp.json()["index"] == 1

        resp = await client.get("/v1/sellers/alice/items/2")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "listing_not_found"

        resp = await client.get("/v1/health")
        assert resp.json()["listings"] == 2

    async def test_token_lifecycle(self, client):
        resp = await client.post("/v1/admin/tokens", headers=ADMIN_HEADERS,
                                 json={"address": "0xUSD", "symbol": "USD"})
        assert resp.status_code == 200
        for who in ("alice", "bob"):
            resp = await client.post("/v1/admin/tokens/0xUSD/mint",
                                     headers=ADMIN_HEADERS,
                                     json={"address": who, "amount": "500"})
            assert resp.json()["balance"] == "500"
        await client.post("/v1/tokens/0xUSD/approve", headers=_as("alice"),
                          json={"amount": "100"})
        resp = await client.post("/v1/tokens/0xUSD/approve",
                                 headers=_as("bob"), json={"amount": "200"})
        assert resp.json()["allowance"] == "200"

        resp = await _list(client, value="0", asset="0xUSD")
        assert resp.status_code == 200
        await client.post("/v1/sellers/alice/items/0/buy", headers=_as("bob"),
                          json={})
        await client.post("/v1/items/0/sent", headers=_as("alice"))
        await client.post("/v1/sellers/alice/items/0/received",
                          headers=_as("bob"))

        assert await _collateral(client, "alice", "0xUSD") == ("200", "0")
        assert await _collateral(client, "bob", "0xUSD") == ("100", "0")


# ---------------------------------------------------------------------------
# Boundaries
# ---------------------------------------------------------------------------

class TestBoundaries:
    async def test_caller_header_required(self, client):
        resp = await client.post("/v1/items", json={
            "item_reference": "bike", "price": "100"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "caller_required"

    async def test_seller_cannot_buy_own(self, client):
        await _fund(client, "alice", "10000")
        await _list(client)
        resp = await client.post("/v1/sellers/alice/items/0/buy",
                                 headers=_as("alice"), json={"value": "200"})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "not_authorized"

    async def test_stranger_cannot_confirm_receipt(self, client):
        await _fund(client, "alice")
        await _fund(client, "bob")
        await _list(client)
        await client.post("/v1/sellers/alice/items/0/buy",
                          headers=_as("bob"), json={"value": "200"})
        await client.post("/v1/items/0/sent", headers=_as("alice"))

        resp = await client.post("/v1/sellers/alice/items/0/received",
                                 headers=_as("mallory"))
        assert resp.status_code == 403
        assert await _collateral(client, "alice") == ("0", "100")

    async def test_value_mismatch(self, client):
        await _fund(client, "alice")
        resp = await _list(client, value="99")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "value_mismatch"

    async def test_empty_item_reference(self, client):
        await _fund(client, "alice")
        resp = await client.post("/v1/items", headers=_as("alice"), json={
            "item_reference": "", "price": "100", "value": "100"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_listing"

    async def test_mark_sent_unknown_listing(self, client):
        resp = await client.post("/v1/items/0/sent", headers=_as("alice"))
        assert resp.status_code == 404

    async def test_ledger_inconsistency_is_500(self, client):
        await _fund(client, "alice")
        await _fund(client, "bob")
        await _list(client)
        await client.post("/v1/sellers/alice/items/0/buy",
                          headers=_as("bob"), json={"value": "200"})
        await client.post("/v1/items/0/sent", headers=_as("alice"))
        app.state.registry.ledger.balances[("bob", NATIVE)].locked = 0

        resp = await client.post("/v1/sellers/alice/items/0/received",
                                 headers=_as("bob"))
        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "ledger_inconsistency"

    async def test_custody_account_cannot_deposit(self, client):
        resp = await client.post("/v1/collateral/deposit",
                                 headers=_as("escrow"),
                                 json={"amount": "400", "value": "400"})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "not_authorized"
        assert await _collateral(client, "escrow") == ("0", "0")


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

class TestAdmin:
    async def test_fund_requires_admin(self, client):
        resp = await client.post("/v1/admin/fund",
                                 json={"address": "a", "amount": "1"})
        assert resp.status_code == 401

        resp = await client.post("/v1/admin/fund",
                                 headers={"Authorization": "Bearer nope"},
                                 json={"address": "a", "amount": "1"})
        assert resp.status_code == 403

    async def test_fund_accumulates(self, client):
        await _fund(client, "alice", "10")
        data = await _fund(client, "alice", "15")
        assert data["wallet"] == "25"

    async def test_duplicate_token(self, client):
        body = {"address": "0xUSD"}
        await client.post("/v1/admin/tokens", headers=ADMIN_HEADERS, json=body)
        resp = await client.post("/v1/admin/tokens", headers=ADMIN_HEADERS,
                                 json=body)
        assert resp.status_code == 409

    async def test_faucets_reject_zero(self, client):
        resp = await client.post("/v1/admin/fund", headers=ADMIN_HEADERS,
                                 json={"address": "a", "amount": "0"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_amount"

        await client.post("/v1/admin/tokens", headers=ADMIN_HEADERS,
                          json={"address": "0xUSD"})
        resp = await client.post("/v1/admin/tokens/0xUSD/mint",
                                 headers=ADMIN_HEADERS,
                                 json={"address": "a", "amount": "0"})
        assert resp.status_code == 400

    async def test_mint_unknown_token(self, client):
        resp = await client.post("/v1/admin/tokens/0xNOPE/mint",
                                 headers=ADMIN_HEADERS,
                                 json={"address": "a", "amount": "1"})
        assert resp.status_code == 404

    async def test_mutations_are_saved(self, client):
        await _fund(client, "alice")
        await _list(client)
        assert os.path.exists("/tmp/escrow_test_state.json")

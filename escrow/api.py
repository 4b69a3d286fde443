"""
FastAPI application. HTTP surface over the escrow ledger for a
presentation layer.

Public endpoints: health, balances, listings.
Caller endpoints (X-Account): deposit, withdraw, list, update price,
cancel, buy, cancel buy, mark sent, mark received, token approve.
Admin endpoints (admin key): native faucet, token creation and minting.

All mutations run under one asyncio.Lock and are saved after success.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from escrow.api_errors import APIError, api_error_handler, translate_engine_error
from escrow.api_models import (
    DepositRequest, WithdrawRequest, BalanceResponse,
    ListRequest, UpdatePriceRequest, BuyRequest, ListingResponse,
    FundRequest, FundResponse,
    CreateTokenRequest, MintTokenRequest, ApproveRequest, TokenBalanceResponse,
    HealthResponse,
)
from escrow.collateral_ledger import CollateralLedger
from escrow.errors import EscrowError
from escrow.listing_registry import ListingRegistry
from escrow.middleware import AdminDep, Caller
from escrow.models import NATIVE, Listing, reset_counters
from escrow.persistence import save_snapshot, load_snapshot
from escrow.transfer import MemoryToken


STATE_PATH = os.environ.get("ESCROW_STATE", "./escrow_state.json")
LOG_LEVEL = os.environ.get("ESCROW_LOG_LEVEL", "INFO")

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(level=LOG_LEVEL)
    if os.path.exists(STATE_PATH):
        registry = load_snapshot(STATE_PATH)
        logger.info("loaded state from %s", STATE_PATH)
    else:
        reset_counters()
        registry = ListingRegistry(CollateralLedger())

    app.state.registry = registry
    app.state.lock = asyncio.Lock()
    yield


app = FastAPI(title="Escrow API", version="0.1.0", lifespan=lifespan)
app.add_exception_handler(APIError, api_error_handler)


def _save():
    """Save state to disk. Called after every mutation."""
    save_snapshot(app.state.registry, STATE_PATH)


def _amount(raw: str, field: str, positive: bool = False) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise APIError(400, "invalid_amount", f"Invalid {field}: {raw}")
    if value < 0:
        raise APIError(400, "invalid_amount", f"{field} must not be negative")
    if positive and value == 0:
        raise APIError(400, "invalid_amount", f"{field} must be positive")
    return value


def _listing(listing: Listing) -> ListingResponse:
    return ListingResponse(
        seller=listing.seller,
        index=listing.index,
        item_reference="0x" + listing.item_reference.hex(),
        price=str(listing.price),
        asset=listing.asset,
        buyer=listing.buyer,
        state=listing.state.value,
        created_at=listing.created_at,
        updated_at=listing.updated_at,
    )


def _balance(owner: str, asset: str) -> BalanceResponse:
    bal = app.state.registry.ledger.get_balance(owner, asset)
    return BalanceResponse(owner=owner, asset=asset,
                           open=str(bal.open), locked=str(bal.locked))


async def _mutate(op, *args, **kwargs):
    """Run one registry operation under the global lock, then save."""
    async with app.state.lock:
        try:
            result = op(*args, **kwargs)
        except EscrowError as e:
            raise translate_engine_error(e)
        _save()
    return result


# ---------------------------------------------------------------------------
# Health + public reads
# ---------------------------------------------------------------------------

@app.get("/v1/health")
async def health() -> HealthResponse:
    registry = app.state.registry
    return HealthResponse(
        status="ok",
        sellers=len(registry.listings),
        listings=sum(len(items) for items in registry.listings.values()),
        assets=[NATIVE, *registry.ledger.adapter.tokens],
    )


@app.get("/v1/accounts/{owner}/collateral")
async def get_collateral(owner: str, asset: str = NATIVE) -> BalanceResponse:
    """Open and locked collateral for (owner, asset)."""
    return _balance(owner, asset)


@app.get("/v1/sellers/{seller}/items")
async def get_items(seller: str) -> list[ListingResponse]:
    """All of a seller's listings in index order, terminal ones included."""
    return [_listing(l) for l in app.state.registry.get_items(seller)]


@app.get("/v1/sellers/{seller}/items/{index}")
async def get_item(seller: str, index: int) -> ListingResponse:
    try:
        listing = app.state.registry.get_item(seller, index)
    except EscrowError as e:
        raise translate_engine_error(e)
    return _listing(listing)


# ---------------------------------------------------------------------------
# Collateral (caller)
# ---------------------------------------------------------------------------

@app.post("/v1/collateral/deposit")
async def deposit(req: DepositRequest, caller: Caller) -> BalanceResponse:
    amount = _amount(req.amount, "amount")
    value = _amount(req.value, "value")
    await _mutate(app.state.registry.deposit, caller, req.asset, amount,
                  value=value)
    return _balance(caller, req.asset)


@app.post("/v1/collateral/withdraw")
async def withdraw(req: WithdrawRequest, caller: Caller) -> BalanceResponse:
    amount = _amount(req.amount, "amount")
    await _mutate(app.state.registry.withdraw, caller, req.asset, amount)
    return _balance(caller, req.asset)


# ---------------------------------------------------------------------------
# Seller operations (caller is the seller)
# ---------------------------------------------------------------------------

@app.post("/v1/items")
async def list_item(req: ListRequest, caller: Caller) -> ListingResponse:
    price = _amount(req.price, "price")
    value = _amount(req.value, "value")
    listing = await _mutate(app.state.registry.list_item, caller,
                            req.item_reference, price, asset=req.asset,
                            value=value)
    return _listing(listing)


@app.patch("/v1/items/{index}/price")
async def update_price(index: int, req: UpdatePriceRequest,
                       caller: Caller) -> ListingResponse:
    price = _amount(req.price, "price")
    value = _amount(req.value, "value")
    listing = await _mutate(app.state.registry.update_price, caller, index,
                            price, value=value)
    return _listing(listing)


@app.post("/v1/items/{index}/cancel")
async def cancel(index: int, caller: Caller) -> ListingResponse:
    listing = await _mutate(app.state.registry.cancel, caller, index)
    return _listing(listing)


@app.post("/v1/items/{index}/sent")
async def mark_sent(index: int, caller: Caller) -> ListingResponse:
    listing = await _mutate(app.state.registry.mark_sent, caller, index)
    return _listing(listing)


# ---------------------------------------------------------------------------
# Buyer operations (caller is the buyer)
# ---------------------------------------------------------------------------

@app.post("/v1/sellers/{seller}/items/{index}/buy")
async def buy(seller: str, index: int, req: BuyRequest,
              caller: Caller) -> ListingResponse:
    value = _amount(req.value, "value")
    listing = await _mutate(app.state.registry.buy, caller, seller, index,
                            value=value)
    return _listing(listing)


@app.post("/v1/sellers/{seller}/items/{index}/cancel-buy")
async def cancel_buy(seller: str, index: int,
                     caller: Caller) -> ListingResponse:
    listing = await _mutate(app.state.registry.cancel_buy, caller, seller,
                            index)
    return _listing(listing)


@app.post("/v1/sellers/{seller}/items/{index}/received")
async def mark_received(seller: str, index: int,
                        caller: Caller) -> ListingResponse:
    listing = await _mutate(app.state.registry.mark_received, caller, seller,
                            index)
    return _listing(listing)


@app.post("/v1/tokens/{token}/approve")
async def approve(token: str, req: ApproveRequest,
                  caller: Caller) -> TokenBalanceResponse:
    """Let custody pull up to `amount` of the caller's tokens."""
    tok = _get_token(token)
    amount = _amount(req.amount, "amount")
    custody = app.state.registry.ledger.adapter.custody
    async with app.state.lock:
        tok.approve(caller, custody, amount)
        _save()
    return _token_balance(tok, caller)


# ---------------------------------------------------------------------------
# Admin endpoints (simulated assets)
# ---------------------------------------------------------------------------

@app.post("/v1/admin/fund")
async def admin_fund(req: FundRequest, _: AdminDep) -> FundResponse:
    """Credit native value to a wallet."""
    amount = _amount(req.amount, "amount", positive=True)
    bank = app.state.registry.ledger.adapter.bank
    async with app.state.lock:
        bank.credit(req.address, amount)
        _save()
    return FundResponse(address=req.address,
                        wallet=str(bank.balance_of(req.address)))


@app.post("/v1/admin/tokens")
async def admin_create_token(req: CreateTokenRequest, _: AdminDep) -> dict:
    adapter = app.state.registry.ledger.adapter
    if req.address == NATIVE or req.address in adapter.tokens:
        raise APIError(409, "asset_exists",
                       f"Asset {req.address} already exists")
    async with app.state.lock:
        adapter.register_token(MemoryToken(req.address, req.symbol))
        _save()
    return {"token": req.address, "symbol": req.symbol or req.address}


@app.post("/v1/admin/tokens/{token}/mint")
async def admin_mint_token(token: str, req: MintTokenRequest,
                           _: AdminDep) -> TokenBalanceResponse:
    tok = _get_token(token)
    amount = _amount(req.amount, "amount", positive=True)
    async with app.state.lock:
        tok.mint(req.address, amount)
        _save()
    return _token_balance(tok, req.address)


def _get_token(address: str):
    tok = app.state.registry.ledger.adapter.tokens.get(address)
    if tok is None:
        raise APIError(404, "token_not_found", f"Token {address} not found")
    return tok


def _token_balance(tok, address: str) -> TokenBalanceResponse:
    custody = app.state.registry.ledger.adapter.custody
    return TokenBalanceResponse(
        token=tok.address,
        address=address,
        balance=str(tok.balance_of(address)),
        allowance=str(tok.allowance(address, custody)),
    )

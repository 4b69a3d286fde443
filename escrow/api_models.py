"""
Pydantic request/response models for the API.
All amounts are strings so large integer values survive JSON clients.
"""

from pydantic import BaseModel


# --- Collateral ---

class DepositRequest(BaseModel):
    asset: str = "native"
    amount: str
    value: str = "0"

class WithdrawRequest(BaseModel):
    asset: str = "native"
    amount: str

class BalanceResponse(BaseModel):
    owner: str
    asset: str
    open: str
    locked: str


# --- Listings ---

class ListRequest(BaseModel):
    item_reference: str
    price: str
    asset: str = "native"
    value: str = "0"

class UpdatePriceRequest(BaseModel):
    price: str
    value: str = "0"

class BuyRequest(BaseModel):
    value: str = "0"

class ListingResponse(BaseModel):
    seller: str
    index: int
    item_reference: str
    price: str
    asset: str
    buyer: str | None
    state: str
    created_at: str
    updated_at: str


# --- Admin (simulated assets) ---

class FundRequest(BaseModel):
    address: str
    amount: str

class FundResponse(BaseModel):
    address: str
    wallet: str

class CreateTokenRequest(BaseModel):
    address: str
    symbol: str = ""

class MintTokenRequest(BaseModel):
    address: str
    amount: str

class TokenBalanceResponse(BaseModel):
    token: str
    address: str
    balance: str
    allowance: str

class ApproveRequest(BaseModel):
    amount: str

class HealthResponse(BaseModel):
    status: str
    sellers: int
    listings: int
    assets: list[str]

"""
Pydantic request/response models for the API.
All amounts are decimal-integer strings: they can exceed what a JSON
double holds exactly.
"""

from pydantic import BaseModel


# --- Auth ---

class RegisterRequest(BaseModel):
    username: str

class RegisterResponse(BaseModel):
    api_key: str
    account_id: int
    username: str


# --- Account ---

class AccountResponse(BaseModel):
    account_id: int
    balance: str
    positions: dict[int, dict[str, str]]

class TransactionResponse(BaseModel):
    tx_id: int
    delta: str
    reason: str
    market_id: int | None
    counterparty_id: int | None
    created_at: str


# --- Markets ---

class MarketSummary(BaseModel):
    market_id: int
    owner: int
    question: str
    state: str
    outcome: str | None
    yes_pool: str
    no_pool: str
    collateral_reserve: str
    created_at: str

class MarketDetail(MarketSummary):
    description: str
    custody_account_id: int
    total_yes_supply: str
    total_no_supply: str
    num_events: int
    resolved_at: str | None

class PositionEntry(BaseModel):
    account_id: int
    positions: dict[str, str]

class EventResponse(BaseModel):
    event_id: int
    kind: str
    market_id: int
    account_id: int
    data: dict[str, str]
    created_at: str


# --- Market operations ---

class CreateMarketRequest(BaseModel):
    question: str
    description: str = ""

class AdminCreateMarketRequest(CreateMarketRequest):
    owner: int

class CreateMarketResponse(BaseModel):
    market_id: int
    owner: int
    custody_account_id: int

class InitializeRequest(BaseModel):
    deposit: str

class BuyRequest(BaseModel):
    side: str
    payment: str
    min_out: str = "0"

class SellRequest(BaseModel):
    side: str
    shares: str
    min_payment_out: str = "0"

class ResolveRequest(BaseModel):
    outcome: str


# --- Admin ---

class CreateAccountRequest(BaseModel):
    accepts_payments: bool = True

class CreateAccountResponse(BaseModel):
    account_id: int

class MintRequest(BaseModel):
    account_id: int
    amount: str

class MintResponse(BaseModel):
    account_id: int
    balance: str

class HealthResponse(BaseModel):
    status: str
    markets: int
    accounts: int

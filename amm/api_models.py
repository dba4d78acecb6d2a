"""
Pydantic request/response models for the API.
All monetary values and share quantities are decimal strings.
"""

from pydantic import BaseModel


# --- Auth ---

class RegisterRequest(BaseModel):
    username: str

class RegisterResponse(BaseModel):
    api_key: str
    address: str


# --- Account ---

class AccountResponse(BaseModel):
    address: str
    balance: str
    allowance: str


# --- Markets ---

class OptionResponse(BaseModel):
    option_id: int
    name: str
    description: str
    shares: str
    price: str
    active: bool

class MarketSummary(BaseModel):
    market_id: int
    question: str
    category: str
    status: str
    options: list[OptionResponse]
    b: str
    num_trades: int
    winning_option: int | None
    trading_end: int

class MarketDetail(MarketSummary):
    description: str
    market_type: str
    creator: str
    payout_per_share: str
    admin_liquidity: str
    user_liquidity: str
    fees_collected: str
    trading_start: int
    created_at: int
    resolved_at: int | None
    early_resolution_allowed: bool

class OddsResponse(BaseModel):
    market_id: int
    prices: list[str]

class PriceResponse(BaseModel):
    market_id: int
    option_id: int
    price: str

class QuoteResponse(BaseModel):
    side: str
    option_id: int
    quantity: str
    raw_amount: str
    fee: str
    total_amount: str
    avg_price: str

class PositionEntry(BaseModel):
    address: str
    shares: list[str]
    claimed: str | None

class TradeResponse(BaseModel):
    trade_id: int
    market_id: int
    trader: str
    side: str
    option_id: int
    quantity: str
    raw_amount: str
    fee: str
    total_amount: str
    avg_price: str
    created_at: int


# --- Trading ---

class BuyRequest(BaseModel):
    option_id: int
    quantity: str
    max_price_per_share: str | None = None
    max_total_cost: str | None = None

class SellRequest(BaseModel):
    option_id: int
    quantity: str
    min_price_per_share: str | None = None
    min_total_proceeds: str | None = None

class ClaimResponse(BaseModel):
    market_id: int
    payout: str


# --- Admin ---

class MintRequest(BaseModel):
    address: str
    amount: str

class MintResponse(BaseModel):
    address: str
    balance: str

class CreateMarketRequest(BaseModel):
    question: str
    description: str = ""
    option_names: list[str] = ["yes", "no"]
    option_descs: list[str] | None = None
    duration: int
    category: str = ""
    market_type: str = "categorical"
    initial_liquidity: str
    early_resolution_allowed: bool = False

class CreateMarketResponse(BaseModel):
    market_id: int
    b: str
    prices: list[str]

class ResolveRequest(BaseModel):
    winning_option: int

class WithdrawFeesResponse(BaseModel):
    collector: str
    amount: str

class HealthResponse(BaseModel):
    status: str
    markets: int
    accounts: int

"""
Data models for the LMSR market maker.

A Market owns its Option records, its per-user positions and its trade
history. The engine is the only writer; readers get the same objects
back from MarketEngine and must treat them as read-only views.

All quantities are wad ints (1e18 = 1.0). Timestamps are unix seconds.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


# ---------------------------------------------------------------------------
# Sequential IDs
# ---------------------------------------------------------------------------

_counters: dict[str, int] = defaultdict(int)


def next_id(kind: str) -> int:
    """Sequential ID. Kinds: market, trade, tx."""
    _counters[kind] += 1
    return _counters[kind]


def reset_counters() -> None:
    """Reset all counters. For testing."""
    _counters.clear()


def set_counter(kind: str, value: int) -> None:
    """Set a counter. For loading persisted state."""
    _counters[kind] = value


# ---------------------------------------------------------------------------
# Market side
# ---------------------------------------------------------------------------

class MarketStatus(str, Enum):
    CREATED = "created"
    VALIDATED = "validated"
    RESOLVED = "resolved"
    INVALIDATED = "invalidated"


class Side(str, Enum):
    BUY = "buy"
    SELL = "sell"


@dataclass
class Option:
    """One outcome. `shares` is q_i, `price` the last committed probability."""
    name: str
    description: str = ""
    shares: int = 0
    price: int = 0
    active: bool = True


@dataclass
class Trade:
    """
    A single executed trade against the AMM.

    raw_amount: cost-function delta in tokens
    fee:        fee charged on raw_amount
    total_amount: what the trader paid (buy) or received (sell)
    avg_price:  total_amount per share (wad tokens per share)
    """
    id: int
    market_id: int
    trader: str
    option_id: int
    side: Side
    quantity: int
    raw_amount: int
    fee: int
    total_amount: int
    avg_price: int
    created_at: int


@dataclass
class Quote:
    raw_amount: int
    fee: int
    total_amount: int
    avg_price: int


@dataclass
class Market:
    """
    A market instance. Owns LMSR state and positions.

    b: liquidity parameter, fixed at creation
    payout_per_share: tokens paid per winning share
    admin_liquidity: tokens seeded by the creator
    user_liquidity: net tokens paid in by traders (buys minus sells, pre-fee)
    positions: shares held per address per option
    claimed: payout already made per address
    """
    id: int
    creator: str
    question: str
    options: list[Option]
    b: int
    payout_per_share: int
    admin_liquidity: int
    trading_start: int
    trading_end: int
    created_at: int
    description: str = ""
    category: str = ""
    market_type: str = "categorical"
    user_liquidity: int = 0
    status: MarketStatus = MarketStatus.CREATED
    winning_option: Optional[int] = None
    early_resolution_allowed: bool = False
    liquidity_refunded: bool = False
    resolved_at: Optional[int] = None
    positions: dict[str, list[int]] = field(default_factory=dict)
    claimed: dict[str, int] = field(default_factory=dict)
    trades: list[Trade] = field(default_factory=list)

    @property
    def option_count(self) -> int:
        return len(self.options)

    @property
    def shares(self) -> list[int]:
        return [o.shares for o in self.options]

    @property
    def prices(self) -> list[int]:
        return [o.price for o in self.options]

    @property
    def is_validated(self) -> bool:
        return self.status != MarketStatus.CREATED

    @property
    def is_resolved(self) -> bool:
        return self.status == MarketStatus.RESOLVED

    @property
    def is_invalidated(self) -> bool:
        return self.status == MarketStatus.INVALIDATED

    @property
    def available_liquidity(self) -> int:
        return self.admin_liquidity + self.user_liquidity

    def position(self, address: str) -> list[int]:
        return self.positions.get(address, [0] * self.option_count)

    def has_option(self, option_id: int) -> bool:
        return 0 <= option_id < self.option_count

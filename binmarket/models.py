"""
Data models for the binary prediction market.

Two separate domains:
- Collateral side: accounts and transactions (the collateral ledger's world)
- Market side: one record per market with pools, supplies, share balances
  and its event log (the market engine's world)

The collateral ledger knows who holds how much of the backing asset. It
does not know about shares, pools or outcomes. That belongs to the engine.

All amounts are unsigned integers in the asset's smallest unit. Ratios use
a fixed-point SCALE so small trades don't round to zero prematurely.
"""

import enum
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


SCALE = 10 ** 18
MAX_UINT = 2 ** 256 - 1


# ---------------------------------------------------------------------------
# Sequential IDs
# ---------------------------------------------------------------------------

_counters: dict[str, int] = defaultdict(int)


def next_id(kind: str) -> int:
    """Sequential ID. Kinds: account, market, tx, event."""
    _counters[kind] += 1
    return _counters[kind]


def reset_counters() -> None:
    """Reset all counters. For testing."""
    _counters.clear()


def set_counter(kind: str, value: int) -> None:
    """Set a counter. For loading persisted state."""
    _counters[kind] = value


def snapshot_counters() -> dict[str, int]:
    return dict(_counters)


def restore_counters(saved: dict[str, int]) -> None:
    """Roll IDs back so a failed call leaves no gaps."""
    _counters.clear()
    _counters.update(saved)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Side(str, enum.Enum):
    YES = "yes"
    NO = "no"

    @property
    def opposite(self) -> "Side":
        return Side.NO if self is Side.YES else Side.YES

    @classmethod
    def parse(cls, value) -> "Side":
        if isinstance(value, Side):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(f"unknown side: {value}") from None


class MarketState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    OPEN = "open"
    RESOLVED = "resolved"


# ---------------------------------------------------------------------------
# Collateral side
# ---------------------------------------------------------------------------

@dataclass
class Account:
    """
    An account in the collateral ledger.
    Every market's custody is also an account.

    accepts_payments: False models a receiver that rejects incoming
    payouts (the transfer fails, the engine call rolls back).
    is_custody: holds a market's reserve. Never a market participant.
    """
    id: int
    balance: int = 0
    accepts_payments: bool = True
    is_custody: bool = False
    created_at: str = field(default_factory=_now)

    @staticmethod
    def new(balance: int = 0, accepts_payments: bool = True,
            is_custody: bool = False) -> "Account":
        return Account(id=next_id("account"), balance=balance,
                       accepts_payments=accepts_payments,
                       is_custody=is_custody)


@dataclass
class Transaction:
    """
    Append-only ledger entry. Every balance change gets one of these.

    delta: change to the account's balance (positive = credit)
    A transfer produces two entries, one per account, with opposite deltas.
    """
    id: int
    account_id: int
    delta: int
    reason: str
    market_id: Optional[int] = None
    counterparty_id: Optional[int] = None
    created_at: str = field(default_factory=_now)

    @staticmethod
    def new(account_id: int, delta: int, reason: str,
            market_id: Optional[int] = None,
            counterparty_id: Optional[int] = None) -> "Transaction":
        return Transaction(
            id=next_id("tx"),
            account_id=account_id,
            delta=delta,
            reason=reason,
            market_id=market_id,
            counterparty_id=counterparty_id,
        )


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

@dataclass
class Event:
    """
    Notification emitted by a successful mutating call.

    kind: "market_created", "market_initialized", "shares_bought",
          "shares_sold", "market_resolved", "redeemed"
    data: the quantitative result (amounts, side, outcome), ints and strs only
    """
    id: int
    kind: str
    market_id: int
    account_id: int
    data: dict = field(default_factory=dict)
    created_at: str = field(default_factory=_now)

    @staticmethod
    def new(kind: str, market_id: int, account_id: int, **data) -> "Event":
        return Event(id=next_id("event"), kind=kind, market_id=market_id,
                     account_id=account_id, data=data)


# Event kinds
MARKET_CREATED = "market_created"
MARKET_INITIALIZED = "market_initialized"
SHARES_BOUGHT = "shares_bought"
SHARES_SOLD = "shares_sold"
MARKET_RESOLVED = "market_resolved"
REDEEMED = "redeemed"


# ---------------------------------------------------------------------------
# Market side
# ---------------------------------------------------------------------------

@dataclass
class Market:
    """
    A market instance. Owns pools, supplies and share balances.

    yes_pool/no_pool: share-supply counters fed to the price curve. They
    track issued shares, not collateral; the collateral sits in the custody
    account and is read from the ledger.
    outcome: True if YES won. Meaningful only when state is RESOLVED.
    """
    id: int
    owner: int
    custody_account_id: int
    question: str
    description: str = ""
    state: MarketState = MarketState.UNINITIALIZED
    outcome: Optional[bool] = None
    yes_pool: int = 0
    no_pool: int = 0
    total_yes_supply: int = 0
    total_no_supply: int = 0
    yes_balances: dict[int, int] = field(default_factory=dict)
    no_balances: dict[int, int] = field(default_factory=dict)
    events: list[Event] = field(default_factory=list)
    created_at: str = field(default_factory=_now)
    resolved_at: Optional[str] = None

    @staticmethod
    def new(owner: int, custody_account_id: int, question: str,
            description: str = "") -> "Market":
        return Market(
            id=next_id("market"),
            owner=owner,
            custody_account_id=custody_account_id,
            question=question,
            description=description,
        )

    def pool(self, side: Side) -> int:
        return self.yes_pool if side is Side.YES else self.no_pool

    def set_pool(self, side: Side, value: int) -> None:
        if side is Side.YES:
            self.yes_pool = value
        else:
            self.no_pool = value

    def total_supply(self, side: Side) -> int:
        return (self.total_yes_supply if side is Side.YES
                else self.total_no_supply)

    def set_total_supply(self, side: Side, value: int) -> None:
        if side is Side.YES:
            self.total_yes_supply = value
        else:
            self.total_no_supply = value

    def balances(self, side: Side) -> dict[int, int]:
        return self.yes_balances if side is Side.YES else self.no_balances

    def balance_of(self, account_id: int, side: Side) -> int:
        return self.balances(side).get(account_id, 0)

    @property
    def winning_side(self) -> Optional[Side]:
        if self.state is not MarketState.RESOLVED:
            return None
        return Side.YES if self.outcome else Side.NO

"""
Market engine. One instance per market: initialization, ratio-curve
trading, resolution and redemption.

The engine owns the market record (pools, supplies, share balances,
event log) and talks to the collateral ledger for every collateral
movement. Its collateral reserve is the balance of its custody account.

Atomicity:
  Every mutating call runs inside _atomic(): the market record and the
  collateral ledger are snapshotted first and restored if anything
  raises. A failed call leaves no trace, events included.

Reentrancy:
  Payouts (sell, redeem) go through CollateralLedger.send, which may run
  a receiver hook. All ledger effects are applied before the send, and
  the ledger-wide guard rejects any call into this or any other engine on
  the same ledger while a call is in flight. A rejected re-entry makes
  the hook fail, so the payout fails and the outer call rolls back.

Buy and sell share a single routine keyed by Side (_trade).
"""

import copy
import functools
import logging
from contextlib import contextmanager

from binmarket import curve
from binmarket.collateral import CollateralLedger
from binmarket.errors import (
    AlreadyInitialized, AlreadyResolved, CustodyCaller, DustAmount,
    InsufficientBalance, InsufficientLiquidity, NotOpen, NotOwner,
    NotResolved, NothingToRedeem, SlippageExceeded, ZeroDeposit,
)
from binmarket.models import (
    Event, Market, MarketState, Side, _now, restore_counters,
    snapshot_counters,
    MARKET_INITIALIZED, MARKET_RESOLVED, REDEEMED, SHARES_BOUGHT,
    SHARES_SOLD,
)


logger = logging.getLogger(__name__)


def _engine_call(method):
    """
    Run a mutator under the ledger-wide guard, after rejecting custody
    accounts as callers. Every mutator takes the caller first.
    """

    @functools.wraps(method)
    def wrapper(self, caller, *args, **kwargs):
        with self.collateral.engine_call(self.market.id, method.__name__):
            acc = self.collateral.accounts.get(caller)
            if acc is not None and acc.is_custody:
                raise CustodyCaller(
                    f"account {caller} is a market custody account")
            return method(self, caller, *args, **kwargs)

    return wrapper


class MarketEngine:
    """
    One market: its record (pools, supplies, share balances, event log)
    and every state transition on it.

    Collateral never sits on the engine. Deposits and payments move into
    the market's custody account on the shared CollateralLedger, payouts
    move out of it, and collateral_reserve reads its balance back.
    """

    def __init__(self, market: Market, collateral: CollateralLedger):
        self.market = market
        self.collateral = collateral

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------

    @property
    def id(self) -> int:
        return self.market.id

    @property
    def owner(self) -> int:
        return self.market.owner

    @property
    def state(self) -> MarketState:
        return self.market.state

    @property
    def outcome(self) -> bool | None:
        return self.market.outcome

    @property
    def question(self) -> str:
        return self.market.question

    @property
    def description(self) -> str:
        return self.market.description

    @property
    def collateral_reserve(self) -> int:
        return self.collateral.balance_of(self.market.custody_account_id)

    @property
    def events(self) -> list[Event]:
        return list(self.market.events)

    def events_since(self, cursor: int = 0) -> list[Event]:
        """Events with id > cursor, for indexers that poll."""
        return [e for e in self.market.events if e.id > cursor]

    def balance_of(self, account_id: int, side) -> int:
        return self.market.balance_of(account_id, Side.parse(side))

    def total_supply(self, side) -> int:
        return self.market.total_supply(Side.parse(side))

    def pool(self, side) -> int:
        return self.market.pool(Side.parse(side))

    def spot_price(self, side) -> int:
        """Current price of the opposite side in units of `side`, scaled."""
        side = Side.parse(side)
        return curve.spot_price(self.market.pool(side),
                                self.market.pool(side.opposite))

    def holders(self) -> dict[int, dict[str, int]]:
        """Accounts with a non-zero balance on either side."""
        result: dict[int, dict[str, int]] = {}
        for side in Side:
            for acc_id, amount in self.market.balances(side).items():
                if amount == 0:
                    continue
                pos = result.setdefault(acc_id, {s.value: 0 for s in Side})
                pos[side.value] = amount
        return result

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @_engine_call
    def initialize_market(self, caller: int, deposit: int) -> Event:
        """
        Seed the market with the first deposit. Owner only, once.

        The deposit is split in half into both pools and credited to the
        owner on both sides. An odd unit stays in the reserve unissued.
        """
        m = self.market
        if caller != m.owner:
            raise NotOwner(f"account {caller} is not the owner of market {m.id}")
        if m.state is not MarketState.UNINITIALIZED:
            raise AlreadyInitialized(f"market {m.id} is {m.state.value}")
        if deposit <= 0:
            raise ZeroDeposit("deposit must be positive")

        with self._atomic():
            self.collateral.transfer(caller, m.custody_account_id, deposit,
                                     reason="initial_deposit",
                                     market_id=m.id)
            yes_half, no_half = curve.initial_split(deposit)
            self._credit(caller, Side.YES, yes_half)
            self._credit(caller, Side.NO, no_half)
            m.state = MarketState.OPEN
            event = self._emit(MARKET_INITIALIZED, caller,
                               deposit=deposit, yes_shares=yes_half,
                               no_shares=no_half)

        logger.info("market %d initialized by %d: deposit=%d pools=%d/%d",
                    m.id, caller, deposit, m.yes_pool, m.no_pool)
        return event

    @_engine_call
    def resolve_market(self, caller: int, outcome_is_yes: bool) -> Event:
        """Fix the winning side. Owner only, once, irreversible."""
        m = self.market
        if caller != m.owner:
            raise NotOwner(f"account {caller} is not the owner of market {m.id}")
        if m.state is MarketState.RESOLVED:
            raise AlreadyResolved(f"market {m.id} is already resolved")
        if m.state is not MarketState.OPEN:
            raise NotOpen(f"market {m.id} is {m.state.value}")

        with self._atomic():
            m.outcome = bool(outcome_is_yes)
            m.state = MarketState.RESOLVED
            m.resolved_at = _now()
            event = self._emit(MARKET_RESOLVED, caller,
                               outcome=m.winning_side.value,
                               reserve=self.collateral_reserve)

        logger.info("market %d resolved %s by %d", m.id,
                    m.winning_side.value, caller)
        return event

    # ------------------------------------------------------------------
    # Trading
    # ------------------------------------------------------------------

    @_engine_call
    def buy(self, caller: int, side, payment: int, min_out: int = 0) -> Event:
        """Pay `payment` collateral for shares of `side`."""
        return self._trade(caller, Side.parse(side), payment, min_out,
                           buying=True)

    @_engine_call
    def sell(self, caller: int, side, shares: int,
             min_payment_out: int = 0) -> Event:
        """Sell `shares` of `side` back for collateral."""
        return self._trade(caller, Side.parse(side), shares,
                           min_payment_out, buying=False)

    def _trade(self, caller: int, side: Side, amount_in: int,
               min_out: int, buying: bool) -> Event:
        """
        Core trade execution. Symmetric for buys and sells.

        buying:  amount_in is collateral, output is shares
                 own pool, supply and balance grow by the output
        selling: amount_in is shares, output is collateral
                 own pool, supply and balance shrink by amount_in,
                 then the payout is sent (last, after all effects)
        """
        m = self.market
        if m.state is not MarketState.OPEN:
            raise NotOpen(f"market {m.id} is {m.state.value}")

        own, other = m.pool(side), m.pool(side.opposite)

        if buying:
            if amount_in <= 0:
                raise ZeroDeposit("payment must be positive")
            amount_out = curve.shares_for_payment(own, other, amount_in)
        else:
            held = m.balance_of(caller, side)
            if amount_in > held:
                raise InsufficientBalance(
                    f"account {caller}: can't sell {amount_in} {side.value}, "
                    f"only holds {held}")
            amount_out = curve.payment_for_shares(own, other, amount_in)

        if amount_out <= 0:
            raise DustAmount(f"{amount_in} in rounds to zero out")
        if not buying and self.collateral_reserve < amount_out:
            raise InsufficientLiquidity(
                f"market {m.id}: reserve {self.collateral_reserve} "
                f"can't cover payout {amount_out}")
        if amount_out < min_out:
            raise SlippageExceeded(
                f"output {amount_out} below minimum {min_out}")

        with self._atomic():
            if buying:
                self.collateral.transfer(caller, m.custody_account_id,
                                         amount_in, reason="buy",
                                         market_id=m.id)
                self._credit(caller, side, amount_out)
                event = self._emit(SHARES_BOUGHT, caller, side=side.value,
                                   payment=amount_in, shares=amount_out)
            else:
                self._debit(caller, side, amount_in)
                event = self._emit(SHARES_SOLD, caller, side=side.value,
                                   shares=amount_in, payout=amount_out)
                self.collateral.send(m.custody_account_id, caller,
                                     amount_out, reason="sell",
                                     market_id=m.id)

        logger.debug("market %d %s %s: account=%d in=%d out=%d",
                     m.id, "buy" if buying else "sell", side.value,
                     caller, amount_in, amount_out)
        return event

    # ------------------------------------------------------------------
    # Redemption
    # ------------------------------------------------------------------

    @_engine_call
    def redeem(self, caller: int) -> Event:
        """
        Pay the caller their pro-rata share of the current reserve:
        floor(reserve * balance / winning_supply). Settles against the
        reserve at call time; earlier redemptions have already left.
        """
        m = self.market
        if m.state is not MarketState.RESOLVED:
            raise NotResolved(f"market {m.id} is {m.state.value}")

        side = m.winning_side
        balance = m.balance_of(caller, side)
        if balance == 0:
            raise NothingToRedeem(
                f"account {caller} holds no {side.value} shares")

        reserve = self.collateral_reserve
        supply = m.total_supply(side)
        payout = curve.redemption_payout(reserve, balance, supply)
        if payout > reserve:
            raise InsufficientLiquidity(
                f"market {m.id}: reserve {reserve} can't cover {payout}")

        with self._atomic():
            m.balances(side)[caller] = 0
            m.set_total_supply(side, curve.checked_sub(supply, balance))
            event = self._emit(REDEEMED, caller, side=side.value,
                               shares=balance, payout=payout)
            self.collateral.send(m.custody_account_id, caller, payout,
                                 reason="redeem", market_id=m.id)

        logger.info("market %d: account %d redeemed %d %s for %d",
                    m.id, caller, balance, side.value, payout)
        return event

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _atomic(self):
        """
        All-or-nothing: restore market, ledger and ID counters if the
        body raises, so event and tx ids stay gapless.
        """
        saved_market = copy.deepcopy(self.market)
        saved_ledger = self.collateral.snapshot()
        saved_ids = snapshot_counters()
        try:
            yield
        except BaseException:
            self._restore_market(saved_market)
            self.collateral.restore(saved_ledger)
            restore_counters(saved_ids)
            raise

    def _restore_market(self, saved: Market) -> None:
        # Restore in place: the registry and callers hold this object.
        self.market.__dict__.update(saved.__dict__)

    def _credit(self, account_id: int, side: Side, amount: int) -> None:
        m = self.market
        m.set_pool(side, curve.checked_add(m.pool(side), amount))
        m.set_total_supply(side, curve.checked_add(m.total_supply(side), amount))
        balances = m.balances(side)
        balances[account_id] = curve.checked_add(
            balances.get(account_id, 0), amount)

    def _debit(self, account_id: int, side: Side, amount: int) -> None:
        m = self.market
        balances = m.balances(side)
        balances[account_id] = curve.checked_sub(
            balances.get(account_id, 0), amount)
        m.set_pool(side, curve.checked_sub(m.pool(side), amount))
        m.set_total_supply(side, curve.checked_sub(m.total_supply(side), amount))

    def _emit(self, kind: str, account_id: int, **data) -> Event:
        event = Event.new(kind, self.market.id, account_id, **data)
        self.market.events.append(event)
        return event

"""
Collateral ledger. Manages accounts, collateral balances, and the
transaction log.

Every balance mutation produces a Transaction. The ledger is the single
source of truth for who holds how much of the backing asset, including
each market's custody account (its collateral reserve).

The ledger does NOT know about markets' pools, shares or outcomes.

Two ways to move collateral:
  transfer: internal bookkeeping move, always accepted by the receiver
  send:     an outgoing payout. The receiver may refuse it
            (accepts_payments=False) or run a receive hook, which may do
            anything, including calling back into a market engine.

Every market engine on a ledger shares one call guard (engine_call): while
any engine call is in flight, a call into any other engine on the same
ledger is rejected. A failed call therefore only ever has one market
record to roll back, and the ledger snapshot covers the rest.

Invariant: sum(account.balance) == total_minted()
"""

import copy
import logging
import threading
from contextlib import contextmanager
from typing import Callable, Optional

from binmarket.errors import (
    AccountNotFound, InsufficientCollateral, PayoutFailed, ReentrantCall,
    ZeroDeposit,
)
from binmarket.models import Account, Transaction


logger = logging.getLogger(__name__)

# hook(account_id, amount, market_id). Raising rejects the payment.
ReceiveHook = Callable[[int, int, Optional[int]], None]


class CollateralLedger:

    def __init__(self):
        self.accounts: dict[int, Account] = {}
        self.transactions: list[Transaction] = []
        self.receive_hooks: dict[int, ReceiveHook] = {}
        self._guard = threading.RLock()
        self.active_market: Optional[int] = None

    def create_account(self, balance: int = 0,
                       accepts_payments: bool = True,
                       is_custody: bool = False) -> Account:
        acc = Account.new(accepts_payments=accepts_payments,
                          is_custody=is_custody)
        self.accounts[acc.id] = acc
        if balance:
            self.mint(acc.id, balance)
        return acc

    def get_account(self, account_id: int) -> Account:
        acc = self.accounts.get(account_id)
        if acc is None:
            raise AccountNotFound(f"account {account_id} not found")
        return acc

    def balance_of(self, account_id: int) -> int:
        return self.get_account(account_id).balance

    # ------------------------------------------------------------------
    # Minting
    # ------------------------------------------------------------------

    def mint(self, account_id: int, amount: int) -> Transaction:
        """Create collateral from nothing. The only way money enters."""
        if amount <= 0:
            raise ZeroDeposit("mint amount must be positive")
        acc = self.get_account(account_id)
        acc.balance += amount
        tx = Transaction.new(account_id=account_id, delta=amount,
                             reason="mint")
        self.transactions.append(tx)
        return tx

    # ------------------------------------------------------------------
    # Moving collateral
    # ------------------------------------------------------------------

    def transfer(self, from_id: int, to_id: int, amount: int,
                 reason: str = "transfer",
                 market_id: Optional[int] = None) -> tuple[Transaction, Transaction]:
        """
        Move collateral between accounts. Debit first, then credit.
        Raises InsufficientCollateral if the source can't cover it.
        """
        src = self.get_account(from_id)
        dst = self.get_account(to_id)
        if src.balance < amount:
            raise InsufficientCollateral(
                f"account {from_id}: need {amount}, have {src.balance}")
        src.balance -= amount
        dst.balance += amount
        debit = Transaction.new(account_id=from_id, delta=-amount,
                                reason=reason, market_id=market_id,
                                counterparty_id=to_id)
        credit = Transaction.new(account_id=to_id, delta=amount,
                                 reason=reason, market_id=market_id,
                                 counterparty_id=from_id)
        self.transactions.extend((debit, credit))
        return debit, credit

    def send(self, from_id: int, to_id: int, amount: int,
             reason: str = "payout",
             market_id: Optional[int] = None) -> tuple[Transaction, Transaction]:
        """
        Pay out to a receiver that gets a say. The collateral lands first,
        then the receiver's hook runs. A refusal or any error raised by
        the hook undoes the transfer and raises PayoutFailed.
        """
        dst = self.get_account(to_id)
        if not dst.accepts_payments:
            raise PayoutFailed(f"account {to_id} does not accept payments")

        saved = self.snapshot()
        txs = self.transfer(from_id, to_id, amount, reason=reason,
                            market_id=market_id)
        hook = self.receive_hooks.get(to_id)
        if hook is not None:
            try:
                hook(to_id, amount, market_id)
            except Exception as exc:
                self.restore(saved)
                logger.warning("payout of %d to account %d rejected: %s",
                               amount, to_id, exc)
                raise PayoutFailed(
                    f"account {to_id} rejected payout: {exc}") from exc
        return txs

    def set_receive_hook(self, account_id: int,
                         hook: Optional[ReceiveHook]) -> None:
        """Register (or clear, with None) a hook run on incoming sends."""
        self.get_account(account_id)
        if hook is None:
            self.receive_hooks.pop(account_id, None)
        else:
            self.receive_hooks[account_id] = hook

    # ------------------------------------------------------------------
    # Atomicity
    # ------------------------------------------------------------------

    @contextmanager
    def engine_call(self, market_id: int, operation: str):
        """
        Hold the ledger-wide guard for one engine call. Raises
        ReentrantCall if any engine on this ledger is already mid-call,
        including from a receive hook running inside that call.
        """
        with self._guard:
            if self.active_market is not None:
                raise ReentrantCall(
                    f"market {market_id}: {operation} called while market "
                    f"{self.active_market} has a call in flight")
            self.active_market = market_id
            try:
                yield
            finally:
                self.active_market = None

    def snapshot(self) -> tuple[dict[int, Account], int]:
        return copy.deepcopy(self.accounts), len(self.transactions)

    def restore(self, saved: tuple[dict[int, Account], int]) -> None:
        """
        Roll back to a snapshot in place. Account objects callers already
        hold stay live; accounts created since the snapshot are dropped.
        """
        accounts, n_txs = saved
        for acc_id in [a for a in self.accounts if a not in accounts]:
            del self.accounts[acc_id]
            self.receive_hooks.pop(acc_id, None)
        for acc_id, acc in accounts.items():
            live = self.accounts.get(acc_id)
            if live is None:
                self.accounts[acc_id] = copy.copy(acc)
            else:
                live.__dict__.update(acc.__dict__)
        del self.transactions[n_txs:]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def total_minted(self) -> int:
        """Sum of all mint transactions. The total money in the system."""
        return sum(tx.delta for tx in self.transactions if tx.reason == "mint")

    def total_balance(self) -> int:
        return sum(acc.balance for acc in self.accounts.values())

    def transactions_for(self, account_id: int,
                         market_id: Optional[int] = None) -> list[Transaction]:
        return [
            tx for tx in self.transactions
            if tx.account_id == account_id
            and (market_id is None or tx.market_id == market_id)
        ]

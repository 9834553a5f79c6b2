#!/usr/bin/env python3
"""
Binary market CLI. Every invocation: lock → load → execute → save → unlock.

Usage:
    python3 -m binmarket.cli create-account [--reject-payments]
    python3 -m binmarket.cli mint ACCOUNT_ID AMOUNT
    python3 -m binmarket.cli create-market OWNER QUESTION [--description TEXT]
    python3 -m binmarket.cli initialize MARKET_ID ACCOUNT_ID DEPOSIT
    python3 -m binmarket.cli buy MARKET_ID ACCOUNT_ID SIDE PAYMENT [--min-out N]
    python3 -m binmarket.cli sell MARKET_ID ACCOUNT_ID SIDE SHARES [--min-out N]
    python3 -m binmarket.cli resolve MARKET_ID ACCOUNT_ID OUTCOME
    python3 -m binmarket.cli redeem MARKET_ID ACCOUNT_ID
    python3 -m binmarket.cli account ACCOUNT_ID
    python3 -m binmarket.cli transactions ACCOUNT_ID [--market N]
    python3 -m binmarket.cli market MARKET_ID
    python3 -m binmarket.cli markets
    python3 -m binmarket.cli events MARKET_ID [--since N]

Output: JSON, one line. {"ok": true, ...} or {"ok": false, "error": "...", "code": "..."}
State: BINMARKET_STATE env var, default ./binmarket_state.json
"""

import argparse
import fcntl
import json
import logging
import os
import sys
from contextlib import contextmanager

from binmarket.errors import MarketError
from binmarket.logging_config import setup_logging
from binmarket.models import Side, reset_counters
from binmarket.persistence import save_snapshot, load_snapshot
from binmarket.registry import MarketRegistry


STATE_PATH = os.environ.get("BINMARKET_STATE", "./binmarket_state.json")

logger = logging.getLogger(__name__)


@contextmanager
def file_lock(path):
    """Exclusive file lock. Prevents concurrent CLI invocations from corrupting state."""
    lock_path = path + ".lock"
    f = open(lock_path, "w")
    try:
        fcntl.flock(f, fcntl.LOCK_EX)
        yield
    finally:
        fcntl.flock(f, fcntl.LOCK_UN)
        f.close()


def load_or_create(path):
    if os.path.exists(path):
        return load_snapshot(path)
    reset_counters()
    return MarketRegistry(), None


def reply(data):
    print(json.dumps(data))


def _event(event):
    return {"ok": True, "event_id": event.id, "kind": event.kind,
            "market_id": event.market_id, "account_id": event.account_id,
            **{k: str(v) for k, v in event.data.items()}}


def cmd_create_account(registry, args):
    acc = registry.collateral.create_account(
        accepts_payments=not args.reject_payments)
    return {"ok": True, "account_id": acc.id}


def cmd_mint(registry, args):
    registry.collateral.mint(args.account_id, args.amount)
    return {"ok": True, "account_id": args.account_id,
            "balance": str(registry.collateral.balance_of(args.account_id))}


def cmd_create_market(registry, args):
    engine = registry.create_market(args.owner, args.question,
                                    args.description)
    return {"ok": True, "market_id": engine.id, "owner": engine.owner,
            "custody_account_id": engine.market.custody_account_id}


def cmd_initialize(registry, args):
    engine = registry.get(args.market_id)
    return _event(engine.initialize_market(args.account_id, args.deposit))


def cmd_buy(registry, args):
    engine = registry.get(args.market_id)
    return _event(engine.buy(args.account_id, args.side, args.payment,
                             args.min_out))


def cmd_sell(registry, args):
    engine = registry.get(args.market_id)
    return _event(engine.sell(args.account_id, args.side, args.shares,
                              args.min_out))


def cmd_resolve(registry, args):
    engine = registry.get(args.market_id)
    return _event(engine.resolve_market(args.account_id,
                                        args.outcome is Side.YES))


def cmd_redeem(registry, args):
    engine = registry.get(args.market_id)
    return _event(engine.redeem(args.account_id))


def cmd_account(registry, args):
    acc = registry.collateral.get_account(args.account_id)
    positions = {}
    for engine in registry.markets.values():
        pos = engine.holders().get(acc.id)
        if pos:
            positions[engine.id] = {s: str(v) for s, v in pos.items()}
    return {"ok": True, "account_id": acc.id,
            "balance": str(acc.balance),
            "accepts_payments": acc.accepts_payments,
            "is_custody": acc.is_custody,
            "positions": positions}


def cmd_transactions(registry, args):
    registry.collateral.get_account(args.account_id)
    txs = registry.collateral.transactions_for(args.account_id,
                                               market_id=args.market)
    return {"ok": True, "transactions": [
        {"tx_id": tx.id, "delta": str(tx.delta), "reason": tx.reason,
         "market_id": tx.market_id}
        for tx in txs
    ]}


def cmd_market(registry, args):
    engine = registry.get(args.market_id)
    m = engine.market
    positions = {
        acc_id: {s: str(v) for s, v in pos.items()}
        for acc_id, pos in engine.holders().items()
    }
    return {"ok": True, "market_id": m.id,
            "owner": m.owner,
            "question": m.question,
            "description": m.description,
            "state": m.state.value,
            "outcome": m.winning_side.value if m.winning_side else None,
            "yes_pool": str(m.yes_pool),
            "no_pool": str(m.no_pool),
            "total_yes_supply": str(m.total_yes_supply),
            "total_no_supply": str(m.total_no_supply),
            "collateral_reserve": str(engine.collateral_reserve),
            "positions": positions,
            "num_events": len(m.events)}


def cmd_markets(registry, args):
    result = []
    for engine in registry.markets.values():
        result.append({
            "market_id": engine.id,
            "question": engine.question,
            "state": engine.state.value,
            "collateral_reserve": str(engine.collateral_reserve),
        })
    return {"ok": True, "markets": result}


def cmd_events(registry, args):
    engine = registry.get(args.market_id)
    return {"ok": True, "events": [
        {"event_id": e.id, "kind": e.kind, "account_id": e.account_id,
         "data": {k: str(v) for k, v in e.data.items()}}
        for e in engine.events_since(args.since)
    ]}


# Commands that mutate state (need save after)
MUTATING = {"create-account", "mint", "create-market",
            "initialize", "buy", "sell", "resolve", "redeem"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Binary market CLI")
    parser.add_argument("--state", default=STATE_PATH,
                        help="Path to state file")
    sub = parser.add_subparsers(dest="command")

    p = sub.add_parser("create-account")
    p.add_argument("--reject-payments", action="store_true",
                   help="Account refuses incoming payouts")

    p = sub.add_parser("mint")
    p.add_argument("account_id", type=int)
    p.add_argument("amount", type=int)

    p = sub.add_parser("create-market")
    p.add_argument("owner", type=int)
    p.add_argument("question")
    p.add_argument("--description", default="")

    p = sub.add_parser("initialize")
    p.add_argument("market_id", type=int)
    p.add_argument("account_id", type=int)
    p.add_argument("deposit", type=int)

    p = sub.add_parser("buy")
    p.add_argument("market_id", type=int)
    p.add_argument("account_id", type=int)
    p.add_argument("side", type=Side.parse)
    p.add_argument("payment", type=int)
    p.add_argument("--min-out", type=int, default=0)

    p = sub.add_parser("sell")
    p.add_argument("market_id", type=int)
    p.add_argument("account_id", type=int)
    p.add_argument("side", type=Side.parse)
    p.add_argument("shares", type=int)
    p.add_argument("--min-out", type=int, default=0,
                   help="Minimum collateral to receive")

    p = sub.add_parser("resolve")
    p.add_argument("market_id", type=int)
    p.add_argument("account_id", type=int)
    p.add_argument("outcome", type=Side.parse)

    p = sub.add_parser("redeem")
    p.add_argument("market_id", type=int)
    p.add_argument("account_id", type=int)

    p = sub.add_parser("account")
    p.add_argument("account_id", type=int)

    p = sub.add_parser("transactions")
    p.add_argument("account_id", type=int)
    p.add_argument("--market", type=int, default=None)

    p = sub.add_parser("market")
    p.add_argument("market_id", type=int)

    sub.add_parser("markets")

    p = sub.add_parser("events")
    p.add_argument("market_id", type=int)
    p.add_argument("--since", type=int, default=0)

    return parser


COMMANDS = {
    "create-account": cmd_create_account,
    "mint": cmd_mint,
    "create-market": cmd_create_market,
    "initialize": cmd_initialize,
    "buy": cmd_buy,
    "sell": cmd_sell,
    "resolve": cmd_resolve,
    "redeem": cmd_redeem,
    "account": cmd_account,
    "transactions": cmd_transactions,
    "market": cmd_market,
    "markets": cmd_markets,
    "events": cmd_events,
}


def main(argv: list[str] | None = None) -> int:
    setup_logging()
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    state_path = args.state

    try:
        with file_lock(state_path):
            registry, auth_store = load_or_create(state_path)
            result = COMMANDS[args.command](registry, args)

            if args.command in MUTATING:
                save_snapshot(registry, state_path, auth_store=auth_store)

            reply(result)
    except MarketError as e:
        logger.debug("%s failed: %s", args.command, e)
        reply({"ok": False, "error": str(e), "code": e.code})
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

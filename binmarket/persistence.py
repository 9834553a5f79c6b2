"""
Persistence layer. JSON snapshot + atomic writes.

The snapshot contains the complete state:
  - collateral ledger: accounts, transactions
  - registry: every market record (pools, supplies, balances, events)
    and the registry's own event log
  - auth users
  - ID counters (so IDs resume correctly after restart)

Save after every complete engine operation. On startup, load the
snapshot. No replay needed. Receive hooks are runtime-only and are not
saved.

Atomic write: write to .tmp, then os.replace. A crash mid-write
leaves the previous snapshot intact.
"""

import dataclasses
import enum
import json
import os

from binmarket.auth import AuthStore, User
from binmarket.collateral import CollateralLedger
from binmarket.models import (
    Account, Event, Market, MarketState, Transaction,
    _counters, set_counter, reset_counters,
)
from binmarket.registry import MarketRegistry


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def _serialize(obj):
    """Recursively serialize dataclasses and enums to JSON-safe types.

    Amounts are written as strings: they can exceed what JSON readers
    hold in a double.
    """
    if isinstance(obj, enum.Enum):
        return obj.value
    if isinstance(obj, bool) or obj is None or isinstance(obj, str):
        return obj
    if isinstance(obj, int):
        return str(obj)
    if dataclasses.is_dataclass(obj):
        return {
            f.name: _serialize(getattr(obj, f.name))
            for f in dataclasses.fields(obj)
        }
    if isinstance(obj, list):
        return [_serialize(item) for item in obj]
    if isinstance(obj, dict):
        return {str(k): _serialize(v) for k, v in obj.items()}
    return obj


# ---------------------------------------------------------------------------
# Deserialization helpers
# ---------------------------------------------------------------------------

def _opt_int(value) -> int | None:
    return None if value is None else int(value)


def _load_account(d: dict) -> Account:
    return Account(
        id=int(d["id"]),
        balance=int(d["balance"]),
        accepts_payments=d["accepts_payments"],
        is_custody=d.get("is_custody", False),
        created_at=d["created_at"],
    )


def _load_transaction(d: dict) -> Transaction:
    return Transaction(
        id=int(d["id"]),
        account_id=int(d["account_id"]),
        delta=int(d["delta"]),
        reason=d["reason"],
        market_id=_opt_int(d.get("market_id")),
        counterparty_id=_opt_int(d.get("counterparty_id")),
        created_at=d["created_at"],
    )


def _load_event(d: dict) -> Event:
    data = {
        k: int(v) if k not in ("side", "outcome", "question") else v
        for k, v in d["data"].items()
    }
    return Event(
        id=int(d["id"]),
        kind=d["kind"],
        market_id=int(d["market_id"]),
        account_id=int(d["account_id"]),
        data=data,
        created_at=d["created_at"],
    )


def _load_balances(d: dict) -> dict[int, int]:
    return {int(acc_id): int(amount) for acc_id, amount in d.items()}


def _load_market(d: dict) -> Market:
    return Market(
        id=int(d["id"]),
        owner=int(d["owner"]),
        custody_account_id=int(d["custody_account_id"]),
        question=d["question"],
        description=d["description"],
        state=MarketState(d["state"]),
        outcome=d.get("outcome"),
        yes_pool=int(d["yes_pool"]),
        no_pool=int(d["no_pool"]),
        total_yes_supply=int(d["total_yes_supply"]),
        total_no_supply=int(d["total_no_supply"]),
        yes_balances=_load_balances(d["yes_balances"]),
        no_balances=_load_balances(d["no_balances"]),
        events=[_load_event(e) for e in d["events"]],
        created_at=d["created_at"],
        resolved_at=d.get("resolved_at"),
    )


def _load_user(d: dict) -> User:
    return User(
        username=d["username"],
        account_id=int(d["account_id"]),
        api_key_hash=d["api_key_hash"],
        created_at=d["created_at"],
        last_seen_at=d["last_seen_at"],
    )


# ---------------------------------------------------------------------------
# Schema versioning
# ---------------------------------------------------------------------------

CURRENT_VERSION = 3


def _migrate_1_to_2(state: dict) -> dict:
    """Add the registry event log to snapshot."""
    state["registry_events"] = []
    state["version"] = 2
    return state


def _migrate_2_to_3(state: dict) -> dict:
    """Flag every market's custody account."""
    custody = {str(m["custody_account_id"]) for m in state["markets"]}
    for acc in state["accounts"]:
        acc["is_custody"] = str(acc["id"]) in custody
    state["version"] = 3
    return state


_MIGRATIONS: dict[int, callable] = {1: _migrate_1_to_2, 2: _migrate_2_to_3}


def _apply_migrations(state: dict) -> dict:
    """Apply all needed migrations to bring state to CURRENT_VERSION."""
    version = state.get("version", 1)
    while version < CURRENT_VERSION:
        migrate = _MIGRATIONS.get(version)
        if migrate is None:
            raise ValueError(
                f"no migration from version {version} to {version + 1}")
        state = migrate(state)
        version = state["version"]
    return state


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def save_snapshot(registry: MarketRegistry, path: str,
                  auth_store: AuthStore | None = None) -> None:
    """
    Save complete ledger + registry + auth state to a JSON file.
    Atomic: writes to .tmp then renames.
    """
    ledger = registry.collateral
    state = {
        "version": CURRENT_VERSION,
        "counters": dict(_counters),
        "accounts": [_serialize(acc) for acc in ledger.accounts.values()],
        "transactions": [_serialize(tx) for tx in ledger.transactions],
        "markets": [_serialize(e.market) for e in registry.markets.values()],
        "registry_events": [_serialize(ev) for ev in registry.events],
        "auth": {"users": [_serialize(u) for u in auth_store.users.values()]
                 if auth_store else []},
    }
    tmp = path + ".tmp"
    with open(tmp, "w") as f:
        json.dump(state, f, indent=2)
    os.replace(tmp, path)


def load_snapshot(path: str) -> tuple[MarketRegistry, AuthStore]:
    """
    Load ledger + registry + auth state from a JSON snapshot.
    Applies migrations automatically if the snapshot is an older version.
    Returns (registry, auth_store) ready to use.
    """
    with open(path) as f:
        state = json.load(f)

    state = _apply_migrations(state)

    # Restore ID counters
    reset_counters()
    for kind, value in state["counters"].items():
        set_counter(kind, value)

    # Restore collateral ledger
    ledger = CollateralLedger()
    for adata in state["accounts"]:
        acc = _load_account(adata)
        ledger.accounts[acc.id] = acc
    ledger.transactions = [_load_transaction(t) for t in state["transactions"]]

    # Restore registry, in creation order
    registry = MarketRegistry(ledger)
    for mdata in state["markets"]:
        registry.add(_load_market(mdata))
    registry.events = [_load_event(e) for e in state["registry_events"]]

    # Restore auth
    auth_store = AuthStore()
    for udata in state.get("auth", {}).get("users", []):
        auth_store.add(_load_user(udata))

    return registry, auth_store

"""Snapshot round-trip and schema migration."""

import json

import pytest

from binmarket.auth import AuthStore
from binmarket.models import Side
from binmarket.persistence import CURRENT_VERSION, load_snapshot, save_snapshot
from binmarket.test_core import fresh_system


@pytest.fixture
def traded(tmp_path):
    registry, engine, owner, traders = fresh_system()
    engine.buy(traders[0].id, Side.YES, 10)
    engine.buy(traders[1].id, Side.NO, 25)
    engine.resolve_market(owner.id, True)
    registry.create_market(owner.id, "Still open?")

    auth_store = AuthStore()
    auth_store.register_user("alice", traders[0].id)

    path = str(tmp_path / "state.json")
    save_snapshot(registry, path, auth_store=auth_store)
    return registry, engine, owner, traders, auth_store, path


class TestSnapshot:

    def test_round_trip(self, traded):
        registry, engine, _, _, auth_store, path = traded
        loaded, loaded_auth = load_snapshot(path)

        assert loaded.market_count() == registry.market_count()
        for market_id, saved in registry.markets.items():
            assert loaded.get(market_id).market == saved.market
        assert loaded.events == registry.events

        ledger = registry.collateral
        assert ({a.id: a.balance for a in loaded.collateral.accounts.values()}
                == {a.id: a.balance for a in ledger.accounts.values()})
        assert loaded.collateral.transactions == ledger.transactions
        assert ({a.id for a in loaded.collateral.accounts.values() if a.is_custody}
                == {e.market.custody_account_id for e in registry.markets.values()})
        assert loaded_auth.users == auth_store.users

    def test_amounts_written_as_strings(self, traded):
        path = traded[-1]
        with open(path) as f:
            state = json.load(f)
        assert state["version"] == CURRENT_VERSION
        market = state["markets"][0]
        assert market["yes_pool"] == "60"
        assert market["outcome"] is True
        assert market["state"] == "resolved"

    def test_loaded_market_keeps_working(self, traded):
        _, engine, owner, traders, _, path = traded
        loaded, _ = load_snapshot(path)
        again = loaded.get(engine.id)

        assert again.redeem(traders[0].id).data["payout"] == 22
        assert again.collateral_reserve == 135 - 22
        assert loaded.collateral.total_balance() == loaded.collateral.total_minted()

    def test_counters_resume(self, traded):
        registry, _, owner, _, _, path = traded
        last_market = max(registry.markets)
        loaded, _ = load_snapshot(path)
        fresh = loaded.create_market(owner.id, "After restart?")
        assert fresh.id == last_market + 1

    def test_no_temp_file_left(self, traded, tmp_path):
        assert not (tmp_path / "state.json.tmp").exists()

    def test_save_without_auth(self, tmp_path):
        registry, _, _, _ = fresh_system()
        path = str(tmp_path / "bare.json")
        save_snapshot(registry, path)
        _, auth_store = load_snapshot(path)
        assert auth_store.users == {}


class TestMigration:

    def test_version_1_snapshot_loads(self, traded):
        path = traded[-1]
        with open(path) as f:
            state = json.load(f)
        del state["registry_events"]
        state["version"] = 1
        with open(path, "w") as f:
            json.dump(state, f)

        loaded, _ = load_snapshot(path)
        assert loaded.events == []
        assert loaded.market_count() == 2

    def test_unknown_version_rejected(self, traded):
        path = traded[-1]
        with open(path) as f:
            state = json.load(f)
        state["version"] = 0
        with open(path, "w") as f:
            json.dump(state, f)

        with pytest.raises(ValueError):
            load_snapshot(path)

    def test_version_2_snapshot_flags_custody(self, traded):
        registry, engine, owner, _, _, path = traded
        with open(path) as f:
            state = json.load(f)
        for acc in state["accounts"]:
            del acc["is_custody"]
        state["version"] = 2
        with open(path, "w") as f:
            json.dump(state, f)

        loaded, _ = load_snapshot(path)
        custody = {e.market.custody_account_id
                   for e in loaded.markets.values()}
        flagged = {acc.id for acc in loaded.collateral.accounts.values()
                   if acc.is_custody}
        assert flagged == custody
        assert engine.market.custody_account_id in flagged
        assert owner.id not in flagged

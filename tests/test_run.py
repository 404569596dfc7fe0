"""
Tests for run.py -- argument parsing, mode selection, market discovery, ledger dump.
"""

from __future__ import annotations

import sqlite3

import httpx
import pytest
import respx

from config import Config
from pipeline.engine import DRY_RUN, LIVE, PAPER
from run import EXIT_FATAL, EXIT_OK, discover_markets, main, parse_args, print_ledger, resolve_mode
from state.ledger import Ledger
from state.store import StateStore

GAMMA_HOST = "https://gamma-api.polymarket.com"


def _market_json(cid, volume=1000, active=True, closed=False):
    return {
        "conditionId": cid,
        "question": f"Question for {cid}?",
        "clobTokenIds": f'["y-{cid}", "n-{cid}"]',
        "active": active,
        "closed": closed,
        "volume": volume,
    }


class TestParseArgs:
    def test_defaults(self):
        args = parse_args([])
        assert not args.dry_run and not args.live and not args.ledger
        assert args.limit == 50
        assert args.json_log is None

    def test_modes_exclusive(self):
        with pytest.raises(SystemExit):
            parse_args(["--dry-run", "--live"])

    def test_overrides(self):
        args = parse_args(["--paper", "--limit", "5", "--state-db", "x.db", "--status-file", "s.md"])
        assert args.paper
        assert args.limit == 5
        assert args.state_db == "x.db"
        assert args.status_file == "s.md"


class TestResolveMode:
    def test_flags(self):
        cfg = Config(paper_trading=False)
        assert resolve_mode(parse_args(["--dry-run"]), cfg) == DRY_RUN
        assert resolve_mode(parse_args(["--paper"]), cfg) == PAPER
        assert resolve_mode(parse_args(["--live"]), Config()) == LIVE

    def test_config_default(self):
        assert resolve_mode(parse_args([]), Config(paper_trading=True)) == PAPER
        assert resolve_mode(parse_args([]), Config(paper_trading=False)) == LIVE


class TestDiscoverMarkets:
    @respx.mock
    @pytest.mark.asyncio
    async def test_top_by_volume(self):
        respx.get(f"{GAMMA_HOST}/markets").mock(return_value=httpx.Response(200, json=[
            _market_json("c1", volume=10),
            _market_json("c2", volume=500),
            _market_json("c3", volume=90),
        ]))
        async with httpx.AsyncClient() as http:
            markets = await discover_markets(http, Config(watch_markets=[]), limit=2)
        assert [m.market_id for m in markets] == ["c2", "c3"]

    @respx.mock
    @pytest.mark.asyncio
    async def test_watched_markets_filter_closed(self):
        route = respx.get(f"{GAMMA_HOST}/markets").mock(return_value=httpx.Response(200, json=[
            _market_json("c1"),
            _market_json("c2", closed=True),
        ]))
        async with httpx.AsyncClient() as http:
            markets = await discover_markets(http, Config(watch_markets="c1,c2,c3"), limit=50)
        assert [m.market_id for m in markets] == ["c1"]
        assert route.calls.last.request.url.params.get_list("condition_ids") == ["c1", "c2", "c3"]


class TestPrintLedger:
    def _populate(self, store: StateStore) -> None:
        store.set_meta("initial_capital", 1000.0)
        ledger = Ledger(1000.0, 50.0, sink=store.append_audit)
        ledger.reserve(100.0, "pos_1")
        ledger.commit("pos_1", 2.5)
        ledger.reserve(40.0, "pos_2")

    def test_replay_ok(self, tmp_path, capsys):
        store = StateStore(tmp_path / "state.db")
        try:
            self._populate(store)
            assert print_ledger(store, Config(daily_loss_limit=50.0)) == EXIT_OK
        finally:
            store.close()
        out = capsys.readouterr().out
        assert "3 entries replayed OK" in out
        assert "reservations 1" in out
        assert "pos_2" in out

    def test_dump_leaves_store_untouched(self, tmp_path, capsys):
        store = StateStore(tmp_path / "state.db")
        try:
            # Entries from days ago: replaying now crosses a daily reset boundary
            ledger = Ledger(1000.0, 50.0, clock=lambda: 86400.0 * 3, sink=store.append_audit)
            ledger.reserve(100.0, "pos_1")
            ledger.commit("pos_1", -2.0)
            assert print_ledger(store, Config(daily_loss_limit=50.0)) == EXIT_OK
            assert len(store.load_audit()) == 2
            assert store.get_meta("initial_capital") is None
        finally:
            store.close()
        assert "2 entries replayed OK" in capsys.readouterr().out

    def test_tampered_log_fails(self, tmp_path, capsys):
        db = tmp_path / "state.db"
        store = StateStore(db)
        try:
            self._populate(store)
            conn = sqlite3.connect(db)
            conn.execute("UPDATE audit_log SET cash_after = cash_after + 5 WHERE seq = 2")
            conn.commit()
            conn.close()
            assert print_ledger(store, Config()) == EXIT_FATAL
        finally:
            store.close()
        assert "REPLAY FAILED" in capsys.readouterr().out

    def test_main_ledger_mode(self, tmp_path, capsys):
        db = tmp_path / "state.db"
        store = StateStore(db)
        self._populate(store)
        store.close()
        assert main(["--ledger", "--state-db", str(db)]) == EXIT_OK
        assert "replayed OK" in capsys.readouterr().out

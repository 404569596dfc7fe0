#!/usr/bin/env python3
"""
Plutus arbitrage engine -- entry point.

Pipeline:
  1. Discover Polymarket markets (Gamma) and connect feeds
  2. Normalize ticks, detect structural / cross-venue / spread-capture edges
  3. Size through the risk gate, reserve capital, execute legs
  4. Roll back anything that does not fill; settle complete sets
  5. Write status.md and a periodic performance report

Usage:
  python run.py --dry-run        # detect only, nothing is executed
  python run.py                  # paper trading (default)
  python run.py --live           # live trading, needs PRIVATE_KEY
  python run.py --ledger         # print the audit log and verify replay
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
import time

import httpx

from client.auth import MissingCredentials, build_clob_client
from client.gamma import get_markets
from config import Config, load_config
from monitor.display import print_startup
from monitor.logger import setup_logging
from monitor.status import StatusWriter
from pipeline.engine import DRY_RUN, LIVE, PAPER, build_engine
from scanner.models import Market
from state.ledger import Ledger, LedgerInvariantViolation
from state.store import StateStore

logger = logging.getLogger(__name__)


_BANNER = r"""
 ____  _       _
|  _ \| |_   _| |_ _   _ ___
| |_) | | | | | __| | | / __|
|  __/| | |_| | |_| |_| \__ \
|_|   |_|\__,_|\__|\__,_|___/
          Arbitrage Engine v0.2
"""

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_FATAL = 2


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Plutus arbitrage engine")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--dry-run", action="store_true", help="Detect opportunities only, never execute")
    mode.add_argument("--paper", action="store_true", help="Simulated fills against live books (default)")
    mode.add_argument("--live", action="store_true", help="Enable live trading on Polymarket")
    mode.add_argument("--ledger", action="store_true", help="Print the persisted audit log, verify replay, and exit")
    parser.add_argument("--limit", type=int, default=50, help="Max markets to watch when WATCH_MARKETS is empty")
    parser.add_argument("--json-log", type=str, default=None, help="Path to JSON log file for machine-readable output")
    parser.add_argument("--status-file", type=str, default=None, help="Override STATUS_FILE")
    parser.add_argument("--state-db", type=str, default=None, help="Override STATE_DB")
    return parser.parse_args(argv)


def resolve_mode(args: argparse.Namespace, cfg: Config) -> str:
    if args.dry_run:
        return DRY_RUN
    if args.live:
        return LIVE
    if args.paper:
        return PAPER
    return PAPER if cfg.paper_trading else LIVE


async def discover_markets(http: httpx.AsyncClient, cfg: Config, limit: int) -> list[Market]:
    """Watched markets by condition id, or the most active binary markets."""
    if cfg.watch_markets:
        markets = await get_markets(http, cfg.gamma_host, condition_ids=cfg.watch_markets)
        missing = set(cfg.watch_markets) - {m.market_id for m in markets}
        if missing:
            logger.warning("Gamma returned no market for %d watched id(s): %s",
                           len(missing), ", ".join(sorted(missing)))
    else:
        markets = await get_markets(http, cfg.gamma_host, limit=max(limit * 4, 100))
        markets.sort(key=lambda m: m.volume, reverse=True)
        markets = markets[:limit]
    return [m for m in markets if m.active and not m.closed]


def print_ledger(store: StateStore, cfg: Config) -> int:
    """Dump the audit log and rebuild the ledger from it. Returns an exit code."""
    entries = store.load_audit()
    for e in entries:
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime(e.ts))
        print(
            f"{e.seq:>6} {ts} {e.kind:<12} {e.position_id or '-':<20} "
            f"cash {e.delta_cash:+12.4f} -> {e.cash_after:12.4f}  "
            f"open {e.delta_open:+12.4f} -> {e.open_after:12.4f}  pnl {e.pnl:+10.4f}"
        )
    capital = store.get_meta("initial_capital") or cfg.initial_capital
    try:
        # No sink: dumping the log must never append to it
        ledger = Ledger.from_audit(capital, cfg.daily_loss_limit, entries, reset_hour_utc=cfg.daily_reset_hour_utc)
        snap = ledger.snapshot()
    except LedgerInvariantViolation as e:
        print(f"REPLAY FAILED: {e}")
        return EXIT_FATAL
    print(
        f"\n{len(entries)} entries replayed OK: cash ${snap.cash:,.2f}  open ${snap.open_notional:,.2f}  "
        f"realized ${snap.cumulative_realized_pnl:,.2f}  reservations {snap.open_reservations}"
    )
    return EXIT_OK


async def run(args: argparse.Namespace, cfg: Config) -> int:
    mode = resolve_mode(args, cfg)
    clob_client = None
    if mode == LIVE:
        clob_client = build_clob_client(cfg)

    store = StateStore(cfg.state_db)
    status_writer = StatusWriter(file_path=cfg.status_file)
    try:
        async with httpx.AsyncClient() as http:
            markets = await discover_markets(http, cfg, args.limit)
            if not markets and not cfg.spot_symbols:
                logger.error("Nothing to watch: no markets discovered and no spot symbols configured")
                return EXIT_CONFIG
            print_startup(cfg, mode, len(markets), cfg.spot_symbols)

            engine = build_engine(
                cfg, mode, markets, http,
                store=store, clob_client=clob_client, status_writer=status_writer,
            )
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, engine.stop)
            try:
                await engine.run()
            except LedgerInvariantViolation as e:
                logger.critical("Trading halted on ledger invariant violation: %s", e)
                return EXIT_FATAL
    finally:
        store.close()
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        cfg = load_config()
    except Exception as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return EXIT_CONFIG
    overrides = {}
    if args.status_file:
        overrides["status_file"] = args.status_file
    if args.state_db:
        overrides["state_db"] = args.state_db
    if overrides:
        cfg = cfg.model_copy(update=overrides)

    if args.ledger:
        store = StateStore(cfg.state_db)
        try:
            return print_ledger(store, cfg)
        finally:
            store.close()

    log_file_path = setup_logging(cfg.log_level, json_log_file=args.json_log)
    logger.info(_BANNER.strip("\n"))
    logger.info("  Log file: %s", log_file_path)
    try:
        return asyncio.run(run(args, cfg))
    except MissingCredentials as e:
        logger.error("%s", e)
        logger.error("Use --paper or --dry-run to run without a wallet.")
        return EXIT_CONFIG


if __name__ == "__main__":
    sys.exit(main())

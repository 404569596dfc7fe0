"""
Clean, scannable console output for the engine.

Pure formatting functions that emit structured log lines using box-drawing
characters. No side effects beyond logging. All data arrives via arguments.
"""

from __future__ import annotations

import logging

from config import Config
from monitor.status import StatusSnapshot, _format_duration

logger = logging.getLogger(__name__)

# Box-drawing characters
_TOP = "\u250c"  # ┌
_MID = "\u2502"  # │
_BOT = "\u2514"  # └
_DASH = "\u2500"  # ─


def print_startup(cfg: Config, mode: str, markets: int, spot_symbols: list[str]) -> None:
    """Compact config block emitted once after the banner."""
    strategies = ["structural", "cross-venue"]
    strategies.append("spread-capture" if cfg.spread_capture_enabled else "~spread-capture~")
    venues = ["polymarket"]
    if cfg.binance_enabled:
        venues.append("binance")
    if cfg.coinbase_enabled:
        venues.append("coinbase")
    logger.info(
        "  Mode: %-8s Capital $%.0f  Min edge %.2f%%  Daily loss limit $%.0f",
        mode, cfg.initial_capital, cfg.min_edge * 100, cfg.daily_loss_limit,
    )
    logger.info("  Strategies: %s", "  ".join(strategies))
    logger.info("  Venues: %s  (%d markets, spot %s)", "  ".join(venues), markets, ",".join(spot_symbols) or "-")
    logger.info(
        "  Kelly cap %.0f%%  Max position $%.0f  Max open $%.0f  Max concurrent %d",
        cfg.kelly_fraction_cap * 100, cfg.max_position_notional,
        cfg.max_open_notional, cfg.max_concurrent_positions,
    )


def print_report(snap: StatusSnapshot) -> None:
    """Periodic performance box: runtime, cash, P&L, throughput, health."""
    hours = snap.uptime / 3600.0
    closed = snap.counters.get("positions:CLOSED", 0)
    failed = snap.counters.get("positions:FAILED", 0)
    per_hour = closed / hours if hours > 0 else 0.0
    avg = snap.realized_pnl / closed if closed else 0.0

    logger.info("  %s%s PERFORMANCE %s", _TOP, _DASH * 2, _DASH * 40)
    logger.info("  %s Runtime:        %s", _MID, _format_duration(snap.uptime))
    logger.info("  %s Cash:           $%.2f", _MID, snap.ledger.cash)
    logger.info("  %s Open notional:  $%.2f (%d positions)", _MID, snap.ledger.open_notional, snap.open_positions)
    logger.info("  %s Total P&L:      $%.2f", _MID, snap.realized_pnl)
    logger.info("  %s Daily P&L:      $%.2f", _MID, snap.ledger.daily_realized_pnl)
    logger.info("  %s Closed/failed:  %d / %d  (%.1f/h, avg $%.2f)", _MID, closed, failed, per_hour, avg)
    logger.info("  %s Opportunities:  %d  stale %d", _MID,
                snap.counters.get("opportunities", 0), snap.counters.get("stale_opportunities", 0))
    if snap.rejections:
        parts = ", ".join(f"{k}={v}" for k, v in sorted(snap.rejections.items()))
        logger.info("  %s Rejections:     %s", _MID, parts)
    if snap.degraded_venues:
        logger.info("  %s Degraded:       %s", _MID, ", ".join(snap.degraded_venues))
    if snap.kill_switch:
        logger.info("  %s KILL SWITCH:    %s", _MID, snap.kill_switch)
    logger.info("  %s%s", _BOT, _DASH * 54)

"""
Exit conditions for RESOLVING positions.

Checked in order on every monitoring interval:
  1. market resolution (settlement source reports a payout)
  2. take-profit on the mark-to-market exit value
  3. stop-loss (disabled when stop_loss_pct is 0)
  4. time limit (disabled when max_hold_sec is 0)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Protocol

from executor.position import Position
from scanner.fees import FeeModel
from scanner.models import Resolution, Side, Tick

logger = logging.getLogger(__name__)

RESOLVED = "resolved"
TAKE_PROFIT = "take-profit"
STOP_LOSS = "stop-loss"
TIME_LIMIT = "time-limit"
LOCKED = "locked-spread"


class SettlementSource(Protocol):
    async def resolution(self, market_id: str) -> Resolution | None: ...


QuoteLookup = Callable[[str, str], "Tick | None"]


@dataclass(frozen=True)
class ExitPolicy:
    take_profit_pct: float = 0.05
    stop_loss_pct: float = 0.0
    max_hold_sec: float = 0.0

    @classmethod
    def from_config(cls, cfg) -> ExitPolicy:
        return cls(
            take_profit_pct=cfg.take_profit_pct,
            stop_loss_pct=cfg.stop_loss_pct,
            max_hold_sec=cfg.max_hold_sec,
        )


def settlement_pnl(position: Position, resolution: Resolution, settlement_fee: float = 0.0) -> float:
    """
    Realized P&L when the market settles: entry cash flow plus the payout on
    every open unit, less the settlement fee on winning units.
    """
    pnl = position.cash_flow
    for leg in position.legs:
        qty = leg.open_quantity
        if qty <= 0 or leg.outcome is None:
            continue
        payout = resolution.payout(leg.outcome)
        if leg.side is Side.BUY:
            pnl += qty * payout - qty * payout * settlement_fee
        else:
            pnl -= qty * payout
    return pnl


def exit_value(position: Position, quotes: QuoteLookup, fee_model: FeeModel) -> float | None:
    """
    Cash from flattening every open leg at the current touch, net of taker
    fees. Long legs sell at the bid, short legs buy back at the ask.
    Returns None when a needed quote is missing.
    """
    value = 0.0
    for leg in position.legs:
        qty = leg.open_quantity
        if qty <= 0:
            continue
        tick = quotes(leg.venue, leg.instrument)
        if tick is None:
            return None
        book = tick.book(leg.outcome)
        if book is None:
            return None
        level = book.bid if leg.side is Side.BUY else book.ask
        if level is None:
            return None
        fee = fee_model.fill_fee(leg.venue, leg.instrument, level.price, qty)
        if leg.side is Side.BUY:
            value += qty * level.price - fee
        else:
            value -= qty * level.price + fee
    return value


def check_exit(position: Position, value: float | None, now: float, policy: ExitPolicy) -> str | None:
    """Return the exit reason triggered by the mark-to-market value, or None."""
    if value is not None:
        cost = position.cost_basis
        if cost > 0:
            ret = (position.cash_flow + value) / cost
            if ret >= policy.take_profit_pct:
                logger.info("Take-profit on %s: return %.2f%% >= %.2f%%",
                            position.position_id, ret * 100, policy.take_profit_pct * 100)
                return TAKE_PROFIT
            if policy.stop_loss_pct > 0 and ret <= -policy.stop_loss_pct:
                logger.warning("Stop-loss on %s: return %.2f%% <= -%.2f%%",
                               position.position_id, ret * 100, policy.stop_loss_pct * 100)
                return STOP_LOSS
    if policy.max_hold_sec > 0 and now - position.opened_at >= policy.max_hold_sec:
        logger.info("Time limit on %s: held %.0fs", position.position_id, now - position.opened_at)
        return TIME_LIMIT
    return None

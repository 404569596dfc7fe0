"""
Spread capture: rest maker orders one tick inside the spread.

Spot book: BUY at bid + tick and SELL at ask - tick on the same venue.
Binary market: maker BUY on YES and on NO one tick above each best bid,
locking a complete set below $1.00.

Only quotes calm markets: suppressed while the mid has drifted from its EMA by
more than half the spread, or while the Bollinger bandwidth of recent mids
exceeds the configured ceiling.
"""

from __future__ import annotations

import logging

from scanner.fees import FeeModel
from scanner.history import TickHistory
from scanner.indicators import bollinger, ema
from scanner.models import (
    BookTop,
    InstrumentKind,
    LegOrder,
    Opportunity,
    Outcome,
    Side,
    StrategyTag,
    Tick,
)

logger = logging.getLogger(__name__)

_BOLLINGER_PERIOD = 20


def is_calm(mids: list[float], book: BookTop, min_history: int, ema_period: int, max_bandwidth: float) -> bool:
    """True when recent mids are stable enough to quote inside the spread."""
    if len(mids) < min_history or book.midpoint is None or book.spread is None:
        return False
    avg = ema(mids, min(ema_period, len(mids)))
    if avg is None or abs(book.midpoint - avg) > book.spread / 2.0:
        return False
    bands = bollinger(mids, min(_BOLLINGER_PERIOD, len(mids)))
    if bands is not None and bands.bandwidth > max_bandwidth:
        return False
    return True


def check_spot_spread(
    tick: Tick,
    fee_model: FeeModel,
    tick_size: float,
    min_edge: float,
    ttl_sec: float,
    now: float,
) -> Opportunity | None:
    """edge_frac = (sell - buy) / mid - 2 * maker_fee."""
    book = tick.yes
    if not book.bid or not book.ask or book.midpoint is None:
        return None
    buy_px = book.bid.price + tick_size
    sell_px = book.ask.price - tick_size
    if sell_px <= buy_px:
        return None
    mid = book.midpoint
    edge_frac = (sell_px - buy_px) / mid - 2.0 * fee_model.maker_rate(tick.venue)
    if edge_frac <= min_edge:
        return None
    size = min(book.bid.size, book.ask.size)
    if size <= 0:
        return None
    legs = (
        LegOrder(tick.venue, tick.instrument, Side.BUY, buy_px, size),
        LegOrder(tick.venue, tick.instrument, Side.SELL, sell_px, size),
    )
    return Opportunity(
        strategy=StrategyTag.SPREAD_CAPTURE,
        instrument=tick.instrument,
        legs=legs,
        edge=edge_frac * mid,
        unit_cost=buy_px + sell_px,
        max_size=size,
        expires_at=now + ttl_sec,
        discovered_at=now,
    )


def check_binary_spread(
    tick: Tick,
    fee_model: FeeModel,
    tick_size: float,
    min_edge: float,
    ttl_sec: float,
    now: float,
) -> Opportunity | None:
    """edge = 1 - (yes_buy + no_buy) - maker fees - settlement fee."""
    if tick.no is None:
        return None
    yes, no = tick.yes, tick.no
    if not yes.bid or not no.bid:
        return None
    yes_px = round(yes.bid.price + tick_size, 6)
    no_px = round(no.bid.price + tick_size, 6)
    # Must stay passive: strictly inside each spread
    if (yes.ask and yes_px >= yes.ask.price) or (no.ask and no_px >= no.ask.price):
        return None
    if yes_px + no_px >= 1.0:
        return None
    size = min(yes.bid.size, no.bid.size)
    if size <= 0:
        return None
    legs = (
        LegOrder(tick.venue, tick.instrument, Side.BUY, yes_px, size, Outcome.YES),
        LegOrder(tick.venue, tick.instrument, Side.BUY, no_px, size, Outcome.NO),
    )
    edge = 1.0 - (yes_px + no_px) - fee_model.per_unit_fees(legs, maker=True, settles=True)
    if edge <= min_edge:
        return None
    return Opportunity(
        strategy=StrategyTag.SPREAD_CAPTURE,
        instrument=tick.instrument,
        legs=legs,
        edge=edge,
        unit_cost=yes_px + no_px,
        max_size=size,
        expires_at=now + ttl_sec,
        discovered_at=now,
    )


class SpreadCaptureStrategy:
    tag = StrategyTag.SPREAD_CAPTURE

    def __init__(
        self,
        fee_model: FeeModel,
        history: TickHistory,
        min_edge: float,
        ttl_sec: float,
        binary_tick_size: float = 0.01,
        spot_tick_size: float = 0.01,
        min_history: int = 10,
        ema_period: int = 10,
        max_bandwidth: float = 0.05,
    ) -> None:
        if min_edge <= 0:
            raise ValueError(f"min_edge must be strictly positive, got {min_edge}")
        self.fee_model = fee_model
        self.history = history
        self.min_edge = min_edge
        self.ttl_sec = ttl_sec
        self.binary_tick_size = binary_tick_size
        self.spot_tick_size = spot_tick_size
        self.min_history = min_history
        self.ema_period = ema_period
        self.max_bandwidth = max_bandwidth

    def applies(self, tick: Tick) -> bool:
        return True

    def evaluate(self, tick: Tick, ctx, now: float) -> list[Opportunity]:
        mids = self.history.mids(tick.venue, tick.instrument, Outcome.YES)
        if not is_calm(mids, tick.yes, self.min_history, self.ema_period, self.max_bandwidth):
            return []
        if tick.kind is InstrumentKind.BINARY:
            opp = check_binary_spread(tick, self.fee_model, self.binary_tick_size,
                                      self.min_edge, self.ttl_sec, now)
        else:
            opp = check_spot_spread(tick, self.fee_model, self.spot_tick_size,
                                    self.min_edge, self.ttl_sec, now)
        return [opp] if opp else []

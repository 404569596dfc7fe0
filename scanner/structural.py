"""
Structural (complete-set) arbitrage on a binary market.
Detects when YES_ask + NO_ask leaves more than min_edge of the $1.00 payout
after fees. Buying one of each guarantees $1.00 at resolution.
"""

from __future__ import annotations

import logging

from scanner.fees import FeeModel
from scanner.models import (
    InstrumentKind,
    LegOrder,
    Opportunity,
    Outcome,
    Side,
    StrategyTag,
    Tick,
)

logger = logging.getLogger(__name__)


def check_complete_set(
    tick: Tick,
    fee_model: FeeModel,
    min_edge: float,
    ttl_sec: float,
    now: float,
) -> Opportunity | None:
    """
    edge = 1.0 - (yes_ask + no_ask) - fees, per complete set.
    fees = taker fee on both legs plus the settlement fee on the winning unit.
    """
    if tick.kind is not InstrumentKind.BINARY or tick.no is None:
        return None
    yes_ask = tick.yes.ask
    no_ask = tick.no.ask
    if not yes_ask or not no_ask:
        return None

    # Fast pre-check before fees
    cost_per_set = yes_ask.price + no_ask.price
    if cost_per_set >= 1.0:
        return None

    max_sets = min(yes_ask.size, no_ask.size)
    if max_sets <= 0:
        return None

    legs = (
        LegOrder(tick.venue, tick.instrument, Side.BUY, yes_ask.price, max_sets, Outcome.YES),
        LegOrder(tick.venue, tick.instrument, Side.BUY, no_ask.price, max_sets, Outcome.NO),
    )
    fees = fee_model.per_unit_fees(legs, settles=True)
    edge = 1.0 - cost_per_set - fees
    if edge <= min_edge:
        return None

    logger.debug(
        "Structural %s: yes=%.4f no=%.4f fees=%.4f edge=%.4f sets=%.1f",
        tick.instrument, yes_ask.price, no_ask.price, fees, edge, max_sets,
    )
    return Opportunity(
        strategy=StrategyTag.STRUCTURAL,
        instrument=tick.instrument,
        legs=legs,
        edge=edge,
        unit_cost=cost_per_set,
        max_size=max_sets,
        expires_at=now + ttl_sec,
        discovered_at=now,
    )


class StructuralStrategy:
    tag = StrategyTag.STRUCTURAL

    def __init__(self, fee_model: FeeModel, min_edge: float, ttl_sec: float) -> None:
        if min_edge <= 0:
            raise ValueError(f"min_edge must be strictly positive, got {min_edge}")
        self.fee_model = fee_model
        self.min_edge = min_edge
        self.ttl_sec = ttl_sec

    def applies(self, tick: Tick) -> bool:
        return tick.kind is InstrumentKind.BINARY

    def evaluate(self, tick: Tick, ctx, now: float) -> list[Opportunity]:
        opp = check_complete_set(tick, self.fee_model, self.min_edge, self.ttl_sec, now)
        return [opp] if opp else []

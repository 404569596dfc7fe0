"""
Cross-venue arbitrage: the same instrument quoted on two or more venues.
Buys at the cheaper ask, sells at the richer bid.

Suppressed for any pair involving a degraded venue or a stale quote.
"""

from __future__ import annotations

import logging

from feed.health import FeedDegraded, VenueHealth
from scanner.fees import FeeModel
from scanner.models import LegOrder, Opportunity, Side, StrategyTag, Tick

logger = logging.getLogger(__name__)


def check_pair(
    buy: Tick,
    sell: Tick,
    fee_model: FeeModel,
    min_edge: float,
    ttl_sec: float,
    now: float,
) -> Opportunity | None:
    """
    edge_frac = (sell_bid - buy_ask) / min(buy_ask, sell_bid) - (fee_buy + fee_sell)
    Emitted only when sell_bid > buy_ask and edge_frac > min_edge.
    Opportunity.edge is edge_frac scaled to currency per unit.
    """
    ask = buy.yes.ask
    bid = sell.yes.bid
    if not ask or not bid or bid.price <= ask.price:
        return None
    size = min(ask.size, bid.size)
    if size <= 0:
        return None

    fee_buy = fee_model.taker_rate(buy.venue, buy.instrument, ask.price)
    fee_sell = fee_model.taker_rate(sell.venue, sell.instrument, bid.price)
    base = min(ask.price, bid.price)
    edge_frac = (bid.price - ask.price) / base - (fee_buy + fee_sell)
    if edge_frac <= min_edge:
        return None

    legs = (
        LegOrder(buy.venue, buy.instrument, Side.BUY, ask.price, size),
        LegOrder(sell.venue, sell.instrument, Side.SELL, bid.price, size),
    )
    logger.debug(
        "Cross-venue %s: buy %s@%.4f sell %s@%.4f edge=%.4f%%",
        buy.instrument, buy.venue, ask.price, sell.venue, bid.price, edge_frac * 100,
    )
    return Opportunity(
        strategy=StrategyTag.CROSS_VENUE,
        instrument=buy.instrument,
        legs=legs,
        edge=edge_frac * base,
        unit_cost=ask.price + bid.price,
        max_size=size,
        expires_at=now + ttl_sec,
        discovered_at=now,
    )


class CrossVenueStrategy:
    tag = StrategyTag.CROSS_VENUE

    def __init__(self, fee_model: FeeModel, min_edge: float, ttl_sec: float) -> None:
        if min_edge <= 0:
            raise ValueError(f"min_edge must be strictly positive, got {min_edge}")
        self.fee_model = fee_model
        self.min_edge = min_edge
        self.ttl_sec = ttl_sec
        self.suppressed = 0

    def applies(self, tick: Tick) -> bool:
        return True

    def evaluate(self, tick: Tick, ctx, now: float) -> list[Opportunity]:
        quotes: dict[str, Tick] = ctx.quotes(tick.instrument)
        others = [t for venue, t in quotes.items() if venue != tick.venue]
        if not others:
            return []
        health: VenueHealth = ctx.health
        best: Opportunity | None = None
        for other in others:
            try:
                health.require_healthy(tick.venue, tick.instrument, now)
                health.require_healthy(other.venue, other.instrument, now)
            except FeedDegraded as e:
                self.suppressed += 1
                logger.debug("Cross-venue %s suppressed: %s", tick.instrument, e)
                continue
            for buy, sell in ((tick, other), (other, tick)):
                opp = check_pair(buy, sell, self.fee_model, self.min_edge, self.ttl_sec, now)
                if opp and (best is None or opp.edge_ratio > best.edge_ratio):
                    best = opp
        # One live opportunity per (strategy, instrument): keep the best pair
        return [best] if best else []

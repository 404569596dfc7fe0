"""
Position sizing using a capped fractional Kelly criterion.
"""

from __future__ import annotations

import logging

from scanner.models import Opportunity, StrategyTag

logger = logging.getLogger(__name__)


def kelly_fraction(edge_ratio: float, p: float, failure_loss: float) -> float:
    """
    Kelly criterion: f* = (b*p - q) / b
    where b = edge_ratio / failure_loss (win per unit risked), p = probability
    that every leg fills, q = 1 - p.

    A failed execution is unwound at a cost of roughly failure_loss of notional,
    so b compares the locked edge with that loss.
    """
    if edge_ratio <= 0 or failure_loss <= 0 or not 0.0 < p < 1.0:
        return 0.0
    b = edge_ratio / failure_loss
    q = 1.0 - p
    return max(0.0, (b * p - q) / b)


def capped_kelly(edge_ratio: float, p: float, failure_loss: float, multiplier: float, cap: float) -> float:
    """Fractional Kelly clipped to [0, cap]."""
    return max(0.0, min(cap, multiplier * kelly_fraction(edge_ratio, p, failure_loss)))


def fill_probability(strategy: StrategyTag, p_structural: float, p_cross_venue: float, p_spread_capture: float) -> float:
    # Higher execution risk for multi-venue and passive strategies
    if strategy is StrategyTag.CROSS_VENUE:
        return p_cross_venue
    if strategy is StrategyTag.SPREAD_CAPTURE:
        return p_spread_capture
    return p_structural


def kelly_size(
    opportunity: Opportunity,
    bankroll: float,
    p: float,
    failure_loss: float,
    multiplier: float,
    cap: float,
) -> tuple[float, float]:
    """
    Units to trade by Kelly alone, before risk limits.
    Returns (units, kelly_f). units is 0 when Kelly says do not bet.
    """
    if opportunity.unit_cost <= 0 or bankroll <= 0:
        return 0.0, 0.0
    f = capped_kelly(opportunity.edge_ratio, p, failure_loss, multiplier, cap)
    capital = f * bankroll
    units = capital / opportunity.unit_cost
    logger.debug(
        "Kelly %s: edge_ratio=%.4f p=%.2f f=%.4f capital=$%.2f units=%.2f",
        opportunity.opportunity_id, opportunity.edge_ratio, p, f, capital, units,
    )
    return units, f

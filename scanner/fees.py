"""
Fee model for every venue the engine trades. Opportunity edges are always
computed through this model so that nothing is surfaced gross of fees.

Fee types:
- Flat taker/maker rate per venue, charged on notional (price * size)
- Polymarket 5/15-min crypto markets: dynamic taker fee, highest (~3.15%) at
  50/50 odds, dropping toward 0% at extreme odds
- Polymarket settlement fee: charged per winning unit at resolution
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from scanner.models import LegOrder, POLYMARKET

logger = logging.getLogger(__name__)

_CRYPTO_SHORT_TERM_PATTERNS = [
    re.compile(r"\b(BTC|Bitcoin|ETH|Ethereum|SOL|Solana)\b.*\b(up|down|above|below)\b.*\b(5|15|five|fifteen)\s*(min|minute)", re.IGNORECASE),
    re.compile(r"\b(5|15|five|fifteen)\s*(min|minute).*\b(BTC|ETH|SOL|Bitcoin|Ethereum|Solana)\b", re.IGNORECASE),
]

# Max dynamic fee rate at 50/50 odds for short-term crypto markets
MAX_CRYPTO_FEE_RATE = 0.0315


def is_dynamic_fee_market(question: str) -> bool:
    """Detect short-term crypto prediction markets that charge dynamic taker fees."""
    return any(p.search(question) for p in _CRYPTO_SHORT_TERM_PATTERNS)


@dataclass
class FeeModel:
    """
    Per-venue fee schedule.

    venue_rates: {venue: (taker_rate, maker_rate)} as decimals (0.002 = 0.2%).
    dynamic_instruments: instruments billed with the dynamic crypto curve.
    """
    venue_rates: dict[str, tuple[float, float]] = field(default_factory=dict)
    settlement_fee: float = 0.0
    dynamic_instruments: set[str] = field(default_factory=set)

    def taker_rate(self, venue: str, instrument: str = "", price: float | None = None) -> float:
        if venue == POLYMARKET and instrument in self.dynamic_instruments and price is not None:
            return self._dynamic_crypto_fee(price)
        return self.venue_rates.get(venue, (0.0, 0.0))[0]

    def maker_rate(self, venue: str) -> float:
        return self.venue_rates.get(venue, (0.0, 0.0))[1]

    def _dynamic_crypto_fee(self, price: float) -> float:
        """
        fee = MAX_RATE * 4 * price * (1 - price)
        At price=0.50: 0.0315. At price=0.10: 0.01134.
        """
        price = max(0.0, min(1.0, price))
        return MAX_CRYPTO_FEE_RATE * 4.0 * price * (1.0 - price)

    def leg_fee(self, leg: LegOrder, maker: bool = False) -> float:
        """Fee in quote currency for one unit of a leg."""
        if maker:
            rate = self.maker_rate(leg.venue)
        else:
            rate = self.taker_rate(leg.venue, leg.instrument, leg.price)
        return rate * leg.price

    def fill_fee(self, venue: str, instrument: str, price: float, size: float, maker: bool = False) -> float:
        """Fee in quote currency for an executed fill."""
        rate = self.maker_rate(venue) if maker else self.taker_rate(venue, instrument, price)
        return rate * price * size

    def per_unit_fees(self, legs: tuple[LegOrder, ...], maker: bool = False, settles: bool = False) -> float:
        """
        Total fees per unit of size across all legs.
        settles: True when the position is held to resolution (complete sets),
        which adds the settlement fee on the single winning unit.
        """
        total = sum(self.leg_fee(leg, maker=maker) for leg in legs)
        if settles:
            total += self.settlement_fee
        return total

"""
Unit tests for scanner/cross_venue.py -- same instrument on two venues.
"""

import pytest

from feed.health import VenueHealth
from scanner.cross_venue import CrossVenueStrategy, check_pair
from scanner.fees import FeeModel
from scanner.models import BookTop, InstrumentKind, PriceLevel, Side, Tick, VenueState, VenueStatus

FEES = FeeModel(venue_rates={"binance": (0.001, 0.0), "coinbase": (0.001, 0.0)})


def _tick(venue: str, bid: float, ask: float, ts: float = 100.0, size: float = 2.0) -> Tick:
    return Tick(
        venue=venue,
        instrument="BTC-USD",
        kind=InstrumentKind.SPOT,
        yes=BookTop(bid=PriceLevel(bid, size), ask=PriceLevel(ask, size)),
        server_ts=ts,
        sequence=1,
        received_at=ts,
    )


class _Ctx:
    """Minimal detector stand-in: latest quotes plus venue health."""

    def __init__(self, *ticks: Tick, stale_after: float = 15.0):
        self.health = VenueHealth(stale_after_sec=stale_after)
        self._quotes = {}
        for t in ticks:
            self._quotes[t.venue] = t
            self.health.touch(t.venue, t.instrument, t.received_at)

    def quotes(self, instrument):
        return dict(self._quotes)


class TestCheckPair:
    def test_edge_formula(self):
        buy = _tick("binance", 99.0, 100.0)
        sell = _tick("coinbase", 101.0, 102.0)
        opp = check_pair(buy, sell, FEES, min_edge=0.001, ttl_sec=1.0, now=100.0)
        edge_frac = (101.0 - 100.0) / 100.0 - 0.002
        assert opp.edge == pytest.approx(edge_frac * 100.0)
        assert opp.legs[0].side is Side.BUY and opp.legs[0].venue == "binance"
        assert opp.legs[1].side is Side.SELL and opp.legs[1].venue == "coinbase"

    def test_no_cross(self):
        assert check_pair(_tick("binance", 99, 100), _tick("coinbase", 99.5, 100.5), FEES, 0.001, 1.0, 100.0) is None

    def test_fees_exceed_spread(self):
        # 0.15% gross against 0.2% fees
        assert check_pair(_tick("binance", 99, 100), _tick("coinbase", 100.15, 101), FEES, 0.0001, 1.0, 100.0) is None


class TestStrategy:
    def test_finds_best_direction(self):
        s = CrossVenueStrategy(FEES, 0.001, 1.0)
        a = _tick("binance", 99.0, 100.0)
        b = _tick("coinbase", 101.0, 102.0)
        opps = s.evaluate(b, _Ctx(a, b), now=100.0)
        assert len(opps) == 1
        assert opps[0].legs[0].venue == "binance"

    def test_single_venue_nothing(self):
        a = _tick("binance", 99.0, 100.0)
        assert CrossVenueStrategy(FEES, 0.001, 1.0).evaluate(a, _Ctx(a), now=100.0) == []

    def test_degraded_venue_suppressed(self):
        s = CrossVenueStrategy(FEES, 0.001, 1.0)
        a = _tick("binance", 99.0, 100.0)
        b = _tick("coinbase", 101.0, 102.0)
        ctx = _Ctx(a, b)
        ctx.health.apply(VenueStatus("binance", VenueState.DEGRADED, epoch=1, reason="socket closed"))
        assert s.evaluate(b, ctx, now=100.0) == []
        assert s.suppressed == 1

    def test_stale_quote_suppressed(self):
        s = CrossVenueStrategy(FEES, 0.001, 1.0)
        a = _tick("binance", 99.0, 100.0, ts=80.0)
        b = _tick("coinbase", 101.0, 102.0, ts=100.0)
        assert s.evaluate(b, _Ctx(a, b, stale_after=5.0), now=100.0) == []

"""
Unit tests for executor/sizing.py -- capped fractional Kelly sizing.
"""

import pytest

from executor.sizing import capped_kelly, fill_probability, kelly_fraction, kelly_size
from scanner.models import LegOrder, Opportunity, Outcome, Side, StrategyTag, POLYMARKET


def _make_opp(edge=0.0475, unit_cost=0.95, max_size=1000.0, strategy=StrategyTag.STRUCTURAL):
    return Opportunity(
        strategy=strategy,
        instrument="m1",
        legs=(
            LegOrder(POLYMARKET, "m1", Side.BUY, 0.45, max_size, Outcome.YES),
            LegOrder(POLYMARKET, "m1", Side.BUY, 0.50, max_size, Outcome.NO),
        ),
        edge=edge,
        unit_cost=unit_cost,
        max_size=max_size,
        expires_at=200.0,
        discovered_at=100.0,
    )


class TestKellyFraction:
    def test_even_odds(self):
        """edge_ratio equal to failure_loss gives b=1, so f = p - q."""
        f = kelly_fraction(edge_ratio=0.05, p=0.95, failure_loss=0.05)
        assert f == pytest.approx(0.90)

    def test_small_edge_large_loss(self):
        # b = 0.2, f = (0.2*0.95 - 0.05) / 0.2
        f = kelly_fraction(edge_ratio=0.01, p=0.95, failure_loss=0.05)
        assert f == pytest.approx(0.70)

    def test_negative_expectation_is_zero(self):
        # b = 0.2, p = 0.8: 0.16 - 0.2 < 0
        assert kelly_fraction(edge_ratio=0.01, p=0.80, failure_loss=0.05) == 0.0

    def test_non_positive_inputs(self):
        assert kelly_fraction(0.0, 0.95, 0.05) == 0.0
        assert kelly_fraction(-0.01, 0.95, 0.05) == 0.0
        assert kelly_fraction(0.05, 0.95, 0.0) == 0.0

    def test_degenerate_probability(self):
        assert kelly_fraction(0.05, 0.0, 0.05) == 0.0
        assert kelly_fraction(0.05, 1.0, 0.05) == 0.0


class TestCappedKelly:
    def test_multiplier_applied(self):
        f = capped_kelly(0.01, 0.95, 0.05, multiplier=0.25, cap=1.0)
        assert f == pytest.approx(0.175)

    def test_cap_binds(self):
        """Half of 0.90 is 0.45, clipped to the 0.25 cap."""
        assert capped_kelly(0.05, 0.95, 0.05, multiplier=0.5, cap=0.25) == pytest.approx(0.25)

    def test_never_negative(self):
        assert capped_kelly(0.01, 0.5, 0.05, multiplier=0.5, cap=0.25) == 0.0


class TestFillProbability:
    def test_per_strategy(self):
        assert fill_probability(StrategyTag.STRUCTURAL, 0.95, 0.8, 0.6) == 0.95
        assert fill_probability(StrategyTag.CROSS_VENUE, 0.95, 0.8, 0.6) == 0.8
        assert fill_probability(StrategyTag.SPREAD_CAPTURE, 0.95, 0.8, 0.6) == 0.6


class TestKellySize:
    def test_units_from_bankroll(self):
        # edge_ratio 0.05 -> f capped at 0.25 -> $250 / 0.95 per unit
        units, f = kelly_size(_make_opp(), bankroll=1000.0, p=0.95, failure_loss=0.05, multiplier=0.5, cap=0.25)
        assert f == pytest.approx(0.25)
        assert units == pytest.approx(250.0 / 0.95)

    def test_no_bet_without_edge(self):
        units, f = kelly_size(_make_opp(edge=0.0), bankroll=1000.0, p=0.95, failure_loss=0.05,
                              multiplier=0.5, cap=0.25)
        assert units == 0.0
        assert f == 0.0

    def test_empty_bankroll(self):
        units, _ = kelly_size(_make_opp(), bankroll=0.0, p=0.95, failure_loss=0.05, multiplier=0.5, cap=0.25)
        assert units == 0.0

    def test_zero_unit_cost(self):
        units, f = kelly_size(_make_opp(unit_cost=0.0), bankroll=1000.0, p=0.95, failure_loss=0.05,
                              multiplier=0.5, cap=0.25)
        assert (units, f) == (0.0, 0.0)

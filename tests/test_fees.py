"""
Unit tests for scanner/fees.py -- per-venue fee model.
"""

import pytest

from scanner.fees import MAX_CRYPTO_FEE_RATE, FeeModel, is_dynamic_fee_market
from scanner.models import LegOrder, Outcome, Side


def _model(**kwargs) -> FeeModel:
    return FeeModel(
        venue_rates={"polymarket": (0.002, 0.0), "binance": (0.001, 0.0005), "coinbase": (0.006, 0.004)},
        **kwargs,
    )


class TestDynamicFeeMarkets:
    def test_btc_15min(self):
        assert is_dynamic_fee_market("Will BTC be up 0.5% in 15 minutes?")

    def test_five_minute_prefix(self):
        assert is_dynamic_fee_market("5 min: will Solana close higher?")

    def test_ordinary_market(self):
        assert not is_dynamic_fee_market("Will the Fed cut rates in December?")


class TestRates:
    def test_flat_taker(self):
        assert _model().taker_rate("coinbase") == 0.006

    def test_maker(self):
        assert _model().maker_rate("binance") == 0.0005

    def test_unknown_venue_free(self):
        assert _model().taker_rate("kraken") == 0.0

    def test_dynamic_curve_peaks_at_even_odds(self):
        fm = _model(dynamic_instruments={"m1"})
        assert fm.taker_rate("polymarket", "m1", 0.5) == pytest.approx(MAX_CRYPTO_FEE_RATE)
        assert fm.taker_rate("polymarket", "m1", 0.1) == pytest.approx(0.01134)
        assert fm.taker_rate("polymarket", "m2", 0.5) == 0.002


class TestLegFees:
    def test_leg_fee_per_unit(self):
        leg = LegOrder("coinbase", "BTC-USD", Side.SELL, 50_000.0, 0.1)
        assert _model().leg_fee(leg) == pytest.approx(300.0)

    def test_fill_fee(self):
        assert _model().fill_fee("binance", "BTC-USD", 100.0, 2.0, maker=True) == pytest.approx(0.1)

    def test_per_unit_fees_with_settlement(self):
        fm = _model(settlement_fee=0.02)
        legs = (
            LegOrder("polymarket", "m1", Side.BUY, 0.45, 10, Outcome.YES),
            LegOrder("polymarket", "m1", Side.BUY, 0.50, 10, Outcome.NO),
        )
        assert fm.per_unit_fees(legs) == pytest.approx(0.002 * 0.95)
        assert fm.per_unit_fees(legs, settles=True) == pytest.approx(0.002 * 0.95 + 0.02)

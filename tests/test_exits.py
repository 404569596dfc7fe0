"""
Unit tests for executor/exits.py -- settlement P&L and exit triggers.
"""

import pytest

from config import Config
from executor.exits import (
    STOP_LOSS,
    TAKE_PROFIT,
    TIME_LIMIT,
    ExitPolicy,
    check_exit,
    exit_value,
    settlement_pnl,
)
from executor.fill_state import LegState
from executor.position import Position, PositionLeg
from scanner.fees import FeeModel
from scanner.models import (
    POLYMARKET,
    BookTop,
    InstrumentKind,
    Outcome,
    PriceLevel,
    Resolution,
    Side,
    StrategyTag,
    Tick,
)


def _filled_set(yes_price=0.45, no_price=0.50, qty=10.0) -> Position:
    legs = []
    for outcome, price in ((Outcome.YES, yes_price), (Outcome.NO, no_price)):
        leg = PositionLeg(POLYMARKET, "m1", Side.BUY, price, qty, outcome=outcome)
        leg.filled_size = qty
        leg.avg_price = price
        leg.state = LegState.FILLED
        legs.append(leg)
    return Position(
        opportunity_id="opp_1",
        strategy=StrategyTag.STRUCTURAL,
        instrument="m1",
        legs=legs,
        expires_at=10.0,
        opened_at=0.0,
    )


def _quotes(yes_bid=0.60, no_bid=0.38):
    tick = Tick(
        venue=POLYMARKET,
        instrument="m1",
        kind=InstrumentKind.BINARY,
        yes=BookTop(bid=PriceLevel(yes_bid, 100), ask=PriceLevel(yes_bid + 0.01, 100)),
        no=BookTop(bid=PriceLevel(no_bid, 100), ask=PriceLevel(no_bid + 0.01, 100)),
        server_ts=1.0,
        sequence=1,
        received_at=1.0,
    )
    return lambda venue, instrument: tick if (venue, instrument) == (POLYMARKET, "m1") else None


class TestSettlementPnl:
    def test_complete_set_locks_edge(self):
        pos = _filled_set()
        for res in (Resolution("m1", 1.0, 0.0), Resolution("m1", 0.0, 1.0)):
            assert settlement_pnl(pos, res) == pytest.approx(0.5)

    def test_settlement_fee_on_winning_units(self):
        pnl = settlement_pnl(_filled_set(), Resolution("m1", 1.0, 0.0), settlement_fee=0.02)
        assert pnl == pytest.approx(0.3)

    def test_unwound_quantity_gets_no_payout(self):
        pos = _filled_set()
        leg = pos.legs[1]
        leg.unwind_filled = 10.0
        leg.unwind_avg_price = 0.50
        # Only YES remains open; it loses
        assert settlement_pnl(pos, Resolution("m1", 0.0, 1.0)) == pytest.approx(-4.5)


class TestExitValue:
    def test_sells_at_the_bid(self):
        value = exit_value(_filled_set(), _quotes(), FeeModel())
        assert value == pytest.approx(10 * 0.60 + 10 * 0.38)

    def test_net_of_taker_fees(self):
        fees = FeeModel(venue_rates={POLYMARKET: (0.01, 0.0)})
        value = exit_value(_filled_set(), _quotes(), fees)
        assert value == pytest.approx(9.8 - 0.098)

    def test_missing_quote(self):
        assert exit_value(_filled_set(), lambda v, i: None, FeeModel()) is None

    def test_missing_bid(self):
        tick = Tick(
            venue=POLYMARKET, instrument="m1", kind=InstrumentKind.BINARY,
            yes=BookTop(ask=PriceLevel(0.5, 10)), no=BookTop(bid=PriceLevel(0.4, 10)),
            server_ts=1.0, sequence=1, received_at=1.0,
        )
        assert exit_value(_filled_set(), lambda v, i: tick, FeeModel()) is None


class TestCheckExit:
    def test_take_profit(self):
        # cost 9.5, exit 10.0 -> +5.26%
        reason = check_exit(_filled_set(), 10.0, now=1.0, policy=ExitPolicy(take_profit_pct=0.05))
        assert reason == TAKE_PROFIT

    def test_below_take_profit(self):
        assert check_exit(_filled_set(), 9.8, now=1.0, policy=ExitPolicy(take_profit_pct=0.05)) is None

    def test_stop_loss(self):
        policy = ExitPolicy(take_profit_pct=0.05, stop_loss_pct=0.10)
        assert check_exit(_filled_set(), 8.0, now=1.0, policy=policy) == STOP_LOSS

    def test_stop_loss_disabled_by_default(self):
        assert check_exit(_filled_set(), 1.0, now=1.0, policy=ExitPolicy()) is None

    def test_time_limit_without_quotes(self):
        policy = ExitPolicy(max_hold_sec=60.0)
        assert check_exit(_filled_set(), None, now=30.0, policy=policy) is None
        assert check_exit(_filled_set(), None, now=60.0, policy=policy) == TIME_LIMIT

    def test_policy_from_config(self):
        policy = ExitPolicy.from_config(Config(take_profit_pct=0.1, stop_loss_pct=0.2, max_hold_sec=5.0))
        assert policy == ExitPolicy(0.1, 0.2, 5.0)

"""
Pre-trade risk gate and circuit breakers.

Every opportunity that reaches the gate is either sized (within every limit)
or rejected with one of four reason codes. Rejections are non-fatal.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from executor.sizing import fill_probability, kelly_size
from monitor.metrics import Metrics
from scanner.models import Opportunity
from state.ledger import LedgerSnapshot

logger = logging.getLogger(__name__)

LOSS_LIMIT = "loss-limit"
POSITION_LIMIT = "position-limit"
CONCURRENCY_LIMIT = "concurrency-limit"
BELOW_MINIMUM_SIZE = "below-minimum-size"

REASON_CODES = (LOSS_LIMIT, POSITION_LIMIT, CONCURRENCY_LIMIT, BELOW_MINIMUM_SIZE)


class RiskRejected(Exception):
    """Trade refused by the risk gate. Carries a structured reason code."""

    def __init__(self, reason: str, detail: str = ""):
        if reason not in REASON_CODES:
            raise ValueError(f"Unknown rejection reason: {reason}")
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason}: {detail}" if detail else reason)


@dataclass(frozen=True)
class RiskLimits:
    max_position_notional: float
    max_open_notional: float
    max_concurrent_positions: int
    min_trade_notional: float
    kelly_fraction_cap: float = 0.25
    kelly_multiplier: float = 0.5
    kelly_failure_loss: float = 0.05
    p_structural: float = 0.95
    p_cross_venue: float = 0.80
    p_spread_capture: float = 0.60

    @classmethod
    def from_config(cls, cfg) -> RiskLimits:
        return cls(
            max_position_notional=cfg.max_position_notional,
            max_open_notional=cfg.max_open_notional,
            max_concurrent_positions=cfg.max_concurrent_positions,
            min_trade_notional=cfg.min_trade_notional,
            kelly_fraction_cap=cfg.kelly_fraction_cap,
            kelly_multiplier=cfg.kelly_multiplier,
            kelly_failure_loss=cfg.kelly_failure_loss,
            p_structural=cfg.kelly_p_structural,
            p_cross_venue=cfg.kelly_p_cross_venue,
            p_spread_capture=cfg.kelly_p_spread_capture,
        )


@dataclass(frozen=True)
class SizedTrade:
    opportunity: Opportunity
    units: float
    notional: float
    kelly_f: float


class KillSwitch:
    """Once tripped, no new position may be opened until reset by an operator."""

    def __init__(self) -> None:
        self._reason = ""

    @property
    def tripped(self) -> bool:
        return bool(self._reason)

    @property
    def reason(self) -> str:
        return self._reason

    def trip(self, reason: str) -> None:
        if not self._reason:
            logger.critical("KILL SWITCH TRIPPED: %s", reason)
            self._reason = reason

    def reset(self) -> None:
        logger.warning("Kill switch reset (was: %s)", self._reason)
        self._reason = ""


class FailureBreaker:
    """Trips the kill switch after max_consecutive failed executions."""

    def __init__(self, kill_switch: KillSwitch, max_consecutive_failures: int) -> None:
        self.kill_switch = kill_switch
        self.max_consecutive_failures = max_consecutive_failures
        self._consecutive = 0

    def record(self, success: bool) -> None:
        if success:
            self._consecutive = 0
            return
        self._consecutive += 1
        if self._consecutive >= self.max_consecutive_failures:
            self.kill_switch.trip(
                f"Consecutive failures: {self._consecutive} >= {self.max_consecutive_failures}"
            )

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive


class RiskGate:
    def __init__(self, limits: RiskLimits, metrics: Metrics | None = None) -> None:
        self.limits = limits
        self.metrics = metrics or Metrics()

    def size(self, opp: Opportunity, ledger: LedgerSnapshot, open_positions: int) -> SizedTrade:
        """
        Size opp against the ledger snapshot.

        Raises:
            RiskRejected: with one of REASON_CODES
        """
        try:
            trade = self._size(opp, ledger, open_positions)
        except RiskRejected as e:
            self.record(opp, e)
            raise
        self.metrics.incr("sized")
        return trade

    def record(self, opp: Opportunity, rejection: RiskRejected) -> RiskRejected:
        """Count and log a rejection decided here or downstream (e.g. by the ledger)."""
        self.metrics.incr("rejections", rejection.reason)
        logger.info("Rejected %s %s %s: %s", opp.opportunity_id, opp.strategy.value, opp.instrument, rejection)
        return rejection

    def _size(self, opp: Opportunity, ledger: LedgerSnapshot, open_positions: int) -> SizedTrade:
        lim = self.limits
        if ledger.loss_limit_hit:
            raise RiskRejected(
                LOSS_LIMIT,
                f"daily realized ${ledger.daily_realized_pnl:.2f} <= -${ledger.daily_loss_limit:.2f}",
            )
        if open_positions >= lim.max_concurrent_positions:
            raise RiskRejected(CONCURRENCY_LIMIT, f"{open_positions} open >= {lim.max_concurrent_positions}")

        headroom = min(
            lim.max_position_notional,
            lim.max_open_notional - ledger.open_notional,
            ledger.spendable,
        )
        if headroom < lim.min_trade_notional or headroom <= 0:
            raise RiskRejected(
                POSITION_LIMIT,
                f"headroom ${max(headroom, 0.0):.2f} < minimum ${lim.min_trade_notional:.2f}",
            )

        if opp.unit_cost <= 0:
            raise RiskRejected(BELOW_MINIMUM_SIZE, f"non-positive unit cost {opp.unit_cost}")

        p = fill_probability(opp.strategy, lim.p_structural, lim.p_cross_venue, lim.p_spread_capture)
        kelly_units, f = kelly_size(
            opp,
            bankroll=ledger.equity,
            p=p,
            failure_loss=lim.kelly_failure_loss,
            multiplier=lim.kelly_multiplier,
            cap=lim.kelly_fraction_cap,
        )
        # Never exceed limits, cash, or what the book can absorb
        units = min(kelly_units, headroom / opp.unit_cost, opp.max_size)
        notional = units * opp.unit_cost
        if units < 1.0 or notional < lim.min_trade_notional:
            raise RiskRejected(
                BELOW_MINIMUM_SIZE,
                f"units={units:.2f} notional=${notional:.2f} (kelly_f={f:.4f})",
            )
        logger.info(
            "Sizing %s: edge_ratio=%.4f kelly_f=%.4f units=%.2f notional=$%.2f",
            opp.opportunity_id, opp.edge_ratio, f, units, notional,
        )
        return SizedTrade(opportunity=opp, units=units, notional=notional, kelly_f=f)

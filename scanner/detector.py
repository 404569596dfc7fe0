"""
Opportunity detector. Consumes ticks and venue status messages in channel
order and emits de-duplicated opportunities.

Runs on the single consumer task, so per-instrument evaluation is serialized.
"""

from __future__ import annotations

import logging
import time
from typing import Protocol

from config import Config, venue_fees
from feed.health import VenueHealth
from monitor.metrics import Metrics
from scanner.cross_venue import CrossVenueStrategy
from scanner.dedupe import DedupeRegistry
from scanner.fees import FeeModel
from scanner.history import TickHistory
from scanner.models import Opportunity, StrategyTag, Tick, VenueState, VenueStatus
from scanner.spread import SpreadCaptureStrategy
from scanner.structural import StructuralStrategy

logger = logging.getLogger(__name__)


class Strategy(Protocol):
    tag: StrategyTag

    def applies(self, tick: Tick) -> bool: ...

    def evaluate(self, tick: Tick, ctx: "OpportunityDetector", now: float) -> list[Opportunity]: ...


class OpportunityDetector:
    def __init__(
        self,
        strategies: list[Strategy],
        health: VenueHealth | None = None,
        history: TickHistory | None = None,
        dedupe: DedupeRegistry | None = None,
        metrics: Metrics | None = None,
        clock=time.time,
    ) -> None:
        self.strategies = list(strategies)
        self.health = health or VenueHealth()
        self.history = history or TickHistory()
        self.dedupe = dedupe or DedupeRegistry()
        self.metrics = metrics or Metrics()
        self._clock = clock
        # instrument -> venue -> latest tick
        self._quotes: dict[str, dict[str, Tick]] = {}
        self._epochs: dict[str, int] = {}

    def quotes(self, instrument: str) -> dict[str, Tick]:
        return dict(self._quotes.get(instrument, {}))

    def latest(self, venue: str, instrument: str) -> Tick | None:
        return self._quotes.get(instrument, {}).get(venue)

    def on_status(self, status: VenueStatus) -> None:
        if not self.health.apply(status):
            return
        self._epochs[status.venue] = max(self._epochs.get(status.venue, 0), status.epoch)
        if status.state is VenueState.DEGRADED:
            # Quotes from a degraded venue must not be compared again
            for by_venue in self._quotes.values():
                by_venue.pop(status.venue, None)
            self.history.clear_venue(status.venue)
            logger.warning("Detector: %s degraded (%s), cross-venue suppressed", status.venue, status.reason)
        else:
            logger.info("Detector: %s connected (epoch %d)", status.venue, status.epoch)

    def on_tick(self, tick: Tick, now: float | None = None) -> list[Opportunity]:
        """Evaluate every strategy that references tick's instrument."""
        now = now if now is not None else self._clock()
        if tick.epoch < self._epochs.get(tick.venue, 0):
            self.metrics.incr("ticks_dropped", "stale_epoch")
            return []

        prev = self.latest(tick.venue, tick.instrument)
        if prev is not None and prev.epoch == tick.epoch and tick.sequence <= prev.sequence:
            # Out-of-order or duplicate ticks never reach the strategies
            self.metrics.incr("ticks_dropped", "out_of_order")
            return []

        self._quotes.setdefault(tick.instrument, {})[tick.venue] = tick
        self.health.touch(tick.venue, tick.instrument, tick.received_at)
        self.history.record(tick)
        self.dedupe.purge(now)

        emitted: list[Opportunity] = []
        for strategy in self.strategies:
            if not strategy.applies(tick):
                continue
            for opp in strategy.evaluate(tick, self, now):
                if not self.dedupe.try_claim(opp, now):
                    self.metrics.incr("opportunities_deduped", opp.strategy.value)
                    continue
                self.metrics.incr("opportunities", opp.strategy.value)
                logger.info(
                    "Opportunity %s %s %s edge=%.4f (%.2f%%) max_size=%.1f",
                    opp.opportunity_id, opp.strategy.value, opp.instrument,
                    opp.edge, opp.edge_ratio * 100, opp.max_size,
                )
                emitted.append(opp)
        return emitted

    def release(self, opp: Opportunity) -> None:
        self.dedupe.release(opp)


def build_detector(cfg: Config, fee_model: FeeModel | None = None, metrics: Metrics | None = None) -> OpportunityDetector:
    """Detector with every strategy enabled by config."""
    fee_model = fee_model or FeeModel(venue_rates=venue_fees(cfg), settlement_fee=cfg.polymarket_settlement_fee)
    history = TickHistory(maxlen=cfg.tick_history_len)
    strategies: list[Strategy] = [
        StructuralStrategy(fee_model, cfg.min_edge, cfg.structural_ttl_sec),
        CrossVenueStrategy(fee_model, cfg.cross_venue_min_edge, cfg.cross_venue_ttl_sec),
    ]
    if cfg.spread_capture_enabled:
        strategies.append(SpreadCaptureStrategy(
            fee_model,
            history,
            min_edge=cfg.spread_capture_min_edge,
            ttl_sec=cfg.spread_capture_ttl_sec,
            binary_tick_size=cfg.binary_tick_size,
            spot_tick_size=cfg.spot_tick_size,
            min_history=cfg.spread_capture_min_history,
            ema_period=cfg.spread_capture_ema_period,
            max_bandwidth=cfg.spread_capture_max_bandwidth,
        ))
    return OpportunityDetector(
        strategies,
        health=VenueHealth(stale_after_sec=cfg.feed_stale_after_sec),
        history=history,
        metrics=metrics,
    )

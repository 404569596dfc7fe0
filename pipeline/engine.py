"""
Engine: wires ingest, detector, coordinator, and ledger together and runs the
single consumer task.

  feeds --> channel --> detector --> coordinator --> ledger
                 \--> paper gateways (book-driven fills)

Every opportunity is executed on its own task. Non-fatal errors are counted
at this boundary; LedgerInvariantViolation halts trading: the kill switch
trips, in-flight executions are cancelled (and rolled back), feeds stop, and
run() re-raises.
"""

from __future__ import annotations

import asyncio
import logging
import time

import httpx

from client.gamma import GammaSettlementSource
from client.paper import PaperGateway
from client.platform import OrderGateway
from client.spot import BinancePoller, CoinbasePoller
from client.ws import PolymarketFeed
from config import Config, venue_fees
from executor.coordinator import ExecutionCoordinator, ExecutionParams, StaleOpportunity, TradingHalted
from executor.exits import ExitPolicy
from executor.fill_state import PositionStatus, is_live_state
from executor.position import Position
from executor.risk import FailureBreaker, KillSwitch, RiskGate, RiskLimits, RiskRejected
from feed.ingest import MarketDataIngest
from feed.normalize import PolymarketNormalizer
from monitor.display import print_report
from monitor.metrics import Metrics
from monitor.status import StatusSnapshot, StatusWriter
from scanner.detector import OpportunityDetector, build_detector
from scanner.fees import FeeModel, is_dynamic_fee_market
from scanner.models import BINANCE, COINBASE, POLYMARKET, Market, Opportunity, Tick, VenueStatus
from state.ledger import Ledger, LedgerInvariantViolation
from state.store import StateStore

logger = logging.getLogger(__name__)

DRY_RUN = "DRY-RUN"
PAPER = "PAPER"
LIVE = "LIVE"

_REPORT_EVERY = 10  # status intervals between console reports


class Engine:
    def __init__(
        self,
        mode: str,
        channel: asyncio.Queue,
        ingest: MarketDataIngest,
        detector: OpportunityDetector,
        coordinator: ExecutionCoordinator,
        metrics: Metrics,
        store: StateStore | None = None,
        status_writer: StatusWriter | None = None,
        status_interval_sec: float = 30.0,
        clock=time.time,
    ) -> None:
        self.mode = mode
        self.channel = channel
        self.ingest = ingest
        self.detector = detector
        self.coordinator = coordinator
        self.metrics = metrics
        self.store = store
        self.status_writer = status_writer
        self.status_interval_sec = status_interval_sec
        self._clock = clock
        self._paper = [g for g in coordinator.gateways.values() if isinstance(g, PaperGateway)]
        self._inflight: set[asyncio.Task] = set()
        self._stop = asyncio.Event()
        self._fatal: BaseException | None = None
        self.started_at = clock()
        coordinator.fatal_handler = self.halt

    # -- lifecycle --

    async def run(self) -> None:
        """Run until stop() or a fatal ledger error. Re-raises the fatal error."""
        self.started_at = self._clock()
        await self.ingest.start()
        background = [
            asyncio.create_task(self._consume(), name="detector"),
            asyncio.create_task(self._periodic(), name="status"),
        ]
        if self.store is not None:
            background.append(asyncio.create_task(self._recover(), name="recovery"))
        try:
            await self._stop.wait()
        finally:
            for task in background:
                task.cancel()
            await asyncio.gather(*background, return_exceptions=True)
            await self._shutdown()
        if self._fatal is not None:
            raise self._fatal

    def stop(self) -> None:
        self._stop.set()

    def halt(self, exc: BaseException) -> None:
        """Fatal error: stop trading now."""
        if self._fatal is None:
            self._fatal = exc
            logger.critical("HALT: %s", exc)
            self.coordinator.kill_switch.trip(f"ledger invariant violation: {exc}")
            for task in list(self._inflight):
                task.cancel()
        self._stop.set()

    async def _shutdown(self) -> None:
        inflight = list(self._inflight)
        for task in inflight:
            task.cancel()
        await asyncio.gather(*inflight, return_exceptions=True)
        await self.coordinator.stop()
        await self.ingest.stop()
        snap = self.status()
        if self.status_writer is not None:
            self.status_writer.write(snap)
        print_report(snap)
        logger.info("Engine stopped (%d open positions persisted)", snap.open_positions)

    async def _recover(self) -> None:
        rows = self.store.load_positions(statuses={s.value for s in PositionStatus if is_live_state(s)})
        positions = [Position.from_dict(row) for row in rows]
        if not positions and not self.coordinator.ledger.open_reservations():
            return
        logger.warning("Recovering %d persisted position(s)", len(positions))
        try:
            await self.coordinator.recover(positions)
        except LedgerInvariantViolation as e:
            self.halt(e)

    # -- consumer --

    async def _consume(self) -> None:
        while True:
            item = await self.channel.get()
            try:
                self.process(item)
            except LedgerInvariantViolation as e:
                self.halt(e)
                return

    def process(self, item: Tick | VenueStatus) -> list[Opportunity]:
        """Handle one channel item. Returns the opportunities it produced."""
        if isinstance(item, VenueStatus):
            self.detector.on_status(item)
            return []
        for gateway in self._paper:
            gateway.on_tick(item)
        opps = self.detector.on_tick(item)
        if self.mode == DRY_RUN or self._fatal is not None:
            return opps
        for opp in opps:
            if not self.coordinator.can_route(opp):
                self.metrics.incr("unroutable", opp.strategy.value)
                continue
            task = asyncio.create_task(self._execute(opp), name=f"exec-{opp.opportunity_id}")
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
        return opps

    async def _execute(self, opp: Opportunity) -> Position | None:
        try:
            position = await self.coordinator.execute(opp)
        except StaleOpportunity as e:
            self.metrics.incr("stale_opportunities", opp.strategy.value)
            logger.debug("Stale: %s", e)
            return None
        except RiskRejected:
            # Counted and logged by the gate; the claim lapses at expiry
            return None
        except TradingHalted as e:
            self.metrics.incr("halted_drops")
            logger.debug("Dropped %s, trading halted: %s", opp.opportunity_id, e)
            return None
        except LedgerInvariantViolation as e:
            self.halt(e)
            return None
        except Exception as e:
            # The coordinator has already rolled back whatever it opened
            self.metrics.incr("execution_errors", opp.strategy.value)
            logger.error("Execution of %s failed: %s", opp.opportunity_id, e)
            return None
        # Converted into a position: the opportunity no longer exists
        self.detector.release(opp)
        return position

    # -- status --

    async def _periodic(self) -> None:
        n = 0
        while True:
            await asyncio.sleep(self.status_interval_sec)
            n += 1
            snap = self.status()
            if self.status_writer is not None:
                self.status_writer.write(snap)
            if n % _REPORT_EVERY == 0:
                print_report(snap)

    def status(self) -> StatusSnapshot:
        return StatusSnapshot(
            mode=self.mode,
            started_at=self.started_at,
            ledger=self.coordinator.ledger.snapshot(),
            open_positions=self.coordinator.open_count,
            degraded_venues=tuple(self.detector.health.degraded_venues()),
            rejections=self.metrics.by_label("rejections"),
            counters=self.metrics.snapshot(),
            kill_switch=self.coordinator.kill_switch.reason,
            taken_at=self._clock(),
        )


def build_ledger(cfg: Config, store: StateStore | None) -> Ledger:
    """Fresh ledger, or one rebuilt from the store's audit log."""
    if store is None:
        return Ledger(cfg.initial_capital, cfg.daily_loss_limit, cfg.daily_reset_hour_utc)
    capital = store.get_meta("initial_capital")
    if capital is None:
        capital = cfg.initial_capital
        store.set_meta("initial_capital", capital)
    elif capital != cfg.initial_capital:
        logger.warning("Stored capital $%.2f overrides configured $%.2f", capital, cfg.initial_capital)
    entries = store.load_audit()
    ledger = Ledger.from_audit(
        capital, cfg.daily_loss_limit, entries,
        reset_hour_utc=cfg.daily_reset_hour_utc, sink=store.append_audit,
    )
    if entries:
        logger.info("Ledger restored from %d audit entries", len(entries))
    return ledger


def build_engine(
    cfg: Config,
    mode: str,
    markets: list[Market],
    http: httpx.AsyncClient,
    store: StateStore | None = None,
    clob_client=None,
    status_writer: StatusWriter | None = None,
) -> Engine:
    metrics = Metrics()
    channel: asyncio.Queue = asyncio.Queue(maxsize=cfg.channel_maxsize)
    ingest = MarketDataIngest(
        channel,
        metrics=metrics,
        stale_after_sec=cfg.feed_stale_after_sec,
        failures_before_degraded=cfg.feed_failures_before_degraded,
    )
    if markets:
        normalizer = PolymarketNormalizer({m.market_id: (m.yes_token_id, m.no_token_id) for m in markets})
        ingest.register(PolymarketFeed(
            cfg.ws_market_url, normalizer, ingest,
            backoff_base=cfg.feed_backoff_base_sec, backoff_max=cfg.feed_backoff_max_sec,
        ))
    venues = [POLYMARKET]
    if cfg.binance_enabled and cfg.spot_symbols:
        ingest.register(BinancePoller(
            http, cfg.binance_host, ingest, cfg.spot_symbols,
            interval=cfg.spot_poll_interval_sec, backoff_max=cfg.feed_backoff_max_sec,
        ))
        venues.append(BINANCE)
    if cfg.coinbase_enabled and cfg.spot_symbols:
        ingest.register(CoinbasePoller(
            http, cfg.coinbase_host, ingest, cfg.spot_symbols,
            interval=cfg.spot_poll_interval_sec, backoff_max=cfg.feed_backoff_max_sec,
        ))
        venues.append(COINBASE)

    fee_model = FeeModel(
        venue_rates=venue_fees(cfg),
        settlement_fee=cfg.polymarket_settlement_fee,
        dynamic_instruments={m.market_id for m in markets if is_dynamic_fee_market(m.question)},
    )
    detector = build_detector(cfg, fee_model, metrics)

    gateways: dict[str, OrderGateway] = {}
    if mode == PAPER:
        gateways = {venue: PaperGateway(venue, fee_model) for venue in venues}
    elif mode == LIVE:
        from client.clob import ClobGateway
        gateways = {POLYMARKET: ClobGateway(clob_client, {m.market_id: m for m in markets}, fee_model)}

    kill_switch = KillSwitch()
    coordinator = ExecutionCoordinator(
        ledger=build_ledger(cfg, store),
        gateways=gateways,
        gate=RiskGate(RiskLimits.from_config(cfg), metrics),
        fee_model=fee_model,
        quotes=detector.latest,
        params=ExecutionParams.from_config(cfg),
        exit_policy=ExitPolicy.from_config(cfg),
        settlement=GammaSettlementSource(http, cfg.gamma_host),
        store=store,
        kill_switch=kill_switch,
        breaker=FailureBreaker(kill_switch, cfg.max_consecutive_failures),
        metrics=metrics,
    )
    return Engine(
        mode,
        channel,
        ingest,
        detector,
        coordinator,
        metrics,
        store=store,
        status_writer=status_writer,
        status_interval_sec=cfg.status_interval_sec,
    )

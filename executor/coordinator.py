"""
Execution coordinator. Turns sized opportunities into positions and owns every
ledger mutation.

Flow per opportunity:
  1. Drop it if expired (StaleOpportunity) or if the kill switch is tripped
  2. Size through the risk gate, reserve capital in the ledger
  3. Submit all legs concurrently, retrying transient failures with bounded
     exponential backoff on the same client order id
  4. Poll fills until every leg is confirmed or the fill timeout elapses
  5. On timeout, exhausted retries, expiry during submission, or the kill
     switch: cancel working orders, flatten filled quantity with opposite-side
     orders, release the reservation with the realized cost -> FAILED
  6. Fully filled: zero-exposure trades close at once, complete sets move to
     RESOLVING and are monitored until settlement or an exit trigger

A compensation that cannot complete marks its legs STUCK, logs CRITICAL, and
trips the kill switch.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from client.platform import GatewayError, OrderAck, OrderGateway, OrderStatus
from executor.exits import (
    LOCKED,
    RESOLVED,
    ExitPolicy,
    QuoteLookup,
    SettlementSource,
    check_exit,
    exit_value,
    settlement_pnl,
)
from executor.fill_state import LegState, PositionStatus, get_execution_states, is_terminal_state
from executor.position import Position, PositionLeg
from executor.risk import POSITION_LIMIT, FailureBreaker, KillSwitch, RiskGate, RiskRejected
from monitor.metrics import Metrics
from scanner.fees import FeeModel
from scanner.models import Opportunity, Side, new_id
from state.ledger import InsufficientCapital, Ledger, LedgerInvariantViolation
from state.store import StateStore

logger = logging.getLogger(__name__)

_QTY_EPS = 1e-9

# Rollback reasons
FILL_TIMEOUT = "fill-timeout"
RETRIES_EXHAUSTED = "retries-exhausted"
EXPIRED = "expired"
KILL_SWITCH = "kill-switch"
LEG_CANCELLED = "leg-cancelled"
RECOVERY = "recovery"
CANCELLED = "cancelled"
UNEXPECTED_ERROR = "unexpected-error"


class StaleOpportunity(Exception):
    """Opportunity expired before execution started. Dropped with a counter increment."""

    def __init__(self, opp: Opportunity, now: float):
        self.opportunity = opp
        super().__init__(
            f"{opp.opportunity_id} expired {now - opp.expires_at:.3f}s ago"
        )


class TradingHalted(Exception):
    """The kill switch is tripped; no new position may be opened."""
    pass


class ExecutionAborted(Exception):
    """Execution cannot complete; the position must be rolled back."""

    def __init__(self, reason: str, detail: str = ""):
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason}: {detail}" if detail else reason)


class LegFillTimeout(ExecutionAborted):
    """Not every leg filled within the fill timeout."""

    def __init__(self, position_id: str, outstanding: list[str], timeout: float):
        self.position_id = position_id
        self.outstanding = outstanding
        super().__init__(FILL_TIMEOUT, f"{position_id}: {len(outstanding)} leg(s) unfilled after {timeout:.1f}s")


class CompensationFailed(Exception):
    """Filled legs could not be flattened. Manual intervention needed."""
    pass


@dataclass(frozen=True)
class ExecutionParams:
    leg_fill_timeout_sec: float = 5.0
    leg_max_attempts: int = 3
    retry_backoff_base_sec: float = 0.25
    retry_backoff_max_sec: float = 2.0
    fill_poll_interval_sec: float = 0.1
    unwind_max_slippage: float = 0.05
    exit_check_interval_sec: float = 10.0
    binary_tick_size: float = 0.01

    @classmethod
    def from_config(cls, cfg) -> ExecutionParams:
        return cls(
            leg_fill_timeout_sec=cfg.leg_fill_timeout_sec,
            leg_max_attempts=cfg.leg_max_attempts,
            retry_backoff_base_sec=cfg.retry_backoff_base_sec,
            retry_backoff_max_sec=cfg.retry_backoff_max_sec,
            fill_poll_interval_sec=cfg.fill_poll_interval_sec,
            unwind_max_slippage=cfg.unwind_max_slippage,
            exit_check_interval_sec=cfg.exit_check_interval_sec,
            binary_tick_size=cfg.binary_tick_size,
        )

    def backoff(self, attempt: int) -> float:
        return min(self.retry_backoff_base_sec * (2 ** (attempt - 1)), self.retry_backoff_max_sec)


class ExecutionCoordinator:
    def __init__(
        self,
        ledger: Ledger,
        gateways: dict[str, OrderGateway],
        gate: RiskGate,
        fee_model: FeeModel,
        quotes: QuoteLookup,
        params: ExecutionParams | None = None,
        exit_policy: ExitPolicy | None = None,
        settlement: SettlementSource | None = None,
        store: StateStore | None = None,
        kill_switch: KillSwitch | None = None,
        breaker: FailureBreaker | None = None,
        metrics: Metrics | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.ledger = ledger
        self.gateways = dict(gateways)
        self.gate = gate
        self.fee_model = fee_model
        self.params = params or ExecutionParams()
        self.exit_policy = exit_policy or ExitPolicy()
        self.settlement = settlement
        self.store = store
        self.kill_switch = kill_switch or KillSwitch()
        self.breaker = breaker
        self.metrics = metrics or gate.metrics
        self.fatal_handler: Callable[[BaseException], None] | None = None
        self._quotes = quotes
        self._clock = clock
        self._sleep = sleep
        self._positions: dict[str, Position] = {}
        self._monitors: dict[str, asyncio.Task] = {}
        self.stuck_legs: list[tuple[str, PositionLeg]] = []

    # -- reads --

    @property
    def open_count(self) -> int:
        return len(self._positions)

    def positions(self) -> list[Position]:
        return list(self._positions.values())

    def can_route(self, opp: Opportunity) -> bool:
        """True when a gateway exists for every venue the opportunity trades."""
        return all(venue in self.gateways for venue in opp.venues)

    # -- execution --

    async def execute(self, opp: Opportunity) -> Position:
        """
        Size, reserve, and execute opp. Returns the position in its state
        after execution (RESOLVING, CLOSED, or FAILED).

        Raises:
            StaleOpportunity: opp expired before execution started
            TradingHalted: the kill switch is tripped
            RiskRejected: the risk gate or the ledger refused the trade
            LedgerInvariantViolation: fatal, propagated to the engine
        """
        now = self._clock()
        if self.kill_switch.tripped:
            raise TradingHalted(self.kill_switch.reason)
        if opp.is_expired(now):
            raise StaleOpportunity(opp, now)

        trade = self.gate.size(opp, self.ledger.snapshot(), self.open_count)
        position = Position.open(opp, trade.units, now)
        try:
            position.reservation_id = self.ledger.reserve(position.notional, position.position_id)
        except InsufficientCapital as e:
            raise self.gate.record(opp, RiskRejected(POSITION_LIMIT, str(e))) from e
        self._positions[position.position_id] = position
        logger.info(
            "Opening %s for %s: %s %s size=%.2f notional=$%.2f",
            position.position_id, opp.opportunity_id, opp.strategy.value,
            opp.instrument, position.size, position.notional,
        )

        try:
            self._persist(position)
            await self._submit_all(position, opp)
            await self._await_fills(position)
            self._on_filled(position)
        except ExecutionAborted as e:
            logger.warning("Execution of %s aborted: %s", position.position_id, e)
            await self._rollback(position, e.reason)
        except asyncio.CancelledError:
            # Shutdown or halt mid-execution: flatten before giving up the task
            await asyncio.shield(self._rollback(position, CANCELLED))
            raise
        except LedgerInvariantViolation:
            raise
        except Exception as e:
            logger.exception("Execution of %s failed unexpectedly: %s", position.position_id, e)
            await self._abandon(position)
            raise
        return position

    async def _abandon(self, position: Position) -> None:
        """Roll back after an unexpected error. If that fails too, halt trading."""
        try:
            await self._rollback(position, UNEXPECTED_ERROR)
        except LedgerInvariantViolation:
            raise
        except Exception as e:
            logger.exception("Rollback of %s failed: %s", position.position_id, e)
            self._positions.pop(position.position_id, None)
            self.kill_switch.trip(f"rollback of {position.position_id} failed: {e}")

    async def _submit_all(self, position: Position, opp: Opportunity) -> None:
        results = await asyncio.gather(
            *(self._submit_leg(leg, opp) for leg in position.legs),
            return_exceptions=True,
        )
        self._update_status(position)
        self._persist(position)
        for result in results:
            if isinstance(result, ExecutionAborted):
                raise result
            if isinstance(result, Exception):
                logger.error("Leg submission for %s failed unexpectedly: %s", position.position_id, result)
                raise ExecutionAborted(RETRIES_EXHAUSTED, str(result)) from result

    async def _submit_leg(self, leg: PositionLeg, opp: Opportunity) -> None:
        gateway = self.gateways[leg.venue]
        attempts = self.params.leg_max_attempts
        for attempt in range(1, attempts + 1):
            if self.kill_switch.tripped:
                raise ExecutionAborted(KILL_SWITCH, self.kill_switch.reason)
            if opp.is_expired(self._clock()):
                raise ExecutionAborted(EXPIRED, f"{opp.opportunity_id} expired during submission")
            leg.attempts = attempt
            try:
                ack = await gateway.submit(
                    leg.instrument, leg.side, leg.price, leg.size,
                    outcome=leg.outcome, client_order_id=leg.client_order_id,
                )
            except GatewayError as e:
                self.metrics.incr("leg_retries", leg.venue)
                logger.warning("Leg %s %s attempt %d/%d failed: %s",
                               leg.venue, leg.instrument, attempt, attempts, e)
            else:
                if ack.status is not OrderStatus.REJECTED:
                    self._apply_ack(leg, ack)
                    return
                self.metrics.incr("leg_retries", leg.venue)
                logger.warning("Leg %s %s attempt %d/%d rejected: %s",
                               leg.venue, leg.instrument, attempt, attempts, ack.message)
            if attempt < attempts:
                await self._sleep(self.params.backoff(attempt))
        leg.set_state(LegState.REJECTED)
        raise ExecutionAborted(RETRIES_EXHAUSTED, f"{leg.venue} {leg.instrument} after {attempts} attempts")

    async def _await_fills(self, position: Position) -> None:
        timeout = self.params.leg_fill_timeout_sec
        deadline = self._clock() + timeout
        while True:
            self._update_status(position)
            if position.all_filled:
                return
            dead = [leg for leg in position.legs if leg.state in (LegState.CANCELLED, LegState.REJECTED)]
            if dead:
                raise ExecutionAborted(LEG_CANCELLED, f"{len(dead)} leg(s) cancelled or rejected by venue")
            if self.kill_switch.tripped:
                raise ExecutionAborted(KILL_SWITCH, self.kill_switch.reason)
            if self._clock() >= deadline:
                outstanding = [leg.order_id for leg in position.legs if not leg.is_filled]
                raise LegFillTimeout(position.position_id, outstanding, timeout)
            await self._sleep(self.params.fill_poll_interval_sec)
            await self._refresh(position)

    async def _refresh(self, position: Position) -> None:
        for leg in position.working_legs:
            if not leg.order_id:
                continue
            try:
                ack = await self.gateways[leg.venue].get_order(leg.order_id)
            except GatewayError as e:
                logger.debug("Order status for %s unavailable: %s", leg.order_id, e)
                continue
            self._apply_ack(leg, ack)

    def _apply_ack(self, leg: PositionLeg, ack: OrderAck) -> None:
        if leg.state in (LegState.UNWOUND, LegState.STUCK):
            return
        if ack.order_id and not leg.order_id:
            leg.order_id = ack.order_id
        if ack.filled_size >= leg.filled_size:
            leg.filled_size = ack.filled_size
            leg.avg_price = ack.avg_price
            leg.fee = ack.fee
        filled = leg.filled_size > _QTY_EPS
        if ack.status is OrderStatus.FILLED or leg.filled_size >= leg.size - _QTY_EPS:
            state = LegState.FILLED
        elif filled:
            # Partial fills stay PARTIAL even once cancelled: the quantity must be unwound
            state = LegState.PARTIAL
        elif ack.status is OrderStatus.CANCELLED:
            state = LegState.CANCELLED
        elif ack.status is OrderStatus.REJECTED:
            state = LegState.REJECTED
        else:
            state = LegState.OPEN
        leg.set_state(state)

    def _update_status(self, position: Position) -> None:
        if position.status not in get_execution_states():
            return
        prev = position.status
        if position.all_filled:
            position.transition(PositionStatus.FILLED)
        elif position.any_filled and position.status is PositionStatus.PENDING:
            position.transition(PositionStatus.PARTIALLY_FILLED)
        if position.status is not prev:
            logger.info("Position %s: %s -> %s", position.position_id, prev.value, position.status.value)
            self._persist(position)

    # -- rollback --

    async def _rollback(self, position: Position, reason: str) -> None:
        """Cancel working orders, flatten fills, release the reservation -> FAILED."""
        logger.warning("Rolling back %s (%s)", position.position_id, reason)
        for leg in position.working_legs:
            await self._cancel_leg(leg)

        stuck: list[PositionLeg] = []
        for leg in position.legs:
            if leg.open_quantity > _QTY_EPS and not await self._flatten(leg):
                if leg.state is not LegState.STUCK:
                    leg.set_state(LegState.STUCK)
                stuck.append(leg)
                continue
            if leg.state is LegState.STUCK:
                stuck.append(leg)
            elif leg.filled_size > _QTY_EPS:
                leg.set_state(LegState.UNWOUND)

        pnl = position.cash_flow
        if stuck:
            # Inventory we could not flatten is booked at zero value, never as a gain
            pnl = min(pnl, 0.0)
        position.realized_pnl = pnl
        position.close_reason = reason
        position.closed_at = self._clock()
        self.ledger.rollback(position.reservation_id, realized_pnl=pnl)
        self._positions.pop(position.position_id, None)
        position.transition(PositionStatus.FAILED)
        self._persist(position)

        self.metrics.incr("positions", PositionStatus.FAILED.value)
        self.metrics.incr("rollbacks", reason)
        if self.breaker is not None:
            self.breaker.record(False)
        logger.warning("Position %s FAILED (%s), realized $%.4f", position.position_id, reason, pnl)

        if stuck:
            for leg in stuck:
                self.stuck_legs.append((position.position_id, leg))
                logger.critical(
                    "STUCK LEG %s: %s %s %s open=%.4f order=%s",
                    position.position_id, leg.venue, leg.instrument, leg.side.value,
                    leg.open_quantity, leg.unwind_order_id or leg.order_id,
                )
            err = CompensationFailed(f"{position.position_id}: {len(stuck)} leg(s) could not be flattened")
            self.kill_switch.trip(str(err))

    async def _cancel_leg(self, leg: PositionLeg) -> None:
        if not leg.order_id:
            leg.set_state(LegState.CANCELLED)
            return
        gateway = self.gateways[leg.venue]
        attempts = self.params.leg_max_attempts
        for attempt in range(1, attempts + 1):
            try:
                ack = await gateway.cancel(leg.order_id)
            except GatewayError as e:
                logger.warning("Cancel %s attempt %d/%d failed: %s", leg.order_id, attempt, attempts, e)
                if attempt < attempts:
                    await self._sleep(self.params.backoff(attempt))
                continue
            self._apply_ack(leg, ack)
            if leg.state is LegState.OPEN:
                leg.set_state(LegState.CANCELLED)
            return
        # The order may still be live at the venue
        leg.set_state(LegState.STUCK)
        logger.critical("Could not cancel %s on %s", leg.order_id, leg.venue)
        self.kill_switch.trip(f"cancel failed for order {leg.order_id}")

    def _unwind_price(self, leg: PositionLeg, side: Side) -> float:
        slip = self.params.unwind_max_slippage
        tick = self._quotes(leg.venue, leg.instrument)
        book = tick.book(leg.outcome) if tick is not None else None
        binary = leg.outcome is not None
        if side is Side.SELL:
            ref = book.bid.price if book and book.bid else leg.avg_price or leg.price
            if binary:
                return max(self.params.binary_tick_size, round(ref - slip, 6))
            return ref * (1.0 - slip)
        ref = book.ask.price if book and book.ask else leg.avg_price or leg.price
        if binary:
            return min(1.0 - self.params.binary_tick_size, round(ref + slip, 6))
        return ref * (1.0 + slip)

    async def _flatten(self, leg: PositionLeg) -> bool:
        """
        Send an opposite-side order for the leg's open quantity and wait for it
        to fill. Returns True when nothing is left open.
        """
        gateway = self.gateways[leg.venue]
        side = leg.side.opposite
        qty = leg.open_quantity
        price = self._unwind_price(leg, side)
        client_order_id = new_id("unw")
        base_filled = leg.unwind_filled
        base_notional = leg.unwind_filled * leg.unwind_avg_price
        base_fee = leg.unwind_fee

        def apply(ack: OrderAck) -> None:
            total = base_filled + ack.filled_size
            leg.unwind_avg_price = (base_notional + ack.filled_size * ack.avg_price) / total if total > 0 else 0.0
            leg.unwind_filled = total
            leg.unwind_fee = base_fee + ack.fee

        order_id = ""
        attempts = self.params.leg_max_attempts
        for attempt in range(1, attempts + 1):
            try:
                ack = await gateway.submit(
                    leg.instrument, side, price, qty,
                    outcome=leg.outcome, client_order_id=client_order_id,
                )
            except GatewayError as e:
                logger.warning("Unwind %s attempt %d failed: %s", leg.instrument, attempt, e)
            else:
                if ack.status is not OrderStatus.REJECTED:
                    order_id = ack.order_id
                    leg.unwind_order_id = order_id
                    apply(ack)
                    break
                logger.warning("Unwind %s attempt %d rejected: %s", leg.instrument, attempt, ack.message)
            if attempt < attempts:
                await self._sleep(self.params.backoff(attempt))
        if not order_id:
            return False

        deadline = self._clock() + self.params.leg_fill_timeout_sec
        while leg.open_quantity > _QTY_EPS and self._clock() < deadline:
            await self._sleep(self.params.fill_poll_interval_sec)
            try:
                apply(await gateway.get_order(order_id))
            except GatewayError as e:
                logger.debug("Unwind status for %s unavailable: %s", order_id, e)
        if leg.open_quantity > _QTY_EPS:
            try:
                apply(await gateway.cancel(order_id))
            except GatewayError as e:
                logger.warning("Cancel of unwind %s failed: %s", order_id, e)
            return leg.open_quantity <= _QTY_EPS
        logger.info("Flattened %s %s %s %.4f @ %.4f",
                    leg.venue, leg.instrument, side.value, qty, leg.unwind_avg_price)
        return True

    # -- resolution --

    def _on_filled(self, position: Position) -> None:
        logger.info("Position %s FILLED: cost=$%.2f", position.position_id, position.cost_basis)
        position.transition(PositionStatus.RESOLVING)
        if position.is_flat:
            # Offsetting legs: the spread is realized at fill time
            self._close(position, LOCKED, position.cash_flow)
            return
        self._persist(position)
        self._start_monitor(position)

    def _close(self, position: Position, reason: str, pnl: float) -> None:
        """Commit realized P&L and remove the position with no suspension point in between."""
        self.ledger.commit(position.position_id, pnl)
        self._positions.pop(position.position_id, None)
        position.realized_pnl = pnl
        position.close_reason = reason
        position.closed_at = self._clock()
        position.transition(PositionStatus.CLOSED)
        self._persist(position)
        self.metrics.incr("positions", PositionStatus.CLOSED.value)
        self.metrics.incr("closes", reason)
        if self.breaker is not None:
            self.breaker.record(True)
        logger.info("Position %s CLOSED (%s): realized $%.4f", position.position_id, reason, pnl)

    def _start_monitor(self, position: Position) -> None:
        task = asyncio.create_task(self._monitor(position), name=f"monitor-{position.position_id}")
        self._monitors[position.position_id] = task
        task.add_done_callback(lambda _t, pid=position.position_id: self._monitors.pop(pid, None))

    async def _monitor(self, position: Position) -> None:
        while position.status is PositionStatus.RESOLVING:
            await self._sleep(self.params.exit_check_interval_sec)
            try:
                await self.check_position(position)
            except LedgerInvariantViolation as e:
                if self.fatal_handler is not None:
                    self.fatal_handler(e)
                raise
            except Exception as e:
                logger.exception("Exit check for %s failed: %s", position.position_id, e)

    async def check_position(self, position: Position) -> bool:
        """Evaluate exit conditions once. Returns True if the position closed."""
        if position.status is not PositionStatus.RESOLVING:
            return False
        if self.settlement is not None and any(leg.outcome is not None for leg in position.legs):
            resolution = await self.settlement.resolution(position.instrument)
            if resolution is not None:
                pnl = settlement_pnl(position, resolution, self.fee_model.settlement_fee)
                logger.info("Market %s resolved (YES=%.2f NO=%.2f)",
                            position.instrument, resolution.yes_payout, resolution.no_payout)
                self._close(position, RESOLVED, pnl)
                return True
        value = exit_value(position, self._quotes, self.fee_model)
        reason = check_exit(position, value, self._clock(), self.exit_policy)
        if reason is None:
            return False
        return await self._exit(position, reason)

    async def _exit(self, position: Position, reason: str) -> bool:
        """Flatten every open leg at market. Stays RESOLVING if any leg does not fill."""
        for leg in position.legs:
            if leg.open_quantity <= _QTY_EPS:
                continue
            if not await self._flatten(leg):
                logger.warning("Exit (%s) of %s incomplete, retrying next interval", reason, position.position_id)
                self._persist(position)
                return False
        for leg in position.legs:
            if leg.state is LegState.FILLED:
                leg.set_state(LegState.UNWOUND)
        self._close(position, reason, position.cash_flow)
        return True

    # -- recovery --

    async def recover(self, positions: list[Position]) -> None:
        """
        Reconcile persisted positions after a restart. Positions caught
        mid-execution are refreshed from the venue and rolled back; FILLED and
        RESOLVING positions resume monitoring. Reservations with no live
        position are released.
        """
        reservations = self.ledger.open_reservations()
        live: set[str] = set()
        for position in positions:
            if is_terminal_state(position.status):
                continue
            if position.position_id not in reservations:
                logger.critical("Recovered %s (%s) has no ledger reservation, skipping",
                                position.position_id, position.status.value)
                continue
            position.reservation_id = reservations[position.position_id]
            self._positions[position.position_id] = position
            live.add(position.position_id)
            logger.warning("Recovering %s in %s", position.position_id, position.status.value)
            if position.status in get_execution_states():
                await self._refresh(position)
                await self._rollback(position, RECOVERY)
            elif position.status is PositionStatus.FILLED:
                self._on_filled(position)
            else:
                self._start_monitor(position)
        for position_id, reservation_id in reservations.items():
            if position_id not in live:
                logger.warning("Releasing orphan reservation %s for %s", reservation_id, position_id)
                self.ledger.rollback(reservation_id)

    async def stop(self) -> None:
        """Stop monitoring. RESOLVING positions stay persisted and resume on restart."""
        tasks = list(self._monitors.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _persist(self, position: Position) -> None:
        if self.store is not None:
            self.store.save_position(position)

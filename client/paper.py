"""
Paper-trading order gateway. Fills are driven by the live book, never by
random outcomes.

A marketable order (BUY at or above the best ask, SELL at or below the best
bid) fills immediately at the touch price, up to the displayed size still
unconsumed in the current tick. Anything left rests at its limit price and
fills when a later tick trades through it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from client.platform import OrderAck, OrderStatus
from scanner.fees import FeeModel
from scanner.models import BookTop, Outcome, Side, Tick, new_id

logger = logging.getLogger(__name__)


@dataclass
class _PaperOrder:
    order_id: str
    instrument: str
    side: Side
    price: float
    size: float
    outcome: Outcome | None
    filled: float = 0.0
    notional: float = 0.0
    fee: float = 0.0
    status: OrderStatus = OrderStatus.OPEN

    @property
    def remaining(self) -> float:
        return max(0.0, self.size - self.filled)

    def ack(self) -> OrderAck:
        return OrderAck(
            order_id=self.order_id,
            status=self.status,
            filled_size=self.filled,
            avg_price=self.notional / self.filled if self.filled > 0 else 0.0,
            fee=self.fee,
        )


class PaperGateway:
    def __init__(self, venue: str, fee_model: FeeModel) -> None:
        self._venue = venue
        self._fee_model = fee_model
        self._books: dict[tuple[str, Outcome | None], BookTop] = {}
        # Displayed size already taken from the current top of book
        self._consumed: dict[tuple[str, Outcome | None, Side], float] = {}
        self._orders: dict[str, _PaperOrder] = {}
        self._by_client_id: dict[str, str] = {}

    @property
    def venue(self) -> str:
        return self._venue

    def on_tick(self, tick: Tick) -> None:
        """Refresh books from a tick and fill resting orders it trades through."""
        if tick.venue != self._venue:
            return
        self._set_book(tick.instrument, None if tick.no is None else Outcome.YES, tick.yes)
        if tick.no is not None:
            self._set_book(tick.instrument, Outcome.NO, tick.no)
        for order in self._orders.values():
            if order.status in (OrderStatus.OPEN, OrderStatus.PARTIAL) and order.instrument == tick.instrument:
                self._match(order, maker=True)

    def _set_book(self, instrument: str, outcome: Outcome | None, book: BookTop) -> None:
        self._books[(instrument, outcome)] = book
        self._consumed.pop((instrument, outcome, Side.BUY), None)
        self._consumed.pop((instrument, outcome, Side.SELL), None)

    async def submit(
        self,
        instrument: str,
        side: Side,
        price: float,
        size: float,
        outcome: Outcome | None = None,
        client_order_id: str = "",
    ) -> OrderAck:
        if client_order_id and client_order_id in self._by_client_id:
            return self._orders[self._by_client_id[client_order_id]].ack()
        if size <= 0 or price <= 0:
            return OrderAck(order_id="", status=OrderStatus.REJECTED, message="non-positive price or size")
        order = _PaperOrder(new_id("paper"), instrument, side, price, size, outcome)
        self._orders[order.order_id] = order
        if client_order_id:
            self._by_client_id[client_order_id] = order.order_id
        self._match(order, maker=False)
        logger.debug("Paper %s %s %s %.2f@%.4f -> %s filled=%.2f",
                     self._venue, order.order_id, side.value, size, price, order.status.value, order.filled)
        return order.ack()

    async def cancel(self, order_id: str) -> OrderAck:
        order = self._orders.get(order_id)
        if order is None:
            return OrderAck(order_id=order_id, status=OrderStatus.REJECTED, message="unknown order")
        if order.status in (OrderStatus.OPEN, OrderStatus.PARTIAL):
            order.status = OrderStatus.CANCELLED
        return order.ack()

    async def get_order(self, order_id: str) -> OrderAck:
        order = self._orders.get(order_id)
        if order is None:
            return OrderAck(order_id=order_id, status=OrderStatus.REJECTED, message="unknown order")
        return order.ack()

    def _match(self, order: _PaperOrder, maker: bool) -> None:
        key = (order.instrument, order.outcome)
        book = self._books.get(key)
        if book is None:
            key = (order.instrument, None)
            book = self._books.get(key)
        if book is None:
            return
        if order.side is Side.BUY:
            level = book.ask
            crosses = level is not None and order.price >= level.price
        else:
            level = book.bid
            crosses = level is not None and order.price <= level.price
        if not crosses:
            return
        consumed_key = (key[0], key[1], order.side)
        available = level.size - self._consumed.get(consumed_key, 0.0)
        qty = min(order.remaining, available)
        if qty <= 0:
            return
        # Resting orders fill at their own limit, takers at the touch
        fill_price = order.price if maker else level.price
        self._consumed[consumed_key] = self._consumed.get(consumed_key, 0.0) + qty
        order.filled += qty
        order.notional += qty * fill_price
        order.fee += self._fee_model.fill_fee(self._venue, order.instrument, fill_price, qty, maker=maker)
        order.status = OrderStatus.FILLED if order.remaining <= 1e-9 else OrderStatus.PARTIAL

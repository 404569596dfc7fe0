"""
Order gateway protocol. The execution coordinator's only contract with a
venue's order-entry API.

One gateway serves one venue. Any client that satisfies this protocol can be
plugged into the coordinator with zero changes to executor code.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol, runtime_checkable

from scanner.models import Outcome, Side


class OrderStatus(str, Enum):
    OPEN = "OPEN"
    PARTIAL = "PARTIAL"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"


@dataclass(frozen=True)
class OrderAck:
    """Venue acknowledgment. filled_size/avg_price/fee are cumulative for the order."""
    order_id: str
    status: OrderStatus
    filled_size: float = 0.0
    avg_price: float = 0.0
    fee: float = 0.0
    message: str = ""

    @property
    def is_final(self) -> bool:
        return self.status in (OrderStatus.FILLED, OrderStatus.CANCELLED, OrderStatus.REJECTED)


class GatewayError(Exception):
    """Transient submission failure (network, rate limit). Safe to retry with the same client order id."""
    pass


@runtime_checkable
class OrderGateway(Protocol):
    """
    Minimal order-entry interface.

    submit() must be idempotent on client_order_id: resubmitting an id the
    venue already accepted returns the existing order's acknowledgment.
    """

    @property
    def venue(self) -> str:
        ...

    async def submit(
        self,
        instrument: str,
        side: Side,
        price: float,
        size: float,
        outcome: Outcome | None = None,
        client_order_id: str = "",
    ) -> OrderAck:
        """Place a limit order. Raises GatewayError on transient failure."""
        ...

    async def cancel(self, order_id: str) -> OrderAck:
        """Cancel an order. Returns its final state (fills up to the cancel)."""
        ...

    async def get_order(self, order_id: str) -> OrderAck:
        """Current state of an order."""
        ...

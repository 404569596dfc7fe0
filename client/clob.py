"""
CLOB order gateway. Thin async layer over py_clob_client converting SDK
responses to OrderAck. SDK calls are blocking and run in worker threads.
"""

from __future__ import annotations

import asyncio
import logging

from py_clob_client.client import ClobClient
from py_clob_client.clob_types import OrderArgs, OrderType, PartialCreateOrderOptions
from py_clob_client.order_builder.constants import BUY, SELL

from client.platform import GatewayError, OrderAck, OrderStatus
from executor.tick_size import quantize_price
from scanner.fees import FeeModel
from scanner.models import POLYMARKET, Market, Outcome, Side

logger = logging.getLogger(__name__)

# Patch py_clob_client's shared httpx client:
#   - Disable HTTP/2: the CLOB server sends GOAWAY frames that crash the shared
#     connection pool (httpcore.RemoteProtocolError: ConnectionTerminated)
#   - Add a 15s timeout (SDK default has none or too low)
import httpx as _httpx
from py_clob_client.http_helpers import helpers as _clob_helpers
_clob_helpers._http_client = _httpx.Client(http2=False, timeout=15.0)

_STATUS_MAP = {
    "live": OrderStatus.OPEN,
    "delayed": OrderStatus.OPEN,
    "unmatched": OrderStatus.OPEN,
    "matched": OrderStatus.FILLED,
    "canceled": OrderStatus.CANCELLED,
    "cancelled": OrderStatus.CANCELLED,
    "canceled_market_resolved": OrderStatus.CANCELLED,
}


def _is_connection_error(exc: Exception) -> bool:
    # Only connection-level errors (status_code=None) are transient, not 4xx/5xx
    err_str = str(exc)
    return "Request exception" in err_str or "status_code=None" in err_str


def order_ack_from_sdk(order_id: str, raw: dict, fee_rate: float = 0.0) -> OrderAck:
    """Convert a get_order() response dict to an OrderAck."""
    original = float(raw.get("original_size") or raw.get("size") or 0.0)
    matched = float(raw.get("size_matched") or 0.0)
    price = float(raw.get("price") or 0.0)
    status = _STATUS_MAP.get(str(raw.get("status", "")).lower(), OrderStatus.OPEN)
    if status is OrderStatus.OPEN and matched > 0:
        status = OrderStatus.FILLED if original and matched >= original - 1e-9 else OrderStatus.PARTIAL
    if status is OrderStatus.FILLED and original and matched < original - 1e-9:
        status = OrderStatus.PARTIAL
    return OrderAck(
        order_id=order_id,
        status=status,
        filled_size=matched,
        avg_price=price if matched > 0 else 0.0,
        fee=fee_rate * price * matched,
    )


class ClobGateway:
    """
    Polymarket CLOB gateway. Signs GTC limit orders quantized to each
    market's tick size. Idempotent on client order id.
    """

    venue = POLYMARKET

    def __init__(self, client: ClobClient, markets: dict[str, Market], fee_model: FeeModel) -> None:
        self._client = client
        self._markets = dict(markets)
        self._fee_model = fee_model
        self._by_client_id: dict[str, str] = {}
        self._fee_rates: dict[str, float] = {}

    def _token(self, instrument: str, outcome: Outcome | None) -> tuple[str, str]:
        market = self._markets.get(instrument)
        if market is None:
            raise ValueError(f"Unknown market {instrument}")
        token = market.no_token_id if outcome is Outcome.NO else market.yes_token_id
        return token, market.min_tick_size

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
            # Already accepted on an earlier attempt
            return await self.get_order(self._by_client_id[client_order_id])

        token_id, tick_size = self._token(instrument, outcome)
        limit = quantize_price(price, float(tick_size), side=side)
        args = OrderArgs(
            token_id=token_id,
            price=limit,
            size=round(size, 2),
            side=BUY if side is Side.BUY else SELL,
        )
        options = PartialCreateOrderOptions(tick_size=tick_size)
        try:
            signed = await asyncio.to_thread(self._client.create_order, args, options)
            resp = await asyncio.to_thread(self._client.post_order, signed, OrderType.GTC)
        except Exception as exc:
            if _is_connection_error(exc):
                raise GatewayError(str(exc)) from exc
            logger.warning("CLOB rejected %s %s %.2f@%.4f: %s", side.value, token_id, size, limit, exc)
            return OrderAck(order_id="", status=OrderStatus.REJECTED, message=str(exc))

        if not resp or not resp.get("success", False):
            msg = (resp or {}).get("errorMsg", "no response")
            return OrderAck(order_id="", status=OrderStatus.REJECTED, message=msg)

        order_id = resp.get("orderID", "")
        if client_order_id:
            self._by_client_id[client_order_id] = order_id
        rate = self._fee_model.taker_rate(POLYMARKET, instrument, limit)
        self._fee_rates[order_id] = rate
        logger.info("CLOB order %s: %s %.2f %s@%.4f (%s)",
                    order_id, side.value, size, outcome.value if outcome else "", limit, resp.get("status"))
        return await self.get_order(order_id)

    async def cancel(self, order_id: str) -> OrderAck:
        try:
            await asyncio.to_thread(self._client.cancel, order_id)
        except Exception as exc:
            if _is_connection_error(exc):
                raise GatewayError(str(exc)) from exc
            logger.warning("CLOB cancel %s failed: %s", order_id, exc)
        return await self.get_order(order_id)

    async def get_order(self, order_id: str) -> OrderAck:
        try:
            raw = await asyncio.to_thread(self._client.get_order, order_id)
        except Exception as exc:
            raise GatewayError(f"get_order {order_id}: {exc}") from exc
        return order_ack_from_sdk(order_id, raw or {}, self._fee_rates.get(order_id, 0.0))

"""
Tests for client/clob.py -- SDK responses mapped to order acknowledgments.
"""

from unittest.mock import MagicMock

import pytest

from client.clob import ClobGateway, order_ack_from_sdk
from client.platform import GatewayError, OrderStatus
from scanner.fees import FeeModel
from scanner.models import Market, Outcome, Side

MARKET = Market(market_id="m1", question="Q?", yes_token_id="yes1", no_token_id="no1")
FEES = FeeModel(venue_rates={"polymarket": (0.01, 0.0)})


def _gateway(client: MagicMock) -> ClobGateway:
    return ClobGateway(client, {"m1": MARKET}, FEES)


class TestOrderAckFromSdk:
    def test_live_unmatched(self):
        ack = order_ack_from_sdk("o1", {"status": "LIVE", "original_size": "10", "size_matched": "0", "price": "0.45"})
        assert ack.status is OrderStatus.OPEN
        assert ack.avg_price == 0.0

    def test_live_partially_matched(self):
        ack = order_ack_from_sdk("o1", {"status": "LIVE", "original_size": "10", "size_matched": "4", "price": "0.45"})
        assert ack.status is OrderStatus.PARTIAL
        assert ack.filled_size == 4.0

    def test_matched(self):
        ack = order_ack_from_sdk("o1", {"status": "MATCHED", "original_size": "10", "size_matched": "10",
                                        "price": "0.45"}, fee_rate=0.01)
        assert ack.status is OrderStatus.FILLED
        assert ack.fee == pytest.approx(0.045)

    def test_cancelled(self):
        ack = order_ack_from_sdk("o1", {"status": "CANCELED", "original_size": "10", "size_matched": "0"})
        assert ack.status is OrderStatus.CANCELLED


class TestClobGateway:
    @pytest.mark.asyncio
    async def test_submit_quantizes_and_polls(self):
        client = MagicMock()
        client.post_order.return_value = {"success": True, "orderID": "o1", "status": "matched"}
        client.get_order.return_value = {"status": "MATCHED", "original_size": "10", "size_matched": "10",
                                         "price": "0.45"}
        ack = await _gateway(client).submit("m1", Side.BUY, 0.457, 10, outcome=Outcome.NO, client_order_id="c1")
        args = client.create_order.call_args.args[0]
        assert args.token_id == "no1"
        assert args.price == 0.45
        assert ack.status is OrderStatus.FILLED

    @pytest.mark.asyncio
    async def test_submit_idempotent(self):
        client = MagicMock()
        client.post_order.return_value = {"success": True, "orderID": "o1"}
        client.get_order.return_value = {"status": "LIVE", "original_size": "10", "size_matched": "0"}
        gw = _gateway(client)
        await gw.submit("m1", Side.BUY, 0.45, 10, outcome=Outcome.YES, client_order_id="c1")
        await gw.submit("m1", Side.BUY, 0.45, 10, outcome=Outcome.YES, client_order_id="c1")
        assert client.post_order.call_count == 1

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self):
        client = MagicMock()
        client.create_order.side_effect = Exception("PolyApiException[status_code=None, Request exception!]")
        with pytest.raises(GatewayError):
            await _gateway(client).submit("m1", Side.BUY, 0.45, 10, outcome=Outcome.YES)

    @pytest.mark.asyncio
    async def test_api_error_is_rejection(self):
        client = MagicMock()
        client.create_order.side_effect = Exception("PolyApiException[status_code=400, not enough balance]")
        ack = await _gateway(client).submit("m1", Side.BUY, 0.45, 10, outcome=Outcome.YES)
        assert ack.status is OrderStatus.REJECTED

    @pytest.mark.asyncio
    async def test_unsuccessful_response_rejected(self):
        client = MagicMock()
        client.post_order.return_value = {"success": False, "errorMsg": "invalid tick"}
        ack = await _gateway(client).submit("m1", Side.BUY, 0.45, 10, outcome=Outcome.YES)
        assert ack.status is OrderStatus.REJECTED
        assert ack.message == "invalid tick"

"""
Tests for client/spot.py -- REST spot pollers with mocked HTTP.
"""

import asyncio

import httpx
import pytest
import respx

from client.spot import BinancePoller, CoinbasePoller, _SpotPoller, spot_instrument
from feed.ingest import MarketDataIngest
from scanner.models import Tick

BINANCE_HOST = "https://api.binance.com"
COINBASE_HOST = "https://api.exchange.coinbase.com"


def _ticks(q: asyncio.Queue) -> list[Tick]:
    out = []
    while not q.empty():
        item = q.get_nowait()
        if isinstance(item, Tick):
            out.append(item)
    return out


class TestSpotInstrument:
    def test_canonical(self):
        assert spot_instrument("btc") == "BTC-USD"


class TestSpotPollerBase:
    def test_base_is_abstract(self):
        with pytest.raises(TypeError):
            _SpotPoller(httpx.AsyncClient(), BINANCE_HOST, MarketDataIngest(asyncio.Queue()))


class TestBinancePoller:
    @respx.mock
    @pytest.mark.asyncio
    async def test_poll_once(self):
        respx.get(f"{BINANCE_HOST}/api/v3/ticker/bookTicker").mock(
            return_value=httpx.Response(200, json=[
                {"symbol": "BTCUSDT", "bidPrice": "67000", "bidQty": "1", "askPrice": "67001", "askQty": "2"},
                {"symbol": "ETHUSDT", "bidPrice": "3500", "bidQty": "5", "askPrice": "3500.5", "askQty": "4"},
            ])
        )
        q: asyncio.Queue = asyncio.Queue(maxsize=100)
        ingest = MarketDataIngest(q)
        async with httpx.AsyncClient() as client:
            poller = BinancePoller(client, BINANCE_HOST, ingest, ["BTC", "ETH"])
            poller._reset(ingest.on_connect("binance"))
            assert await poller.poll_once() == 2
        ticks = _ticks(q)
        assert {t.instrument for t in ticks} == {"BTC-USD", "ETH-USD"}

    @respx.mock
    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        respx.get(f"{BINANCE_HOST}/api/v3/ticker/bookTicker").mock(return_value=httpx.Response(503))
        q: asyncio.Queue = asyncio.Queue(maxsize=100)
        async with httpx.AsyncClient() as client:
            poller = BinancePoller(client, BINANCE_HOST, MarketDataIngest(q), ["BTC"])
            with pytest.raises(httpx.HTTPStatusError):
                await poller.poll_once()


class TestCoinbasePoller:
    @respx.mock
    @pytest.mark.asyncio
    async def test_poll_once(self):
        respx.get(f"{COINBASE_HOST}/products/BTC-USD/book").mock(
            return_value=httpx.Response(200, json={
                "bids": [["66990.0", "0.5", 1]], "asks": [["67010.0", "0.4", 1]], "sequence": 77,
            })
        )
        q: asyncio.Queue = asyncio.Queue(maxsize=100)
        ingest = MarketDataIngest(q)
        async with httpx.AsyncClient() as client:
            poller = CoinbasePoller(client, COINBASE_HOST, ingest, ["BTC"])
            poller._reset(ingest.on_connect("coinbase"))
            assert await poller.poll_once() == 1
        assert _ticks(q)[0].sequence == 77

    @respx.mock
    @pytest.mark.asyncio
    async def test_run_degrades_after_repeated_failures(self):
        respx.get(f"{COINBASE_HOST}/products/BTC-USD/book").mock(return_value=httpx.Response(500))
        q: asyncio.Queue = asyncio.Queue(maxsize=100)
        ingest = MarketDataIngest(q, failures_before_degraded=2)
        async with httpx.AsyncClient() as client:
            poller = CoinbasePoller(client, COINBASE_HOST, ingest, ["BTC"], interval=0.001, backoff_max=0.001)
            task = asyncio.create_task(poller.run())
            for _ in range(200):
                if ingest.is_degraded("coinbase"):
                    break
                await asyncio.sleep(0.005)
            await poller.stop()
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        assert ingest.is_degraded("coinbase")

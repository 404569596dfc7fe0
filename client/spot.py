"""
Reference spot price pollers for Binance and Coinbase. Pure REST via httpx.

Each poller runs as its own ingest task. Poll errors are reported to the hub,
which degrades the venue after repeated failures; the poller keeps trying
with capped backoff and starts a new epoch once it recovers.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod

import httpx

from feed.ingest import MarketDataIngest
from feed.normalize import BinanceNormalizer, CoinbaseNormalizer
from scanner.models import BINANCE, COINBASE

logger = logging.getLogger(__name__)

_TIMEOUT = 5.0


def spot_instrument(symbol: str) -> str:
    """Canonical instrument id shared across spot venues: BTC -> BTC-USD."""
    return f"{symbol.upper()}-USD"


class _SpotPoller(ABC):
    venue = ""

    def __init__(
        self,
        client: httpx.AsyncClient,
        host: str,
        sink: MarketDataIngest,
        interval: float = 1.0,
        backoff_max: float = 30.0,
    ) -> None:
        self.client = client
        self.host = host.rstrip("/")
        self.sink = sink
        self.interval = interval
        self.backoff_max = backoff_max
        self._connected = False
        self._running = False

    async def run(self) -> None:
        self._running = True
        failures = 0
        while self._running:
            try:
                if not self._connected:
                    self._reset(self.sink.on_connect(self.venue))
                    self._connected = True
                await self.poll_once()
                failures = 0
                await asyncio.sleep(self.interval)
            except (httpx.HTTPError, json.JSONDecodeError) as e:
                failures += 1
                if self.sink.on_failure(self.venue, f"poll failed: {e}"):
                    # Resync with a fresh epoch on recovery
                    self._connected = False
                backoff = min(self.interval * (2 ** (failures - 1)), self.backoff_max)
                logger.warning("%s poll failed (%d in a row), backoff %.1fs: %s",
                               self.venue, failures, backoff, e)
                await asyncio.sleep(backoff)

    async def stop(self) -> None:
        self._running = False

    @abstractmethod
    def _reset(self, epoch: int) -> None:
        """Drop per-connection state and adopt the new epoch."""

    @abstractmethod
    async def poll_once(self) -> int:
        """Fetch every symbol once and publish the ticks. Returns the number accepted."""


class BinancePoller(_SpotPoller):
    """GET /api/v3/ticker/bookTicker for all configured symbols in one request."""

    venue = BINANCE

    def __init__(self, client, host, sink, symbols: list[str], quote: str = "USDT", **kwargs) -> None:
        super().__init__(client, host, sink, **kwargs)
        symbol_map = {f"{s.upper()}{quote}": spot_instrument(s) for s in symbols}
        self.normalizer = BinanceNormalizer(symbol_map)
        self._symbols = list(symbol_map)

    def _reset(self, epoch: int) -> None:
        self.normalizer.reset(epoch)

    async def poll_once(self) -> int:
        resp = await self.client.get(
            f"{self.host}/api/v3/ticker/bookTicker",
            params={"symbols": json.dumps(self._symbols, separators=(",", ":"))},
            timeout=_TIMEOUT,
        )
        resp.raise_for_status()
        ticks = self.normalizer.normalize(resp.json())
        return self.sink.on_ticks(self.venue, ticks)


class CoinbasePoller(_SpotPoller):
    """GET /products/{id}/book?level=1 per product; the response carries a sequence."""

    venue = COINBASE

    def __init__(self, client, host, sink, symbols: list[str], **kwargs) -> None:
        super().__init__(client, host, sink, **kwargs)
        self.normalizer = CoinbaseNormalizer()
        self._products = [spot_instrument(s) for s in symbols]

    def _reset(self, epoch: int) -> None:
        self.normalizer.reset(epoch)

    async def poll_once(self) -> int:
        accepted = 0
        for product_id in self._products:
            resp = await self.client.get(
                f"{self.host}/products/{product_id}/book",
                params={"level": 1},
                timeout=_TIMEOUT,
            )
            resp.raise_for_status()
            ticks = self.normalizer.normalize(product_id, resp.json())
            accepted += self.sink.on_ticks(self.venue, ticks)
        return accepted

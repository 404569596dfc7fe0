"""
Polymarket market-channel WebSocket feed. Never raises on connection loss:
reports the failure to the ingest hub and reconnects with capped exponential
backoff.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time

import websockets
from websockets.asyncio.client import connect

from feed.ingest import MarketDataIngest
from feed.normalize import PolymarketNormalizer
from scanner.models import POLYMARKET

logger = logging.getLogger(__name__)

BACKOFF_BASE = 1.0  # seconds
BACKOFF_MAX = 30.0
PING_INTERVAL = 10.0


class PolymarketFeed:
    """
    Subscribes to book events for every token known to the normalizer.
    Each (re)connect starts a new epoch: the normalizer drops its books and
    waits for fresh snapshots before emitting ticks again.
    """

    venue = POLYMARKET

    def __init__(
        self,
        url: str,
        normalizer: PolymarketNormalizer,
        sink: MarketDataIngest,
        backoff_base: float = BACKOFF_BASE,
        backoff_max: float = BACKOFF_MAX,
    ) -> None:
        self.url = url
        self.normalizer = normalizer
        self.sink = sink
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._running = False
        self._ws = None
        self._last_message_time = 0.0

    async def run(self) -> None:
        """Connect and listen until cancelled, with exponential backoff on failures."""
        self._running = True
        retries = 0
        while self._running:
            try:
                async with connect(self.url) as ws:
                    self._ws = ws
                    retries = 0  # reset on successful connection
                    epoch = self.sink.on_connect(self.venue)
                    self.normalizer.reset(epoch)
                    logger.info("WebSocket connected to %s (epoch %d)", self.url, epoch)

                    await ws.send(json.dumps({
                        "assets_ids": self.normalizer.token_ids,
                        "type": "market",
                    }))
                    pinger = asyncio.create_task(self._ping(ws))
                    try:
                        async for raw_msg in ws:
                            if not self._running:
                                break
                            self._handle_message(raw_msg)
                    finally:
                        pinger.cancel()
                # Server closed the stream cleanly: still a disconnect
                if self._running:
                    raise ConnectionError("stream ended")

            except (websockets.WebSocketException, OSError) as e:
                self._ws = None
                retries += 1
                self.sink.on_failure(self.venue, f"disconnected: {e}", disconnected=True)
                backoff = min(self.backoff_base * (2 ** (retries - 1)), self.backoff_max)
                logger.warning(
                    "WebSocket disconnected (attempt %d), backoff %.1fs: %s",
                    retries, backoff, e,
                )
                await asyncio.sleep(backoff)

    async def stop(self) -> None:
        self._running = False
        if self._ws:
            await self._ws.close()

    async def _ping(self, ws) -> None:
        # Application-level keepalive; the server answers "PONG"
        while True:
            await asyncio.sleep(PING_INTERVAL)
            await ws.send("PING")

    def _handle_message(self, raw_msg: str | bytes) -> None:
        """Parse a WebSocket message and hand the resulting ticks to the hub."""
        self._last_message_time = time.time()
        if raw_msg in ("PONG", b"PONG"):
            return
        try:
            data = json.loads(raw_msg)
        except json.JSONDecodeError:
            logger.warning("Unparseable WebSocket message: %s", str(raw_msg)[:200])
            return
        ticks = self.normalizer.normalize(data, received_at=self._last_message_time)
        self.sink.on_ticks(self.venue, ticks)

"""
Venue normalizers: raw feed messages in, Tick records out.

Polymarket keeps a full per-token book fed by 'book' snapshots and
'price_change' deltas, and merges a market's YES and NO tokens into one tick.
Binance and Coinbase return top-of-book directly from REST.

Every price and size passes through scanner.validation. A normalizer never
raises on bad venue data: the offending update is logged and dropped.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any

from scanner.models import (
    BINANCE,
    COINBASE,
    POLYMARKET,
    BookTop,
    InstrumentKind,
    Outcome,
    PriceLevel,
    Tick,
)
from scanner.validation import validate_probability, validate_size, validate_spot_price

logger = logging.getLogger(__name__)


def _parse_ts(raw: Any) -> float | None:
    """Venue timestamp (epoch ms/s as number or string, or ISO-8601) -> epoch seconds."""
    if raw in (None, ""):
        return None
    if isinstance(raw, str):
        try:
            raw = float(raw)
        except ValueError:
            try:
                return datetime.fromisoformat(raw.replace("Z", "+00:00")).timestamp()
            except ValueError:
                return None
    value = float(raw)
    # Heuristic: values past year ~2286 in seconds are milliseconds
    return value / 1000.0 if value > 1e10 else value


def _apply_level_update(levels: dict[float, float], price: float, size: float) -> None:
    """Replace the level at price, add a new one, or remove it when size is 0."""
    if size > 0:
        levels[price] = size
    else:
        levels.pop(price, None)


class _TokenBook:
    __slots__ = ("bids", "asks", "server_ts", "last_hash")

    def __init__(self) -> None:
        self.bids: dict[float, float] = {}
        self.asks: dict[float, float] = {}
        self.server_ts: float = 0.0
        self.last_hash: str = ""

    def top(self) -> BookTop:
        bid = max(self.bids) if self.bids else None
        ask = min(self.asks) if self.asks else None
        return BookTop(
            bid=PriceLevel(bid, self.bids[bid]) if bid is not None else None,
            ask=PriceLevel(ask, self.asks[ask]) if ask is not None else None,
        )


class PolymarketNormalizer:
    """
    Normalizes Polymarket market-channel events.

    markets: {market_id: (yes_token_id, no_token_id)}.
    """

    venue = POLYMARKET

    def __init__(self, markets: dict[str, tuple[str, str]], epoch: int = 0) -> None:
        self._markets = dict(markets)
        self._token_index: dict[str, tuple[str, Outcome]] = {}
        for market_id, (yes_token, no_token) in self._markets.items():
            self._token_index[yes_token] = (market_id, Outcome.YES)
            self._token_index[no_token] = (market_id, Outcome.NO)
        self._books: dict[str, _TokenBook] = {}
        self._seq: dict[str, int] = {}
        self.epoch = epoch
        self.dropped = 0

    @property
    def token_ids(self) -> list[str]:
        return list(self._token_index)

    def reset(self, epoch: int) -> None:
        """
        Forget all books. Each market re-emits only after fresh snapshots
        for both of its tokens. Sequence counters continue across epochs.
        """
        self._books.clear()
        self.epoch = epoch

    def normalize(self, payload: Any, received_at: float | None = None) -> list[Tick]:
        """Apply one decoded WS payload (an event or a list of events)."""
        now = received_at if received_at is not None else time.time()
        events = payload if isinstance(payload, list) else [payload]
        touched: dict[str, float] = {}
        for event in events:
            if not isinstance(event, dict):
                continue
            try:
                self._apply_event(event, now, touched)
            except (KeyError, TypeError, ValueError) as e:
                self.dropped += 1
                logger.warning("Bad %s event dropped: %s", event.get("event_type", "?"), e)
        ticks = []
        for market_id, server_ts in touched.items():
            tick = self._emit(market_id, server_ts, now)
            if tick is not None:
                ticks.append(tick)
        return ticks

    def _apply_event(self, event: dict, now: float, touched: dict[str, float]) -> None:
        event_type = event.get("event_type", "")
        server_ts = _parse_ts(event.get("timestamp")) or now

        if event_type == "book":
            token_id = event["asset_id"]
            if token_id not in self._token_index:
                return
            book = _TokenBook()
            prev = self._books.get(token_id)
            if prev is not None and not self._accept(prev, server_ts, event.get("hash", "")):
                return
            for level in event.get("bids", []):
                self._set_level(book.bids, level, token_id, "bid")
            for level in event.get("asks", []):
                self._set_level(book.asks, level, token_id, "ask")
            book.server_ts = server_ts
            book.last_hash = event.get("hash", "")
            self._books[token_id] = book
            self._mark(token_id, server_ts, touched)

        elif event_type == "price_change":
            if "price_changes" in event:
                # Current format: each change carries its own asset_id and hash
                for change in event["price_changes"]:
                    token_id = change["asset_id"]
                    book = self._books.get(token_id)
                    # Deltas before a snapshot cannot be applied
                    if book is None or not self._accept(book, server_ts, change.get("hash", "")):
                        continue
                    if self._apply_change(book, change, token_id):
                        book.server_ts = server_ts
                        book.last_hash = change.get("hash", "")
                        self._mark(token_id, server_ts, touched)
            else:
                # Legacy format: one asset_id and hash for a list of changes
                token_id = event["asset_id"]
                book = self._books.get(token_id)
                if book is None or not self._accept(book, server_ts, event.get("hash", "")):
                    return
                applied = [self._apply_change(book, c, token_id) for c in event.get("changes", [])]
                if any(applied):
                    book.server_ts = server_ts
                    book.last_hash = event.get("hash", "")
                    self._mark(token_id, server_ts, touched)

    def _apply_change(self, book: _TokenBook, change: dict, token_id: str) -> bool:
        side = str(change.get("side", "")).upper()
        price = validate_probability(float(change["price"]), context=f"delta price ({token_id})")
        size = validate_size(float(change.get("size", 0)), context=f"delta size ({token_id})")
        if side == "BUY":
            _apply_level_update(book.bids, price, size)
        elif side == "SELL":
            _apply_level_update(book.asks, price, size)
        else:
            logger.warning("Unknown side in price_change: %s", side)
            return False
        return True

    def _accept(self, book: _TokenBook, server_ts: float, msg_hash: str) -> bool:
        if server_ts < book.server_ts:
            self.dropped += 1
            return False
        if msg_hash and msg_hash == book.last_hash:
            self.dropped += 1
            return False
        return True

    def _set_level(self, levels: dict[float, float], raw: dict, token_id: str, label: str) -> None:
        price = validate_probability(float(raw["price"]), context=f"snapshot {label} ({token_id})")
        size = validate_size(float(raw.get("size", 0)), context=f"snapshot {label} size ({token_id})")
        _apply_level_update(levels, price, size)

    def _mark(self, token_id: str, server_ts: float, touched: dict[str, float]) -> None:
        market_id = self._token_index[token_id][0]
        touched[market_id] = max(server_ts, touched.get(market_id, 0.0))

    def _emit(self, market_id: str, server_ts: float, now: float) -> Tick | None:
        yes_token, no_token = self._markets[market_id]
        yes_book = self._books.get(yes_token)
        no_book = self._books.get(no_token)
        if yes_book is None or no_book is None:
            return None
        seq = self._seq.get(market_id, 0) + 1
        self._seq[market_id] = seq
        return Tick(
            venue=POLYMARKET,
            instrument=market_id,
            kind=InstrumentKind.BINARY,
            yes=yes_book.top(),
            no=no_book.top(),
            server_ts=server_ts,
            sequence=seq,
            received_at=now,
            epoch=self.epoch,
        )


def _spot_level(price: Any, size: Any, context: str) -> PriceLevel | None:
    p = validate_spot_price(float(price), context=context)
    s = validate_size(float(size), context=f"{context} size")
    return PriceLevel(p, s) if s > 0 else None


class BinanceNormalizer:
    """
    Binance bookTicker (REST or stream). Uses the update id `u` as sequence
    when present, otherwise a local counter per symbol.
    """

    venue = BINANCE

    def __init__(self, symbol_map: dict[str, str], epoch: int = 0) -> None:
        # {"BTCUSDT": "BTC-USD"}
        self._symbol_map = dict(symbol_map)
        self._counters: dict[str, int] = {}
        self.epoch = epoch

    def reset(self, epoch: int) -> None:
        self.epoch = epoch

    def normalize(self, payload: Any, received_at: float | None = None) -> list[Tick]:
        now = received_at if received_at is not None else time.time()
        items = payload if isinstance(payload, list) else [payload]
        ticks = []
        for item in items:
            symbol = item.get("symbol") or item.get("s")
            instrument = self._symbol_map.get(symbol or "")
            if instrument is None:
                continue
            try:
                bid = _spot_level(item.get("bidPrice", item.get("b")), item.get("bidQty", item.get("B")),
                                  f"binance bid ({symbol})")
                ask = _spot_level(item.get("askPrice", item.get("a")), item.get("askQty", item.get("A")),
                                  f"binance ask ({symbol})")
            except (TypeError, ValueError) as e:
                logger.warning("Bad Binance bookTicker for %s: %s", symbol, e)
                continue
            if "u" in item:
                seq = int(item["u"])
            else:
                seq = self._counters.get(instrument, 0) + 1
                self._counters[instrument] = seq
            ticks.append(Tick(
                venue=BINANCE,
                instrument=instrument,
                kind=InstrumentKind.SPOT,
                yes=BookTop(bid=bid, ask=ask),
                server_ts=_parse_ts(item.get("E") or item.get("time")) or now,
                sequence=seq,
                received_at=now,
                epoch=self.epoch,
            ))
        return ticks


class CoinbaseNormalizer:
    """Coinbase Exchange level-1 book: {"bids": [[price, size, n]], "asks": [...], "sequence": n}."""

    venue = COINBASE

    def __init__(self, epoch: int = 0) -> None:
        self._counters: dict[str, int] = {}
        self.epoch = epoch

    def reset(self, epoch: int) -> None:
        self.epoch = epoch

    def normalize(self, product_id: str, payload: dict, received_at: float | None = None) -> list[Tick]:
        now = received_at if received_at is not None else time.time()
        try:
            bids = payload.get("bids") or []
            asks = payload.get("asks") or []
            bid = _spot_level(bids[0][0], bids[0][1], f"coinbase bid ({product_id})") if bids else None
            ask = _spot_level(asks[0][0], asks[0][1], f"coinbase ask ({product_id})") if asks else None
        except (IndexError, TypeError, ValueError) as e:
            logger.warning("Bad Coinbase book for %s: %s", product_id, e)
            return []
        if "sequence" in payload:
            seq = int(payload["sequence"])
        else:
            seq = self._counters.get(product_id, 0) + 1
            self._counters[product_id] = seq
        return [Tick(
            venue=COINBASE,
            instrument=product_id,
            kind=InstrumentKind.SPOT,
            yes=BookTop(bid=bid, ask=ask),
            server_ts=_parse_ts(payload.get("time")) or now,
            sequence=seq,
            received_at=now,
            epoch=self.epoch,
        )]

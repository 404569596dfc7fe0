"""
Unit tests for feed/normalize.py -- raw venue payloads to ticks.
"""

from feed.normalize import BinanceNormalizer, CoinbaseNormalizer, PolymarketNormalizer
from scanner.models import InstrumentKind


def _book(token: str, bids, asks, ts: int = 1_700_000_000_000, h: str = "") -> dict:
    return {
        "event_type": "book",
        "asset_id": token,
        "timestamp": str(ts),
        "hash": h,
        "bids": [{"price": str(p), "size": str(s)} for p, s in bids],
        "asks": [{"price": str(p), "size": str(s)} for p, s in asks],
    }


def _normalizer() -> PolymarketNormalizer:
    return PolymarketNormalizer({"m1": ("yes1", "no1")})


class TestPolymarketSnapshots:
    def test_waits_for_both_tokens(self):
        n = _normalizer()
        assert n.normalize(_book("yes1", [(0.45, 100)], [(0.47, 50)])) == []
        ticks = n.normalize(_book("no1", [(0.50, 80)], [(0.52, 40)]))
        assert len(ticks) == 1
        tick = ticks[0]
        assert tick.instrument == "m1"
        assert tick.kind is InstrumentKind.BINARY
        assert tick.yes.ask.price == 0.47
        assert tick.no.ask.price == 0.52
        assert tick.server_ts == 1_700_000_000.0

    def test_batched_events_emit_one_tick(self):
        n = _normalizer()
        ticks = n.normalize([
            _book("yes1", [(0.45, 100)], [(0.47, 50)]),
            _book("no1", [(0.50, 80)], [(0.52, 40)]),
        ])
        assert len(ticks) == 1
        assert ticks[0].sequence == 1

    def test_best_levels_selected(self):
        n = _normalizer()
        ticks = n.normalize([
            _book("yes1", [(0.40, 10), (0.45, 100)], [(0.49, 5), (0.47, 50)]),
            _book("no1", [(0.50, 80)], [(0.52, 40)]),
        ])
        assert ticks[0].yes.bid.price == 0.45
        assert ticks[0].yes.ask.price == 0.47

    def test_unknown_token_ignored(self):
        assert _normalizer().normalize(_book("other", [(0.4, 1)], [(0.5, 1)])) == []

    def test_sequence_increases(self):
        n = _normalizer()
        n.normalize(_book("yes1", [(0.45, 100)], [(0.47, 50)]))
        first = n.normalize(_book("no1", [(0.50, 80)], [(0.52, 40)], ts=1_700_000_000_001))[0]
        second = n.normalize(_book("no1", [(0.50, 80)], [(0.51, 40)], ts=1_700_000_000_002))[0]
        assert second.sequence == first.sequence + 1


class TestPolymarketDeltas:
    def _ready(self) -> PolymarketNormalizer:
        n = _normalizer()
        n.normalize([
            _book("yes1", [(0.45, 100)], [(0.47, 50)], h="a"),
            _book("no1", [(0.50, 80)], [(0.52, 40)], h="b"),
        ])
        return n

    def test_price_change_updates_level(self):
        n = self._ready()
        ticks = n.normalize({
            "event_type": "price_change",
            "timestamp": "1700000000500",
            "price_changes": [{"asset_id": "yes1", "price": "0.46", "size": "20", "side": "SELL", "hash": "c"}],
        })
        assert ticks[0].yes.ask.price == 0.46

    def test_zero_size_removes_level(self):
        n = self._ready()
        ticks = n.normalize({
            "event_type": "price_change",
            "timestamp": "1700000000500",
            "price_changes": [{"asset_id": "yes1", "price": "0.47", "size": "0", "side": "SELL", "hash": "c"}],
        })
        assert ticks[0].yes.ask is None

    def test_delta_before_snapshot_dropped(self):
        n = _normalizer()
        ticks = n.normalize({
            "event_type": "price_change",
            "timestamp": "1700000000500",
            "price_changes": [{"asset_id": "yes1", "price": "0.46", "size": "20", "side": "SELL"}],
        })
        assert ticks == []

    def test_older_timestamp_dropped(self):
        n = self._ready()
        ticks = n.normalize({
            "event_type": "price_change",
            "timestamp": "1699999999000",
            "price_changes": [{"asset_id": "yes1", "price": "0.46", "size": "20", "side": "SELL", "hash": "c"}],
        })
        assert ticks == []
        assert n.dropped == 1

    def test_duplicate_hash_dropped(self):
        n = self._ready()
        ticks = n.normalize({
            "event_type": "price_change",
            "timestamp": "1700000000500",
            "price_changes": [{"asset_id": "yes1", "price": "0.46", "size": "20", "side": "SELL", "hash": "a"}],
        })
        assert ticks == []

    def test_invalid_price_dropped_not_raised(self):
        n = self._ready()
        ticks = n.normalize({
            "event_type": "price_change",
            "timestamp": "1700000000500",
            "price_changes": [{"asset_id": "yes1", "price": "1.7", "size": "20", "side": "SELL", "hash": "c"}],
        })
        assert ticks == []
        assert n.dropped == 1

    def test_reset_requires_fresh_snapshots(self):
        n = self._ready()
        n.reset(epoch=2)
        assert n.normalize(_book("yes1", [(0.45, 100)], [(0.47, 50)])) == []
        ticks = n.normalize(_book("no1", [(0.50, 80)], [(0.52, 40)]))
        assert ticks[0].epoch == 2


class TestBinance:
    def test_book_ticker(self):
        n = BinanceNormalizer({"BTCUSDT": "BTC-USD"})
        ticks = n.normalize({"symbol": "BTCUSDT", "bidPrice": "67000.10", "bidQty": "1.5",
                             "askPrice": "67000.20", "askQty": "2.0"}, received_at=10.0)
        assert len(ticks) == 1
        assert ticks[0].instrument == "BTC-USD"
        assert ticks[0].kind is InstrumentKind.SPOT
        assert ticks[0].yes.bid.price == 67000.10
        assert ticks[0].no is None

    def test_update_id_used_as_sequence(self):
        n = BinanceNormalizer({"BTCUSDT": "BTC-USD"})
        ticks = n.normalize({"s": "BTCUSDT", "b": "1", "B": "1", "a": "2", "A": "1", "u": 4242})
        assert ticks[0].sequence == 4242

    def test_unknown_symbol_skipped(self):
        n = BinanceNormalizer({"BTCUSDT": "BTC-USD"})
        assert n.normalize([{"symbol": "DOGEUSDT", "bidPrice": "1", "bidQty": "1",
                             "askPrice": "1", "askQty": "1"}]) == []

    def test_bad_price_skipped(self):
        n = BinanceNormalizer({"BTCUSDT": "BTC-USD"})
        assert n.normalize({"symbol": "BTCUSDT", "bidPrice": "-5", "bidQty": "1",
                            "askPrice": "1", "askQty": "1"}) == []


class TestCoinbase:
    def test_level_one_book(self):
        n = CoinbaseNormalizer()
        ticks = n.normalize("BTC-USD", {
            "bids": [["66990.00", "0.5", 3]],
            "asks": [["67010.00", "0.7", 2]],
            "sequence": 991,
        })
        assert ticks[0].sequence == 991
        assert ticks[0].yes.spread == 20.0

    def test_empty_side_allowed(self):
        ticks = CoinbaseNormalizer().normalize("BTC-USD", {"bids": [], "asks": [["1", "1", 1]]})
        assert ticks[0].yes.bid is None
        assert ticks[0].sequence == 1

    def test_malformed_returns_empty(self):
        assert CoinbaseNormalizer().normalize("BTC-USD", {"bids": [["x"]]}) == []

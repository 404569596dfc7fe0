"""
Unit tests for feed/health.py -- venue health and staleness guard.
"""

import pytest

from feed.health import FeedDegraded, VenueHealth
from scanner.models import VenueState, VenueStatus


def _status(state: VenueState, epoch: int = 0, venue: str = "binance") -> VenueStatus:
    return VenueStatus(venue=venue, state=state, epoch=epoch, reason="test", timestamp=0.0)


class TestVenueHealth:
    def test_unknown_venue_is_connected(self):
        assert VenueHealth().state("binance") is VenueState.CONNECTED

    def test_apply_degraded(self):
        h = VenueHealth()
        assert h.apply(_status(VenueState.DEGRADED)) is True
        assert h.is_degraded("binance")
        assert h.degraded_venues() == ["binance"]

    def test_apply_same_state_reports_no_change(self):
        h = VenueHealth()
        h.apply(_status(VenueState.DEGRADED))
        assert h.apply(_status(VenueState.DEGRADED)) is False

    def test_older_epoch_ignored(self):
        h = VenueHealth()
        h.apply(_status(VenueState.CONNECTED, epoch=2))
        assert h.apply(_status(VenueState.DEGRADED, epoch=1)) is False
        assert not h.is_degraded("binance")

    def test_recovery(self):
        h = VenueHealth()
        h.apply(_status(VenueState.DEGRADED, epoch=1))
        h.apply(_status(VenueState.CONNECTED, epoch=2))
        assert h.degraded_venues() == []


class TestRequireHealthy:
    def test_fresh_quote_passes(self):
        h = VenueHealth(stale_after_sec=5.0)
        h.touch("binance", "BTC-USD", 100.0)
        h.require_healthy("binance", "BTC-USD", now=103.0)

    def test_degraded_venue_raises(self):
        h = VenueHealth()
        h.touch("binance", "BTC-USD", 100.0)
        h.apply(_status(VenueState.DEGRADED))
        with pytest.raises(FeedDegraded) as exc_info:
            h.require_healthy("binance", "BTC-USD", now=100.0)
        assert exc_info.value.venue == "binance"

    def test_stale_quote_raises(self):
        h = VenueHealth(stale_after_sec=5.0)
        h.touch("binance", "BTC-USD", 100.0)
        with pytest.raises(FeedDegraded, match="stale"):
            h.require_healthy("binance", "BTC-USD", now=106.0)

    def test_missing_quote_raises(self):
        with pytest.raises(FeedDegraded, match="no quote"):
            VenueHealth().require_healthy("binance", "BTC-USD", now=0.0)

    def test_degrading_forgets_quotes(self):
        """Quotes seen before a disconnect are not trusted after recovery."""
        h = VenueHealth()
        h.touch("binance", "BTC-USD", 100.0)
        h.apply(_status(VenueState.DEGRADED, epoch=1))
        h.apply(_status(VenueState.CONNECTED, epoch=2))
        with pytest.raises(FeedDegraded):
            h.require_healthy("binance", "BTC-USD", now=100.0)

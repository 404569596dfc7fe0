"""
Venue health tracking. Consumers call require_healthy() before comparing
quotes across venues; it raises FeedDegraded for a disconnected venue or a
quote older than the staleness window.
"""

from __future__ import annotations

import logging
import time

from scanner.models import VenueState, VenueStatus

logger = logging.getLogger(__name__)


class FeedDegraded(Exception):
    """A venue feed is disconnected or its quotes are stale."""

    def __init__(self, venue: str, reason: str):
        self.venue = venue
        self.reason = reason
        super().__init__(f"{venue} degraded: {reason}")


class VenueHealth:
    def __init__(self, stale_after_sec: float = 15.0) -> None:
        self._stale_after = stale_after_sec
        self._states: dict[str, VenueState] = {}
        self._epochs: dict[str, int] = {}
        self._reasons: dict[str, str] = {}
        self._last_seen: dict[tuple[str, str], float] = {}

    def apply(self, status: VenueStatus) -> bool:
        """Apply a status message. Returns True if the state changed."""
        # Status from an older feed epoch is stale and ignored
        if status.epoch < self._epochs.get(status.venue, 0):
            return False
        prev = self._states.get(status.venue)
        self._states[status.venue] = status.state
        self._epochs[status.venue] = status.epoch
        self._reasons[status.venue] = status.reason
        if status.state is VenueState.DEGRADED:
            for key in [k for k in self._last_seen if k[0] == status.venue]:
                del self._last_seen[key]
        return prev is not status.state

    def touch(self, venue: str, instrument: str, ts: float) -> None:
        self._last_seen[(venue, instrument)] = ts

    def state(self, venue: str) -> VenueState:
        return self._states.get(venue, VenueState.CONNECTED)

    def is_degraded(self, venue: str) -> bool:
        return self.state(venue) is VenueState.DEGRADED

    def degraded_venues(self) -> list[str]:
        return sorted(v for v, s in self._states.items() if s is VenueState.DEGRADED)

    def require_healthy(self, venue: str, instrument: str, now: float | None = None) -> None:
        """Raise FeedDegraded unless the venue is connected and the quote is fresh."""
        if self.is_degraded(venue):
            raise FeedDegraded(venue, self._reasons.get(venue) or "disconnected")
        now = now if now is not None else time.time()
        seen = self._last_seen.get((venue, instrument))
        if seen is None:
            raise FeedDegraded(venue, f"no quote for {instrument}")
        if now - seen > self._stale_after:
            raise FeedDegraded(venue, f"quote for {instrument} stale ({now - seen:.1f}s)")

"""
Per-instrument sequence enforcement.

Each (venue, instrument) pair must see strictly increasing sequence numbers
within a feed epoch. A reconnect bumps the venue epoch and clears its
sequence state; ticks stamped with an older epoch are discarded.
"""

from __future__ import annotations

import logging
from enum import Enum

from scanner.models import Tick

logger = logging.getLogger(__name__)


class Verdict(Enum):
    ACCEPT = "accept"
    DUPLICATE = "duplicate"
    OUT_OF_ORDER = "out_of_order"
    STALE_EPOCH = "stale_epoch"


class Sequencer:
    def __init__(self) -> None:
        self._last: dict[tuple[str, str], int] = {}
        self._epochs: dict[str, int] = {}

    def epoch(self, venue: str) -> int:
        return self._epochs.get(venue, 0)

    def bump_epoch(self, venue: str) -> int:
        """Start a new epoch for venue and forget its sequence history."""
        self._epochs[venue] = self.epoch(venue) + 1
        self.reset_venue(venue)
        logger.info("Sequencer: %s epoch -> %d", venue, self._epochs[venue])
        return self._epochs[venue]

    def reset_venue(self, venue: str) -> None:
        for key in [k for k in self._last if k[0] == venue]:
            del self._last[key]

    def check(self, tick: Tick) -> Verdict:
        """Accept tick if it advances its instrument's sequence, recording it."""
        current = self.epoch(tick.venue)
        if tick.epoch < current:
            return Verdict.STALE_EPOCH
        if tick.epoch > current:
            # Tick from an epoch we have not seen bumped locally (e.g. replay)
            self._epochs[tick.venue] = tick.epoch
            self.reset_venue(tick.venue)
        last = self._last.get(tick.key)
        if last is not None:
            if tick.sequence == last:
                return Verdict.DUPLICATE
            if tick.sequence < last:
                return Verdict.OUT_OF_ORDER
        self._last[tick.key] = tick.sequence
        return Verdict.ACCEPT

    def last_sequence(self, venue: str, instrument: str) -> int | None:
        return self._last.get((venue, instrument))

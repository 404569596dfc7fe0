"""
Bounded ring buffer of recent mid prices per (venue, instrument).
"""

from __future__ import annotations

from collections import deque

from scanner.models import Outcome, Tick


class TickHistory:
    """Keeps the last `maxlen` mids for every (venue, instrument, outcome) key."""

    def __init__(self, maxlen: int = 200) -> None:
        self._maxlen = maxlen
        self._mids: dict[tuple[str, str, Outcome], deque[float]] = {}

    def record(self, tick: Tick) -> None:
        self._append(tick, Outcome.YES)
        if tick.no is not None:
            self._append(tick, Outcome.NO)

    def _append(self, tick: Tick, outcome: Outcome) -> None:
        book = tick.book(outcome)
        if book is None or book.midpoint is None:
            return
        key = (tick.venue, tick.instrument, outcome)
        buf = self._mids.get(key)
        if buf is None:
            buf = deque(maxlen=self._maxlen)
            self._mids[key] = buf
        buf.append(book.midpoint)

    def mids(self, venue: str, instrument: str, outcome: Outcome = Outcome.YES) -> list[float]:
        return list(self._mids.get((venue, instrument, outcome), ()))

    def clear_venue(self, venue: str) -> None:
        for key in [k for k in self._mids if k[0] == venue]:
            del self._mids[key]

    def __len__(self) -> int:
        return len(self._mids)

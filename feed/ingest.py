"""
Market data ingest hub.

Feeds (client/ws.py, client/spot.py) push normalized ticks and connection
events here. The hub enforces per-instrument sequencing, tracks venue health,
and publishes ticks and VenueStatus messages on one bounded asyncio.Queue.
When the queue is full the oldest Tick is dropped; VenueStatus messages are
never evicted to make room for ticks.

Feed failures are never fatal: a disconnect, repeated poll failures, or a
silent feed only publish VenueStatus(DEGRADED).
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Protocol

from feed.sequencer import Sequencer, Verdict
from monitor.metrics import Metrics
from scanner.models import Tick, VenueState, VenueStatus

logger = logging.getLogger(__name__)


class Feed(Protocol):
    venue: str

    async def run(self) -> None: ...


class MarketDataIngest:
    """
    Owns the output channel and one asyncio task per registered feed.
    Feeds call on_connect / on_ticks / on_failure; nothing here blocks.
    """

    def __init__(
        self,
        channel: asyncio.Queue,
        metrics: Metrics | None = None,
        stale_after_sec: float = 15.0,
        failures_before_degraded: int = 3,
        clock=time.time,
    ) -> None:
        self.channel = channel
        self.metrics = metrics or Metrics()
        self.sequencer = Sequencer()
        self._stale_after = stale_after_sec
        self._failures_before_degraded = failures_before_degraded
        self._clock = clock
        self._feeds: list[Feed] = []
        self._tasks: list[asyncio.Task] = []
        self._states: dict[str, VenueState] = {}
        self._failures: dict[str, int] = {}
        self._last_message: dict[str, float] = {}

    # -- lifecycle --

    def register(self, feed: Feed) -> None:
        self._feeds.append(feed)

    async def start(self) -> None:
        for feed in self._feeds:
            self._tasks.append(asyncio.create_task(self._run_feed(feed), name=f"feed-{feed.venue}"))
        self._tasks.append(asyncio.create_task(self._watchdog(), name="feed-watchdog"))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    async def _run_feed(self, feed: Feed) -> None:
        # Feeds retry internally; this only guards against an unexpected crash
        # so one broken feed never takes the others down.
        while True:
            try:
                await feed.run()
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("Feed %s crashed: %s", feed.venue, e)
                self.on_failure(feed.venue, f"crash: {e}", disconnected=True)
                await asyncio.sleep(self._stale_after)

    async def _watchdog(self) -> None:
        interval = max(self._stale_after / 3.0, 0.1)
        while True:
            await asyncio.sleep(interval)
            self.check_staleness()

    # -- feed callbacks --

    def on_connect(self, venue: str) -> int:
        """A feed (re)connected. Returns the new epoch to stamp its ticks with."""
        self._failures[venue] = 0
        self._last_message[venue] = self._clock()
        epoch = self.sequencer.bump_epoch(venue)
        self.metrics.incr("feed_connects", venue)
        return epoch

    def on_ticks(self, venue: str, ticks: list[Tick]) -> int:
        """Sequence-check and publish ticks. Returns the number accepted."""
        self._last_message[venue] = self._clock()
        self._failures[venue] = 0
        accepted = 0
        for tick in ticks:
            verdict = self.sequencer.check(tick)
            if verdict is not Verdict.ACCEPT:
                self.metrics.incr("ticks_dropped", verdict.value)
                logger.debug("Dropped %s tick %s/%s seq=%d", verdict.value, tick.venue, tick.instrument, tick.sequence)
                continue
            if self._states.get(venue) is not VenueState.CONNECTED:
                self._set_state(venue, VenueState.CONNECTED, "first message after connect")
            self._publish(tick)
            self.metrics.incr("ticks_accepted")
            accepted += 1
        return accepted

    def on_failure(self, venue: str, reason: str, disconnected: bool = False) -> bool:
        """
        Record a feed failure. A disconnect degrades immediately; poll errors
        degrade after `failures_before_degraded` in a row.
        Returns True if the venue is degraded.
        """
        self._failures[venue] = self._failures.get(venue, 0) + 1
        self.metrics.incr("feed_failures", venue)
        if disconnected or self._failures[venue] >= self._failures_before_degraded:
            if self._states.get(venue) is not VenueState.DEGRADED:
                self._set_state(venue, VenueState.DEGRADED, reason)
            return True
        return self._states.get(venue) is VenueState.DEGRADED

    def check_staleness(self, now: float | None = None) -> list[str]:
        """Degrade every connected venue silent for longer than the stale window."""
        now = now if now is not None else self._clock()
        degraded = []
        for venue, last in self._last_message.items():
            if self._states.get(venue) is VenueState.CONNECTED and now - last > self._stale_after:
                self._set_state(venue, VenueState.DEGRADED, f"silent for {now - last:.1f}s")
                degraded.append(venue)
        return degraded

    def is_degraded(self, venue: str) -> bool:
        return self._states.get(venue) is VenueState.DEGRADED

    # -- channel --

    def _set_state(self, venue: str, state: VenueState, reason: str) -> None:
        self._states[venue] = state
        status = VenueStatus(
            venue=venue,
            state=state,
            epoch=self.sequencer.epoch(venue),
            reason=reason,
            timestamp=self._clock(),
        )
        if state is VenueState.DEGRADED:
            logger.warning("Venue %s DEGRADED: %s", venue, reason)
        else:
            logger.info("Venue %s CONNECTED (epoch %d)", venue, status.epoch)
        self._publish(status)

    def _publish(self, item: Tick | VenueStatus) -> None:
        try:
            self.channel.put_nowait(item)
        except asyncio.QueueFull:
            self._evict_oldest_tick(item)

    def _evict_oldest_tick(self, item: Tick | VenueStatus) -> None:
        """
        Make room by dropping the oldest queued Tick. VenueStatus messages are
        not evicted for ticks: each state change is published once, so a lost
        DEGRADED would leave the detector comparing a dead venue's quotes.

        With no Tick queued, an incoming Tick is dropped. An incoming status
        replaces the oldest status for the same venue (which it supersedes),
        or failing that the oldest status overall.
        """
        pending = []
        while not self.channel.empty():
            pending.append(self.channel.get_nowait())
        victim = next((i for i, queued in enumerate(pending) if isinstance(queued, Tick)), None)
        if victim is None and isinstance(item, VenueStatus):
            victim = next((i for i, queued in enumerate(pending) if queued.venue == item.venue), 0)
        if victim is not None:
            del pending[victim]
            pending.append(item)
        self.metrics.incr("queue_drops")
        for queued in pending:
            self.channel.put_nowait(queued)

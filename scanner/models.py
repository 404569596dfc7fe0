"""
Data models shared by the feed, detector, and executor. Pure data, no behavior.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum

POLYMARKET = "polymarket"
BINANCE = "binance"
COINBASE = "coinbase"


class InstrumentKind(Enum):
    BINARY = "binary"
    SPOT = "spot"


class StrategyTag(Enum):
    STRUCTURAL = "structural"
    CROSS_VENUE = "cross-venue"
    SPREAD_CAPTURE = "spread-capture"


class Side(Enum):
    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> Side:
        return Side.SELL if self is Side.BUY else Side.BUY


class Outcome(Enum):
    YES = "YES"
    NO = "NO"


class VenueState(Enum):
    CONNECTED = "connected"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class PriceLevel:
    price: float
    size: float


@dataclass(frozen=True)
class BookTop:
    """Best bid and best ask of one order book side."""
    bid: PriceLevel | None = None
    ask: PriceLevel | None = None

    @property
    def spread(self) -> float | None:
        if self.bid and self.ask:
            return self.ask.price - self.bid.price
        return None

    @property
    def midpoint(self) -> float | None:
        if self.bid and self.ask:
            return (self.ask.price + self.bid.price) / 2.0
        return None


@dataclass(frozen=True)
class Tick:
    """
    Normalized top-of-book update for one instrument on one venue.

    Binary markets carry both the YES and NO books. Spot instruments carry a
    single book in `yes` and leave `no` empty.
    """
    venue: str
    instrument: str
    kind: InstrumentKind
    yes: BookTop
    server_ts: float
    sequence: int
    received_at: float
    no: BookTop | None = None
    epoch: int = 0

    @property
    def key(self) -> tuple[str, str]:
        return (self.venue, self.instrument)

    def book(self, outcome: Outcome | None = None) -> BookTop | None:
        if outcome is Outcome.NO:
            return self.no
        return self.yes


@dataclass(frozen=True)
class Market:
    """A binary Polymarket market as returned by discovery."""
    market_id: str  # conditionId
    question: str
    yes_token_id: str
    no_token_id: str
    min_tick_size: str = "0.01"
    active: bool = True
    closed: bool = False
    end_date: str = ""
    volume: float = 0.0


@dataclass(frozen=True)
class Resolution:
    """Settlement payout per unit for each outcome of a closed market."""
    market_id: str
    yes_payout: float
    no_payout: float

    def payout(self, outcome: Outcome) -> float:
        return self.yes_payout if outcome is Outcome.YES else self.no_payout


@dataclass(frozen=True)
class VenueStatus:
    """Feed health change, published on the same channel as ticks."""
    venue: str
    state: VenueState
    epoch: int
    reason: str = ""
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class LegOrder:
    venue: str
    instrument: str
    side: Side
    price: float
    size: float
    outcome: Outcome | None = None

    @property
    def notional(self) -> float:
        return self.price * self.size


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class Opportunity:
    """
    A candidate trade. `edge` is the expected profit per unit of size, net of
    fees, expressed in the same units as `unit_cost` (one unit of payout for
    binary markets, one unit of quote currency notional for spot).
    """
    strategy: StrategyTag
    instrument: str
    legs: tuple[LegOrder, ...]
    edge: float
    unit_cost: float
    max_size: float
    expires_at: float
    discovered_at: float = field(default_factory=time.time)
    opportunity_id: str = field(default_factory=lambda: new_id("opp"))

    @property
    def key(self) -> tuple[StrategyTag, str]:
        return (self.strategy, self.instrument)

    @property
    def venues(self) -> frozenset[str]:
        return frozenset(leg.venue for leg in self.legs)

    @property
    def edge_ratio(self) -> float:
        """Net profit per unit of capital deployed."""
        if self.unit_cost <= 0:
            return 0.0
        return self.edge / self.unit_cost

    def is_expired(self, now: float | None = None) -> bool:
        return (now if now is not None else time.time()) >= self.expires_at

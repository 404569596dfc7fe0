"""
Position and leg records owned by the execution coordinator.
Mutable: the coordinator updates them as acknowledgments arrive and persists
a snapshot on every state transition.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from executor.fill_state import LegState, PositionStatus, leg_transition, transition_to
from scanner.models import LegOrder, Opportunity, Outcome, Side, StrategyTag, new_id


@dataclass
class PositionLeg:
    venue: str
    instrument: str
    side: Side
    price: float
    size: float
    outcome: Outcome | None = None
    client_order_id: str = field(default_factory=lambda: new_id("cid"))
    order_id: str = ""
    filled_size: float = 0.0
    avg_price: float = 0.0
    fee: float = 0.0
    state: LegState = LegState.NEW
    attempts: int = 0
    # Compensation (flattening) order for filled quantity
    unwind_order_id: str = ""
    unwind_filled: float = 0.0
    unwind_avg_price: float = 0.0
    unwind_fee: float = 0.0

    @classmethod
    def from_order(cls, leg: LegOrder, size: float) -> PositionLeg:
        return cls(
            venue=leg.venue,
            instrument=leg.instrument,
            side=leg.side,
            price=leg.price,
            size=size,
            outcome=leg.outcome,
        )

    @property
    def is_filled(self) -> bool:
        return self.state is LegState.FILLED

    @property
    def remaining(self) -> float:
        return max(0.0, self.size - self.filled_size)

    @property
    def open_quantity(self) -> float:
        """Filled quantity not yet flattened by compensation."""
        return max(0.0, self.filled_size - self.unwind_filled)

    @property
    def cash_flow(self) -> float:
        """Signed cash from entry fills and unwinds, fees included (buys are negative)."""
        sign = -1.0 if self.side is Side.BUY else 1.0
        entry = sign * self.filled_size * self.avg_price
        unwind = -sign * self.unwind_filled * self.unwind_avg_price
        return entry + unwind - self.fee - self.unwind_fee

    def set_state(self, state: LegState) -> None:
        self.state = leg_transition(self.state, state)

    @property
    def exposure_key(self) -> tuple[str, str]:
        return (self.instrument, self.outcome.value if self.outcome else "")

    def to_dict(self) -> dict:
        return {
            "venue": self.venue,
            "instrument": self.instrument,
            "side": self.side.value,
            "price": self.price,
            "size": self.size,
            "outcome": self.outcome.value if self.outcome else None,
            "client_order_id": self.client_order_id,
            "order_id": self.order_id,
            "filled_size": self.filled_size,
            "avg_price": self.avg_price,
            "fee": self.fee,
            "state": self.state.value,
            "attempts": self.attempts,
            "unwind_order_id": self.unwind_order_id,
            "unwind_filled": self.unwind_filled,
            "unwind_avg_price": self.unwind_avg_price,
            "unwind_fee": self.unwind_fee,
        }

    @classmethod
    def from_dict(cls, d: dict) -> PositionLeg:
        return cls(
            venue=d["venue"],
            instrument=d["instrument"],
            side=Side(d["side"]),
            price=float(d["price"]),
            size=float(d["size"]),
            outcome=Outcome(d["outcome"]) if d.get("outcome") else None,
            client_order_id=d.get("client_order_id", ""),
            order_id=d.get("order_id", ""),
            filled_size=float(d.get("filled_size", 0.0)),
            avg_price=float(d.get("avg_price", 0.0)),
            fee=float(d.get("fee", 0.0)),
            state=LegState(d.get("state", LegState.NEW.value)),
            attempts=int(d.get("attempts", 0)),
            unwind_order_id=d.get("unwind_order_id", ""),
            unwind_filled=float(d.get("unwind_filled", 0.0)),
            unwind_avg_price=float(d.get("unwind_avg_price", 0.0)),
            unwind_fee=float(d.get("unwind_fee", 0.0)),
        )


@dataclass
class Position:
    opportunity_id: str
    strategy: StrategyTag
    instrument: str
    legs: list[PositionLeg]
    expires_at: float
    edge: float = 0.0
    position_id: str = field(default_factory=lambda: new_id("pos"))
    status: PositionStatus = PositionStatus.PENDING
    reservation_id: str = ""
    opened_at: float = field(default_factory=time.time)
    closed_at: float | None = None
    realized_pnl: float = 0.0
    close_reason: str = ""

    @classmethod
    def open(cls, opp: Opportunity, size: float, now: float | None = None) -> Position:
        return cls(
            opportunity_id=opp.opportunity_id,
            strategy=opp.strategy,
            instrument=opp.instrument,
            legs=[PositionLeg.from_order(leg, size) for leg in opp.legs],
            expires_at=opp.expires_at,
            edge=opp.edge,
            opened_at=now if now is not None else time.time(),
        )

    def transition(self, to_state: PositionStatus) -> None:
        self.status = transition_to(self.status, to_state)

    @property
    def size(self) -> float:
        return self.legs[0].size if self.legs else 0.0

    @property
    def notional(self) -> float:
        return sum(leg.price * leg.size for leg in self.legs)

    @property
    def all_filled(self) -> bool:
        return all(leg.is_filled for leg in self.legs)

    @property
    def any_filled(self) -> bool:
        return any(leg.filled_size > 0 for leg in self.legs)

    @property
    def cash_flow(self) -> float:
        """Net cash from every fill so far, fees included."""
        return sum(leg.cash_flow for leg in self.legs)

    @property
    def cost_basis(self) -> float:
        return sum(leg.filled_size * leg.avg_price for leg in self.legs)

    @property
    def working_legs(self) -> list[PositionLeg]:
        """Legs with an order that may still fill at the venue."""
        return [leg for leg in self.legs if leg.state in (LegState.NEW, LegState.OPEN, LegState.PARTIAL)]

    def net_exposure(self) -> dict[tuple[str, str], float]:
        """Signed open quantity per (instrument, outcome), summed across venues."""
        exposure: dict[tuple[str, str], float] = {}
        for leg in self.legs:
            sign = 1.0 if leg.side is Side.BUY else -1.0
            exposure[leg.exposure_key] = exposure.get(leg.exposure_key, 0.0) + sign * leg.open_quantity
        return exposure

    @property
    def is_flat(self) -> bool:
        return all(abs(q) < 1e-9 for q in self.net_exposure().values())

    @property
    def is_complete_set(self) -> bool:
        """Equal long YES and NO quantity in one binary market."""
        exposure = self.net_exposure()
        yes = exposure.get((self.instrument, Outcome.YES.value), 0.0)
        no = exposure.get((self.instrument, Outcome.NO.value), 0.0)
        return yes > 0 and abs(yes - no) < 1e-9 and len(exposure) == 2

    def to_dict(self) -> dict:
        return {
            "position_id": self.position_id,
            "opportunity_id": self.opportunity_id,
            "strategy": self.strategy.value,
            "instrument": self.instrument,
            "legs": [leg.to_dict() for leg in self.legs],
            "expires_at": self.expires_at,
            "edge": self.edge,
            "status": self.status.value,
            "reservation_id": self.reservation_id,
            "opened_at": self.opened_at,
            "closed_at": self.closed_at,
            "realized_pnl": self.realized_pnl,
            "close_reason": self.close_reason,
        }

    @classmethod
    def from_dict(cls, d: dict) -> Position:
        return cls(
            position_id=d["position_id"],
            opportunity_id=d["opportunity_id"],
            strategy=StrategyTag(d["strategy"]),
            instrument=d["instrument"],
            legs=[PositionLeg.from_dict(leg) for leg in d["legs"]],
            expires_at=float(d.get("expires_at", 0.0)),
            edge=float(d.get("edge", 0.0)),
            status=PositionStatus(d["status"]),
            reservation_id=d.get("reservation_id", ""),
            opened_at=float(d.get("opened_at", 0.0)),
            closed_at=float(d["closed_at"]) if d.get("closed_at") is not None else None,
            realized_pnl=float(d.get("realized_pnl", 0.0)),
            close_reason=d.get("close_reason", ""),
        )

"""
Capital ledger: the single source of truth for cash, reserved notional, and
realized P&L.

Every mutation is serialized by one lock and appends an immutable AuditEntry
(written through to the durable sink before the in-memory state changes).
Replaying the audit log from genesis reproduces the ledger exactly.

Invariants, checked after every mutation:
  cash >= 0, open_notional >= 0,
  open_notional == sum of live reservations,
  cash + open_notional == capital + cumulative realized P&L.
A reservation may never eat into what is left of the daily loss budget.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass
from typing import Callable, Iterable

from scanner.models import new_id

logger = logging.getLogger(__name__)

_EPS = 1e-6

RESERVE = "reserve"
COMMIT = "commit"
ROLLBACK = "rollback"
DAILY_RESET = "daily_reset"


class LedgerInvariantViolation(Exception):
    """The ledger's books do not balance. Fatal: trading must halt."""
    pass


class InsufficientCapital(Exception):
    """A reservation exceeds spendable cash. Non-fatal: the trade is skipped."""

    def __init__(self, requested: float, spendable: float):
        self.requested = requested
        self.spendable = spendable
        super().__init__(f"Requested ${requested:.2f} exceeds spendable ${spendable:.2f}")


@dataclass(frozen=True)
class AuditEntry:
    seq: int
    ts: float
    kind: str
    position_id: str
    reservation_id: str
    delta_cash: float
    delta_open: float
    pnl: float
    cash_after: float
    open_after: float

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> AuditEntry:
        return cls(
            seq=int(d["seq"]),
            ts=float(d["ts"]),
            kind=str(d["kind"]),
            position_id=str(d.get("position_id") or ""),
            reservation_id=str(d.get("reservation_id") or ""),
            delta_cash=float(d["delta_cash"]),
            delta_open=float(d["delta_open"]),
            pnl=float(d.get("pnl") or 0.0),
            cash_after=float(d["cash_after"]),
            open_after=float(d["open_after"]),
        )


@dataclass(frozen=True)
class LedgerSnapshot:
    capital: float
    cash: float
    open_notional: float
    daily_realized_pnl: float
    cumulative_realized_pnl: float
    daily_loss_limit: float
    open_reservations: int
    trading_day: int
    audit_length: int

    @property
    def equity(self) -> float:
        return self.cash + self.open_notional

    @property
    def loss_reserve(self) -> float:
        """Remaining daily loss budget, held back from new reservations."""
        return max(0.0, self.daily_loss_limit + min(0.0, self.daily_realized_pnl))

    @property
    def spendable(self) -> float:
        return max(0.0, self.cash - self.loss_reserve)

    @property
    def loss_limit_hit(self) -> bool:
        return self.daily_realized_pnl <= -self.daily_loss_limit


@dataclass(frozen=True)
class _Reservation:
    reservation_id: str
    position_id: str
    amount: float


def trading_day(ts: float, reset_hour_utc: int) -> int:
    """Index of the trading day containing ts; days roll at reset_hour_utc."""
    return int((ts - reset_hour_utc * 3600) // 86400)


class Ledger:
    def __init__(
        self,
        capital: float,
        daily_loss_limit: float,
        reset_hour_utc: int = 0,
        clock: Callable[[], float] = time.time,
        sink: Callable[[AuditEntry], None] | None = None,
    ) -> None:
        if capital <= 0:
            raise ValueError(f"capital must be positive, got {capital}")
        self.capital = capital
        self.daily_loss_limit = daily_loss_limit
        self.reset_hour_utc = reset_hour_utc
        self._clock = clock
        self._sink = sink
        self._lock = threading.Lock()
        self._cash = capital
        self._open = 0.0
        self._daily_pnl = 0.0
        self._cumulative_pnl = 0.0
        self._reservations: dict[str, _Reservation] = {}
        self._by_position: dict[str, str] = {}
        self._log: list[AuditEntry] = []
        self._day = trading_day(clock(), reset_hour_utc)

    # -- mutations --

    def reserve(self, amount: float, position_id: str) -> str:
        """
        Move amount from cash to open notional for position_id.
        Returns the reservation id.

        Raises:
            InsufficientCapital: amount exceeds cash minus the daily loss reserve
            ValueError: non-positive amount or position already holding a reservation
        """
        if amount <= 0:
            raise ValueError(f"Reservation amount must be positive, got {amount}")
        with self._lock:
            self._roll_day_locked()
            if position_id in self._by_position:
                raise ValueError(f"Position {position_id} already holds a reservation")
            spendable = self._snapshot_locked().spendable
            if amount > spendable + _EPS:
                raise InsufficientCapital(amount, spendable)
            rid = new_id("rsv")
            self._append_locked(RESERVE, position_id, rid, -amount, amount, 0.0)
            self._reservations[rid] = _Reservation(rid, position_id, amount)
            self._by_position[position_id] = rid
            logger.debug("Ledger reserve %s: $%.2f for %s (cash=$%.2f open=$%.2f)",
                         rid, amount, position_id, self._cash, self._open,
                         extra={"position_id": position_id})
            return rid

    def commit(self, position_id: str, realized_pnl: float) -> AuditEntry:
        """Release position_id's reservation and book its realized P&L."""
        with self._lock:
            self._roll_day_locked()
            rid = self._by_position.get(position_id)
            if rid is None:
                raise LedgerInvariantViolation(f"Commit for {position_id} without a reservation")
            entry = self._release_locked(COMMIT, self._reservations[rid], realized_pnl)
            logger.debug("Ledger commit %s: pnl=$%.4f (cash=$%.2f open=$%.2f)",
                         position_id, realized_pnl, self._cash, self._open,
                         extra={"position_id": position_id})
            return entry

    def rollback(self, reservation_id: str, realized_pnl: float = 0.0) -> AuditEntry:
        """
        Release a reservation without a trade. realized_pnl carries any cost
        of flattening already-filled legs (zero or negative).
        """
        with self._lock:
            self._roll_day_locked()
            res = self._reservations.get(reservation_id)
            if res is None:
                raise LedgerInvariantViolation(f"Rollback of unknown reservation {reservation_id}")
            entry = self._release_locked(ROLLBACK, res, realized_pnl)
            logger.debug("Ledger rollback %s: pnl=$%.4f (cash=$%.2f open=$%.2f)",
                         reservation_id, realized_pnl, self._cash, self._open,
                         extra={"position_id": res.position_id})
            return entry

    def roll_day(self) -> bool:
        """Apply the daily reset if the trading day has changed. Returns True if it did."""
        with self._lock:
            return self._roll_day_locked()

    # -- reads --

    def snapshot(self) -> LedgerSnapshot:
        with self._lock:
            self._roll_day_locked()
            return self._snapshot_locked()

    def reservation_for(self, position_id: str) -> str | None:
        with self._lock:
            return self._by_position.get(position_id)

    def reserved_amount(self, position_id: str) -> float:
        with self._lock:
            rid = self._by_position.get(position_id)
            return self._reservations[rid].amount if rid else 0.0

    def open_reservations(self) -> dict[str, str]:
        """{position_id: reservation_id} for every live reservation."""
        with self._lock:
            return dict(self._by_position)

    def entries(self) -> list[AuditEntry]:
        with self._lock:
            return list(self._log)

    # -- replay --

    def replay(self, entries: Iterable[AuditEntry]) -> LedgerSnapshot:
        """
        Rebuild state from genesis by applying entries in order, verifying
        every recorded balance. The ledger must be fresh.

        Raises:
            LedgerInvariantViolation: on a sequence gap or a balance mismatch
        """
        with self._lock:
            if self._log:
                raise LedgerInvariantViolation("Replay into a non-empty ledger")
            for entry in entries:
                self._apply_replayed_locked(entry)
            # Resume in the day of the last entry; a boundary crossed while the
            # process was down is applied (and logged) by the next access.
            if self._log:
                self._day = trading_day(self._log[-1].ts, self.reset_hour_utc)
            return self._snapshot_locked()

    @classmethod
    def from_audit(
        cls,
        capital: float,
        daily_loss_limit: float,
        entries: Iterable[AuditEntry],
        reset_hour_utc: int = 0,
        clock: Callable[[], float] = time.time,
        sink: Callable[[AuditEntry], None] | None = None,
    ) -> Ledger:
        """Restore a ledger from its audit log. The sink is attached after replay."""
        ledger = cls(capital, daily_loss_limit, reset_hour_utc, clock=clock)
        ledger.replay(entries)
        ledger._sink = sink
        return ledger

    # -- internals (lock held) --

    def _apply_replayed_locked(self, e: AuditEntry) -> None:
        expected_seq = len(self._log) + 1
        if e.seq != expected_seq:
            raise LedgerInvariantViolation(f"Audit sequence gap: expected {expected_seq}, got {e.seq}")
        cash_after = self._cash + e.delta_cash
        open_after = self._open + e.delta_open
        if abs(cash_after - e.cash_after) > _EPS or abs(open_after - e.open_after) > _EPS:
            raise LedgerInvariantViolation(
                f"Audit entry {e.seq} balance mismatch: "
                f"cash {cash_after:.6f} != {e.cash_after:.6f} or open {open_after:.6f} != {e.open_after:.6f}"
            )
        if e.kind == RESERVE:
            self._reservations[e.reservation_id] = _Reservation(e.reservation_id, e.position_id, e.delta_open)
            self._by_position[e.position_id] = e.reservation_id
        elif e.kind in (COMMIT, ROLLBACK):
            res = self._reservations.pop(e.reservation_id, None)
            if res is None:
                raise LedgerInvariantViolation(f"Audit entry {e.seq} releases unknown reservation {e.reservation_id}")
            self._by_position.pop(res.position_id, None)
            self._daily_pnl += e.pnl
            self._cumulative_pnl += e.pnl
        elif e.kind == DAILY_RESET:
            self._daily_pnl = 0.0
        else:
            raise LedgerInvariantViolation(f"Audit entry {e.seq} has unknown kind {e.kind!r}")
        self._cash = e.cash_after
        self._open = e.open_after
        self._log.append(e)
        self._check_invariants_locked()

    def _release_locked(self, kind: str, res: _Reservation, pnl: float) -> AuditEntry:
        entry = self._append_locked(kind, res.position_id, res.reservation_id, res.amount + pnl, -res.amount, pnl)
        del self._reservations[res.reservation_id]
        del self._by_position[res.position_id]
        self._daily_pnl += pnl
        self._cumulative_pnl += pnl
        self._check_invariants_locked()
        return entry

    def _append_locked(
        self, kind: str, position_id: str, reservation_id: str,
        delta_cash: float, delta_open: float, pnl: float,
    ) -> AuditEntry:
        cash_after = self._cash + delta_cash
        open_after = self._open + delta_open
        if cash_after < -_EPS or open_after < -_EPS:
            logger.critical("Ledger invariant broken by %s %s: cash=%.6f open=%.6f",
                            kind, position_id, cash_after, open_after)
            raise LedgerInvariantViolation(
                f"{kind} for {position_id} drives balances negative: cash={cash_after:.6f} open={open_after:.6f}"
            )
        entry = AuditEntry(
            seq=len(self._log) + 1,
            ts=self._clock(),
            kind=kind,
            position_id=position_id,
            reservation_id=reservation_id,
            delta_cash=delta_cash,
            delta_open=delta_open,
            pnl=pnl,
            cash_after=cash_after,
            open_after=open_after,
        )
        if self._sink is not None:
            self._sink(entry)
        self._log.append(entry)
        self._cash = cash_after
        self._open = open_after
        return entry

    def _roll_day_locked(self) -> bool:
        day = trading_day(self._clock(), self.reset_hour_utc)
        if day == self._day:
            return False
        closed_pnl = self._daily_pnl
        self._day = day
        self._append_locked(DAILY_RESET, "", "", 0.0, 0.0, closed_pnl)
        self._daily_pnl = 0.0
        logger.info("Daily reset: previous day realized P&L $%.2f", closed_pnl)
        return True

    def _snapshot_locked(self) -> LedgerSnapshot:
        return LedgerSnapshot(
            capital=self.capital,
            cash=self._cash,
            open_notional=self._open,
            daily_realized_pnl=self._daily_pnl,
            cumulative_realized_pnl=self._cumulative_pnl,
            daily_loss_limit=self.daily_loss_limit,
            open_reservations=len(self._reservations),
            trading_day=self._day,
            audit_length=len(self._log),
        )

    def _check_invariants_locked(self) -> None:
        reserved = sum(r.amount for r in self._reservations.values())
        problems = []
        if self._cash < -_EPS:
            problems.append(f"cash {self._cash:.6f} < 0")
        if self._open < -_EPS:
            problems.append(f"open notional {self._open:.6f} < 0")
        if abs(self._open - reserved) > _EPS:
            problems.append(f"open notional {self._open:.6f} != reservations {reserved:.6f}")
        if abs(self._cash + self._open - (self.capital + self._cumulative_pnl)) > _EPS * max(1.0, self.capital):
            problems.append(
                f"cash + open {self._cash + self._open:.6f} != capital + pnl {self.capital + self._cumulative_pnl:.6f}"
            )
        if problems:
            logger.critical("Ledger invariant violation: %s", "; ".join(problems))
            raise LedgerInvariantViolation("; ".join(problems))

"""
Read-only engine status and the rolling markdown status file.

StatusSnapshot is the only thing the core exposes to an operational surface:
ledger state, degraded venues, the rejection-reason histogram, open positions
and counters. StatusWriter overwrites status.md with it on every interval.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from state.ledger import LedgerSnapshot


_GUIDE: list[str] = [
    "## How the Engine Works",
    "",
    "1. **Ingest** -- one task per feed (Polymarket WebSocket, Binance and Coinbase pollers) normalizes",
    "   order-book updates into ticks. Out-of-order and duplicate ticks are dropped.",
    "2. **Detect** -- every tick is checked against structural (YES+NO < $1), cross-venue, and",
    "   spread-capture predicates. Edges are net of fees. One live opportunity per strategy and instrument.",
    "3. **Size** -- capped fractional Kelly, then position, concurrency, and daily-loss limits.",
    "4. **Execute** -- legs are submitted together. Anything not filled within the timeout is",
    "   cancelled and filled legs are flattened.",
    "5. **Settle** -- complete sets are held until the market resolves or an exit trigger fires.",
    "",
    "---",
]


@dataclass(frozen=True)
class StatusSnapshot:
    mode: str
    started_at: float
    ledger: LedgerSnapshot
    open_positions: int
    degraded_venues: tuple[str, ...]
    rejections: dict[str, int]
    counters: dict[str, int]
    kill_switch: str = ""
    taken_at: float = field(default_factory=time.time)

    @property
    def uptime(self) -> float:
        return self.taken_at - self.started_at

    @property
    def realized_pnl(self) -> float:
        return self.ledger.cumulative_realized_pnl


@dataclass
class StatusWriter:
    """Writes a rolling status.md file from engine snapshots."""

    file_path: str = "status.md"
    max_history: int = 20

    _history: list[StatusSnapshot] = field(default_factory=list)

    def write(self, snap: StatusSnapshot) -> None:
        self._history.append(snap)
        if len(self._history) > self.max_history:
            self._history = self._history[-self.max_history :]
        lines = self.render(snap)
        with open(self.file_path, "w") as f:
            f.write("\n".join(lines) + "\n")

    def render(self, snap: StatusSnapshot) -> list[str]:
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(snap.taken_at))
        led = snap.ledger

        lines: list[str] = []
        lines.append("# Plutus Arbitrage Engine -- Status")
        lines.append("")
        lines.append(f"*Updated {ts}*")
        lines.append("")
        lines.extend(_GUIDE)
        lines.append("")

        lines.append("## Current State")
        lines.append("")
        state_rows: list[list[str]] = [
            ["Mode", snap.mode],
            ["Uptime", _format_duration(snap.uptime)],
            ["Kill switch", snap.kill_switch or "armed"],
            ["Degraded venues", ", ".join(snap.degraded_venues) or "none"],
            ["Open positions", str(snap.open_positions)],
            ["Cash", f"${led.cash:,.2f}"],
            ["Open notional", f"${led.open_notional:,.2f}"],
            ["Daily realized P&L", f"${led.daily_realized_pnl:,.2f}"],
            ["Cumulative realized P&L", f"${led.cumulative_realized_pnl:,.2f}"],
            ["Audit entries", str(led.audit_length)],
        ]
        lines.extend(_padded_table(["Field", "Value"], state_rows))
        lines.append("")

        lines.append("## Rejections")
        lines.append("")
        if snap.rejections:
            rows = [[reason, str(n)] for reason, n in sorted(snap.rejections.items())]
            lines.extend(_padded_table(["Reason", "Count"], rows))
        else:
            lines.append("*No rejections.*")
        lines.append("")

        lines.append("## Counters")
        lines.append("")
        rows = [[name, str(n)] for name, n in sorted(snap.counters.items()) if ":" not in name]
        if rows:
            lines.extend(_padded_table(["Counter", "Value"], rows))
        else:
            lines.append("*Nothing counted yet.*")
        lines.append("")

        lines.append("## Recent Snapshots")
        lines.append("")
        history_rows: list[list[str]] = []
        for h in reversed(self._history):
            history_rows.append([
                time.strftime("%H:%M:%S", time.localtime(h.taken_at)),
                str(h.open_positions),
                f"${h.ledger.cash:,.2f}",
                f"${h.ledger.cumulative_realized_pnl:,.2f}",
                str(sum(h.rejections.values())),
                ", ".join(h.degraded_venues) or "--",
            ])
        lines.extend(_padded_table(
            ["Time", "Open", "Cash", "P&L", "Rejections", "Degraded"],
            history_rows,
        ))
        lines.append("")
        return lines


def _padded_table(headers: list[str], rows: list[list[str]]) -> list[str]:
    """Build a Markdown table with evenly padded columns."""
    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))

    def _fmt(cells: list[str]) -> str:
        parts = [f" {c:<{widths[i]}} " for i, c in enumerate(cells)]
        return "|" + "|".join(parts) + "|"

    lines = [_fmt(headers)]
    lines.append("|" + "|".join("-" * (w + 2) for w in widths) + "|")
    for row in rows:
        lines.append(_fmt(row))
    return lines


def _format_duration(seconds: float) -> str:
    """Format seconds into a human-readable duration string."""
    if seconds < 60:
        return f"{seconds:.0f}s"
    minutes = int(seconds) // 60
    secs = seconds - minutes * 60
    if minutes < 60:
        return f"{minutes}m {secs:.0f}s"
    hours = minutes // 60
    mins = minutes % 60
    return f"{hours}h {mins}m"

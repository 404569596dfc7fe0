"""Tests for monitor/status.py -- rolling markdown status file."""

from __future__ import annotations

from monitor.status import StatusSnapshot, StatusWriter, _format_duration, _padded_table
from state.ledger import LedgerSnapshot


def _ledger(cash=990.0, open_notional=10.0, pnl=0.0) -> LedgerSnapshot:
    return LedgerSnapshot(
        capital=1000.0,
        cash=cash,
        open_notional=open_notional,
        daily_realized_pnl=pnl,
        cumulative_realized_pnl=pnl,
        daily_loss_limit=50.0,
        open_reservations=1,
        trading_day=0,
        audit_length=3,
    )


def _snap(**overrides) -> StatusSnapshot:
    fields = dict(
        mode="PAPER",
        started_at=1000.0,
        ledger=_ledger(),
        open_positions=1,
        degraded_venues=(),
        rejections={},
        counters={},
        taken_at=1125.0,
    )
    fields.update(overrides)
    return StatusSnapshot(**fields)


class TestStatusSnapshot:
    def test_uptime_and_pnl(self):
        snap = _snap(ledger=_ledger(pnl=4.25))
        assert snap.uptime == 125.0
        assert snap.realized_pnl == 4.25


class TestStatusWriter:
    def test_writes_current_state(self, tmp_path):
        path = tmp_path / "status.md"
        writer = StatusWriter(file_path=str(path))
        writer.write(_snap(
            degraded_venues=("binance",),
            rejections={"loss-limit": 2, "below-minimum-size": 5},
            counters={"opportunities": 9, "opportunities:structural": 9},
            kill_switch="stuck leg",
        ))
        text = path.read_text()
        assert text.startswith("# Plutus Arbitrage Engine -- Status")
        assert "PAPER" in text
        assert "2m 5s" in text
        assert "stuck leg" in text
        assert "binance" in text
        assert "$990.00" in text
        assert "loss-limit" in text
        assert "below-minimum-size" in text
        # Labelled counters are summarized by their bare name
        assert "opportunities:structural" not in text

    def test_empty_sections(self):
        lines = StatusWriter().render(_snap())
        assert "*No rejections.*" in lines
        assert "*Nothing counted yet.*" in lines
        assert any("armed" in line for line in lines)

    def test_history_capped(self, tmp_path):
        writer = StatusWriter(file_path=str(tmp_path / "s.md"), max_history=3)
        for i in range(5):
            writer.write(_snap(taken_at=1000.0 + i))
        assert len(writer._history) == 3
        assert writer._history[0].taken_at == 1002.0

    def test_overwrites_file(self, tmp_path):
        path = tmp_path / "status.md"
        writer = StatusWriter(file_path=str(path))
        writer.write(_snap(mode="PAPER"))
        writer.write(_snap(mode="LIVE"))
        assert path.read_text().count("# Plutus Arbitrage Engine") == 1


class TestHelpers:
    def test_format_duration(self):
        assert _format_duration(42) == "42s"
        assert _format_duration(125) == "2m 5s"
        assert _format_duration(7260) == "2h 1m"

    def test_padded_table(self):
        lines = _padded_table(["A", "Value"], [["long-name", "1"]])
        assert lines[0] == "| A         | Value |"
        assert lines[1] == "|-----------|-------|"
        assert lines[2] == "| long-name | 1     |"

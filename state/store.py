"""
Durable state store. Persists the ledger audit log and position snapshots to
SQLite (WAL) for crash recovery.

Audit entries are append-only; each append is its own transaction so the
ledger never applies a mutation the store did not accept. Positions are
upserted on every state transition.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from state.ledger import AuditEntry

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS audit_log (
    seq INTEGER PRIMARY KEY,
    ts REAL NOT NULL,
    kind TEXT NOT NULL,
    position_id TEXT NOT NULL DEFAULT '',
    reservation_id TEXT NOT NULL DEFAULT '',
    delta_cash REAL NOT NULL,
    delta_open REAL NOT NULL,
    pnl REAL NOT NULL DEFAULT 0,
    cash_after REAL NOT NULL,
    open_after REAL NOT NULL
);
CREATE TABLE IF NOT EXISTS positions (
    position_id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    data_json TEXT NOT NULL,
    updated_at REAL NOT NULL
);
CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

DEFAULT_DB_PATH = Path("plutus_state.db")

_AUDIT_COLUMNS = (
    "seq", "ts", "kind", "position_id", "reservation_id",
    "delta_cash", "delta_open", "pnl", "cash_after", "open_after",
)


@runtime_checkable
class Serializable(Protocol):
    """Protocol for objects that support to_dict/from_dict serialization."""

    def to_dict(self) -> dict: ...

    @classmethod
    def from_dict(cls, data: dict) -> Any: ...


class StateStore:
    """
    Thread-safe for single-writer usage.

    Usage:
        store = StateStore("plutus_state.db")
        ledger = Ledger.from_audit(capital, limit, store.load_audit(), sink=store.append_audit)
        store.save_position(position)
    """

    def __init__(self, db_path: str | Path = DEFAULT_DB_PATH) -> None:
        self._db_path = str(db_path)
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection | None = None
        self._audit_count = 0
        self._position_saves = 0
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=5000")
        return self._conn

    def _init_db(self) -> None:
        conn = self._get_conn()
        conn.executescript(_SCHEMA)
        conn.commit()

    # -- audit log --

    def append_audit(self, entry: AuditEntry) -> None:
        """Append one entry. Raises sqlite3.IntegrityError on a duplicate seq."""
        row = tuple(getattr(entry, c) for c in _AUDIT_COLUMNS)
        with self._lock:
            conn = self._get_conn()
            conn.execute(
                f"INSERT INTO audit_log ({', '.join(_AUDIT_COLUMNS)}) "
                f"VALUES ({', '.join('?' for _ in _AUDIT_COLUMNS)})",
                row,
            )
            conn.commit()
            self._audit_count += 1

    def load_audit(self) -> list[AuditEntry]:
        with self._lock:
            conn = self._get_conn()
            rows = conn.execute(
                f"SELECT {', '.join(_AUDIT_COLUMNS)} FROM audit_log ORDER BY seq"
            ).fetchall()
        return [AuditEntry.from_dict(dict(zip(_AUDIT_COLUMNS, r))) for r in rows]

    # -- positions --

    def save_position(self, position: Serializable) -> None:
        """Upsert a position snapshot. Atomic."""
        data = position.to_dict()
        data_json = json.dumps(data, default=str)
        with self._lock:
            conn = self._get_conn()
            conn.execute(
                "INSERT OR REPLACE INTO positions (position_id, status, data_json, updated_at) "
                "VALUES (?, ?, ?, ?)",
                (data["position_id"], data["status"], data_json, time.time()),
            )
            conn.commit()
            self._position_saves += 1
        logger.debug("Position saved: %s (%s)", data["position_id"], data["status"])

    def load_positions(self, statuses: set[str] | None = None) -> list[dict]:
        """
        Load position snapshots, optionally filtered by status.
        Corrupt rows are skipped with a warning.
        """
        with self._lock:
            conn = self._get_conn()
            rows = conn.execute(
                "SELECT position_id, status, data_json FROM positions ORDER BY updated_at"
            ).fetchall()
        result = []
        for position_id, status, data_json in rows:
            if statuses is not None and status not in statuses:
                continue
            try:
                result.append(json.loads(data_json))
            except (json.JSONDecodeError, TypeError) as e:
                logger.warning("Corrupt position snapshot %s, ignoring: %s", position_id, e)
        return result

    # -- metadata --

    def set_meta(self, key: str, value: Any) -> None:
        with self._lock:
            conn = self._get_conn()
            conn.execute("INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)", (key, json.dumps(value)))
            conn.commit()

    def get_meta(self, key: str, default: Any = None) -> Any:
        with self._lock:
            conn = self._get_conn()
            row = conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        if row is None:
            return default
        return json.loads(row[0])

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "db_path": self._db_path,
            "audit_appends": self._audit_count,
            "position_saves": self._position_saves,
        }

"""
In-process counters. Every non-fatal error path ends in a counter increment
here plus a log line; the status snapshot reads them back.
"""

from __future__ import annotations

import threading
from collections import Counter


class Metrics:
    """
    Named counters with an optional label, e.g. incr("rejections", "loss-limit").
    Labelled counters are stored as "name:label" and also bump the bare name.
    """

    def __init__(self) -> None:
        self._counts: Counter[str] = Counter()
        self._lock = threading.Lock()

    def incr(self, name: str, label: str | None = None, n: int = 1) -> None:
        with self._lock:
            self._counts[name] += n
            if label:
                self._counts[f"{name}:{label}"] += n

    def get(self, name: str, label: str | None = None) -> int:
        key = f"{name}:{label}" if label else name
        with self._lock:
            return self._counts.get(key, 0)

    def by_label(self, name: str) -> dict[str, int]:
        """All labels recorded under name, e.g. the rejection-reason histogram."""
        prefix = f"{name}:"
        with self._lock:
            return {k[len(prefix):]: v for k, v in self._counts.items() if k.startswith(prefix)}

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counts)

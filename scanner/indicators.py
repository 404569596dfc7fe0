"""
Technical indicators over recent mid prices, used to gate spread capture.

All functions take a plain sequence of floats (oldest first) and return None
when there is not enough history to compute a value.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np


@dataclass(frozen=True)
class BollingerBands:
    upper: float
    middle: float
    lower: float

    @property
    def bandwidth(self) -> float:
        """Band width relative to the middle band."""
        if self.middle == 0:
            return 0.0
        return (self.upper - self.lower) / self.middle


def ema(values: Sequence[float], period: int) -> float | None:
    """
    Exponential moving average seeded with the SMA of the first `period` values,
    smoothing factor 2 / (period + 1).
    """
    if period <= 0 or len(values) < period:
        return None
    arr = np.asarray(values, dtype=float)
    alpha = 2.0 / (period + 1)
    value = float(arr[:period].mean())
    for price in arr[period:]:
        value = alpha * float(price) + (1.0 - alpha) * value
    return value


def bollinger(values: Sequence[float], period: int = 20, num_std: float = 2.0) -> BollingerBands | None:
    if period <= 1 or len(values) < period:
        return None
    window = np.asarray(values[-period:], dtype=float)
    middle = float(window.mean())
    std = float(window.std())
    return BollingerBands(
        upper=middle + num_std * std,
        middle=middle,
        lower=middle - num_std * std,
    )

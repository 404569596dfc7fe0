"""
Validation functions for order book and price data at ingestion boundaries.

validate_probability() covers prediction-market prices in [0, 1],
validate_spot_price() covers exchange prices, validate_size() covers
quantities. All raise ValueError on NaN, Inf, negative, or out-of-range input.

Call these at every float() conversion from external data.
"""

from __future__ import annotations

import math


def _finite(x: float, context: str) -> float:
    if math.isnan(x):
        raise ValueError(f"Invalid {context}: NaN")
    if math.isinf(x):
        raise ValueError(f"Invalid {context}: Inf")
    return x


def validate_probability(p: float, context: str = "price") -> float:
    """
    Validate a binary-market price is within [0.0, 1.0] and finite.

    Raises:
        ValueError: If price is NaN, infinite, negative, or > 1.0.
    """
    _finite(p, context)
    if p < 0.0:
        raise ValueError(f"Invalid {context}: negative value {p}")
    if p > 1.0:
        raise ValueError(f"Invalid {context}: {p} out of range [0.0, 1.0]")
    return p


def validate_spot_price(p: float, context: str = "spot price") -> float:
    """Validate an exchange price is finite and strictly positive."""
    _finite(p, context)
    if p <= 0.0:
        raise ValueError(f"Invalid {context}: non-positive value {p}")
    return p


def validate_size(s: float, context: str = "size") -> float:
    """
    Validate a size/quantity value is non-negative and finite.

    Raises:
        ValueError: If size is NaN, infinite, or negative.
    """
    _finite(s, context)
    if s < 0.0:
        raise ValueError(f"Invalid {context}: negative value {s}")
    return s

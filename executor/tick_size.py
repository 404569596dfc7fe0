"""
Tick size quantization for order execution.
Ensures prices conform to venue tick sizes before order placement.
"""

from __future__ import annotations

import math

from scanner.models import Side


def quantize_price(
    price: float,
    tick_size: float,
    side: Side | None = None,
    upper: float | None = 1.0,
) -> float:
    """
    Snap a price to the venue's tick grid.

    Args:
        price: The desired price. Binary markets live in [0, 1]; pass
            upper=None for spot prices.
        tick_size: The minimum price increment (e.g., 0.01 or 0.001).
        side: BUY rounds down and SELL rounds up, so quantization never
            makes a limit order more aggressive. None rounds to nearest.
        upper: Inclusive price ceiling, or None for no ceiling.

    Raises:
        ValueError: If price is negative, above upper, or tick_size is invalid.
    """
    if tick_size <= 0:
        raise ValueError(f"tick_size must be positive, got {tick_size}")
    if price < 0:
        raise ValueError(f"price must be non-negative, got {price}")
    if upper is not None and price > upper:
        raise ValueError(f"price must not exceed {upper}, got {price}")

    # Snap values within float noise of a tick before directional rounding
    steps = price / tick_size
    nearest = round(steps)
    if abs(steps - nearest) < 1e-9:
        steps = float(nearest)

    if side is Side.BUY:
        quantized = math.floor(steps) * tick_size
    elif side is Side.SELL:
        quantized = math.ceil(steps) * tick_size
    else:
        quantized = nearest * tick_size

    decimals = max(0, -int(math.floor(math.log10(tick_size))) + 2)
    quantized = round(quantized, decimals)
    if upper is not None:
        quantized = min(upper, quantized)
    return max(0.0, quantized)

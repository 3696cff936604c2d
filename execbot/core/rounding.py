"""
Increment rounding for venue-legal prices and quantities.

Everything is computed in Decimal via the float's shortest repr, so
truncating 0.3 to a 0.1 step gives 0.3 and not 0.2.
"""

from __future__ import annotations

from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal

__all__ = ["truncate_to_step", "maker_price", "is_multiple_of_step"]


def _dec(value: float) -> Decimal:
    return Decimal(repr(float(value)))


def truncate_to_step(value: float, step: float) -> float:
    """floor(value / step) * step; returns value unchanged when step <= 0."""
    if step <= 0:
        return value
    d_step = _dec(step)
    units = (_dec(value) / d_step).to_integral_value(rounding=ROUND_FLOOR)
    return float(units * d_step)


def maker_price(price: float, step: float, side: str) -> float:
    """
    Snap a quote to the tick grid without making it more aggressive.

    - BUY: floor (lower bid)
    - SELL: ceil (higher ask)
    """
    if step <= 0:
        return price
    d_step = _dec(step)
    rounding = ROUND_FLOOR if side.upper() == "BUY" else ROUND_CEILING
    units = (_dec(price) / d_step).to_integral_value(rounding=rounding)
    return float(units * d_step)


def is_multiple_of_step(value: float, step: float, tol: float = 1e-9) -> bool:
    if step <= 0:
        return True
    ratio = value / step
    return abs(ratio - round(ratio)) <= tol * max(1.0, abs(ratio))


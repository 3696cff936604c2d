"""
Pure sizing and quoting math for the order lifecycle.

No I/O and no state: every function takes InstrumentRules plus numbers and
returns rounded, venue-legal values.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from execbot.core.models import InstrumentRules
from execbot.core.rounding import maker_price, truncate_to_step


@dataclass(frozen=True)
class SizingResult:
    accepted: bool
    quantity: float
    price: float
    reason: str = ""

    @property
    def notional(self) -> float:
        return self.quantity * self.price


def size_order(rules: InstrumentRules, raw_qty: float, price: float) -> SizingResult:
    """Truncate a raw quantity and check it against min qty / min notional."""
    qty = truncate_to_step(raw_qty, rules.qty_step)
    if price <= 0:
        return SizingResult(False, qty, price, "non_positive_price")
    if qty <= 0 or qty < rules.min_qty:
        return SizingResult(False, qty, price, f"qty {qty} below min_qty {rules.min_qty}")
    notional = qty * price
    if notional < rules.min_notional:
        return SizingResult(False, qty, price, f"notional {notional:.4f} below min_notional {rules.min_notional}")
    return SizingResult(True, qty, price)


def size_entry(
    rules: InstrumentRules,
    capital: float,
    allocation_pct: float,
    risk_pct: float,
    price: float,
    stop_loss: Optional[float] = None,
) -> SizingResult:
    """
    Entry size from capital, per-instrument allocation and per-trade risk.

    budget = capital * allocation_pct / 100
    risk_amount = budget * risk_pct / 100
    With a stop: qty = risk_amount / |price - stop|, capped at budget / price.
    Without:     qty = risk_amount / price.
    """
    if capital <= 0 or price <= 0:
        return SizingResult(False, 0.0, price, "no_capital")
    budget = capital * allocation_pct / 100.0
    risk_amount = budget * risk_pct / 100.0
    distance = abs(price - stop_loss) if stop_loss else 0.0
    if distance > 0:
        raw_qty = min(risk_amount / distance, budget / price)
    else:
        raw_qty = risk_amount / price
    return size_order(rules, raw_qty, price)


def _toward_market(side: str, reference: float, offset_pct: float) -> float:
    # BUY rests below the market, SELL above.
    return reference * (1 - offset_pct) if side == "BUY" else reference * (1 + offset_pct)


def first_quote(side: str, reference_price: float, offset_pct: float, price_step: float) -> float:
    return maker_price(_toward_market(side, reference_price, offset_pct), price_step, side)


def chase_price(
    side: str,
    first_price: float,
    market_price: float,
    reprice_count: int,
    max_reprices: int,
    min_offset_pct: float,
    max_chase_pct: float,
    price_step: float,
) -> float:
    """
    Price for the reprice_count-th resubmission of a resting maker order.

    Interpolates from first_price toward the min-offset price off the
    current market by reprice_count / max_reprices. The result never goes
    past first_price +/- max_chase_pct (BUY caps above, SELL floors below)
    and always stays at least one tick on the maker side of the market.
    """
    side = side.upper()
    target = _toward_market(side, market_price, min_offset_pct)
    frac = min(1.0, max(0.0, reprice_count / max(1, max_reprices)))
    price = first_price + (target - first_price) * frac

    if side == "BUY":
        price = min(price, first_price * (1 + max_chase_pct))
        ceiling = market_price - price_step if price_step > 0 else target
        price = min(price, ceiling)
    else:
        price = max(price, first_price * (1 - max_chase_pct))
        floor = market_price + price_step if price_step > 0 else target
        price = max(price, floor)
    return maker_price(price, price_step, side)


def exit_quantity(rules: InstrumentRules, signed_quantity: float) -> float:
    return truncate_to_step(abs(signed_quantity), rules.qty_step)

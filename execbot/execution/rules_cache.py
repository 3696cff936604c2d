"""
InstrumentRulesCache: per-symbol legal increments, fetched once.

Usage:
    cache = InstrumentRulesCache(client)
    rules = await cache.rules("BTCUSDT")
    qty = truncate_to_step(raw_qty, rules.qty_step)

Entries are never invalidated; a venue-side rules change mid-session is
only picked up after a restart. Concurrent first lookups may both fetch,
the parsed value is deterministic so the second write is harmless.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, Iterable, Optional

from execbot.core.errors import StaleDataError, UnknownInstrumentError
from execbot.core.models import InstrumentRules
from execbot.core.rounding import truncate_to_step

log = logging.getLogger("execbot")

__all__ = ["InstrumentRulesCache", "parse_instrument_rules", "truncate_to_step"]


def _filter_value(flt: Dict[str, Any], *keys: str) -> Optional[float]:
    for key in keys:
        raw = flt.get(key)
        if raw is None or raw == "":
            continue
        try:
            return float(raw)
        except (TypeError, ValueError) as exc:
            raise StaleDataError(f"filter {flt.get('filterType')} field {key}={raw!r}") from exc
    return None


def parse_instrument_rules(symbol_info: Dict[str, Any]) -> InstrumentRules:
    """Extract tick size, step size, min qty and min notional from one symbols[] entry."""
    symbol = str(symbol_info.get("symbol", ""))
    filters: Iterable[Any] = symbol_info.get("filters") or []
    price_step = qty_step = min_qty = None
    min_notional = 0.0

    for flt in filters:
        if not isinstance(flt, dict):
            continue
        kind = flt.get("filterType")
        if kind == "PRICE_FILTER":
            price_step = _filter_value(flt, "tickSize")
        elif kind == "LOT_SIZE":
            qty_step = _filter_value(flt, "stepSize")
            min_qty = _filter_value(flt, "minQty")
        elif kind in ("MIN_NOTIONAL", "NOTIONAL"):
            value = _filter_value(flt, "notional", "minNotional")
            if value is not None:
                min_notional = value

    if price_step is None or qty_step is None or min_qty is None:
        raise StaleDataError(f"{symbol}: PRICE_FILTER/LOT_SIZE missing from exchange info")
    if price_step <= 0 or qty_step <= 0:
        raise StaleDataError(f"{symbol}: non-positive increments tick={price_step} step={qty_step}")

    return InstrumentRules(
        symbol=symbol,
        price_step=price_step,
        qty_step=qty_step,
        min_qty=min_qty,
        min_notional=min_notional,
    )


class InstrumentRulesCache:
    def __init__(
        self,
        client: Any,  # VenueClient
        log_event_callback: Optional[Callable[..., None]] = None,
    ) -> None:
        self.client = client
        self._rules: Dict[str, InstrumentRules] = {}
        self._log_event = log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json.dumps({"event": event, **kwargs}))

    def get_cached(self, symbol: str) -> Optional[InstrumentRules]:
        return self._rules.get(symbol.upper())

    async def rules(self, symbol: str) -> InstrumentRules:
        key = symbol.upper()
        cached = self._rules.get(key)
        if cached is not None:
            return cached

        info = await self.client.get_exchange_info()
        for entry in info.get("symbols", []):
            if isinstance(entry, dict) and str(entry.get("symbol", "")).upper() == key:
                rules = parse_instrument_rules(entry)
                self._rules[key] = rules
                self._log_event(
                    "rules_loaded", symbol=key, price_step=rules.price_step,
                    qty_step=rules.qty_step, min_qty=rules.min_qty, min_notional=rules.min_notional,
                )
                return rules
        raise UnknownInstrumentError(key)

"""
Core value types, error taxonomy and rounding helpers shared by every layer.
"""

from execbot.core.errors import (
    ExecBotError,
    RateLimitedError,
    StaleDataError,
    TransportError,
    UnknownInstrumentError,
    VenueError,
    VenueRejection,
)
from execbot.core.models import (
    BookTicker,
    Candle,
    IncomeRecord,
    InstrumentRules,
    NetPnl,
    Order,
    OrderRequest,
    Position,
)
from execbot.core.rounding import maker_price, truncate_to_step

__all__ = [
    "ExecBotError",
    "RateLimitedError",
    "StaleDataError",
    "TransportError",
    "UnknownInstrumentError",
    "VenueError",
    "VenueRejection",
    "BookTicker",
    "Candle",
    "IncomeRecord",
    "InstrumentRules",
    "NetPnl",
    "Order",
    "OrderRequest",
    "Position",
    "maker_price",
    "truncate_to_step",
]

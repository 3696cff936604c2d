"""
Risk package: venue throttling backoff and the daily PnL cooldown.
"""

from execbot.risk.backoff import BackoffConfig, RateLimitBackoff
from execbot.risk.daily_pnl import ClosedTrade, DailyPnlConfig, DailyPnlGuard

__all__ = ["BackoffConfig", "RateLimitBackoff", "ClosedTrade", "DailyPnlConfig", "DailyPnlGuard"]

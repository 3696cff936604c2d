"""
Error taxonomy for venue interaction.

    ExecBotError
    ├── TransportError          connection / timeout, retried on reads only
    ├── VenueError              non-2xx response {status, body}
    │   ├── VenueRejection      not retried, caller decides next tick
    │   └── RateLimitedError    418/429/-1003, triggers long backoff
    ├── StaleDataError          unexpected response shape
    └── UnknownInstrumentError  symbol missing from exchange info
"""

from __future__ import annotations

import json
from typing import Any, Optional


class ExecBotError(Exception):
    """Root of all errors raised by execbot."""


class TransportError(ExecBotError):
    """The request never produced an HTTP response (connect, timeout, reset)."""

    def __init__(self, message: str, method: str = "", path: str = "") -> None:
        super().__init__(message)
        self.method = method
        self.path = path


class VenueError(ExecBotError):
    """The venue answered with a non-success HTTP status."""

    def __init__(self, status: int, body: str, method: str = "", path: str = "") -> None:
        self.status = status
        self.body = body or ""
        self.method = method
        self.path = path
        self.code, self.msg = _parse_error_body(self.body)
        super().__init__(f"{method} {path} -> HTTP {status}: {self.body[:300]}")


class VenueRejection(VenueError):
    """Venue refused the request (bad params, insufficient margin, unknown order...)."""


class RateLimitedError(VenueError):
    """Venue is throttling or has banned the client."""


class StaleDataError(ExecBotError):
    """Venue returned a payload we could not interpret."""


class UnknownInstrumentError(ExecBotError):
    def __init__(self, symbol: str) -> None:
        super().__init__(f"venue reports no instrument {symbol!r}")
        self.symbol = symbol


def _parse_error_body(body: str) -> "tuple[Optional[int], str]":
    try:
        data: Any = json.loads(body)
    except (json.JSONDecodeError, TypeError, ValueError):
        return None, body
    if not isinstance(data, dict):
        return None, body
    code = data.get("code")
    try:
        code = int(code) if code is not None else None
    except (TypeError, ValueError):
        code = None
    return code, str(data.get("msg", ""))

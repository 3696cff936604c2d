"""
Infrastructure: logging setup, venue clock synchronisation, request signing.
"""

from execbot.infra.clock import ServerClock, now_ms
from execbot.infra.logging_cfg import build_logger, log_event
from execbot.infra.signing import HmacSigner, SignedRequest, canonical_query, normalize_params

__all__ = [
    "ServerClock",
    "now_ms",
    "build_logger",
    "log_event",
    "HmacSigner",
    "SignedRequest",
    "canonical_query",
    "normalize_params",
]

"""
Request canonicalisation and HMAC-SHA256 signing.

Parameters travel as an ordered tuple of (key, value) pairs. The canonical
query string sorts by key and formats values deterministically, so the same
logical request always produces the same signature.
"""

from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Mapping, Optional, Tuple, Union
from urllib.parse import urlencode

ParamValue = Union[str, int, float, bool]
Params = Tuple[Tuple[str, str], ...]


def format_value(value: ParamValue) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        # No exponent notation: 1e-05 -> 0.00001
        text = format(Decimal(repr(value)), "f")
        if "." in text:
            text = text.rstrip("0").rstrip(".")
        return text or "0"
    return str(value)


def normalize_params(
    params: Optional[Union[Mapping[str, ParamValue], Iterable[Tuple[str, ParamValue]]]],
) -> Params:
    """Typed pairs -> sorted (key, text) tuple; None values are dropped."""
    if params is None:
        return ()
    items = params.items() if isinstance(params, Mapping) else params
    pairs = [(str(k), format_value(v)) for k, v in items if v is not None]
    return tuple(sorted(pairs, key=lambda kv: kv[0]))


def canonical_query(params: Params) -> str:
    return urlencode(list(params))


class HmacSigner:
    """HMAC-SHA256 over the canonical query, hex encoded."""

    def __init__(self, secret: str) -> None:
        self._secret = secret.encode("utf-8")

    def sign(self, payload: str) -> str:
        return hmac.new(self._secret, payload.encode("utf-8"), hashlib.sha256).hexdigest()


@dataclass(frozen=True)
class SignedRequest:
    method: str
    path: str
    params: Params
    timestamp_ms: Optional[int] = None
    signature: Optional[str] = None

    @property
    def query_string(self) -> str:
        query = canonical_query(self.params)
        if self.signature is None:
            return query
        sig = f"signature={self.signature}"
        return f"{query}&{sig}" if query else sig

    @property
    def url(self) -> str:
        qs = self.query_string
        return f"{self.path}?{qs}" if qs else self.path

    @classmethod
    def unsigned(cls, method: str, path: str, params=None) -> "SignedRequest":
        return cls(method=method.upper(), path=path, params=normalize_params(params))

    @classmethod
    def build(
        cls,
        method: str,
        path: str,
        params,
        timestamp_ms: int,
        signer: HmacSigner,
        recv_window_ms: Optional[int] = None,
    ) -> "SignedRequest":
        pairs = list(normalize_params(params))
        pairs = [kv for kv in pairs if kv[0] not in ("timestamp", "recvWindow", "signature")]
        if recv_window_ms:
            pairs.append(("recvWindow", str(int(recv_window_ms))))
        pairs.append(("timestamp", str(int(timestamp_ms))))
        canon = tuple(sorted(pairs, key=lambda kv: kv[0]))
        return cls(
            method=method.upper(),
            path=path,
            params=canon,
            timestamp_ms=int(timestamp_ms),
            signature=signer.sign(canonical_query(canon)),
        )

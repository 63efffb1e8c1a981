"""
Shared symbol helpers.

Alert sources, the two exchanges and ccxt spell the same perpetual contract
differently: BTCUSDT.P, BTCUSDTPERP, BTC/USDT:USDT, btcusdt. This module is
the single source of truth for turning any of those into one canonical key
(BTCUSDT). Compare symbols through here rather than with ad-hoc string logic.
"""
from __future__ import annotations


def normalize_symbol(symbol: str | None) -> str:
    """
    Canonical contract key for "same market" comparison.

    BTCUSDT.P, BTCUSDTPERP, BTC/USDT:USDT, BTC-USDT, btcusdt -> BTCUSDT.
    """
    if not symbol:
        return ""
    s = str(symbol).strip().upper()
    s = s.split(":")[0]
    if s.endswith(".P"):
        s = s[:-2]
    s = s.replace("PERP", "")
    s = s.replace("/", "").replace("-", "").replace("_", "").replace(".", "")
    return s


def same_symbol(a: str | None, b: str | None) -> bool:
    """True when both symbols normalize to the same non-empty key."""
    na, nb = normalize_symbol(a), normalize_symbol(b)
    return bool(na) and na == nb

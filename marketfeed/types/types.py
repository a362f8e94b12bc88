from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Final

from marketfeed.types.aliases import Symbol, UnixMillis

# -------- Enums --------


class AssetClass(str, Enum):
    EQUITY = "equity"
    CRYPTO = "crypto"
    COMMODITY_OR_METAL = "commodity_or_metal"


RESOLUTIONS: Final[tuple[str, ...]] = ("1", "5", "15", "D", "W")
INTRADAY_RESOLUTIONS: Final[frozenset[str]] = frozenset({"1", "5", "15"})


# -------- Market data --------


@dataclass(frozen=True, slots=True)
class Quote:
    """
    Point-in-time price snapshot with 24h change statistics.
    A new Quote replaces a cached one, it is never mutated.
    """

    symbol: Symbol
    price: float
    change: float
    change_percent: float
    high: float
    low: float
    open: float
    previous_close: float
    volume: float
    timestamp: UnixMillis
    source: str


@dataclass(frozen=True, slots=True)
class Candle:
    """One OHLCV bar. `time` is a UTC date (D/W) or timestamp (intraday) key."""

    time: str
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass(frozen=True, slots=True)
class TickerData:
    """Normalized realtime price update pushed to stream listeners."""

    symbol: Symbol
    price: float
    change: float
    change_percent: float
    volume: float
    timestamp: UnixMillis

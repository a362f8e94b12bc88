"""
Time helpers for candle requests: resolution validation, candle time keys,
chart range presets and provider-specific window translation.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Final, Literal, Union

from marketfeed.types.aliases import Resolution, UnixMillis, UnixSeconds
from marketfeed.types.types import INTRADAY_RESOLUTIONS, RESOLUTIONS

DAY_S: Final[int] = 86_400

# CoinGecko /ohlc only accepts these day counts
COINGECKO_DAY_BUCKETS: Final[tuple[int, ...]] = (1, 7, 14, 30, 90, 180, 365)

# preset -> (lookback seconds, resolution)
RANGE_PRESETS: Final[dict[str, tuple[int, Resolution]]] = {
    "1D": (DAY_S, "5"),
    "1W": (7 * DAY_S, "15"),
    "1M": (30 * DAY_S, "D"),
    "3M": (90 * DAY_S, "D"),
    "6M": (180 * DAY_S, "D"),
    "1Y": (365 * DAY_S, "W"),
    "ALL": (5 * 365 * DAY_S, "W"),
}
DEFAULT_RANGE: Final[tuple[int, Resolution]] = (60 * DAY_S, "D")

PolygonTimespan = Literal["minute", "day", "week"]


def validate_resolution(resolution: str) -> Resolution:
    if resolution not in RESOLUTIONS:
        raise ValueError(f"Unsupported resolution {resolution!r}, expected one of {RESOLUTIONS}")
    return resolution


def candle_time_key(ts_ms: UnixMillis, resolution: Resolution) -> str:
    """UTC calendar day for D/W bars, full UTC timestamp for intraday bars."""
    dt_utc = datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc)
    if resolution in INTRADAY_RESOLUTIONS:
        return dt_utc.strftime("%Y-%m-%dT%H:%M:%SZ")
    return dt_utc.strftime("%Y-%m-%d")


def resolve_range(range_code: str, now: UnixSeconds) -> tuple[UnixSeconds, UnixSeconds, Resolution]:
    """
    Translate a chart range preset ("1D", "1W", ..., "ALL") into (from, to, resolution).
    Unknown presets fall back to 60 days of daily bars.
    """
    lookback_s, resolution = RANGE_PRESETS.get(range_code.upper(), DEFAULT_RANGE)
    return now - lookback_s, now, resolution


def snap_coingecko_days(from_ts: UnixSeconds, to_ts: UnixSeconds) -> Union[int, str]:
    """Smallest accepted day bucket covering the window, else "max"."""
    diff_days = math.ceil((to_ts - from_ts) / DAY_S)
    for bucket in COINGECKO_DAY_BUCKETS:
        if bucket >= diff_days:
            return bucket
    return "max"


def polygon_timespan(resolution: Resolution) -> tuple[int, PolygonTimespan]:
    """(multiplier, timespan) for Polygon aggregates."""
    if resolution in INTRADAY_RESOLUTIONS:
        return int(resolution), "minute"
    if resolution == "W":
        return 1, "week"
    return 1, "day"


def iso_date(ts: UnixSeconds) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d")

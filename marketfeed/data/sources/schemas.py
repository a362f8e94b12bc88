"""
Typed wire shapes for every upstream payload.

Each provider response is validated at the adapter boundary; anything that does not
conform is rejected as a ValidationError instead of being trusted structurally at
the call site. The models also carry the conversion into domain types.
"""

from __future__ import annotations

from typing import Any, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from marketfeed.data.ranges import candle_time_key
from marketfeed.errors.errors import ValidationError
from marketfeed.types.aliases import Resolution, Symbol, UnixMillis
from marketfeed.types.types import Candle, Quote

M = TypeVar("M")


class _Wire(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


def parse_payload(adapter: TypeAdapter[M], raw: Any, *, source: str) -> M:
    """Validate `raw` against `adapter`, translating pydantic errors into ValidationError."""
    try:
        return adapter.validate_python(raw)
    except PydanticValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        loc = ".".join(str(p) for p in first.get("loc", ())) or "<root>"
        raise ValidationError(
            f"{source} payload failed validation at {loc}: {first.get('msg', 'invalid')}",
            field=loc,
            received=first.get("input", raw),
            component=source,
        ) from e


def _sorted_candles(rows: list[tuple[UnixMillis, Candle]]) -> list[Candle]:
    """
    Ascending candles with unique time keys.

    Sub-daily bars collapse onto the same D/W day key (CoinGecko serves 30m/4h
    granularity for short windows); the latest bar of each key wins.
    """
    rows.sort(key=lambda row: row[0])
    by_key: dict[str, Candle] = {}
    for _, candle in rows:
        by_key[candle.time] = candle
    return list(by_key.values())


# ------------------------- Finnhub ------------------------------------


class FinnhubQuote(_Wire):
    """GET /quote: {c, d, dp, h, l, o, pc, t}. Unknown symbols come back all zero."""

    c: float
    d: Optional[float] = None
    dp: Optional[float] = None
    h: float = 0.0
    l: float = 0.0  # noqa: E741
    o: float = 0.0
    pc: float = 0.0
    t: Optional[int] = None

    def to_quote(self, symbol: Symbol, source: str, now_ms: UnixMillis) -> Quote:
        return Quote(
            symbol=symbol,
            price=self.c,
            change=self.d or 0.0,
            change_percent=self.dp or 0.0,
            high=self.h,
            low=self.l,
            open=self.o,
            previous_close=self.pc,
            volume=0.0,
            timestamp=self.t * 1000 if self.t else now_ms,
            source=source,
        )


class FinnhubCandles(_Wire):
    """GET /stock/candle and /forex/candle: parallel arrays, or just {s: "no_data"}."""

    s: str
    t: list[int] = Field(default_factory=list)
    o: list[float] = Field(default_factory=list)
    h: list[float] = Field(default_factory=list)
    l: list[float] = Field(default_factory=list)  # noqa: E741
    c: list[float] = Field(default_factory=list)
    v: list[float] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.s == "ok" and len(self.t) > 0

    def to_candles(self, resolution: Resolution) -> list[Candle]:
        n = len(self.t)
        if any(len(col) != n for col in (self.o, self.h, self.l, self.c)):
            raise ValidationError(
                "finnhub candle arrays have mismatched lengths",
                field="t",
                received={"t": n, "o": len(self.o), "c": len(self.c)},
                component="finnhub",
            )
        volumes = self.v if len(self.v) == n else [0.0] * n
        rows = [
            (
                ts * 1000,
                Candle(
                    time=candle_time_key(ts * 1000, resolution),
                    open=self.o[i],
                    high=self.h[i],
                    low=self.l[i],
                    close=self.c[i],
                    volume=volumes[i],
                ),
            )
            for i, ts in enumerate(self.t)
        ]
        return _sorted_candles(rows)


# ------------------------- Polygon ------------------------------------


class PolygonBar(_Wire):
    o: float
    h: float
    l: float  # noqa: E741
    c: float
    v: float = 0.0
    t: int  # ms


class PolygonDay(_Wire):
    o: float = 0.0
    h: float = 0.0
    l: float = 0.0  # noqa: E741
    c: float = 0.0
    v: float = 0.0


class PolygonLastTrade(_Wire):
    p: float = 0.0


class PolygonTicker(_Wire):
    ticker: str
    todaysChange: float = 0.0
    todaysChangePerc: float = 0.0
    day: PolygonDay = Field(default_factory=PolygonDay)
    prevDay: PolygonDay = Field(default_factory=PolygonDay)
    lastTrade: PolygonLastTrade = Field(default_factory=PolygonLastTrade)
    updated: Optional[int] = None  # nanoseconds

    @property
    def updated_ms(self) -> Optional[int]:
        if not self.updated:
            return None
        return self.updated // 1_000_000 if self.updated > 10**15 else self.updated


class PolygonSnapshot(_Wire):
    """GET /v2/snapshot/locale/us/markets/stocks/tickers/{ticker}"""

    status: str = ""
    ticker: PolygonTicker

    def to_quote(self, symbol: Symbol, now_ms: UnixMillis) -> Quote:
        t = self.ticker
        return Quote(
            symbol=symbol,
            price=t.day.c or t.lastTrade.p,
            change=t.todaysChange,
            change_percent=t.todaysChangePerc,
            high=t.day.h,
            low=t.day.l,
            open=t.day.o,
            previous_close=t.prevDay.c,
            volume=t.day.v,
            timestamp=t.updated_ms or now_ms,
            source="polygon",
        )


class PolygonAggregates(_Wire):
    """GET /v2/aggs/ticker/{ticker}/range/{multiplier}/{timespan}/{from}/{to}"""

    status: str = ""
    results: list[PolygonBar] = Field(default_factory=list)

    def to_candles(self, resolution: Resolution) -> list[Candle]:
        rows = [
            (
                bar.t,
                Candle(
                    time=candle_time_key(bar.t, resolution),
                    open=bar.o,
                    high=bar.h,
                    low=bar.l,
                    close=bar.c,
                    volume=bar.v,
                ),
            )
            for bar in self.results
        ]
        return _sorted_candles(rows)


# ------------------------- CoinGecko ----------------------------------


class CoinGeckoSimplePrice(_Wire):
    """One entry of GET /simple/price: {usd, usd_24h_change, usd_24h_vol, last_updated_at}."""

    usd: float
    usd_24h_change: Optional[float] = None
    usd_24h_vol: Optional[float] = None
    last_updated_at: Optional[int] = None  # seconds

    def to_quote(self, symbol: Symbol, now_ms: UnixMillis) -> Quote:
        change_percent = self.usd_24h_change or 0.0
        return Quote(
            symbol=symbol,
            price=self.usd,
            change=self.usd * (change_percent / 100),
            change_percent=change_percent,
            high=self.usd,
            low=self.usd,
            open=self.usd,
            previous_close=self.usd,
            volume=self.usd_24h_vol or 0.0,
            timestamp=self.last_updated_at * 1000 if self.last_updated_at else now_ms,
            source="coingecko",
        )


class CoinGeckoMarketChart(_Wire):
    """GET /coins/{id}/market_chart: only `prices` ([ts_ms, price] pairs) is consumed."""

    prices: list[tuple[float, float]] = Field(default_factory=list)

    def to_candles(self, resolution: Resolution) -> list[Candle]:
        # Line data, not OHLC: all four price fields carry the single price.
        rows = [
            (
                int(ts),
                Candle(
                    time=candle_time_key(int(ts), resolution),
                    open=price,
                    high=price,
                    low=price,
                    close=price,
                    volume=0.0,
                ),
            )
            for ts, price in self.prices
        ]
        return _sorted_candles(rows)


# [timestampMs, open, high, low, close]
CoinGeckoOHLCRow = tuple[float, float, float, float, float]


def coingecko_ohlc_to_candles(rows: list[CoinGeckoOHLCRow], resolution: Resolution) -> list[Candle]:
    out = [
        (
            int(ts),
            Candle(
                time=candle_time_key(int(ts), resolution),
                open=o,
                high=h,
                low=low,
                close=c,
                volume=0.0,
            ),
        )
        for ts, o, h, low, c in rows
    ]
    return _sorted_candles(out)


FINNHUB_QUOTE = TypeAdapter(FinnhubQuote)
FINNHUB_CANDLES = TypeAdapter(FinnhubCandles)
POLYGON_SNAPSHOT = TypeAdapter(PolygonSnapshot)
POLYGON_AGGREGATES = TypeAdapter(PolygonAggregates)
COINGECKO_SIMPLE_PRICE = TypeAdapter(dict[str, CoinGeckoSimplePrice])
COINGECKO_OHLC = TypeAdapter(list[CoinGeckoOHLCRow])
COINGECKO_MARKET_CHART = TypeAdapter(CoinGeckoMarketChart)

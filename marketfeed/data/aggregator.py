"""
Data Aggregator: one uniform quote/candle contract over several upstream providers.

Read path for every call:
1. deduplicate against identical in-flight requests
2. cache check (quotes 1s, candle ranges 5min by default)
3. classify the symbol and walk its fixed provider cascade
4. cache the first usable result

The public methods never raise for missing data: an exhausted cascade yields None
(quotes) or [] (candles). Only programmer errors (empty symbol, bad resolution,
inverted range) raise ValueError.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from marketfeed.config.configs import AggregatorConfig
from marketfeed.core.cache import TTLCache
from marketfeed.core.dedup import RequestDeduplicator
from marketfeed.core.retry import Cascade, CascadeStep
from marketfeed.data.ranges import (
    iso_date,
    polygon_timespan,
    snap_coingecko_days,
    validate_resolution,
)
from marketfeed.data.sources.base import now_ms
from marketfeed.data.sources.coingecko import CoinGeckoSource
from marketfeed.data.sources.finnhub import FinnhubSource
from marketfeed.data.sources.polygon import PolygonSource
from marketfeed.data.sources.schemas import coingecko_ohlc_to_candles
from marketfeed.data.symbols import (
    classify,
    coin_id_for,
    exchange_pair_for,
    oanda_symbol_for,
)
from marketfeed.ports.secrets_provider import SecretsProvider
from marketfeed.types.aliases import Resolution, Symbol, UnixSeconds
from marketfeed.types.types import AssetClass, Candle, Quote

logger = logging.getLogger(__name__)

_COMPONENT = "DataAggregator"


def _valid_quote(quote: Quote) -> bool:
    return quote.price > 0


def _non_empty(candles: list[Candle]) -> bool:
    return len(candles) > 0


class DataAggregator:
    """
    Multi-source market data manager with priority-based fallback.

    Cascades (first usable result wins):
        equity quote:      finnhub -> polygon (if keyed)
        crypto quote:      coingecko -> finnhub BINANCE bridge
        commodity quote:   finnhub OANDA bridge
        equity candles:    finnhub -> polygon (if keyed)
        crypto candles:    coingecko OHLC -> coingecko market_chart (price-only)
        commodity candles: finnhub OANDA bridge

    The cache and deduplicator are injected so tests and independent instances
    never share state.

    Usage:
        async with DataAggregator.from_secrets(EnvSecretsProvider()) as aggregator:
            quote = await aggregator.get_quote("AAPL")
            candles = await aggregator.get_candles("BTC-USD", "D", t0, t1)
    """

    def __init__(
        self,
        finnhub: FinnhubSource,
        coingecko: CoinGeckoSource,
        polygon: Optional[PolygonSource] = None,
        *,
        config: Optional[AggregatorConfig] = None,
        cache: Optional[TTLCache] = None,
        deduplicator: Optional[RequestDeduplicator] = None,
    ) -> None:
        self._finnhub = finnhub
        self._coingecko = coingecko
        self._polygon = polygon
        self._config = config or AggregatorConfig()
        self._cache = cache if cache is not None else TTLCache()
        self._dedup = deduplicator if deduplicator is not None else RequestDeduplicator()

    @classmethod
    def from_secrets(
        cls, secrets: SecretsProvider, config: Optional[AggregatorConfig] = None
    ) -> "DataAggregator":
        """Build all sources from provider API keys; missing keys disable optional steps."""
        config = config or AggregatorConfig()
        return cls(
            finnhub=FinnhubSource.from_secrets(secrets, config),
            coingecko=CoinGeckoSource.from_secrets(secrets, config),
            polygon=PolygonSource.from_secrets(secrets, config),
            config=config,
        )

    @property
    def cache(self) -> TTLCache:
        return self._cache

    @property
    def config(self) -> AggregatorConfig:
        return self._config

    # --- Public contract ---

    async def get_quote(self, symbol: Symbol) -> Optional[Quote]:
        """Real-time quote via the symbol's cascade, or None if no source has it."""
        if not symbol:
            raise ValueError("symbol is required")

        key = f"quote:{symbol}"
        return await self._dedup.deduplicate(key, lambda: self._load_quote(key, symbol))

    async def get_candles(
        self,
        symbol: Symbol,
        resolution: Resolution,
        from_ts: UnixSeconds,
        to_ts: UnixSeconds,
    ) -> list[Candle]:
        """Ascending candle series for [from_ts, to_ts] (epoch seconds), possibly empty."""
        if not symbol:
            raise ValueError("symbol is required")
        validate_resolution(resolution)
        if from_ts > to_ts:
            raise ValueError(f"from_ts ({from_ts}) must not be after to_ts ({to_ts})")

        key = f"candles:{symbol}:{resolution}:{from_ts}:{to_ts}"
        series = await self._dedup.deduplicate(
            key, lambda: self._load_candles(key, symbol, resolution, from_ts, to_ts)
        )
        # Cached series are immutable tuples; each caller gets its own list.
        return list(series)

    async def get_quotes(self, symbols: list[Symbol]) -> dict[Symbol, Quote]:
        """Concurrent get_quote over many symbols; symbols without data are omitted."""
        unique = list(dict.fromkeys(symbols))
        results = await asyncio.gather(*(self.get_quote(s) for s in unique))
        return {s: q for s, q in zip(unique, results) if q is not None}

    async def close(self) -> None:
        for source in (self._finnhub, self._coingecko, self._polygon):
            if source is not None:
                await source.close()

    async def __aenter__(self) -> "DataAggregator":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # --- Cache-through loaders (run once per key at a time) ---

    async def _load_quote(self, key: str, symbol: Symbol) -> Optional[Quote]:
        cached = self._cache.get(key, self._config.quote_ttl_s)
        if cached is not None:
            return cached

        asset_class = classify(symbol)
        if asset_class == AssetClass.CRYPTO:
            cascade = self._crypto_quote_cascade(symbol)
        elif asset_class == AssetClass.COMMODITY_OR_METAL:
            cascade = self._commodity_quote_cascade(symbol)
        else:
            cascade = self._stock_quote_cascade(symbol)

        quote = await cascade.run()
        if quote is not None:
            self._cache.set(key, quote)
        else:
            logger.info(
                f"[{_COMPONENT}] No quote for {symbol}",
                extra={"event": "quote_not_found", "symbol": symbol},
            )
        return quote

    async def _load_candles(
        self,
        key: str,
        symbol: Symbol,
        resolution: Resolution,
        from_ts: UnixSeconds,
        to_ts: UnixSeconds,
    ) -> tuple[Candle, ...]:
        cached = self._cache.get(key, self._config.candle_ttl_s)
        if cached is not None:
            return cached

        asset_class = classify(symbol)
        if asset_class == AssetClass.CRYPTO:
            cascade = self._crypto_candle_cascade(symbol, resolution, from_ts, to_ts)
        elif asset_class == AssetClass.COMMODITY_OR_METAL:
            cascade = self._commodity_candle_cascade(symbol, resolution, from_ts, to_ts)
        else:
            cascade = self._stock_candle_cascade(symbol, resolution, from_ts, to_ts)

        candles = await cascade.run()
        if not candles:
            logger.info(
                f"[{_COMPONENT}] No candles for {symbol} {resolution}",
                extra={"event": "candles_not_found", "symbol": symbol},
            )
            return ()

        series = tuple(candles)
        self._cache.set(key, series)
        return series

    # --- Quote cascades ---

    def _polygon_enabled(self) -> bool:
        return self._polygon is not None and self._polygon.is_enabled

    def _stock_quote_cascade(self, symbol: Symbol) -> Cascade[Quote]:
        async def finnhub() -> Quote:
            q = await self._finnhub.get_quote(symbol)
            return q.to_quote(symbol, "finnhub", now_ms())

        async def polygon() -> Quote:
            assert self._polygon is not None
            snap = await self._polygon.get_snapshot(symbol)
            return snap.to_quote(symbol, now_ms())

        return Cascade(
            [
                CascadeStep(
                    f"{_COMPONENT}.stock_quote.finnhub", finnhub, self._finnhub.is_enabled
                ),
                CascadeStep(f"{_COMPONENT}.stock_quote.polygon", polygon, self._polygon_enabled()),
            ],
            accept=_valid_quote,
            name=f"{_COMPONENT}.stock_quote:{symbol}",
        )

    def _crypto_quote_cascade(self, symbol: Symbol) -> Cascade[Quote]:
        coin_id = coin_id_for(symbol)

        async def coingecko() -> Optional[Quote]:
            prices = await self._coingecko.get_simple_price([coin_id])
            coin = prices.get(coin_id)
            if coin is None:
                return None
            return coin.to_quote(symbol, now_ms())

        async def finnhub_binance() -> Quote:
            q = await self._finnhub.get_quote(exchange_pair_for(symbol))
            return q.to_quote(symbol, "finnhub-binance", now_ms())

        return Cascade(
            [
                CascadeStep(
                    f"{_COMPONENT}.crypto_quote.coingecko", coingecko, self._coingecko.is_enabled
                ),
                CascadeStep(
                    f"{_COMPONENT}.crypto_quote.finnhub",
                    finnhub_binance,
                    self._finnhub.is_enabled,
                ),
            ],
            accept=_valid_quote,
            name=f"{_COMPONENT}.crypto_quote:{symbol}",
        )

    def _commodity_quote_cascade(self, symbol: Symbol) -> Cascade[Quote]:
        async def finnhub_oanda() -> Quote:
            q = await self._finnhub.get_quote(oanda_symbol_for(symbol))
            return q.to_quote(symbol, "finnhub-oanda", now_ms())

        return Cascade(
            [
                CascadeStep(
                    f"{_COMPONENT}.commodity_quote.finnhub",
                    finnhub_oanda,
                    self._finnhub.is_enabled,
                ),
            ],
            accept=_valid_quote,
            name=f"{_COMPONENT}.commodity_quote:{symbol}",
        )

    # --- Candle cascades ---

    async def _finnhub_candles(
        self,
        provider_symbol: str,
        resolution: Resolution,
        from_ts: UnixSeconds,
        to_ts: UnixSeconds,
    ) -> Optional[list[Candle]]:
        data = await self._finnhub.get_candles(provider_symbol, resolution, from_ts, to_ts)
        if not data.ok:
            return None
        return data.to_candles(resolution)

    def _stock_candle_cascade(
        self,
        symbol: Symbol,
        resolution: Resolution,
        from_ts: UnixSeconds,
        to_ts: UnixSeconds,
    ) -> Cascade[list[Candle]]:
        async def finnhub() -> Optional[list[Candle]]:
            return await self._finnhub_candles(symbol, resolution, from_ts, to_ts)

        async def polygon() -> list[Candle]:
            assert self._polygon is not None
            multiplier, timespan = polygon_timespan(resolution)
            data = await self._polygon.get_aggregates(
                symbol, multiplier, timespan, iso_date(from_ts), iso_date(to_ts)
            )
            return data.to_candles(resolution)

        return Cascade(
            [
                CascadeStep(
                    f"{_COMPONENT}.stock_candles.finnhub", finnhub, self._finnhub.is_enabled
                ),
                CascadeStep(
                    f"{_COMPONENT}.stock_candles.polygon", polygon, self._polygon_enabled()
                ),
            ],
            accept=_non_empty,
            name=f"{_COMPONENT}.stock_candles:{symbol}",
        )

    def _crypto_candle_cascade(
        self,
        symbol: Symbol,
        resolution: Resolution,
        from_ts: UnixSeconds,
        to_ts: UnixSeconds,
    ) -> Cascade[list[Candle]]:
        coin_id = coin_id_for(symbol)
        days = snap_coingecko_days(from_ts, to_ts)

        async def ohlc() -> list[Candle]:
            rows = await self._coingecko.get_ohlc(coin_id, days)
            return coingecko_ohlc_to_candles(rows, resolution)

        async def market_chart() -> list[Candle]:
            chart = await self._coingecko.get_market_chart(coin_id, days)
            return chart.to_candles(resolution)

        return Cascade(
            [
                CascadeStep(
                    f"{_COMPONENT}.crypto_candles.ohlc", ohlc, self._coingecko.is_enabled
                ),
                CascadeStep(
                    f"{_COMPONENT}.crypto_candles.chart",
                    market_chart,
                    self._coingecko.is_enabled,
                ),
            ],
            accept=_non_empty,
            name=f"{_COMPONENT}.crypto_candles:{symbol}",
        )

    def _commodity_candle_cascade(
        self,
        symbol: Symbol,
        resolution: Resolution,
        from_ts: UnixSeconds,
        to_ts: UnixSeconds,
    ) -> Cascade[list[Candle]]:
        async def finnhub_oanda() -> Optional[list[Candle]]:
            return await self._finnhub_candles(
                oanda_symbol_for(symbol), resolution, from_ts, to_ts
            )

        return Cascade(
            [
                CascadeStep(
                    f"{_COMPONENT}.commodity_candles.finnhub",
                    finnhub_oanda,
                    self._finnhub.is_enabled,
                ),
            ],
            accept=_non_empty,
            name=f"{_COMPONENT}.commodity_candles:{symbol}",
        )

    def stats(self) -> dict[str, Any]:
        return {
            "cache_entries": len(self._cache),
            "in_flight": self._dedup.size,
            "polygon_enabled": self._polygon_enabled(),
            "finnhub_enabled": self._finnhub.is_enabled,
        }

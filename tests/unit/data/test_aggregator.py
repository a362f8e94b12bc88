"""
Unit tests for DataAggregator cascades, caching and deduplication.

Sources are AsyncMock-backed stand-ins returning real wire models, so the
conversion into Quote/Candle is exercised end to end.
"""

import asyncio
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from marketfeed.config.configs import AggregatorConfig
from marketfeed.core.cache import TTLCache
from marketfeed.core.dedup import RequestDeduplicator
from marketfeed.data.aggregator import DataAggregator
from marketfeed.data.sources.coingecko import CoinGeckoSource
from marketfeed.data.sources.finnhub import FinnhubSource
from marketfeed.data.sources.polygon import PolygonSource
from marketfeed.data.sources.schemas import (
    CoinGeckoMarketChart,
    CoinGeckoSimplePrice,
    FinnhubCandles,
    FinnhubQuote,
    PolygonAggregates,
    PolygonBar,
    PolygonDay,
    PolygonSnapshot,
    PolygonTicker,
)
from marketfeed.errors.errors import RateLimited, UpstreamError, ValidationError
from marketfeed.types.types import Candle

T0 = 1_700_006_400  # 2023-11-15T00:00:00Z
DAY = 86_400


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class DictSecrets:
    def __init__(self, values: dict[str, str]) -> None:
        self._values = values

    def get(self, secret_name: str) -> str:
        return self._values[secret_name]

    def get_optional(self, secret_name: str) -> Optional[str]:
        return self._values.get(secret_name)


def _upstream_error() -> UpstreamError:
    return UpstreamError("HTTP 503", status_code=503, source="test")


@pytest.fixture
def finnhub() -> MagicMock:
    src = MagicMock(spec=FinnhubSource)
    src.is_enabled = True
    src.get_quote = AsyncMock()
    src.get_candles = AsyncMock()
    src.close = AsyncMock()
    return src


@pytest.fixture
def coingecko() -> MagicMock:
    src = MagicMock(spec=CoinGeckoSource)
    src.is_enabled = True
    src.get_simple_price = AsyncMock()
    src.get_ohlc = AsyncMock()
    src.get_market_chart = AsyncMock()
    src.close = AsyncMock()
    return src


@pytest.fixture
def polygon() -> MagicMock:
    src = MagicMock(spec=PolygonSource)
    src.is_enabled = True
    src.get_snapshot = AsyncMock()
    src.get_aggregates = AsyncMock()
    src.close = AsyncMock()
    return src


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def aggregator(
    finnhub: MagicMock, coingecko: MagicMock, polygon: MagicMock, clock: FakeClock
) -> DataAggregator:
    return DataAggregator(
        finnhub,
        coingecko,
        polygon,
        config=AggregatorConfig(quote_ttl_s=1.0, candle_ttl_s=300.0),
        cache=TTLCache(clock=clock),
        deduplicator=RequestDeduplicator(),
    )


class TestCryptoQuotes:
    @pytest.mark.asyncio
    async def test_eth_quote_from_coingecko(
        self, aggregator: DataAggregator, coingecko: MagicMock, finnhub: MagicMock
    ) -> None:
        coingecko.get_simple_price.return_value = {
            "ethereum": CoinGeckoSimplePrice(usd=3000, usd_24h_change=2.5)
        }

        quote = await aggregator.get_quote("ETH-USD")

        assert quote is not None
        assert quote.symbol == "ETH-USD"
        assert quote.price == 3000
        assert quote.change_percent == 2.5
        assert quote.change == pytest.approx(75.0)
        assert quote.source == "coingecko"
        coingecko.get_simple_price.assert_awaited_once_with(["ethereum"])
        finnhub.get_quote.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_falls_back_to_binance_bridge_on_error(
        self, aggregator: DataAggregator, coingecko: MagicMock, finnhub: MagicMock
    ) -> None:
        coingecko.get_simple_price.side_effect = RateLimited("coingecko", reset_at=0)
        finnhub.get_quote.return_value = FinnhubQuote(c=2990.0, d=10.0, dp=0.3)

        quote = await aggregator.get_quote("ETH-USD")

        assert quote is not None
        assert quote.price == 2990.0
        assert quote.source == "finnhub-binance"
        finnhub.get_quote.assert_awaited_once_with("BINANCE:ETHUSDT")

    @pytest.mark.asyncio
    async def test_zero_price_falls_back(
        self, aggregator: DataAggregator, coingecko: MagicMock, finnhub: MagicMock
    ) -> None:
        coingecko.get_simple_price.return_value = {"ethereum": CoinGeckoSimplePrice(usd=0)}
        finnhub.get_quote.return_value = FinnhubQuote(c=2990.0)

        quote = await aggregator.get_quote("ETH-USD")

        assert quote is not None
        assert quote.source == "finnhub-binance"

    @pytest.mark.asyncio
    async def test_missing_coin_in_response_falls_back(
        self, aggregator: DataAggregator, coingecko: MagicMock, finnhub: MagicMock
    ) -> None:
        coingecko.get_simple_price.return_value = {}
        finnhub.get_quote.return_value = FinnhubQuote(c=1.0)

        quote = await aggregator.get_quote("ETH-USD")

        assert quote is not None
        assert quote.source == "finnhub-binance"

    @pytest.mark.asyncio
    async def test_all_sources_fail_returns_none(
        self, aggregator: DataAggregator, coingecko: MagicMock, finnhub: MagicMock
    ) -> None:
        coingecko.get_simple_price.side_effect = _upstream_error()
        finnhub.get_quote.side_effect = ValidationError("bad", field="c")

        assert await aggregator.get_quote("ETH-USD") is None


class TestStockAndCommodityQuotes:
    @pytest.mark.asyncio
    async def test_finnhub_primary(
        self, aggregator: DataAggregator, finnhub: MagicMock, polygon: MagicMock
    ) -> None:
        finnhub.get_quote.return_value = FinnhubQuote(
            c=190.5, d=1.5, dp=0.79, h=191, l=188, o=189, pc=189, t=T0
        )

        quote = await aggregator.get_quote("AAPL")

        assert quote is not None
        assert quote.source == "finnhub"
        assert quote.previous_close == 189
        assert quote.timestamp == T0 * 1000
        polygon.get_snapshot.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_symbol_zero_price_falls_back_to_polygon(
        self, aggregator: DataAggregator, finnhub: MagicMock, polygon: MagicMock
    ) -> None:
        finnhub.get_quote.return_value = FinnhubQuote(c=0)
        polygon.get_snapshot.return_value = PolygonSnapshot(
            ticker=PolygonTicker(
                ticker="AAPL",
                todaysChange=1.0,
                todaysChangePerc=0.5,
                day=PolygonDay(o=189, h=191, l=188, c=190, v=1000),
                prevDay=PolygonDay(c=189),
            )
        )

        quote = await aggregator.get_quote("AAPL")

        assert quote is not None
        assert quote.source == "polygon"
        assert quote.price == 190
        assert quote.volume == 1000

    @pytest.mark.asyncio
    async def test_disabled_polygon_is_skipped(
        self, aggregator: DataAggregator, finnhub: MagicMock, polygon: MagicMock
    ) -> None:
        polygon.is_enabled = False
        finnhub.get_quote.side_effect = _upstream_error()

        assert await aggregator.get_quote("AAPL") is None
        polygon.get_snapshot.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_commodity_uses_oanda_bridge(
        self, aggregator: DataAggregator, finnhub: MagicMock
    ) -> None:
        finnhub.get_quote.return_value = FinnhubQuote(c=1985.2)

        quote = await aggregator.get_quote("GC=F")

        assert quote is not None
        assert quote.symbol == "GC=F"
        assert quote.source == "finnhub-oanda"
        finnhub.get_quote.assert_awaited_once_with("OANDA:XAU_USD")

    @pytest.mark.asyncio
    async def test_empty_symbol_raises(self, aggregator: DataAggregator) -> None:
        with pytest.raises(ValueError):
            await aggregator.get_quote("")


class TestQuoteCachingAndDedup:
    @pytest.mark.asyncio
    async def test_cache_hit_then_expiry(
        self, aggregator: DataAggregator, finnhub: MagicMock, clock: FakeClock
    ) -> None:
        finnhub.get_quote.return_value = FinnhubQuote(c=100.0)

        await aggregator.get_quote("AAPL")
        clock.now += 0.5
        await aggregator.get_quote("AAPL")
        assert finnhub.get_quote.await_count == 1

        clock.now += 1.0
        await aggregator.get_quote("AAPL")
        assert finnhub.get_quote.await_count == 2

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_cascade(
        self, aggregator: DataAggregator, finnhub: MagicMock
    ) -> None:
        finnhub.get_quote.return_value = FinnhubQuote(c=100.0)

        quotes = await asyncio.gather(*(aggregator.get_quote("AAPL") for _ in range(5)))

        assert finnhub.get_quote.await_count == 1
        assert all(q is quotes[0] for q in quotes)

    @pytest.mark.asyncio
    async def test_absent_quote_is_not_cached(
        self, aggregator: DataAggregator, finnhub: MagicMock, polygon: MagicMock
    ) -> None:
        polygon.is_enabled = False
        finnhub.get_quote.return_value = FinnhubQuote(c=0)

        assert await aggregator.get_quote("AAPL") is None
        assert await aggregator.get_quote("AAPL") is None
        assert finnhub.get_quote.await_count == 2

    @pytest.mark.asyncio
    async def test_get_quotes_omits_missing(
        self, aggregator: DataAggregator, finnhub: MagicMock, polygon: MagicMock
    ) -> None:
        polygon.is_enabled = False

        async def quote_for(symbol: str) -> FinnhubQuote:
            return FinnhubQuote(c=0 if symbol == "NOPE" else 10.0)

        finnhub.get_quote.side_effect = quote_for

        quotes = await aggregator.get_quotes(["AAPL", "NOPE", "MSFT", "AAPL"])

        assert set(quotes) == {"AAPL", "MSFT"}


class TestCandles:
    @pytest.mark.asyncio
    async def test_aapl_daily_candles_from_finnhub(
        self, aggregator: DataAggregator, finnhub: MagicMock, polygon: MagicMock
    ) -> None:
        finnhub.get_candles.return_value = FinnhubCandles(
            s="ok",
            t=[T0, T0 + DAY, T0 + 2 * DAY],
            o=[1.0, 2.0, 3.0],
            h=[1.5, 2.5, 3.5],
            l=[0.5, 1.5, 2.5],
            c=[1.2, 2.2, 3.2],
            v=[100, 200, 300],
        )

        candles = await aggregator.get_candles("AAPL", "D", T0, T0 + 2 * DAY)

        assert candles == [
            Candle(time="2023-11-15", open=1.0, high=1.5, low=0.5, close=1.2, volume=100),
            Candle(time="2023-11-16", open=2.0, high=2.5, low=1.5, close=2.2, volume=200),
            Candle(time="2023-11-17", open=3.0, high=3.5, low=2.5, close=3.2, volume=300),
        ]
        finnhub.get_candles.assert_awaited_once_with("AAPL", "D", T0, T0 + 2 * DAY)
        polygon.get_aggregates.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_data_falls_back_to_polygon(
        self, aggregator: DataAggregator, finnhub: MagicMock, polygon: MagicMock
    ) -> None:
        finnhub.get_candles.return_value = FinnhubCandles(s="no_data")
        polygon.get_aggregates.return_value = PolygonAggregates(
            results=[PolygonBar(o=1, h=2, l=0.5, c=1.5, v=10, t=T0 * 1000)]
        )

        candles = await aggregator.get_candles("AAPL", "D", T0, T0 + DAY)

        assert len(candles) == 1
        polygon.get_aggregates.assert_awaited_once_with(
            "AAPL", 1, "day", "2023-11-15", "2023-11-16"
        )

    @pytest.mark.asyncio
    async def test_crypto_ohlc_then_market_chart(
        self, aggregator: DataAggregator, coingecko: MagicMock
    ) -> None:
        coingecko.get_ohlc.return_value = []
        coingecko.get_market_chart.return_value = CoinGeckoMarketChart(
            prices=[(T0 * 1000 + DAY * 1000, 36000.0), (T0 * 1000, 35000.0)]
        )

        candles = await aggregator.get_candles("BTC-USD", "D", T0 - 3 * DAY, T0)

        assert [c.close for c in candles] == [35000.0, 36000.0]
        assert all(c.open == c.high == c.low == c.close for c in candles)
        coingecko.get_ohlc.assert_awaited_once_with("bitcoin", 7)

    @pytest.mark.asyncio
    async def test_crypto_ohlc_rows(self, aggregator: DataAggregator, coingecko: MagicMock) -> None:
        coingecko.get_ohlc.return_value = [(T0 * 1000, 1.0, 2.0, 0.5, 1.5)]

        candles = await aggregator.get_candles("BTC-USD", "D", T0 - DAY, T0)

        assert candles == [
            Candle(time="2023-11-15", open=1.0, high=2.0, low=0.5, close=1.5, volume=0.0)
        ]
        coingecko.get_market_chart.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_commodity_candles_use_oanda_symbol(
        self, aggregator: DataAggregator, finnhub: MagicMock
    ) -> None:
        finnhub.get_candles.return_value = FinnhubCandles(
            s="ok", t=[T0], o=[1.0], h=[1.0], l=[1.0], c=[1.0]
        )

        candles = await aggregator.get_candles("SI=F", "W", T0 - DAY, T0)

        assert len(candles) == 1
        assert candles[0].volume == 0.0
        finnhub.get_candles.assert_awaited_once_with("OANDA:XAG_USD", "W", T0 - DAY, T0)

    @pytest.mark.asyncio
    async def test_exhausted_cascade_returns_empty_list(
        self, aggregator: DataAggregator, finnhub: MagicMock, polygon: MagicMock
    ) -> None:
        finnhub.get_candles.side_effect = _upstream_error()
        polygon.get_aggregates.side_effect = _upstream_error()

        assert await aggregator.get_candles("AAPL", "D", T0, T0 + DAY) == []

    @pytest.mark.asyncio
    async def test_cached_series_is_copied_per_caller(
        self, aggregator: DataAggregator, finnhub: MagicMock
    ) -> None:
        finnhub.get_candles.return_value = FinnhubCandles(
            s="ok", t=[T0], o=[1.0], h=[1.0], l=[1.0], c=[1.0], v=[1.0]
        )

        first = await aggregator.get_candles("AAPL", "D", T0, T0)
        first.clear()
        second = await aggregator.get_candles("AAPL", "D", T0, T0)

        assert len(second) == 1
        assert finnhub.get_candles.await_count == 1

    @pytest.mark.asyncio
    async def test_invalid_inputs_raise(self, aggregator: DataAggregator) -> None:
        with pytest.raises(ValueError):
            await aggregator.get_candles("AAPL", "60", T0, T0)
        with pytest.raises(ValueError):
            await aggregator.get_candles("AAPL", "D", T0 + 1, T0)
        with pytest.raises(ValueError):
            await aggregator.get_candles("", "D", T0, T0)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_close_closes_sources(
        self,
        aggregator: DataAggregator,
        finnhub: MagicMock,
        coingecko: MagicMock,
        polygon: MagicMock,
    ) -> None:
        async with aggregator:
            pass

        finnhub.close.assert_awaited_once()
        coingecko.close.assert_awaited_once()
        polygon.close.assert_awaited_once()

    def test_from_secrets_disables_unkeyed_polygon(self) -> None:
        aggregator = DataAggregator.from_secrets(DictSecrets({"finnhub_api_key": "fh"}))

        stats = aggregator.stats()
        assert stats["finnhub_enabled"] is True
        assert stats["polygon_enabled"] is False
        assert stats["cache_entries"] == 0

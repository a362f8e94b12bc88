"""
CoinGecko REST adapter. Works without a key (public tier); a pro key is sent as a header.
"""

from __future__ import annotations

from typing import ClassVar, Union

from marketfeed.config.configs import AggregatorConfig
from marketfeed.data.sources.base import HttpSource
from marketfeed.data.sources.schemas import (
    COINGECKO_MARKET_CHART,
    COINGECKO_OHLC,
    COINGECKO_SIMPLE_PRICE,
    CoinGeckoMarketChart,
    CoinGeckoOHLCRow,
    CoinGeckoSimplePrice,
    parse_payload,
)

Days = Union[int, str]  # bucket or "max"


class CoinGeckoSource(HttpSource):
    name: ClassVar[str] = "coingecko"
    secret_name: ClassVar[str] = "coingecko_api_key"
    requires_key: ClassVar[bool] = False

    @classmethod
    def _base_url_from(cls, config: AggregatorConfig) -> str:
        return config.endpoints.coingecko_base

    def _auth(self, params: dict[str, str], headers: dict[str, str]) -> None:
        if self._api_key:
            headers["x-cg-pro-api-key"] = self._api_key

    async def get_simple_price(
        self, coin_ids: list[str], vs_currency: str = "usd"
    ) -> dict[str, CoinGeckoSimplePrice]:
        raw = await self._fetch(
            "/simple/price",
            {
                "ids": ",".join(coin_ids),
                "vs_currencies": vs_currency,
                "include_24hr_change": "true",
                "include_24hr_vol": "true",
                "include_last_updated_at": "true",
            },
        )
        return parse_payload(COINGECKO_SIMPLE_PRICE, raw, source=self.name)

    async def get_ohlc(
        self, coin_id: str, days: Days, vs_currency: str = "usd"
    ) -> list[CoinGeckoOHLCRow]:
        raw = await self._fetch(
            f"/coins/{coin_id}/ohlc", {"vs_currency": vs_currency, "days": str(days)}
        )
        return parse_payload(COINGECKO_OHLC, raw, source=self.name)

    async def get_market_chart(
        self, coin_id: str, days: Days, vs_currency: str = "usd"
    ) -> CoinGeckoMarketChart:
        raw = await self._fetch(
            f"/coins/{coin_id}/market_chart", {"vs_currency": vs_currency, "days": str(days)}
        )
        return parse_payload(COINGECKO_MARKET_CHART, raw, source=self.name)

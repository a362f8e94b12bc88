"""
Finnhub REST adapter.

Primary provider for equities, and the bridge for crypto (BINANCE:<PAIR>) and
commodity/metal (OANDA:<INSTRUMENT>) quotes and candles.
"""

from __future__ import annotations

from typing import ClassVar

from marketfeed.config.configs import AggregatorConfig
from marketfeed.data.sources.base import HttpSource
from marketfeed.data.sources.schemas import (
    FINNHUB_CANDLES,
    FINNHUB_QUOTE,
    FinnhubCandles,
    FinnhubQuote,
    parse_payload,
)
from marketfeed.types.aliases import Resolution, UnixSeconds


class FinnhubSource(HttpSource):
    name: ClassVar[str] = "finnhub"
    secret_name: ClassVar[str] = "finnhub_api_key"
    requires_key: ClassVar[bool] = True

    @classmethod
    def _base_url_from(cls, config: AggregatorConfig) -> str:
        return config.endpoints.finnhub_base

    def _auth(self, params: dict[str, str], headers: dict[str, str]) -> None:
        if self._api_key:
            params["token"] = self._api_key

    async def get_quote(self, symbol: str) -> FinnhubQuote:
        raw = await self._fetch("/quote", {"symbol": symbol})
        return parse_payload(FINNHUB_QUOTE, raw, source=self.name)

    async def get_candles(
        self,
        symbol: str,
        resolution: Resolution,
        from_ts: UnixSeconds,
        to_ts: UnixSeconds,
    ) -> FinnhubCandles:
        # OANDA instruments are served by the forex endpoint
        path = "/forex/candle" if symbol.startswith("OANDA:") else "/stock/candle"
        raw = await self._fetch(
            path,
            {
                "symbol": symbol,
                "resolution": resolution,
                "from": str(from_ts),
                "to": str(to_ts),
            },
        )
        return parse_payload(FINNHUB_CANDLES, raw, source=self.name)

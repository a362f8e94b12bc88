"""
Polygon.io REST adapter (optional secondary equity provider).
Disabled when no API key is configured.
"""

from __future__ import annotations

from typing import ClassVar

from marketfeed.config.configs import AggregatorConfig
from marketfeed.data.ranges import PolygonTimespan
from marketfeed.data.sources.base import HttpSource
from marketfeed.data.sources.schemas import (
    POLYGON_AGGREGATES,
    POLYGON_SNAPSHOT,
    PolygonAggregates,
    PolygonSnapshot,
    parse_payload,
)


class PolygonSource(HttpSource):
    name: ClassVar[str] = "polygon"
    secret_name: ClassVar[str] = "polygon_api_key"
    requires_key: ClassVar[bool] = True

    @classmethod
    def _base_url_from(cls, config: AggregatorConfig) -> str:
        return config.endpoints.polygon_base

    def _auth(self, params: dict[str, str], headers: dict[str, str]) -> None:
        if self._api_key:
            params["apiKey"] = self._api_key

    async def get_snapshot(self, ticker: str) -> PolygonSnapshot:
        raw = await self._fetch(f"/v2/snapshot/locale/us/markets/stocks/tickers/{ticker}")
        return parse_payload(POLYGON_SNAPSHOT, raw, source=self.name)

    async def get_aggregates(
        self,
        ticker: str,
        multiplier: int,
        timespan: PolygonTimespan,
        from_date: str,
        to_date: str,
    ) -> PolygonAggregates:
        raw = await self._fetch(
            f"/v2/aggs/ticker/{ticker}/range/{multiplier}/{timespan}/{from_date}/{to_date}",
            {"adjusted": "true", "sort": "asc", "limit": "50000"},
        )
        return parse_payload(POLYGON_AGGREGATES, raw, source=self.name)

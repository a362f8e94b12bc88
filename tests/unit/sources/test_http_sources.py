"""
Unit tests for the HTTP source adapters: status mapping, auth, retries.

A fake aiohttp session records requests and replays canned responses.
"""

from typing import Any, Optional, Union

import aiohttp
import orjson
import pytest

from marketfeed.config.configs import AggregatorConfig
from marketfeed.core.retry import Retrying, RetryPolicy
from marketfeed.data.sources.coingecko import CoinGeckoSource
from marketfeed.data.sources.finnhub import FinnhubSource
from marketfeed.data.sources.polygon import PolygonSource
from marketfeed.errors.errors import RateLimited, UpstreamError, ValidationError


class FakeResponse:
    def __init__(
        self,
        status: int = 200,
        body: Union[bytes, Any] = b"{}",
        headers: Optional[dict[str, str]] = None,
        reason: str = "OK",
    ) -> None:
        self.status = status
        self.reason = reason
        self.headers = headers or {}
        self._body = body if isinstance(body, bytes) else orjson.dumps(body)

    async def read(self) -> bytes:
        return self._body

    async def __aenter__(self) -> "FakeResponse":
        return self

    async def __aexit__(self, *exc: object) -> None:
        return None


class FakeSession:
    def __init__(self, *responses: Union[FakeResponse, Exception]) -> None:
        self._responses = list(responses)
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    def get(self, url: str, *, params: Any = None, headers: Any = None, timeout: Any = None):
        self.calls.append({"url": url, "params": params, "headers": headers})
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def close(self) -> None:
        self.closed = True


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _retrying(attempts: int = 3) -> Retrying:
    return Retrying(RetryPolicy(max_attempts=attempts, base_delay_s=1.0), sleep=RecordingSleep())


def finnhub_with(session: FakeSession, api_key: Optional[str] = "fh-key") -> FinnhubSource:
    return FinnhubSource(
        "https://finnhub.test/api/v1", api_key=api_key, retrying=_retrying(), session=session
    )


class TestFinnhubSource:
    @pytest.mark.asyncio
    async def test_quote_sends_token_and_parses(self) -> None:
        session = FakeSession(FakeResponse(body={"c": 190.0, "d": 1.0, "dp": 0.5, "t": 1}))
        source = finnhub_with(session)

        quote = await source.get_quote("AAPL")

        assert quote.c == 190.0
        call = session.calls[0]
        assert call["url"] == "https://finnhub.test/api/v1/quote"
        assert call["params"] == {"symbol": "AAPL", "token": "fh-key"}

    @pytest.mark.asyncio
    async def test_oanda_candles_use_forex_endpoint(self) -> None:
        session = FakeSession(FakeResponse(body={"s": "no_data"}))
        source = finnhub_with(session)

        candles = await source.get_candles("OANDA:XAU_USD", "D", 1, 2)

        assert not candles.ok
        assert session.calls[0]["url"].endswith("/forex/candle")
        assert session.calls[0]["params"]["from"] == "1"

    @pytest.mark.asyncio
    async def test_without_key_fails_fast(self) -> None:
        session = FakeSession()
        source = finnhub_with(session, api_key=None)

        assert not source.is_enabled
        with pytest.raises(UpstreamError) as exc_info:
            await source.get_quote("AAPL")

        assert exc_info.value.retryable is False
        assert session.calls == []

    @pytest.mark.asyncio
    async def test_429_maps_to_rate_limited_with_retry_after(self) -> None:
        session = FakeSession(FakeResponse(status=429, headers={"Retry-After": "30"}))
        source = finnhub_with(session)

        with pytest.raises(RateLimited) as exc_info:
            await source.get_quote("AAPL")

        assert exc_info.value.status_code == 429
        assert exc_info.value.source == "finnhub"
        assert exc_info.value.reset_at > 0
        assert len(session.calls) == 1

    @pytest.mark.asyncio
    async def test_5xx_is_retried_then_succeeds(self) -> None:
        session = FakeSession(
            FakeResponse(status=503, reason="Service Unavailable"),
            FakeResponse(body={"c": 1.0}),
        )
        source = finnhub_with(session)

        quote = await source.get_quote("AAPL")

        assert quote.c == 1.0
        assert len(session.calls) == 2

    @pytest.mark.asyncio
    async def test_4xx_is_not_retried(self) -> None:
        session = FakeSession(FakeResponse(status=403, reason="Forbidden"))
        source = finnhub_with(session)

        with pytest.raises(UpstreamError) as exc_info:
            await source.get_quote("AAPL")

        assert exc_info.value.status_code == 403
        assert exc_info.value.retryable is False
        assert len(session.calls) == 1

    @pytest.mark.asyncio
    async def test_network_error_is_retryable_status_zero(self) -> None:
        session = FakeSession(
            aiohttp.ClientConnectionError("reset"),
            aiohttp.ClientConnectionError("reset"),
            aiohttp.ClientConnectionError("reset"),
        )
        source = finnhub_with(session)

        with pytest.raises(UpstreamError) as exc_info:
            await source.get_quote("AAPL")

        assert exc_info.value.status_code == 0
        assert exc_info.value.retryable is True
        assert len(session.calls) == 3

    @pytest.mark.asyncio
    async def test_non_json_body_is_validation_error(self) -> None:
        session = FakeSession(FakeResponse(body=b"<html>oops</html>"))
        source = finnhub_with(session)

        with pytest.raises(ValidationError):
            await source.get_quote("AAPL")
        assert len(session.calls) == 1

    @pytest.mark.asyncio
    async def test_schema_mismatch_is_validation_error(self) -> None:
        session = FakeSession(FakeResponse(body={"error": "no price"}))
        source = finnhub_with(session)

        with pytest.raises(ValidationError) as exc_info:
            await source.get_quote("AAPL")
        assert exc_info.value.field == "c"

    @pytest.mark.asyncio
    async def test_borrowed_session_is_not_closed(self) -> None:
        session = FakeSession()
        source = finnhub_with(session)

        await source.close()

        assert session.closed is False


class TestPolygonSource:
    @pytest.mark.asyncio
    async def test_aggregates_request_shape(self) -> None:
        session = FakeSession(
            FakeResponse(body={"status": "OK", "results": [{"o": 1, "h": 2, "l": 0.5, "c": 1.5, "t": 0}]})
        )
        source = PolygonSource(
            "https://polygon.test", api_key="pg", retrying=_retrying(), session=session
        )

        aggs = await source.get_aggregates("AAPL", 5, "minute", "2023-11-14", "2023-11-15")

        assert len(aggs.results) == 1
        call = session.calls[0]
        assert call["url"] == "https://polygon.test/v2/aggs/ticker/AAPL/range/5/minute/2023-11-14/2023-11-15"
        assert call["params"]["apiKey"] == "pg"
        assert call["params"]["sort"] == "asc"


class TestCoinGeckoSource:
    @pytest.mark.asyncio
    async def test_public_tier_needs_no_key(self) -> None:
        session = FakeSession(FakeResponse(body={"bitcoin": {"usd": 35000.0}}))
        source = CoinGeckoSource("https://cg.test/api/v3", retrying=_retrying(), session=session)

        prices = await source.get_simple_price(["bitcoin"])

        assert source.is_enabled
        assert prices["bitcoin"].usd == 35000.0
        assert "x-cg-pro-api-key" not in session.calls[0]["headers"]
        assert session.calls[0]["params"]["ids"] == "bitcoin"

    @pytest.mark.asyncio
    async def test_pro_key_goes_in_header(self) -> None:
        session = FakeSession(FakeResponse(body=[[0, 1, 2, 0.5, 1.5]]))
        source = CoinGeckoSource(
            "https://cg.test/api/v3", api_key="cg", retrying=_retrying(), session=session
        )

        rows = await source.get_ohlc("bitcoin", 7)

        assert len(rows) == 1
        assert session.calls[0]["headers"]["x-cg-pro-api-key"] == "cg"
        assert session.calls[0]["params"]["days"] == "7"


class TestFromSecrets:
    def test_builds_from_config(self) -> None:
        class Secrets:
            def get(self, name: str) -> str:
                raise KeyError(name)

            def get_optional(self, name: str) -> Optional[str]:
                return {"polygon_api_key": "pg"}.get(name)

        config = AggregatorConfig(request_timeout_s=5.0)
        polygon = PolygonSource.from_secrets(Secrets(), config)
        finnhub = FinnhubSource.from_secrets(Secrets(), config)

        assert polygon.is_enabled
        assert not finnhub.is_enabled

"""
Unit tests for stream message handlers (BinanceTickerHandler, FinnhubTradeHandler).
"""

from unittest.mock import AsyncMock

import pytest

from marketfeed.data.live.errors import MessageParseError
from marketfeed.data.live.handlers import (
    BinanceTickerHandler,
    FinnhubTradeHandler,
    _safe_float,
    _safe_int,
)
from marketfeed.types.types import TickerData

RECV_TS = 1_700_000_000_000


class TestSafeConversions:
    """Tests for safe type conversion helpers."""

    def test_safe_float_from_string(self) -> None:
        assert _safe_float("123.456", "test") == 123.456

    def test_safe_float_invalid(self) -> None:
        with pytest.raises(MessageParseError):
            _safe_float("not_a_number", "test")

    def test_safe_float_missing(self) -> None:
        with pytest.raises(MessageParseError):
            _safe_float(None, "test")

    def test_safe_int_from_string(self) -> None:
        assert _safe_int("123", "test") == 123

    def test_safe_int_invalid(self) -> None:
        with pytest.raises(MessageParseError):
            _safe_int("abc", "test")


class TestBinanceTickerHandler:
    """Tests for BinanceTickerHandler."""

    @pytest.fixture
    def on_event(self) -> AsyncMock:
        return AsyncMock()

    @pytest.fixture
    def handler(self, on_event: AsyncMock) -> BinanceTickerHandler:
        return BinanceTickerHandler(on_event)

    @pytest.fixture
    def sample_ticker(self) -> dict:
        """Sample Binance 24hr ticker frame."""
        return {
            "e": "24hrTicker",
            "E": 1672515782136,
            "s": "BTCUSDT",
            "p": "50.50",
            "P": "0.30",
            "c": "16850.50",
            "q": "168000000.00",
        }

    @pytest.mark.asyncio
    async def test_parse_ticker(
        self, handler: BinanceTickerHandler, on_event: AsyncMock, sample_ticker: dict
    ) -> None:
        """Test that a ticker frame becomes TickerData under the canonical symbol."""
        await handler.handle(sample_ticker, RECV_TS)

        on_event.assert_awaited_once_with(
            TickerData(
                symbol="BTC-USD",
                price=16850.50,
                change=50.50,
                change_percent=0.30,
                volume=168000000.00,
                timestamp=1672515782136,
            )
        )
        assert handler.stats.messages_processed == 1
        assert handler.stats.by_symbol == {"BTC-USD": 1}

    @pytest.mark.asyncio
    async def test_combined_stream_is_unwrapped(
        self, handler: BinanceTickerHandler, on_event: AsyncMock, sample_ticker: dict
    ) -> None:
        await handler.handle({"stream": "btcusdt@ticker", "data": sample_ticker}, RECV_TS)
        assert on_event.await_count == 1

    @pytest.mark.asyncio
    async def test_subscription_ack_is_skipped(
        self, handler: BinanceTickerHandler, on_event: AsyncMock
    ) -> None:
        await handler.handle({"result": None, "id": 3}, RECV_TS)

        on_event.assert_not_awaited()
        assert handler.stats.messages_skipped == 1

    @pytest.mark.asyncio
    async def test_other_event_types_are_skipped(
        self, handler: BinanceTickerHandler, on_event: AsyncMock
    ) -> None:
        await handler.handle({"e": "kline", "s": "BTCUSDT"}, RECV_TS)
        on_event.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_malformed_price_is_dropped(
        self, handler: BinanceTickerHandler, on_event: AsyncMock, sample_ticker: dict
    ) -> None:
        """Test that a bad field is logged and counted, not raised."""
        sample_ticker["c"] = "garbage"

        await handler.handle(sample_ticker, RECV_TS)

        on_event.assert_not_awaited()
        assert handler.stats.parse_errors == 1

    @pytest.mark.asyncio
    async def test_reset_stats(
        self, handler: BinanceTickerHandler, sample_ticker: dict
    ) -> None:
        await handler.handle(sample_ticker, RECV_TS)
        handler.reset_stats()
        assert handler.stats.messages_received == 0


class TestFinnhubTradeHandler:
    """Tests for FinnhubTradeHandler."""

    @pytest.fixture
    def on_event(self) -> AsyncMock:
        return AsyncMock()

    @pytest.fixture
    def handler(self, on_event: AsyncMock) -> FinnhubTradeHandler:
        return FinnhubTradeHandler(on_event)

    @pytest.mark.asyncio
    async def test_each_trade_is_emitted(
        self, handler: FinnhubTradeHandler, on_event: AsyncMock
    ) -> None:
        frame = {
            "type": "trade",
            "data": [
                {"s": "AAPL", "p": 190.1, "v": 100, "t": 1700000000001},
                {"s": "MSFT", "p": 370.0, "v": 5, "t": 1700000000002},
            ],
        }

        await handler.handle(frame, RECV_TS)

        assert on_event.await_count == 2
        first = on_event.await_args_list[0].args[0]
        assert first == TickerData("AAPL", 190.1, 0.0, 0.0, 100.0, 1700000000001)

    @pytest.mark.asyncio
    async def test_ping_is_skipped(self, handler: FinnhubTradeHandler, on_event: AsyncMock) -> None:
        await handler.handle({"type": "ping"}, RECV_TS)

        on_event.assert_not_awaited()
        assert handler.stats.messages_skipped == 1

    @pytest.mark.asyncio
    async def test_error_frame_is_skipped(
        self, handler: FinnhubTradeHandler, on_event: AsyncMock
    ) -> None:
        await handler.handle({"type": "error", "msg": "Invalid token"}, RECV_TS)
        on_event.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_data_is_parse_error(
        self, handler: FinnhubTradeHandler, on_event: AsyncMock
    ) -> None:
        await handler.handle({"type": "trade"}, RECV_TS)

        on_event.assert_not_awaited()
        assert handler.stats.parse_errors == 1

    @pytest.mark.asyncio
    async def test_malformed_item_drops_whole_frame(
        self, handler: FinnhubTradeHandler, on_event: AsyncMock
    ) -> None:
        frame = {"type": "trade", "data": [{"s": "AAPL", "p": 1.0}, {"p": 2.0}]}

        await handler.handle(frame, RECV_TS)

        on_event.assert_not_awaited()
        assert handler.stats.parse_errors == 1

    @pytest.mark.asyncio
    async def test_missing_trade_time_uses_receive_time(
        self, handler: FinnhubTradeHandler, on_event: AsyncMock
    ) -> None:
        await handler.handle({"type": "trade", "data": [{"s": "AAPL", "p": 1.0}]}, RECV_TS)

        tick = on_event.await_args.args[0]
        assert tick.timestamp == RECV_TS
        assert tick.volume == 0.0

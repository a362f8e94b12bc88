"""
Message handlers for the realtime channels.

Handlers turn provider-specific JSON frames into normalized TickerData:
- BinanceTickerHandler: 24hr ticker statistics from the crypto channel
- FinnhubTradeHandler: trade prints from the equity channel

Control frames (subscription acks, pings) are skipped. Malformed frames are
logged and dropped; they never reach listeners.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from marketfeed.data.live.errors import MessageParseError
from marketfeed.data.symbols import symbol_for_stream_code
from marketfeed.types.types import TickerData

logger = logging.getLogger(__name__)


@dataclass
class HandlerStats:
    """Statistics for a message handler."""

    messages_received: int = 0
    messages_processed: int = 0
    messages_skipped: int = 0
    parse_errors: int = 0
    by_symbol: dict[str, int] = field(default_factory=dict)


class BaseHandler(ABC):
    """
    Abstract base class for channel handlers.

    Each handler:
    1. Receives a decoded frame from its ConnectionManager
    2. Parses it into zero or more TickerData updates
    3. Awaits the registered callback once per update
    """

    def __init__(
        self,
        on_event: Callable[[TickerData], Awaitable[None]],
        name: str = "handler",
    ) -> None:
        self._on_event = on_event
        self._name = name
        self._stats = HandlerStats()

    @property
    def stats(self) -> HandlerStats:
        return self._stats

    async def handle(self, data: dict[str, Any], recv_ts: int) -> None:
        """
        Handle an incoming frame.

        Args:
            data: Decoded JSON object
            recv_ts: Local receive time in epoch ms
        """
        self._stats.messages_received += 1

        try:
            events = self._parse(data, recv_ts)
        except MessageParseError as e:
            self._stats.parse_errors += 1
            logger.warning(f"[{self._name}] Parse error: {e}")
            return
        except Exception as e:
            self._stats.parse_errors += 1
            logger.error(f"[{self._name}] Unexpected error: {e}", exc_info=True)
            return

        if not events:
            self._stats.messages_skipped += 1
            return

        self._stats.messages_processed += 1
        for event in events:
            self._stats.by_symbol[event.symbol] = self._stats.by_symbol.get(event.symbol, 0) + 1
            await self._on_event(event)

    @abstractmethod
    def _parse(self, data: dict[str, Any], recv_ts: int) -> list[TickerData]:
        """Parse a frame into updates. Return an empty list to skip."""
        ...

    def reset_stats(self) -> None:
        self._stats = HandlerStats()


def _safe_float(value: Any, field_name: str) -> float:
    """Safely convert a value to float."""
    if value is None:
        raise MessageParseError(f"Missing value for {field_name}", expected_type="float")
    try:
        if isinstance(value, float):
            return value
        return float(value)
    except (ValueError, TypeError) as e:
        raise MessageParseError(
            f"Invalid float value for {field_name}: {value}",
            expected_type="float",
        ) from e


def _safe_int(value: Any, field_name: str) -> int:
    """Safely convert a value to int."""
    if value is None:
        raise MessageParseError(f"Missing value for {field_name}", expected_type="int")
    try:
        return int(value)
    except (ValueError, TypeError) as e:
        raise MessageParseError(
            f"Invalid integer value for {field_name}: {value}",
            expected_type="int",
        ) from e


class BinanceTickerHandler(BaseHandler):
    """
    Handler for Binance 24hr ticker frames.

    Binance 24hr ticker format:
    {
        "e": "24hrTicker",
        "E": 1672515782136,    // Event time
        "s": "BTCUSDT",
        "p": "50.50",          // Price change
        "P": "0.30",           // Price change percent
        "c": "16850.50",       // Last price
        "q": "168000000.00",   // Quote volume
        ...
    }

    Subscription acks look like {"result": null, "id": 7} and are skipped.
    Combined-stream payloads ({"stream": ..., "data": {...}}) are unwrapped.
    """

    def __init__(self, on_event: Callable[[TickerData], Awaitable[None]]) -> None:
        super().__init__(on_event, name="BinanceTickerHandler")

    def _parse(self, data: dict[str, Any], recv_ts: int) -> list[TickerData]:
        if "result" in data and "id" in data:
            return []

        if "stream" in data and isinstance(data.get("data"), dict):
            data = data["data"]

        if data.get("e") != "24hrTicker":
            return []

        code = data.get("s")
        if not isinstance(code, str) or not code:
            raise MessageParseError("Ticker frame without symbol", expected_type="24hrTicker")

        return [
            TickerData(
                symbol=symbol_for_stream_code(code),
                price=_safe_float(data.get("c"), "price"),
                change=_safe_float(data.get("p", "0"), "change"),
                change_percent=_safe_float(data.get("P", "0"), "change_percent"),
                volume=_safe_float(data.get("q", "0"), "volume"),
                timestamp=_safe_int(data.get("E", recv_ts), "timestamp"),
            )
        ]


class FinnhubTradeHandler(BaseHandler):
    """
    Handler for Finnhub trade frames.

    Finnhub trade format:
    {
        "type": "trade",
        "data": [{"s": "AAPL", "p": 187.2, "v": 100, "t": 1700000000000}, ...]
    }

    Trades carry no session change, so change and change_percent are 0.
    """

    def __init__(self, on_event: Callable[[TickerData], Awaitable[None]]) -> None:
        super().__init__(on_event, name="FinnhubTradeHandler")

    def _parse(self, data: dict[str, Any], recv_ts: int) -> list[TickerData]:
        msg_type = data.get("type")

        if msg_type == "error":
            logger.warning(f"[{self._name}] Upstream error frame: {data.get('msg')}")
            return []

        if msg_type != "trade":
            return []

        trades = data.get("data")
        if not isinstance(trades, list):
            raise MessageParseError("Trade frame without data list", expected_type="trade")

        events: list[TickerData] = []
        for trade in trades:
            if not isinstance(trade, dict) or not trade.get("s"):
                raise MessageParseError("Malformed trade item", expected_type="trade")
            events.append(
                TickerData(
                    symbol=trade["s"],
                    price=_safe_float(trade.get("p"), "price"),
                    change=0.0,
                    change_percent=0.0,
                    volume=_safe_float(trade.get("v", 0), "volume"),
                    timestamp=_safe_int(trade.get("t", recv_ts), "timestamp"),
                )
            )
        return events

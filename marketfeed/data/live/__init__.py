"""
Realtime Stream Module.

Live price updates over two persistent WebSocket channels:
- Binance public 24hr ticker stream for the mapped crypto symbols
- Finnhub trade stream for equities (requires an API token)

Components:
- StreamManager: reference-counted subscriptions, fan-out, shared state
- ConnectionManager: WebSocket lifecycle, backoff reconnection, keepalive
- Handlers: BinanceTickerHandler, FinnhubTradeHandler for parsing/normalizing

Usage:
    from marketfeed.data.live import StreamConfig, StreamManager

    manager = StreamManager(StreamConfig(finnhub_token="..."))
    await manager.subscribe("BTC-USD", lambda tick: print(tick.price))
"""

from marketfeed.data.live.config import ConnectionConfig, StreamConfig
from marketfeed.data.live.errors import (
    ConfigurationError,
    ConnectionError,
    MessageParseError,
    StreamError,
)
from marketfeed.data.live.manager import StreamManager
from marketfeed.data.live.types import (
    Channel,
    ConnectionHealth,
    ConnectionState,
    Subscription,
)

__all__ = [
    # Main entry point
    "StreamManager",
    "StreamConfig",
    "ConnectionConfig",
    # Types
    "Channel",
    "ConnectionState",
    "ConnectionHealth",
    "Subscription",
    # Errors
    "StreamError",
    "ConnectionError",
    "MessageParseError",
    "ConfigurationError",
]

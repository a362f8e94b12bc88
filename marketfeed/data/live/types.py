"""
Shared types for the realtime stream module.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from marketfeed.types.types import TickerData


class ConnectionState(str, Enum):
    """State machine for a streaming channel (and the manager's shared view of them)."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class Channel(str, Enum):
    """Upstream realtime channels."""

    CRYPTO = "crypto"  # Binance public ticker stream
    EQUITY = "equity"  # Finnhub trade stream


TickerCallback = Callable[[TickerData], None]
StateListener = Callable[[ConnectionState], None]


@dataclass
class Subscription:
    """
    Reference-counted interest in one symbol.

    Exists exactly as long as `listeners` is non-empty.
    """

    symbol: str
    channel: Channel
    topic: str  # "btcusdt@ticker" for Binance, the plain symbol for Finnhub
    listeners: list[TickerCallback] = field(default_factory=list)


@dataclass
class ConnectionHealth:
    """Health snapshot for a single WebSocket connection."""

    state: ConnectionState
    url: str
    connected_since: Optional[datetime] = None
    last_message_at: Optional[datetime] = None
    reconnect_count: int = 0
    message_count: int = 0
    error_count: int = 0
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None

    @property
    def uptime_s(self) -> Optional[float]:
        """Connection uptime in seconds, or None if not connected."""
        if self.connected_since is None:
            return None
        now = datetime.now(timezone.utc)
        return (now - self.connected_since).total_seconds()

    @property
    def is_healthy(self) -> bool:
        return self.state == ConnectionState.CONNECTED


@dataclass
class ConnectionMetrics:
    """Counters for a WebSocket connection."""

    messages_received: int = 0
    bytes_received: int = 0
    messages_sent: int = 0
    pings_sent: int = 0
    reconnections: int = 0
    errors: int = 0

    # monotonic timestamps
    connected_at: Optional[float] = None
    last_message_at: Optional[float] = None

"""
Configuration types for the realtime stream module.

Provides immutable, validated configuration dataclasses for the stream manager
and its WebSocket connections.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from marketfeed.data.live.errors import ConfigurationError
from marketfeed.ports.secrets_provider import SecretsProvider

BINANCE_WS_URL = "wss://stream.binance.com:9443/ws"
FINNHUB_WS_URL = "wss://ws.finnhub.io"


@dataclass(frozen=True)
class ConnectionConfig:
    """Configuration for a single WebSocket connection."""

    # Connection behavior
    connect_timeout_s: float = 30.0
    ping_interval_s: float = 30.0  # Client-side ping if no message
    ping_timeout_s: float = 10.0
    max_reconnect_attempts: int = 10
    base_reconnect_delay_s: float = 2.0
    max_reconnect_delay_s: float = 60.0
    reconnect_jitter: float = 0.3  # ±30% jitter

    # Binance drops connections at 24h; refresh a little earlier
    max_connection_age_s: float = 23 * 3600

    def __post_init__(self) -> None:
        if self.connect_timeout_s <= 0:
            raise ConfigurationError(
                "connect_timeout_s must be positive",
                field="connect_timeout_s",
                value=self.connect_timeout_s,
            )
        if self.max_reconnect_attempts < 0:
            raise ConfigurationError(
                "max_reconnect_attempts must be non-negative",
                field="max_reconnect_attempts",
                value=self.max_reconnect_attempts,
            )
        if self.base_reconnect_delay_s > self.max_reconnect_delay_s:
            raise ConfigurationError(
                "base_reconnect_delay_s must not exceed max_reconnect_delay_s",
                field="base_reconnect_delay_s",
                value=self.base_reconnect_delay_s,
            )
        if not (0 <= self.reconnect_jitter <= 1):
            raise ConfigurationError(
                "reconnect_jitter must be between 0 and 1",
                field="reconnect_jitter",
                value=self.reconnect_jitter,
            )


@dataclass(frozen=True)
class StreamConfig:
    """
    Immutable top-level configuration for the stream manager.

    Example:
        config = StreamConfig(finnhub_token="...")
        manager = StreamManager(config)
    """

    binance_url: str = BINANCE_WS_URL
    finnhub_url: str = FINNHUB_WS_URL

    # Without a token the equity channel is not opened
    finnhub_token: Optional[str] = None

    connection: ConnectionConfig = field(default_factory=ConnectionConfig)

    def __post_init__(self) -> None:
        for name in ("binance_url", "finnhub_url"):
            url = getattr(self, name)
            if not url.startswith(("ws://", "wss://")):
                raise ConfigurationError(
                    f"{name} must be a ws:// or wss:// URL",
                    field=name,
                    value=url,
                )

    @classmethod
    def from_secrets(cls, secrets: SecretsProvider, **overrides: object) -> "StreamConfig":
        return cls(finnhub_token=secrets.get_optional("finnhub_api_key"), **overrides)  # type: ignore[arg-type]

    @property
    def equity_enabled(self) -> bool:
        return bool(self.finnhub_token)

    def get_finnhub_ws_url(self) -> str:
        return f"{self.finnhub_url}?token={self.finnhub_token}"

"""
Realtime Stream Manager - multiplexes logical subscriptions over two channels.

Coordinates:
- ConnectionManager per channel (Binance crypto tickers, Finnhub equity trades)
- Handlers for frame parsing
- Reference-counted subscriptions and listener fan-out
- A shared connection state with change listeners
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

from marketfeed.data.live.config import StreamConfig
from marketfeed.data.live.connection import ConnectionManager
from marketfeed.data.live.errors import ConnectionError
from marketfeed.data.live.handlers import (
    BaseHandler,
    BinanceTickerHandler,
    FinnhubTradeHandler,
)
from marketfeed.data.live.types import (
    Channel,
    ConnectionHealth,
    ConnectionState,
    StateListener,
    Subscription,
    TickerCallback,
)
from marketfeed.data.symbols import is_streamable_crypto, stream_code_for
from marketfeed.types.aliases import Symbol
from marketfeed.types.types import TickerData

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[..., ConnectionManager]


class StreamManager:
    """
    Multiplexes many listeners onto at most one upstream subscription per symbol.

    Symbols in the Binance stream table ride the crypto channel; everything else
    rides the Finnhub equity channel, which is only opened when a token is
    configured.

    Shared state:
        [DISCONNECTED] --connect()--> [CONNECTING] --> [CONNECTED]
                                                         |    ^
                                     channel fault --> [ERROR] |
                                                              channel recovered

    connect() reports CONNECTED as soon as both channels have been started, not
    when their sockets are open. Per-channel truth is in get_channel_state().

    Usage:
        manager = StreamManager(StreamConfig(finnhub_token="..."))
        await manager.subscribe("BTC-USD", on_tick)
        ...
        await manager.unsubscribe("BTC-USD", on_tick)
        await manager.close()
    """

    def __init__(
        self,
        config: Optional[StreamConfig] = None,
        *,
        connection_factory: Optional[ConnectionFactory] = None,
        name: str = "stream",
    ) -> None:
        self._config = config or StreamConfig()
        self._connection_factory: ConnectionFactory = connection_factory or ConnectionManager
        self._name = name

        self._state = ConnectionState.DISCONNECTED
        self._channel_states: dict[Channel, ConnectionState] = {
            channel: ConnectionState.DISCONNECTED for channel in Channel
        }
        self._connections: dict[Channel, ConnectionManager] = {}
        self._connect_tasks: dict[Channel, asyncio.Task[None]] = {}

        self._subscriptions: dict[Symbol, Subscription] = {}
        self._state_listeners: list[StateListener] = []
        self._lock = asyncio.Lock()
        self._request_id = 0

        self._handlers: dict[Channel, BaseHandler] = {
            Channel.CRYPTO: BinanceTickerHandler(self._dispatch),
            Channel.EQUITY: FinnhubTradeHandler(self._dispatch),
        }

    @property
    def config(self) -> StreamConfig:
        return self._config

    # --- State ---

    def get_state(self) -> ConnectionState:
        return self._state

    def get_channel_state(self, channel: Channel) -> ConnectionState:
        return self._channel_states[channel]

    def on_state_change(self, listener: StateListener) -> Callable[[], None]:
        """
        Register a shared-state listener. Returns a function that removes it.
        """
        self._state_listeners.append(listener)

        def _remove() -> None:
            if listener in self._state_listeners:
                self._state_listeners.remove(listener)

        return _remove

    def _set_state(self, new_state: ConnectionState) -> None:
        old_state = self._state
        self._state = new_state
        if old_state == new_state:
            return

        logger.info(
            f"[{self._name}] State: {old_state.value} -> {new_state.value}",
            extra={"event": "STREAM_STATE", "state": new_state.value},
        )
        for listener in list(self._state_listeners):
            try:
                listener(new_state)
            except Exception as e:
                logger.error(f"[{self._name}] State listener error: {e}", exc_info=True)

    async def _on_channel_state(self, channel: Channel, state: ConnectionState) -> None:
        self._channel_states[channel] = state
        logger.debug(f"[{self._name}] {channel.value} channel: {state.value}")

        # Shared state is owned by connect()/close() outside of these transitions
        if self._state in (ConnectionState.DISCONNECTED, ConnectionState.CONNECTING):
            return

        if state == ConnectionState.ERROR:
            self._set_state(ConnectionState.ERROR)
        elif state == ConnectionState.CONNECTED and self._state == ConnectionState.ERROR:
            if all(s != ConnectionState.ERROR for s in self._channel_states.values()):
                self._set_state(ConnectionState.CONNECTED)

    # --- Lifecycle ---

    async def connect(self) -> None:
        """
        Start both channels. A no-op while connecting or connected.

        From ERROR, channels that are still up are left alone and only the
        failed ones are retried on their existing connection.
        """
        async with self._lock:
            if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
                return

            self._set_state(ConnectionState.CONNECTING)
            self._ensure_channel(Channel.CRYPTO, self._config.binance_url)

            if self._config.equity_enabled:
                self._ensure_channel(Channel.EQUITY, self._config.get_finnhub_ws_url())
            else:
                logger.warning(
                    f"[{self._name}] No Finnhub token configured, equity stream is offline",
                    extra={"event": "EQUITY_CHANNEL_DISABLED"},
                )

            self._set_state(ConnectionState.CONNECTED)

    def _ensure_channel(self, channel: Channel, url: str) -> None:
        connection = self._connections.get(channel)
        if connection is None:
            self._start_channel(channel, url)
            return

        task = self._connect_tasks.get(channel)
        if self._channel_states[channel] == ConnectionState.CONNECTED or (
            task is not None and not task.done()
        ):
            return

        logger.info(
            f"[{self._name}] Retrying {channel.value} channel",
            extra={"event": "CHANNEL_RETRY", "channel": channel.value},
        )
        self._connect_tasks[channel] = asyncio.create_task(
            self._run_channel(channel, connection), name=f"{self._name}_{channel.value}_connect"
        )

    def _start_channel(self, channel: Channel, url: str) -> None:
        async def on_state(state: ConnectionState) -> None:
            await self._on_channel_state(channel, state)

        async def on_open() -> None:
            await self._resubscribe(channel)

        connection = self._connection_factory(
            url,
            self._config.connection,
            on_message=self._handlers[channel].handle,
            on_state_change=on_state,
            on_open=on_open,
            name=f"{self._name}.{channel.value}",
        )
        self._connections[channel] = connection
        self._connect_tasks[channel] = asyncio.create_task(
            self._run_channel(channel, connection), name=f"{self._name}_{channel.value}_connect"
        )

    async def _run_channel(self, channel: Channel, connection: ConnectionManager) -> None:
        try:
            await connection.connect()
        except ConnectionError as e:
            logger.error(
                f"[{self._name}] {channel.value} channel gave up: {e}",
                extra={"event": "CHANNEL_FAILED", "channel": channel.value},
            )

    async def close(self) -> None:
        """Close both channels. Subscriptions are kept and replayed on the next connect()."""
        async with self._lock:
            self._set_state(ConnectionState.DISCONNECTED)
            connections = list(self._connections.items())
            tasks = list(self._connect_tasks.values())
            self._connections.clear()
            self._connect_tasks.clear()

        for task in tasks:
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        for channel, connection in connections:
            try:
                await connection.close()
            except Exception as e:
                logger.warning(f"[{self._name}] Error closing {channel.value} channel: {e}")

        for channel in Channel:
            self._channel_states[channel] = ConnectionState.DISCONNECTED

    async def __aenter__(self) -> "StreamManager":
        await self.connect()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # --- Subscriptions ---

    @staticmethod
    def channel_for(symbol: Symbol) -> Channel:
        return Channel.CRYPTO if is_streamable_crypto(symbol) else Channel.EQUITY

    @staticmethod
    def topic_for(symbol: Symbol, channel: Channel) -> str:
        if channel == Channel.CRYPTO:
            return f"{stream_code_for(symbol)}@ticker"
        return symbol

    async def subscribe(self, symbol: Symbol, callback: TickerCallback) -> None:
        """
        Add a listener for a symbol's updates.

        The first listener for a symbol sends one subscribe frame. Subscribing
        while disconnected starts the channels.
        """
        if not symbol:
            raise ValueError("symbol must be a non-empty string")

        async with self._lock:
            sub = self._subscriptions.get(symbol)
            created = sub is None
            if sub is None:
                channel = self.channel_for(symbol)
                sub = Subscription(
                    symbol=symbol, channel=channel, topic=self.topic_for(symbol, channel)
                )
                self._subscriptions[symbol] = sub
            if callback not in sub.listeners:
                sub.listeners.append(callback)
            should_connect = self._state == ConnectionState.DISCONNECTED

        if created:
            logger.debug(f"[{self._name}] Subscribing {symbol} on {sub.channel.value}")
            await self._send_control(sub, subscribe=True)

        if should_connect:
            await self.connect()

    async def unsubscribe(self, symbol: Symbol, callback: TickerCallback) -> None:
        """
        Remove a listener. The last listener for a symbol sends one unsubscribe frame.
        Unknown symbols and callbacks are ignored.
        """
        async with self._lock:
            sub = self._subscriptions.get(symbol)
            if sub is None or callback not in sub.listeners:
                return
            sub.listeners.remove(callback)
            removed = not sub.listeners
            if removed:
                del self._subscriptions[symbol]

        if removed:
            logger.debug(f"[{self._name}] Unsubscribing {symbol} on {sub.channel.value}")
            await self._send_control(sub, subscribe=False)

    def subscribed_symbols(self) -> list[Symbol]:
        return list(self._subscriptions)

    def listener_count(self, symbol: Symbol) -> int:
        sub = self._subscriptions.get(symbol)
        return len(sub.listeners) if sub else 0

    async def _resubscribe(self, channel: Channel) -> None:
        async with self._lock:
            subs = [s for s in self._subscriptions.values() if s.channel == channel]

        logger.info(
            f"[{self._name}] {channel.value} channel open, replaying {len(subs)} subscriptions",
            extra={"event": "CHANNEL_OPEN", "channel": channel.value, "count": len(subs)},
        )
        for sub in subs:
            await self._send_control(sub, subscribe=True)

    def _build_frame(self, sub: Subscription, subscribe: bool) -> dict[str, Any]:
        if sub.channel == Channel.CRYPTO:
            self._request_id += 1
            return {
                "method": "SUBSCRIBE" if subscribe else "UNSUBSCRIBE",
                "params": [sub.topic],
                "id": self._request_id,
            }
        return {"type": "subscribe" if subscribe else "unsubscribe", "symbol": sub.topic}

    async def _send_control(self, sub: Subscription, subscribe: bool) -> bool:
        connection = self._connections.get(sub.channel)
        if connection is None:
            return False
        return await connection.send_json(self._build_frame(sub, subscribe))

    # --- Fan-out ---

    async def _dispatch(self, ticker: TickerData) -> None:
        async with self._lock:
            sub = self._subscriptions.get(ticker.symbol)
            listeners = list(sub.listeners) if sub else []

        for listener in listeners:
            try:
                listener(ticker)
            except Exception as e:
                logger.error(
                    f"[{self._name}] Listener error for {ticker.symbol}: {e}", exc_info=True
                )

    # --- Health ---

    def get_health(self) -> dict[Channel, ConnectionHealth]:
        """Health snapshot of every started channel."""
        return {channel: conn.get_health() for channel, conn in self._connections.items()}

    def get_stats(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "channels": {c.value: s.value for c, s in self._channel_states.items()},
            "subscriptions": len(self._subscriptions),
            "handlers": {
                c.value: {
                    "processed": h.stats.messages_processed,
                    "skipped": h.stats.messages_skipped,
                    "errors": h.stats.parse_errors,
                }
                for c, h in self._handlers.items()
            },
        }

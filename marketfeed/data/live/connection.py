"""
WebSocket connection for one realtime channel.

Handles WebSocket lifecycle including:
- Connection establishment with timeout
- Exponential backoff reconnection with jitter, re-armed after every successful connect
- Ping keepalive handling
- 24-hour connection refresh (Binance limit)
- Outbound control frames (subscribe/unsubscribe)
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import aiohttp
import orjson

from marketfeed.data.live.config import ConnectionConfig
from marketfeed.data.live.errors import ConnectionError
from marketfeed.data.live.types import (
    ConnectionHealth,
    ConnectionMetrics,
    ConnectionState,
)

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"(token=)[^&]+")


def redact_url(url: str) -> str:
    """Hide API tokens embedded in WebSocket URLs."""
    return _TOKEN_RE.sub(r"\1***", url)


class ConnectionManager:
    """
    Manages a single WebSocket connection with automatic reconnection.

    The ConnectionManager does NOT parse messages or track subscriptions - it
    delivers decoded JSON frames to `on_message` and calls `on_open` after every
    successful (re)connect, so the owner can replay its subscriptions.

    State machine:
        [DISCONNECTED] --connect()--> [CONNECTING] --ok--> [CONNECTED]
              ^                            ^                    |
              |                            +---- backoff ---- [ERROR] (socket fault)
              +------------ close() ---------------------------+

    When reconnect attempts are exhausted the connection stays in ERROR until
    connect() is called again, which starts a fresh set of attempts.
    """

    def __init__(
        self,
        url: str,
        config: ConnectionConfig,
        on_message: Callable[[dict[str, Any], int], Awaitable[None]],
        on_state_change: Optional[Callable[[ConnectionState], Awaitable[None]]] = None,
        on_open: Optional[Callable[[], Awaitable[None]]] = None,
        name: str = "connection",
    ) -> None:
        """
        Args:
            url: WebSocket URL to connect to
            config: Connection configuration
            on_message: Async callback for received frames (data, recv_ts_ms)
            on_state_change: Optional callback for state changes
            on_open: Optional callback after each successful connect
            name: Name for logging purposes
        """
        self._url = url
        self._config = config
        self._on_message = on_message
        self._on_state_change = on_state_change
        self._on_open = on_open
        self._name = name

        # State
        self._state = ConnectionState.DISCONNECTED
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None

        # Tasks
        self._receive_task: Optional[asyncio.Task[None]] = None
        self._ping_task: Optional[asyncio.Task[None]] = None
        self._refresh_task: Optional[asyncio.Task[None]] = None
        self._reconnect_task: Optional[asyncio.Task[None]] = None

        # Reconnection state
        self._reconnect_attempt = 0
        self._should_reconnect = True

        # Metrics
        self._metrics = ConnectionMetrics()
        self._connected_at: Optional[datetime] = None
        self._last_message_at: Optional[datetime] = None
        self._last_error: Optional[str] = None
        self._last_error_at: Optional[datetime] = None

        # Shutdown coordination
        self._shutdown_event = asyncio.Event()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def url(self) -> str:
        """Connection URL with credentials redacted."""
        return redact_url(self._url)

    @property
    def metrics(self) -> ConnectionMetrics:
        return self._metrics

    async def _set_state(self, new_state: ConnectionState) -> None:
        """Update state and notify listener."""
        old_state = self._state
        self._state = new_state

        if old_state != new_state:
            logger.debug(f"[{self._name}] State: {old_state.value} -> {new_state.value}")
            if self._on_state_change:
                try:
                    await self._on_state_change(new_state)
                except Exception as e:
                    logger.warning(f"[{self._name}] State change callback error: {e}")

    async def connect(self) -> None:
        """
        Establish WebSocket connection.

        Raises:
            ConnectionError: If connection fails after all retries
        """
        if self._state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
            logger.warning(f"[{self._name}] Already connected or connecting")
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            logger.warning(f"[{self._name}] Reconnect already in progress")
            return

        # A previous connect() may have exhausted its attempts
        self._reconnect_attempt = 0
        self._should_reconnect = True
        self._shutdown_event.clear()
        await self._connect_with_retry()

    async def _connect_with_retry(self) -> None:
        """Connect with exponential backoff retry logic."""
        await self._set_state(ConnectionState.CONNECTING)

        while (
            self._should_reconnect
            and self._reconnect_attempt <= self._config.max_reconnect_attempts
        ):
            try:
                await self._establish_connection()
            except Exception as e:
                self._reconnect_attempt += 1
                self._record_error(e)

                if self._reconnect_attempt > self._config.max_reconnect_attempts:
                    await self._set_state(ConnectionState.ERROR)
                    raise ConnectionError(
                        f"Failed to connect after {self._config.max_reconnect_attempts} attempts",
                        url=self.url,
                        reconnect_attempt=self._reconnect_attempt,
                        component="ConnectionManager",
                    ) from e

                delay = self._calculate_backoff_delay()
                logger.warning(
                    f"[{self._name}] Connection failed (attempt {self._reconnect_attempt}), "
                    f"retrying in {delay:.2f}s: {e}"
                )
                await self._set_state(ConnectionState.ERROR)
                await asyncio.sleep(delay)
                await self._set_state(ConnectionState.CONNECTING)
                continue

            # Reset attempts so the next disconnect starts a fresh backoff
            self._reconnect_attempt = 0
            await self._set_state(ConnectionState.CONNECTED)

            self._receive_task = asyncio.create_task(
                self._receive_loop(), name=f"{self._name}_receive"
            )
            self._ping_task = asyncio.create_task(self._ping_loop(), name=f"{self._name}_ping")
            self._refresh_task = asyncio.create_task(
                self._refresh_loop(), name=f"{self._name}_refresh"
            )

            if self._on_open:
                try:
                    await self._on_open()
                except Exception as e:
                    logger.error(f"[{self._name}] Open callback error: {e}", exc_info=True)
            return

    async def _establish_connection(self) -> None:
        """Establish the actual WebSocket connection."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._config.connect_timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)

        logger.info(f"[{self._name}] Connecting to {self.url}")
        self._ws = await self._session.ws_connect(
            self._url,
            heartbeat=self._config.ping_interval_s,
            receive_timeout=self._config.ping_timeout_s * 3 + self._config.ping_interval_s,
        )

        self._connected_at = datetime.now(timezone.utc)
        self._metrics.connected_at = time.monotonic()
        logger.info(f"[{self._name}] Connected successfully")

    def _calculate_backoff_delay(self) -> float:
        """Calculate exponential backoff delay with jitter."""
        base_delay = self._config.base_reconnect_delay_s
        max_delay = self._config.max_reconnect_delay_s
        jitter = self._config.reconnect_jitter

        # Exponential backoff: base * 2^(attempt - 1)
        delay = base_delay * (2 ** (self._reconnect_attempt - 1))
        delay = min(delay, max_delay)

        jitter_range = delay * jitter
        delay += random.uniform(-jitter_range, jitter_range)

        return float(max(0.1, delay))  # Minimum 100ms

    def _record_error(self, error: BaseException) -> None:
        self._metrics.errors += 1
        self._last_error = str(error)
        self._last_error_at = datetime.now(timezone.utc)

    async def send_json(self, payload: dict[str, Any]) -> bool:
        """
        Send a control frame. Returns False (and sends nothing) unless connected;
        the owner replays its subscriptions from `on_open` once the socket is up.
        """
        if self._state != ConnectionState.CONNECTED or self._ws is None or self._ws.closed:
            logger.debug(f"[{self._name}] Not connected, frame deferred: {payload}")
            return False

        try:
            await self._ws.send_str(orjson.dumps(payload).decode())
        except Exception as e:
            logger.warning(f"[{self._name}] Send failed: {e}")
            self._record_error(e)
            return False

        self._metrics.messages_sent += 1
        return True

    async def _receive_loop(self) -> None:
        """Main loop for receiving WebSocket messages."""
        if self._ws is None:
            return

        try:
            async for msg in self._ws:
                if self._shutdown_event.is_set():
                    break

                recv_ts = int(time.time() * 1000)
                self._last_message_at = datetime.now(timezone.utc)
                self._metrics.last_message_at = time.monotonic()
                self._metrics.messages_received += 1

                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._metrics.bytes_received += len(msg.data)
                    try:
                        data = orjson.loads(msg.data)
                    except orjson.JSONDecodeError as e:
                        logger.warning(f"[{self._name}] Dropping undecodable frame: {e}")
                        self._metrics.errors += 1
                        continue

                    if not isinstance(data, dict):
                        logger.debug(f"[{self._name}] Ignoring non-object frame")
                        continue

                    try:
                        await self._on_message(data, recv_ts)
                    except Exception as e:
                        logger.error(f"[{self._name}] Message handling error: {e}")
                        self._metrics.errors += 1

                elif msg.type == aiohttp.WSMsgType.BINARY:
                    logger.debug(f"[{self._name}] Received binary message (ignored)")

                elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED):
                    logger.info(f"[{self._name}] Server closed connection")
                    break

                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.error(f"[{self._name}] WebSocket error: {self._ws.exception()}")
                    self._metrics.errors += 1
                    break

        except asyncio.CancelledError:
            logger.debug(f"[{self._name}] Receive loop cancelled")
            raise
        except Exception as e:
            logger.error(f"[{self._name}] Receive loop error: {e}")
            self._record_error(e)

        # Trigger reconnection if not shutting down
        if self._should_reconnect and not self._shutdown_event.is_set():
            logger.info(f"[{self._name}] Connection lost, initiating reconnect")
            self._metrics.reconnections += 1
            await self._set_state(ConnectionState.ERROR)
            self._reconnect_task = asyncio.create_task(
                self._reconnect(), name=f"{self._name}_reconnect"
            )

    async def _ping_loop(self) -> None:
        """Send periodic pings if no messages received."""
        try:
            while not self._shutdown_event.is_set():
                await asyncio.sleep(self._config.ping_interval_s)

                if self._ws is None or self._ws.closed:
                    break

                if self._metrics.last_message_at is not None:
                    time_since_message = time.monotonic() - self._metrics.last_message_at
                    if time_since_message < self._config.ping_interval_s:
                        continue

                try:
                    await self._ws.ping()
                    self._metrics.pings_sent += 1
                    logger.debug(f"[{self._name}] Sent ping")
                except Exception as e:
                    logger.warning(f"[{self._name}] Ping failed: {e}")

        except asyncio.CancelledError:
            pass

    async def _refresh_loop(self) -> None:
        """Refresh connection before the 24-hour limit."""
        try:
            await asyncio.sleep(self._config.max_connection_age_s)

            if not self._shutdown_event.is_set():
                logger.info(f"[{self._name}] Refreshing connection (24h limit approaching)")
                self._reconnect_task = asyncio.create_task(
                    self._reconnect(), name=f"{self._name}_refresh_reconnect"
                )

        except asyncio.CancelledError:
            pass

    async def _reconnect(self) -> None:
        """Close current connection and reconnect."""
        await self._cleanup_connection()
        try:
            await self._connect_with_retry()
        except ConnectionError as e:
            logger.error(f"[{self._name}] Giving up: {e}")

    async def _cleanup_connection(self) -> None:
        """Clean up current connection resources."""
        current = asyncio.current_task()
        for task in [self._receive_task, self._ping_task, self._refresh_task]:
            if task and task is not current and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        self._receive_task = None
        self._ping_task = None
        self._refresh_task = None

        if self._ws and not self._ws.closed:
            await self._ws.close()
        self._ws = None

    async def close(self) -> None:
        """Close the connection gracefully."""
        logger.info(f"[{self._name}] Closing connection")
        self._should_reconnect = False
        self._shutdown_event.set()

        if self._reconnect_task and self._reconnect_task is not asyncio.current_task():
            if not self._reconnect_task.done():
                self._reconnect_task.cancel()
                try:
                    await self._reconnect_task
                except asyncio.CancelledError:
                    pass
        self._reconnect_task = None

        await self._cleanup_connection()

        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

        await self._set_state(ConnectionState.DISCONNECTED)
        logger.info(f"[{self._name}] Connection closed")

    def get_health(self) -> ConnectionHealth:
        """Get current connection health snapshot."""
        return ConnectionHealth(
            state=self._state,
            url=self.url,
            connected_since=self._connected_at,
            last_message_at=self._last_message_at,
            reconnect_count=self._metrics.reconnections,
            message_count=self._metrics.messages_received,
            error_count=self._metrics.errors,
            last_error=self._last_error,
            last_error_at=self._last_error_at,
        )

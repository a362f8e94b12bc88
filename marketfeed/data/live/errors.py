"""
Custom exceptions for the realtime stream module.

Exception hierarchy:
- StreamError (base, a MarketDataError)
  - ConnectionError: WebSocket connection issues
  - MessageParseError: Invalid/malformed frames
  - ConfigurationError: Invalid configuration
"""

from __future__ import annotations

from typing import Any, Optional

from marketfeed.errors.errors import MarketDataError


class StreamError(MarketDataError):
    """Base exception for all realtime stream errors."""


class ConnectionError(StreamError):
    """Raised when a WebSocket connection fails or is lost."""

    def __init__(
        self,
        message: str,
        *,
        url: Optional[str] = None,
        reconnect_attempt: int = 0,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.url = url
        self.reconnect_attempt = reconnect_attempt
        details = details or {}
        if url:
            details["url"] = url
        details["reconnect_attempt"] = reconnect_attempt
        super().__init__(message, component=component, details=details)


class MessageParseError(StreamError):
    """Raised when an inbound frame cannot be parsed."""

    def __init__(
        self,
        message: str,
        *,
        raw_data: Optional[str] = None,
        expected_type: Optional[str] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.raw_data = raw_data
        self.expected_type = expected_type
        details = details or {}
        if expected_type:
            details["expected_type"] = expected_type
        # Don't include raw_data in details to avoid log spam
        super().__init__(message, component=component, details=details)


class ConfigurationError(StreamError):
    """Raised when configuration is invalid."""

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.field = field
        self.value = value
        details = details or {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)
        super().__init__(message, component=component, details=details)

"""
Exception hierarchy for upstream market data access.

- MarketDataError (base)
  - UpstreamError: HTTP/provider failure (may be retryable)
    - RateLimited: provider throttled us (never retried, caller must wait)
  - ValidationError: payload does not match the provider's wire shape (never retried)
"""

from __future__ import annotations

from typing import Any, Optional


class MarketDataError(Exception):
    """Base exception for all market data errors."""

    def __init__(
        self,
        message: str,
        *,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.component = component
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        parts = [super().__str__()]
        if self.component:
            parts.append(f"[component={self.component}]")
        if self.details:
            parts.append(f"[details={self.details}]")
        return " ".join(parts)


class UpstreamError(MarketDataError):
    """Raised when a provider call fails at the HTTP or transport level."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int,
        source: str,
        retryable: bool = True,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.status_code = status_code
        self.source = source
        self.retryable = retryable
        details = details or {}
        details["status_code"] = status_code
        details["source"] = source
        details["retryable"] = retryable
        super().__init__(message, component=component, details=details)


class RateLimited(UpstreamError):
    """Raised on HTTP 429. `reset_at` is the epoch ms after which a retry makes sense."""

    def __init__(
        self,
        source: str,
        reset_at: int,
        *,
        component: Optional[str] = None,
    ) -> None:
        self.reset_at = reset_at
        super().__init__(
            "Rate limit exceeded",
            status_code=429,
            source=source,
            retryable=False,
            component=component,
            details={"reset_at": reset_at},
        )


class ValidationError(MarketDataError):
    """Raised when an upstream payload is malformed."""

    def __init__(
        self,
        message: str,
        *,
        field: str,
        received: Any = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.field = field
        self.received = received
        details = details or {}
        details["field"] = field
        # Keep the raw payload out of details to avoid log spam
        super().__init__(message, component=component, details=details)

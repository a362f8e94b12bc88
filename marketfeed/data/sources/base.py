"""
Shared HTTP plumbing for upstream source adapters.

Every adapter call goes through `_fetch`, which applies:
- a per-call deadline (aiohttp.ClientTimeout)
- HTTP status -> error taxonomy mapping (429 -> RateLimited, 5xx/408 -> retryable)
- the adapter's retry policy (same provider only)
- orjson decoding; undecodable bodies are ValidationErrors
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, ClassVar, Mapping, Optional, TypeVar

import aiohttp
import orjson

from marketfeed.config.configs import AggregatorConfig
from marketfeed.core.retry import Retrying, RetryPolicy
from marketfeed.errors.errors import RateLimited, UpstreamError, ValidationError
from marketfeed.ports.secrets_provider import SecretsProvider

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = frozenset({408})

S = TypeVar("S", bound="HttpSource")


def now_ms() -> int:
    return int(time.time() * 1000)


class HttpSource:
    """
    Base class for one upstream provider.

    Subclasses set `name`, `secret_name`, `requires_key` and implement `_auth` for
    the provider's way of passing its API key. A source that requires a key but
    has none is disabled: `is_enabled` is False and calls fail fast, non-retryable.
    """

    name: ClassVar[str] = "source"
    secret_name: ClassVar[Optional[str]] = None
    requires_key: ClassVar[bool] = False

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        timeout_s: float = 10.0,
        retrying: Optional[Retrying[Any]] = None,
        rate_limit_reset_s: float = 60.0,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key or None
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._retrying: Retrying[Any] = retrying or Retrying(RetryPolicy())
        self._rate_limit_reset_s = rate_limit_reset_s
        self._session = session
        self._owns_session = session is None

    @classmethod
    def from_secrets(cls: type[S], secrets: SecretsProvider, config: AggregatorConfig) -> S:
        api_key = secrets.get_optional(cls.secret_name) if cls.secret_name else None
        if cls.requires_key and api_key is None:
            logger.warning(f"[{cls.name}] API key not configured, source disabled")
        return cls(
            base_url=cls._base_url_from(config),
            api_key=api_key,
            timeout_s=config.request_timeout_s,
            retrying=Retrying(
                RetryPolicy(
                    max_attempts=config.retry_attempts,
                    base_delay_s=config.retry_base_delay_s,
                )
            ),
            rate_limit_reset_s=config.rate_limit_reset_s,
        )

    @classmethod
    def _base_url_from(cls, config: AggregatorConfig) -> str:
        raise NotImplementedError

    @property
    def is_enabled(self) -> bool:
        return not self.requires_key or self._api_key is not None

    def _auth(self, params: dict[str, str], headers: dict[str, str]) -> None:
        """Attach credentials to the outgoing request (in place)."""

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def _fetch(self, path: str, params: Optional[Mapping[str, str]] = None) -> Any:
        return await self._retrying(lambda: self._request(path, params))

    async def _request(self, path: str, params: Optional[Mapping[str, str]] = None) -> Any:
        if not self.is_enabled:
            raise UpstreamError(
                f"{self.name} API key not configured",
                status_code=401,
                source=self.name,
                retryable=False,
            )

        query: dict[str, str] = dict(params or {})
        headers: dict[str, str] = {"Accept": "application/json"}
        self._auth(query, headers)

        url = f"{self._base_url}{path}"
        session = await self._get_session()

        try:
            async with session.get(
                url, params=query, headers=headers, timeout=self._timeout
            ) as resp:
                if resp.status == 429:
                    raise RateLimited(self.name, self._reset_at(resp.headers))
                if resp.status >= 400:
                    raise UpstreamError(
                        f"{self.name} HTTP {resp.status}: {resp.reason}",
                        status_code=resp.status,
                        source=self.name,
                        retryable=resp.status >= 500 or resp.status in _RETRYABLE_STATUS,
                    )
                body = await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UpstreamError(
                f"{self.name} request failed: {type(e).__name__}: {e}",
                status_code=0,
                source=self.name,
                retryable=True,
            ) from e

        try:
            return orjson.loads(body)
        except orjson.JSONDecodeError as e:
            raise ValidationError(
                f"{self.name} returned a non-JSON body",
                field="<body>",
                received=body[:200],
                component=self.name,
            ) from e

    def _reset_at(self, headers: Mapping[str, str]) -> int:
        retry_after = headers.get("Retry-After")
        if retry_after is not None:
            try:
                return now_ms() + int(float(retry_after) * 1000)
            except ValueError:
                pass  # HTTP-date form; fall back to the default window
        return now_ms() + int(self._rate_limit_reset_s * 1000)

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "HttpSource":
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

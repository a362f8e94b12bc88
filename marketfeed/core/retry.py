"""
Retry and fallback policies for upstream calls.

Two distinct concepts live here:
- Retrying: call the *same* provider again after a retryable failure (exponential backoff).
- Cascade: try the *next* provider when a step fails or returns an unusable payload.

A Cascade sequences steps that are usually Retrying-wrapped adapter calls; retries never
span the cascade.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from marketfeed.errors.errors import MarketDataError, UpstreamError

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: delay = base_delay_s * 2 ** (attempt - 1)."""

    max_attempts: int = 3
    base_delay_s: float = 1.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_s < 0:
            raise ValueError("base_delay_s must be non-negative")

    def delay_for(self, attempt: int) -> float:
        return self.base_delay_s * (2 ** (attempt - 1))


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, UpstreamError) and exc.retryable


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay_s: float = 1.0,
    *,
    sleep: SleepFn = asyncio.sleep,
) -> T:
    """
    Run `operation`, retrying only errors marked retryable.

    Non-retryable errors (RateLimited, ValidationError, anything that is not an
    UpstreamError with retryable=True) propagate immediately. After the last
    attempt the final error is raised.
    """
    policy = RetryPolicy(max_attempts=max_attempts, base_delay_s=base_delay_s)

    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as e:
            if not _is_retryable(e) or attempt >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt)
            logger.debug(
                f"Retryable failure (attempt {attempt}/{policy.max_attempts}), "
                f"retrying in {delay:.2f}s: {e}"
            )
            await sleep(delay)
            attempt += 1


class Retrying(Generic[T]):
    """
    Binds a RetryPolicy to single-provider calls.

    Usage:
        retrying = Retrying(RetryPolicy(max_attempts=3, base_delay_s=1.0))
        payload = await retrying(lambda: client.fetch("/quote", params))
    """

    def __init__(self, policy: Optional[RetryPolicy] = None, *, sleep: SleepFn = asyncio.sleep):
        self._policy = policy or RetryPolicy()
        self._sleep = sleep

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def __call__(self, operation: Callable[[], Awaitable[T]]) -> T:
        return await with_retry(
            operation,
            max_attempts=self._policy.max_attempts,
            base_delay_s=self._policy.base_delay_s,
            sleep=self._sleep,
        )


@dataclass(frozen=True)
class CascadeStep(Generic[T]):
    """One alternative data source attempt."""

    name: str  # component name used in logs, e.g. "DataAggregator.stock_quote.finnhub"
    call: Callable[[], Awaitable[Optional[T]]]
    enabled: bool = True


class Cascade(Generic[T]):
    """
    Ordered fallback over alternative sources, taking the first acceptable result.

    A step is skipped when disabled, and disqualified when it raises, returns None,
    or returns a value rejected by `accept`. Failures are logged with the step name
    and never abort the cascade. When every step fails, `run()` returns None.
    """

    def __init__(
        self,
        steps: list[CascadeStep[T]],
        accept: Optional[Callable[[T], bool]] = None,
        name: str = "cascade",
    ) -> None:
        self._steps = steps
        self._accept = accept
        self._name = name

    async def run(self) -> Optional[T]:
        for step in self._steps:
            if not step.enabled:
                logger.debug(f"[{self._name}] Skipping disabled step {step.name}")
                continue

            try:
                result = await step.call()
            except MarketDataError as e:
                logger.warning(f"[{step.name}] {type(e).__name__}: {e}")
                continue
            except Exception as e:
                logger.error(f"[{step.name}] Unexpected error: {e}", exc_info=True)
                continue

            if result is None:
                logger.info(f"[{step.name}] No usable payload")
                continue
            if self._accept is not None and not self._accept(result):
                logger.info(f"[{step.name}] Payload rejected")
                continue

            return result

        logger.info(f"[{self._name}] All {len(self._steps)} steps exhausted")
        return None

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RequestDeduplicator:
    """
    Coalesces concurrent identical requests into a single execution.

    If `key` already has an in-flight execution, new callers await that same
    task instead of invoking `operation` again. The tracking entry is dropped
    when the execution settles (value or error) and before any caller sees the
    result, so the next call with the same key starts fresh.
    """

    def __init__(self) -> None:
        self._pending: dict[str, asyncio.Task[Any]] = {}

    @property
    def size(self) -> int:
        """Number of currently in-flight executions."""
        return len(self._pending)

    def is_pending(self, key: str) -> bool:
        return key in self._pending

    async def deduplicate(self, key: str, operation: Callable[[], Awaitable[T]]) -> T:
        task = self._pending.get(key)
        if task is None:

            async def _run() -> T:
                try:
                    return await operation()
                finally:
                    self._pending.pop(key, None)

            task = asyncio.ensure_future(_run())
            self._pending[key] = task
        else:
            logger.debug(f"Joining in-flight request: {key}")

        # Shield: a cancelled caller must not cancel the shared execution.
        return await asyncio.shield(task)

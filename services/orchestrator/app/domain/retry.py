"""Bounded exponential backoff for transient failures."""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


async def retry_async(
    action: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    base_delay: float,
    max_delay: float = 30.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    describe: str = "operation",
) -> T:
    """Run ``action`` up to ``attempts`` times, doubling the delay between tries.

    The last failure is re-raised unchanged.
    """
    delay = base_delay
    for attempt in range(1, attempts + 1):
        try:
            return await action()
        except retry_on as exc:
            if attempt >= attempts:
                raise
            logger.warning("retry.backoff", operation=describe, attempt=attempt, delay_s=delay, error=repr(exc))
            await asyncio.sleep(delay)
            delay = min(delay * 2, max_delay)
    raise RuntimeError("retry_async requires at least one attempt")


__all__ = ["retry_async"]

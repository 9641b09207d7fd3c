"""Retry helper for calls to external collaborators."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, TypeVar

from loguru import logger

from .exceptions import TransientExternalFailure, is_transient

T = TypeVar("T")


async def call_with_retry(
    func: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay: float = 1.0,
    timeout: float | None = None,
    operation: str = "external call",
) -> T:
    """Await ``func()`` with a per-attempt timeout and exponential backoff.

    Timeouts are converted to :class:`TransientExternalFailure`. Only transient
    failures are retried; the delay starts at ``base_delay`` and doubles after
    each failed attempt. The last error is re-raised once attempts run out.

    Raises:
        ValueError: If ``attempts`` is less than 1
    """
    if attempts < 1:
        raise ValueError(f"attempts must be at least 1, got {attempts}")

    for attempt in range(1, attempts + 1):
        try:
            if timeout is not None:
                return await asyncio.wait_for(func(), timeout=timeout)
            return await func()
        except asyncio.TimeoutError as e:
            error: Exception = TransientExternalFailure(
                f"{operation} timed out after {timeout}s", operation=operation
            )
            error.__cause__ = e
        except Exception as e:
            if not is_transient(e):
                raise
            error = e

        if attempt == attempts:
            logger.error(f"{operation} failed after {attempts} attempts: {error}")
            raise error

        delay = base_delay * (2 ** (attempt - 1))
        logger.warning(
            f"{operation} failed (attempt {attempt}/{attempts}), "
            f"retrying in {delay:.1f}s: {error}"
        )
        await asyncio.sleep(delay)

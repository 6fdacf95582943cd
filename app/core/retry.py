"""Retry helpers for persistence reads."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog

from app.config import settings
from app.core.exceptions import StorageFailureException

logger = structlog.get_logger(__name__)

T = TypeVar("T")


async def with_read_retry(
    operation: Callable[[], Awaitable[T]],
    name: str,
    max_retries: int = 1,
    retry_delay: float | None = None,
) -> T:
    """
    Run a read-only storage operation, retrying storage failures with backoff.

    Only reads may go through this helper. Writes carry side effects and are
    never replayed blindly.

    Args:
        operation: Zero-argument coroutine factory performing the read
        name: Operation name used in log events
        max_retries: Number of retries after the first attempt
        retry_delay: Base delay in seconds, doubled on each retry

    Returns:
        Result of the operation

    Raises:
        StorageFailureException: If every attempt failed
    """
    delay = settings.storage_retry_backoff_seconds if retry_delay is None else retry_delay

    for attempt in range(max_retries + 1):
        try:
            return await operation()
        except StorageFailureException as e:
            if attempt == max_retries:
                logger.error("storage_read_failed", operation=name, attempts=attempt + 1)
                raise
            logger.warning(
                "storage_read_retry",
                operation=name,
                attempt=attempt + 1,
                error=e.message,
            )
            await asyncio.sleep(delay * (2**attempt))

    # Unreachable: the loop either returns or raises
    raise StorageFailureException()

"""
Store deadlines and transient-error retries.

Every store call runs under a hard deadline. Transient failures (timeouts,
dropped connections, operational database errors) are retried with
exponential backoff; anything still failing afterwards surfaces as
``Unavailable``. Domain errors pass straight through.
"""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

import structlog
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from sqlalchemy.exc import InterfaceError, OperationalError

from viewtrack.errors import Unavailable

logger = structlog.get_logger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS = (
    asyncio.TimeoutError,
    ConnectionError,
    OperationalError,
    InterfaceError,
    RedisConnectionError,
    RedisTimeoutError,
)


async def with_deadline(awaitable: Awaitable[T], timeout: Optional[float]) -> T:
    """Await with a hard deadline; ``asyncio.TimeoutError`` on expiry."""
    if not timeout:
        return await awaitable
    return await asyncio.wait_for(awaitable, timeout=timeout)


async def retry_transient(
    operation: Callable[[], Awaitable[T]],
    *,
    name: str,
    attempts: int = 3,
    base_delay: float = 1.0,
    timeout: Optional[float] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` and retry transient failures.

    The first call is followed by up to ``attempts`` retries, waiting
    ``base_delay * 2**n`` between them (1, 2, 4 s with the defaults).

    Raises:
        Unavailable: when every try failed transiently
    """
    last_error: Optional[BaseException] = None

    for attempt in range(attempts + 1):
        try:
            return await with_deadline(operation(), timeout)
        except TRANSIENT_ERRORS as e:
            last_error = e
            if attempt == attempts:
                break
            delay = base_delay * (2 ** attempt)
            logger.warning(
                "Transient store error, retrying",
                operation=name,
                attempt=attempt + 1,
                delay_seconds=delay,
                error=str(e) or type(e).__name__,
            )
            await sleep(delay)

    logger.error("Store operation failed after retries", operation=name, error=str(last_error))
    raise Unavailable(f"{name} unavailable", operation=name) from last_error


async def guarded(awaitable: Awaitable[T], *, name: str, timeout: Optional[float]) -> T:
    """Single attempt under a deadline, with transient failures mapped to ``Unavailable``."""
    try:
        return await with_deadline(awaitable, timeout)
    except TRANSIENT_ERRORS as e:
        logger.error("Store operation failed", operation=name, error=str(e) or type(e).__name__)
        raise Unavailable(f"{name} unavailable", operation=name) from e

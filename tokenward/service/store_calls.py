from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from tokenward.logging import get_logger, sanitize_error_message
from tokenward.service.errors import (
    ServiceError,
    StoreTimeoutError,
    StoreUnavailableError,
)
from tokenward.storage.errors import ConstraintViolation

logger = get_logger(__name__)

T = TypeVar("T")


async def bounded(operation: str, awaitable: Awaitable[T], timeout: float) -> T:
    """Await a store or cache call under a deadline.

    Timeouts become ``StoreTimeoutError`` and unexpected failures become
    ``StoreUnavailableError``; domain errors pass through unchanged so an
    infrastructure fault is never reported as an authentication failure.
    """

    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError:
        logger.error("store_call_timeout", operation=operation, timeout=timeout)
        raise StoreTimeoutError(operation, timeout) from None
    except (ConstraintViolation, ServiceError):
        raise
    except Exception as exc:
        logger.error(
            "store_call_failed",
            operation=operation,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        raise StoreUnavailableError(operation) from exc


async def call_store(
    operation: str,
    func: Callable[..., T],
    *args: Any,
    timeout: float,
    **kwargs: Any,
) -> T:
    """Run a blocking store method in a worker thread under a deadline."""

    return await bounded(operation, asyncio.to_thread(func, *args, **kwargs), timeout)


__all__ = ["bounded", "call_store"]

"""Bounded calls against the backing store."""

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

import structlog

from tokengate.errors import TokenGateError, UpstreamFailure

logger = structlog.get_logger(__name__)

T = TypeVar("T")


async def call_store(awaitable: Awaitable[T], *, timeout: float, operation: str) -> T:
    """Await a store call with a timeout.

    Timeouts and store exceptions become ``UpstreamFailure``; domain errors
    raised below this layer pass through untouched.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except TokenGateError:
        raise
    except TimeoutError as e:
        logger.warning("store_call_timeout", operation=operation, timeout_seconds=timeout)
        raise UpstreamFailure(f"Store call '{operation}' timed out", operation=operation) from e
    except Exception as e:
        logger.warning("store_call_failed", operation=operation, error=str(e))
        raise UpstreamFailure(f"Store call '{operation}' failed", operation=operation) from e

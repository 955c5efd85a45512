import asyncio
from typing import Awaitable, TypeVar

from .errors import OperationTimeout


T = TypeVar("T")


async def with_timeout(operation: Awaitable[T], duration_ms: int) -> T:
    """Race an awaitable against a deadline.

    The losing call is cancelled; httpx tears down the in-flight request on
    cancellation. Errors raised by the operation itself propagate unchanged.
    A non-positive duration disables the guard.
    """
    if not duration_ms or duration_ms <= 0:
        return await operation
    try:
        return await asyncio.wait_for(operation, timeout=duration_ms / 1000.0)
    except asyncio.TimeoutError as exc:
        raise OperationTimeout(duration_ms) from exc

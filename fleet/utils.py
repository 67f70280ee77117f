"""Deadline-bounded polling helpers."""

import asyncio
import inspect
import time
from typing import Any, Awaitable, Callable, TypeVar, Union

T = TypeVar("T")


async def maybe_await(value: Union[T, Awaitable[T]]) -> T:
    """Await value if it is awaitable, otherwise return it unchanged."""
    if inspect.isawaitable(value):
        return await value
    return value


async def wait_until(
    condition: Callable[[], Any],
    timeout: float = 5.0,
    interval: float = 0.2,
) -> bool:
    """
    Poll condition until it is truthy or the timeout expires.

    The condition may be sync or async. It is always checked at least once.

    Returns:
        True if the condition held before the deadline, False otherwise
    """
    deadline = time.monotonic() + timeout
    while True:
        if await maybe_await(condition()):
            return True
        if time.monotonic() >= deadline:
            return False
        await asyncio.sleep(min(interval, max(0.0, deadline - time.monotonic())))

"""Async utilities for running blocking git/filesystem work off the event loop."""

import asyncio
import logging
from typing import Any, Callable, Sequence, TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)


async def run_sync(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Run a synchronous function in a thread pool without blocking the event loop.

    Args:
        func: Synchronous function to call
        *args: Positional arguments for func
        **kwargs: Keyword arguments for func

    Returns:
        Result of func(*args, **kwargs)

    Example:
        status = await run_sync(adapter.status, path)
    """
    return await asyncio.to_thread(func, *args, **kwargs)


async def gather_limited(
    calls: Sequence[Callable[[], T]],
    max_parallel: int,
) -> list[T]:
    """Run blocking zero-argument callables concurrently, at most *max_parallel* at a time.

    Returns results in input order.  Exceptions propagate from the first
    failure, so callers that need isolation must catch inside each callable.

    Args:
        calls: Zero-argument callables to run in worker threads.
        max_parallel: Upper bound on concurrently running calls.

    Returns:
        List of results in the same order as *calls*.
    """
    if max_parallel < 1:
        raise ValueError("max_parallel must be at least 1")

    semaphore = asyncio.Semaphore(max_parallel)

    async def _one(call: Callable[[], T]) -> T:
        async with semaphore:
            return await asyncio.to_thread(call)

    logger.debug(
        "Running %d blocking calls (max_parallel=%d)",
        len(calls),
        max_parallel,
    )
    return list(await asyncio.gather(*(_one(c) for c in calls)))

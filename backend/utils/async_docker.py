"""
Async wrapper for blocking Docker SDK calls.

The Docker SDK is synchronous. Running its calls in a worker thread keeps
the event loop responsive, so an interrupt delivered while a call is in
flight cancels the awaiting task and the caller's cleanup path runs.
"""

import asyncio
import functools
from typing import Any, Callable, TypeVar

T = TypeVar('T')


async def async_docker_call(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """
    Run a blocking Docker SDK call without blocking the event loop.

    Args:
        func: Bound SDK method, e.g. client.containers.get
        *args, **kwargs: Passed through to func

    Returns:
        Whatever func returns
    """
    return await asyncio.to_thread(functools.partial(func, *args, **kwargs))

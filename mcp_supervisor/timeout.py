"""Race an awaitable against a deadline."""
from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, TypeVar

from .errors import ExecutionTimedOut

T = TypeVar("T")


async def with_timeout(aw: Awaitable[T], seconds: float, *, tool: Optional[str] = None) -> T:
    """
    Await `aw` for at most `seconds`.

    On expiry the operation is cancelled and its cancellation is awaited before
    ExecutionTimedOut is raised, so a late result can never land after the
    caller has been told it timed out.
    """
    task = asyncio.ensure_future(aw)
    try:
        return await asyncio.wait_for(task, timeout=seconds)
    except asyncio.TimeoutError:
        if not task.done():
            task.cancel()
        raise ExecutionTimedOut(seconds, tool) from None

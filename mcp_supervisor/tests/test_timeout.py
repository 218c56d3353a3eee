import asyncio

import pytest

from mcp_supervisor.errors import ExecutionTimedOut
from mcp_supervisor.timeout import with_timeout


@pytest.mark.asyncio
async def test_result_within_deadline():
    async def quick():
        return 7

    assert await with_timeout(quick(), 1) == 7


@pytest.mark.asyncio
async def test_expiry_cancels_the_operation():
    state = {"cancelled": False, "finished": False}

    async def slow():
        try:
            await asyncio.sleep(5)
            state["finished"] = True
        except asyncio.CancelledError:
            state["cancelled"] = True
            raise

    with pytest.raises(ExecutionTimedOut) as info:
        await with_timeout(slow(), 0.05, tool="slow")
    assert state == {"cancelled": True, "finished": False}
    assert "Tool 'slow' timed out" in str(info.value)


@pytest.mark.asyncio
async def test_operation_errors_pass_through():
    async def broken():
        raise KeyError("x")

    with pytest.raises(KeyError):
        await with_timeout(broken(), 1)

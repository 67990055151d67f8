import asyncio

import pytest

from runengine.core.errors import TurnAborted
from runengine.engine.cancel import CancelToken


@pytest.mark.asyncio
async def test_guard_returns_the_result():
    async def work():
        return 42

    assert await CancelToken().guard(work()) == 42


@pytest.mark.asyncio
async def test_guard_raises_turn_aborted_on_cancel():
    token = CancelToken()
    started = asyncio.Event()

    async def slow():
        started.set()
        await asyncio.Event().wait()

    task = asyncio.create_task(token.guard(slow()))
    await started.wait()
    token.cancel("user abort")

    with pytest.raises(TurnAborted):
        await task
    assert token.reason == "user abort"


@pytest.mark.asyncio
async def test_outer_task_cancellation_also_cancels_the_guarded_operation():
    started = asyncio.Event()
    stopped = asyncio.Event()

    async def slow():
        started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            stopped.set()
            raise

    task = asyncio.create_task(CancelToken().guard(slow()))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    await asyncio.wait_for(stopped.wait(), timeout=1)

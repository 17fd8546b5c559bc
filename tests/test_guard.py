from __future__ import annotations

import asyncio

import pytest

from wagate.errors import NotFound, OperationFailed, TimedOut
from wagate.guard import abandoned_count, guard, guard_quietly


@pytest.mark.asyncio
async def test_guard_returns_result_within_budget() -> None:
    async def op():
        return "ok"

    assert await guard(op(), 1, "quick") == "ok"


@pytest.mark.asyncio
async def test_guard_times_out_without_cancelling_the_operation() -> None:
    finished = asyncio.Event()

    async def slow():
        await asyncio.sleep(0.1)
        finished.set()
        return "late"

    before = abandoned_count()
    with pytest.raises(TimedOut) as exc_info:
        await guard(slow(), 0.01, "slow op")

    assert exc_info.value.status_code == 504
    assert "slow op timed out after 0.01s" == exc_info.value.message
    assert abandoned_count() == before + 1

    # The abandoned work still runs to completion.
    await asyncio.wait_for(finished.wait(), 1)
    await asyncio.sleep(0)
    assert abandoned_count() == before


@pytest.mark.asyncio
async def test_guard_wraps_backend_errors_as_operation_failed() -> None:
    async def boom():
        raise RuntimeError("evaluation failed")

    with pytest.raises(OperationFailed) as exc_info:
        await guard(boom(), 1, "send text")

    assert exc_info.value.message == "send text failed"
    assert exc_info.value.details == "evaluation failed"
    assert isinstance(exc_info.value.__cause__, RuntimeError)


@pytest.mark.asyncio
async def test_guard_passes_gateway_errors_through() -> None:
    async def missing():
        raise NotFound("Message not found")

    with pytest.raises(NotFound):
        await guard(missing(), 1)


@pytest.mark.asyncio
async def test_guard_quietly_never_raises() -> None:
    async def hang():
        await asyncio.Event().wait()

    async def boom():
        raise RuntimeError("x")

    assert await guard_quietly(hang(), 0.01, "destroy") is False
    assert await guard_quietly(boom(), 1, "logout") is False

"""Tests for cooperative cancellation tokens."""

import asyncio

import pytest

from ordersync.sync.cancellation import CancellationToken, guarded
from ordersync.sync.errors import OperationCancelled


@pytest.mark.asyncio
async def test_run_returns_result():
    token = CancellationToken()
    assert await token.run(asyncio.sleep(0, result="done")) == "done"
    assert token.cancelled is False


@pytest.mark.asyncio
async def test_cancel_interrupts_inflight_operation():
    token = CancellationToken()
    task = asyncio.create_task(token.run(asyncio.sleep(10)))
    await asyncio.sleep(0)

    token.cancel("superseded")

    with pytest.raises(OperationCancelled) as exc_info:
        await task
    assert exc_info.value.reason == "superseded"


@pytest.mark.asyncio
async def test_cancelled_token_refuses_new_work():
    token = CancellationToken()
    token.cancel()

    with pytest.raises(OperationCancelled):
        await token.run(asyncio.sleep(0))
    with pytest.raises(OperationCancelled):
        await token.sleep(0)
    with pytest.raises(OperationCancelled):
        token.raise_if_cancelled()


@pytest.mark.asyncio
async def test_result_after_cancellation_is_discarded():
    token = CancellationToken()

    async def finish_then_cancel():
        await asyncio.sleep(0)
        token.cancel("late")
        return 42

    with pytest.raises(OperationCancelled):
        await token.run(finish_then_cancel())


def test_first_reason_wins():
    token = CancellationToken()
    token.cancel("first")
    token.cancel("second")
    assert token.reason == "first"


@pytest.mark.asyncio
async def test_guarded_without_token():
    assert await guarded(asyncio.sleep(0, result=5), None) == 5


@pytest.mark.asyncio
async def test_guarded_with_cancelled_token():
    token = CancellationToken()
    token.cancel()
    with pytest.raises(OperationCancelled):
        await guarded(asyncio.sleep(0), token)

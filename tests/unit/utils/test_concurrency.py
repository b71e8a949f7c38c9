"""Regression tests for the cooperative cancellation token."""

from __future__ import annotations

import asyncio
import time

import pytest

from merge_train.utils.concurrency import CancellationToken


async def test_sleep_runs_full_interval_without_cancel() -> None:
    token = CancellationToken()

    started = time.monotonic()
    woken = await token.sleep(0.05)

    assert woken is False
    assert time.monotonic() - started >= 0.04
    assert token.is_cancelled is False


async def test_cancel_wakes_a_sleeping_task_early() -> None:
    token = CancellationToken()

    async def cancel_soon() -> None:
        await asyncio.sleep(0.01)
        token.cancel()

    started = time.monotonic()
    woken, _ = await asyncio.gather(token.sleep(30), cancel_soon())

    assert woken is True
    assert time.monotonic() - started < 5


async def test_sleep_after_cancel_returns_immediately() -> None:
    token = CancellationToken()
    token.cancel()
    token.cancel()

    assert await token.sleep(30) is True
    await asyncio.wait_for(token.wait(), timeout=1)


async def test_non_positive_sleep_does_not_wait() -> None:
    token = CancellationToken()

    assert await token.sleep(0) is False
    assert await token.sleep(-1) is False


async def test_raise_if_cancelled() -> None:
    token = CancellationToken()
    token.raise_if_cancelled()

    token.cancel()
    with pytest.raises(asyncio.CancelledError):
        token.raise_if_cancelled()

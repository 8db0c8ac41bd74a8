"""
Tests for cancellable periodic tasks.
"""
import asyncio

import pytest

from ai_gateway.core.tasks import PeriodicTask


@pytest.mark.asyncio
async def test_runs_on_interval_until_stopped():
    calls = []
    task = PeriodicTask("counter", 0.01, lambda: calls.append(1))

    task.start()
    assert task.running
    await asyncio.sleep(0.05)
    await task.stop()

    assert not task.running
    assert task.runs >= 1
    assert len(calls) == task.runs
    settled = task.runs
    await asyncio.sleep(0.03)
    assert task.runs == settled


@pytest.mark.asyncio
async def test_async_job_is_awaited():
    seen = []

    async def job():
        seen.append("ran")

    task = PeriodicTask("async_job", 60, job)
    await task.run_once()

    assert seen == ["ran"]
    assert task.runs == 1


@pytest.mark.asyncio
async def test_failing_run_does_not_stop_schedule():
    def job():
        raise RuntimeError("sweep failed")

    task = PeriodicTask("failing", 60, job)
    await task.run_once()
    await task.run_once()

    assert task.failures == 2
    assert task.runs == 0


@pytest.mark.asyncio
async def test_start_twice_keeps_one_loop():
    task = PeriodicTask("single", 60, lambda: None)

    task.start()
    task.start()

    assert sum(1 for t in asyncio.all_tasks() if t.get_name() == "periodic:single") == 1
    await task.stop()


@pytest.mark.asyncio
async def test_stop_without_start_is_noop():
    task = PeriodicTask("idle", 60, lambda: None)

    await task.stop()

    assert not task.running


@pytest.mark.asyncio
async def test_stop_cancels_long_running_job():
    started = asyncio.Event()

    async def slow():
        started.set()
        await asyncio.sleep(10)

    task = PeriodicTask("slow", 0.001, slow)
    task.start()
    await started.wait()

    await asyncio.wait_for(task.stop(), timeout=1)

    assert not task.running
    assert task.failures == 0

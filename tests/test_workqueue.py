"""Tests for the work queue."""

from __future__ import annotations

import asyncio

import pytest

from ec2_operator.workqueue import BACKOFF_JITTER_FRACTION, WorkQueue


@pytest.fixture
def queue() -> WorkQueue[str]:
    return WorkQueue(backoff_base_seconds=0.01, backoff_max_seconds=0.08, jitter=False)


class TestDeduplication:
    """A key is queued at most once."""

    @pytest.mark.asyncio
    async def test_add_coalesces(self, queue: WorkQueue[str]) -> None:
        queue.add("a")
        queue.add("a")
        queue.add("b")

        assert len(queue) == 2
        assert await queue.get() == "a"
        assert await queue.get() == "b"

    @pytest.mark.asyncio
    async def test_add_during_processing_is_deferred_until_done(
        self, queue: WorkQueue[str]
    ) -> None:
        """Per-key serialization: a busy key is never handed out twice."""
        queue.add("a")
        key = await queue.get()
        assert queue.is_processing("a")

        queue.add("a")
        queue.add("a")
        assert len(queue) == 0

        queue.done(key)

        assert len(queue) == 1
        assert await queue.get() == "a"

    @pytest.mark.asyncio
    async def test_done_without_readd_does_not_requeue(self, queue: WorkQueue[str]) -> None:
        queue.add("a")
        key = await queue.get()
        queue.done(key)

        assert len(queue) == 0
        assert not queue.is_processing("a")


class TestDelayedAdds:
    """add_after and add_rate_limited."""

    @pytest.mark.asyncio
    async def test_add_after_delivers_later(self, queue: WorkQueue[str]) -> None:
        queue.add_after("a", 0.02)
        assert len(queue) == 0

        key = await asyncio.wait_for(queue.get(), timeout=1)

        assert key == "a"

    @pytest.mark.asyncio
    async def test_zero_delay_adds_immediately(self, queue: WorkQueue[str]) -> None:
        queue.add_after("a", 0)
        assert len(queue) == 1

    @pytest.mark.asyncio
    async def test_earliest_deadline_wins(self, queue: WorkQueue[str]) -> None:
        queue.add_after("a", 10)
        queue.add_after("a", 0.01)

        key = await asyncio.wait_for(queue.get(), timeout=1)
        assert key == "a"

    @pytest.mark.asyncio
    async def test_later_deadline_does_not_postpone(self, queue: WorkQueue[str]) -> None:
        queue.add_after("a", 0.01)
        queue.add_after("a", 10)

        key = await asyncio.wait_for(queue.get(), timeout=1)
        assert key == "a"

    @pytest.mark.asyncio
    async def test_rate_limited_backoff_grows_and_caps(self, queue: WorkQueue[str]) -> None:
        delays = [queue.add_rate_limited("a") for _ in range(6)]

        assert delays == [0.01, 0.02, 0.04, 0.08, 0.08, 0.08]
        assert queue.num_requeues("a") == 6

    @pytest.mark.asyncio
    async def test_forget_resets_backoff(self, queue: WorkQueue[str]) -> None:
        queue.add_rate_limited("a")
        queue.add_rate_limited("a")
        queue.forget("a")

        assert queue.num_requeues("a") == 0
        assert queue.add_rate_limited("a") == 0.01

    def test_jitter_stays_within_fraction(self) -> None:
        queue: WorkQueue[str] = WorkQueue(backoff_base_seconds=1.0, backoff_max_seconds=300.0)

        for failures in range(1, 12):
            delay = queue.backoff_delay(failures)
            base = min(2 ** (failures - 1), 300.0)
            assert base <= delay <= base * (1 + BACKOFF_JITTER_FRACTION)

    def test_long_failure_streak_does_not_overflow(self, queue: WorkQueue[str]) -> None:
        assert queue.backoff_delay(10_000) == 0.08


class TestShutdown:
    """Shutdown wakes consumers and stops intake."""

    @pytest.mark.asyncio
    async def test_get_returns_none_after_shutdown(self, queue: WorkQueue[str]) -> None:
        waiter = asyncio.create_task(queue.get())
        await asyncio.sleep(0)

        queue.shut_down()

        assert await asyncio.wait_for(waiter, timeout=1) is None
        assert queue.shutting_down

    @pytest.mark.asyncio
    async def test_adds_after_shutdown_are_ignored(self, queue: WorkQueue[str]) -> None:
        queue.shut_down()
        queue.add("a")
        queue.add_after("a", 0.01)

        assert len(queue) == 0
        assert await queue.get() is None

    @pytest.mark.asyncio
    async def test_pending_timers_are_cancelled(self, queue: WorkQueue[str]) -> None:
        queue.add_after("a", 0.01)
        queue.shut_down()
        await asyncio.sleep(0.03)

        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_cancelled_waiter_passes_wakeup_on(self, queue: WorkQueue[str]) -> None:
        first = asyncio.create_task(queue.get())
        second = asyncio.create_task(queue.get())
        await asyncio.sleep(0)

        queue.add("a")
        first.cancel()

        assert await asyncio.wait_for(second, timeout=1) == "a"

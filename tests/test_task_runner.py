"""Tests for the bounded task runner."""

import asyncio

import pytest

from content_processor.orchestration.task_runner import (
    BoundedTaskRunner,
    CancellationToken,
)


class ConcurrencyProbe:
    """Processor that records peak concurrency."""

    def __init__(self, delay: float = 0.01):
        self.delay = delay
        self.active = 0
        self.peak = 0
        self.seen = []

    async def __call__(self, item):
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delay)
            self.seen.append(item)
        finally:
            self.active -= 1


class TestBoundedTaskRunner:
    """Tests for BoundedTaskRunner."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", [1, 2, 3, 10])
    async def test_never_exceeds_limit(self, limit):
        probe = ConcurrencyProbe()
        runner = BoundedTaskRunner(limit)

        await runner.run(range(7), probe)

        assert probe.peak == min(limit, 7)
        assert sorted(probe.seen) == list(range(7))

    @pytest.mark.asyncio
    async def test_each_item_processed_once(self):
        calls = []

        async def process(item):
            calls.append(item)

        await BoundedTaskRunner(3).run(["a", "b", "c", "d"], process)

        assert sorted(calls) == ["a", "b", "c", "d"]

    @pytest.mark.asyncio
    async def test_admission_order(self):
        started = []

        async def process(item):
            started.append(item)
            await asyncio.sleep(0)

        await BoundedTaskRunner(1).run([3, 1, 2], process)

        assert started == [3, 1, 2]

    @pytest.mark.asyncio
    async def test_empty_input_returns_immediately(self):
        async def process(item):
            raise AssertionError("should not be called")

        await BoundedTaskRunner(2).run([], process)

    @pytest.mark.asyncio
    async def test_processor_errors_do_not_stop_run(self):
        done = []

        async def process(item):
            if item == 2:
                raise RuntimeError("boom")
            done.append(item)

        await BoundedTaskRunner(2).run([1, 2, 3, 4], process)

        assert sorted(done) == [1, 3, 4]

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self):
        token = CancellationToken()
        token.cancel()
        calls = []

        async def process(item):
            calls.append(item)

        await BoundedTaskRunner(2).run([1, 2, 3], process, token)

        assert calls == []

    @pytest.mark.asyncio
    async def test_cancel_stops_admissions_but_finishes_in_flight(self):
        token = CancellationToken()
        release = asyncio.Event()
        started = []
        finished = []

        async def process(item):
            started.append(item)
            await release.wait()
            finished.append(item)

        runner = BoundedTaskRunner(2)
        task = asyncio.create_task(runner.run(range(6), process, token))
        await asyncio.sleep(0.01)

        token.cancel()
        release.set()
        await task

        assert started == [0, 1]
        assert sorted(finished) == [0, 1]

    @pytest.mark.asyncio
    async def test_after_delay_applied_between_items(self):
        runner = BoundedTaskRunner(1, after_delay=0.02)

        async def process(item):
            pass

        loop = asyncio.get_running_loop()
        started = loop.time()
        await runner.run([1, 2, 3], process)

        # Two gaps; no wait after the last item
        assert loop.time() - started >= 0.035

    @pytest.mark.parametrize("limit", [0, -1])
    def test_invalid_limit(self, limit):
        with pytest.raises(ValueError):
            BoundedTaskRunner(limit)

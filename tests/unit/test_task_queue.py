"""Unit tests for the sequential task queue."""

import asyncio

import pytest

from agent_supervisor.utils.task_queue import SequentialTaskQueue


@pytest.mark.unit
class TestSequentialTaskQueue:
    """Test ordered, one-at-a-time execution."""

    def test_runs_in_submission_order(self):
        """Test slow async callbacks do not let later ones overtake them."""
        order: list[str] = []

        async def record(name: str, delay: float):
            await asyncio.sleep(delay)
            order.append(name)

        async def scenario():
            queue = SequentialTaskQueue()
            queue.submit(record, "a", 0.05)
            queue.submit(order.append, "b")
            queue.submit(record, "c", 0.01)
            await queue.flush()

        asyncio.run(scenario())

        assert order == ["a", "b", "c"]

    def test_failure_does_not_stop_queue(self):
        """Test a failing callback is counted and later callbacks still run."""
        order: list[str] = []

        def broken():
            raise RuntimeError("observer exploded")

        async def scenario():
            queue = SequentialTaskQueue("observers")
            queue.submit(broken)
            queue.submit(order.append, "after")
            await queue.flush()
            return queue

        queue = asyncio.run(scenario())

        assert order == ["after"]
        assert queue.failures == 1

    def test_queues_are_independent(self):
        """Test a blocked queue does not delay another queue."""
        order: list[str] = []

        async def scenario():
            blocker = asyncio.Event()
            first = SequentialTaskQueue("first")
            second = SequentialTaskQueue("second")
            first.submit(blocker.wait)
            first.submit(order.append, "first")
            second.submit(order.append, "second")
            await second.flush()
            blocker.set()
            await first.flush()

        asyncio.run(scenario())

        assert order == ["second", "first"]

    def test_flush_includes_work_submitted_while_flushing(self):
        """Test flush waits for callbacks queued by earlier callbacks."""
        order: list[str] = []

        async def scenario():
            queue = SequentialTaskQueue()

            def chain():
                order.append("one")
                queue.submit(order.append, "two")

            queue.submit(chain)
            await queue.flush()

        asyncio.run(scenario())

        assert order == ["one", "two"]

    def test_closed_queue_rejects_work(self):
        """Test submitting after close raises."""

        async def scenario():
            queue = SequentialTaskQueue()
            await queue.close()
            assert queue.closed
            queue.submit(print)

        with pytest.raises(RuntimeError):
            asyncio.run(scenario())

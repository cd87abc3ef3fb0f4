"""
Tests for per-key serialization of asynchronous operations.
"""

import asyncio

import pytest

from set_aside.sync.work_queue import KeyedWorkQueue


def recorder(log: list, name: str, delay: float = 0, result=None):
    async def operation():
        log.append(f"{name}:start")
        await asyncio.sleep(delay)
        log.append(f"{name}:end")
        return result

    return operation


class TestKeyedWorkQueue:
    @pytest.mark.asyncio
    async def test_returns_result(self):
        queue = KeyedWorkQueue()
        assert await queue.run("a", recorder([], "x", result=42)) == 42

    @pytest.mark.asyncio
    async def test_same_key_runs_in_order(self):
        queue = KeyedWorkQueue()
        log: list[str] = []

        await asyncio.gather(
            queue.run("a", recorder(log, "first", delay=0.02)),
            queue.run("a", recorder(log, "second", delay=0.01)),
            queue.run("a", recorder(log, "third")),
        )

        assert log == [
            "first:start",
            "first:end",
            "second:start",
            "second:end",
            "third:start",
            "third:end",
        ]

    @pytest.mark.asyncio
    async def test_different_keys_run_concurrently(self):
        queue = KeyedWorkQueue()
        log: list[str] = []

        await asyncio.gather(
            queue.run("a", recorder(log, "a", delay=0.02)),
            queue.run("b", recorder(log, "b")),
        )

        assert log.index("b:end") < log.index("a:end")

    @pytest.mark.asyncio
    async def test_failure_does_not_block_successors(self):
        queue = KeyedWorkQueue()
        log: list[str] = []

        async def failing():
            log.append("failing")
            raise ValueError("boom")

        results = await asyncio.gather(
            queue.run("a", failing),
            queue.run("a", recorder(log, "next")),
            return_exceptions=True,
        )

        assert isinstance(results[0], ValueError)
        assert log == ["failing", "next:start", "next:end"]

    @pytest.mark.asyncio
    async def test_entry_dropped_when_drained(self):
        queue = KeyedWorkQueue()
        await queue.run("a", recorder([], "x"))
        assert "a" not in queue
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_entry_dropped_after_failure_and_submit(self):
        queue = KeyedWorkQueue()

        async def failing():
            raise ValueError("boom")

        with pytest.raises(ValueError):
            await queue.run("a", failing)
        assert "a" not in queue

        await queue.submit("b", recorder([], "x"))
        assert "b" not in queue

    @pytest.mark.asyncio
    async def test_entry_present_while_running(self):
        queue = KeyedWorkQueue()
        started = asyncio.Event()
        release = asyncio.Event()

        async def blocking():
            started.set()
            await release.wait()

        task = asyncio.create_task(queue.run("a", blocking))
        await started.wait()
        assert "a" in queue

        release.set()
        await task
        assert "a" not in queue

    @pytest.mark.asyncio
    async def test_cancelled_waiter_keeps_order(self):
        queue = KeyedWorkQueue()
        log: list[str] = []
        release = asyncio.Event()

        async def blocking():
            log.append("first:start")
            await release.wait()
            log.append("first:end")

        first = asyncio.create_task(queue.run("a", blocking))
        await asyncio.sleep(0)
        second = asyncio.create_task(queue.run("a", recorder(log, "second")))
        third = asyncio.create_task(queue.run("a", recorder(log, "third")))
        await asyncio.sleep(0)

        second.cancel()
        with pytest.raises(asyncio.CancelledError):
            await second
        await asyncio.sleep(0)
        assert log == ["first:start"]

        release.set()
        await asyncio.gather(first, third)
        assert log == ["first:start", "first:end", "third:start", "third:end"]

    @pytest.mark.asyncio
    async def test_submit_claims_slot_immediately(self):
        queue = KeyedWorkQueue()
        log: list[str] = []

        task = queue.submit("a", recorder(log, "submitted", delay=0.01))
        # Called after submit() but before its task ever ran
        await queue.run("a", recorder(log, "awaited"))
        assert await task is None

        assert log == ["submitted:start", "submitted:end", "awaited:start", "awaited:end"]

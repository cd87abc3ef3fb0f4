"""
Per-key ordered work queue.

Operations submitted under the same key run strictly one after another,
in the order they were submitted. Operations under different keys run
concurrently. Each key maps to the tail of its chain of pending
operations; the entry is dropped once the chain drains.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

T = TypeVar("T")


class KeyedWorkQueue:
    """Serializes operations per key.

    The position of an operation in its chain is taken synchronously
    when run() or submit() is called, before the first suspension
    point, so the order of calls is the order of execution.

    Example:
        >>> queue = KeyedWorkQueue()
        >>> await asyncio.gather(
        ...     queue.run("a", first),   # runs first
        ...     queue.run("a", second),  # starts after first completes
        ...     queue.run("b", other),   # runs concurrently with both
        ... )
    """

    def __init__(self) -> None:
        self._tails: dict[str, asyncio.Future[None]] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._tails

    def __len__(self) -> int:
        return len(self._tails)

    async def run(self, key: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run an operation once every earlier operation on key has finished.

        Args:
            key: Serialization key
            operation: Zero-argument coroutine function

        Returns:
            The operation's result; its exception propagates unchanged
        """
        previous, done = self._claim(key)
        return await self._execute(key, previous, done, operation)

    def submit(self, key: str, operation: Callable[[], Awaitable[T]]) -> asyncio.Task[T]:
        """Claim a slot now and run the operation in a new task.

        For callers that cannot await, such as synchronous callbacks.
        """
        previous, done = self._claim(key)
        return asyncio.ensure_future(self._execute(key, previous, done, operation))

    def _claim(self, key: str) -> tuple[asyncio.Future[None] | None, asyncio.Future[None]]:
        previous = self._tails.get(key)
        done: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._tails[key] = done
        return previous, done

    async def _execute(
        self,
        key: str,
        previous: asyncio.Future[None] | None,
        done: asyncio.Future[None],
        operation: Callable[[], Awaitable[T]],
    ) -> T:
        try:
            if previous is not None and not previous.done():
                await asyncio.shield(previous)
            return await operation()
        finally:
            if previous is not None and not previous.done():
                # Cancelled while waiting: successors still wait for the predecessor
                previous.add_done_callback(lambda _: self._release(key, done))
            else:
                self._release(key, done)

    def _release(self, key: str, done: asyncio.Future[None]) -> None:
        if not done.done():
            done.set_result(None)
        if self._tails.get(key) is done:
            del self._tails[key]

"""Coalescing of duplicate in-flight work and windowed concurrency."""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Hashable, List, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")


class SingleFlight:
    """Share one in-flight computation between concurrent callers of the same key.

    The entry is dropped once the computation settles, so later callers start
    fresh; results are not memoised here.
    """

    def __init__(self):
        self._in_flight: Dict[Hashable, asyncio.Future] = {}

    def __len__(self) -> int:
        return len(self._in_flight)

    def _forget(self, key: Hashable, done: asyncio.Future) -> None:
        if self._in_flight.get(key) is done:
            del self._in_flight[key]

    async def do(self, key: Hashable, factory: Callable[[], Awaitable[T]]) -> T:
        future = self._in_flight.get(key)
        if future is not None:
            return await asyncio.shield(future)

        future = asyncio.ensure_future(factory())
        self._in_flight[key] = future
        future.add_done_callback(lambda done: self._forget(key, done))
        return await asyncio.shield(future)


async def run_in_windows(
    items: Sequence[T],
    width: int,
    fn: Callable[[int, T], Awaitable[R]],
) -> List[R]:
    """Run ``fn(index, item)`` at most ``width`` at a time.

    Results land in a pre-sized list by index, so completion order never
    changes the output order. Exceptions propagate.
    """
    results: List[Any] = [None] * len(items)

    async def _run(index: int, item: T) -> None:
        results[index] = await fn(index, item)

    for start in range(0, len(items), width):
        await asyncio.gather(*(
            _run(index, items[index])
            for index in range(start, min(start + width, len(items)))
        ))

    return results

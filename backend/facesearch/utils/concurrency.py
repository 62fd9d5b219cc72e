import asyncio
import functools
import time
from collections import deque
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Sequence, TypeVar

T = TypeVar("T")


class RateLimiter:
    """
    Cooperative rate limiter shared by all outbound site requests.

    Two limits apply at once: at most `max_per_second` slots are granted in
    any rolling one second window, and at most `max_concurrent` holders may
    be inside the `slot()` block at the same time. Waiters sleep on the
    event loop, no threads involved.
    """

    def __init__(
        self,
        max_per_second: int = 2,
        max_concurrent: int = 3,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.max_per_second = max_per_second
        self.max_concurrent = max_concurrent
        self._clock = clock
        self._sleep = sleep
        self._grants: deque = deque()
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._lock: Optional[asyncio.Lock] = None

    def _primitives(self):
        # Created lazily so the limiter can be built outside a running loop
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_concurrent)
            self._lock = asyncio.Lock()
        return self._semaphore, self._lock

    async def _wait_for_window(self) -> None:
        _, lock = self._primitives()
        async with lock:
            while True:
                now = self._clock()
                while self._grants and now - self._grants[0] >= 1.0:
                    self._grants.popleft()
                if len(self._grants) < self.max_per_second:
                    self._grants.append(now)
                    return
                await self._sleep(1.0 - (now - self._grants[0]))

    @asynccontextmanager
    async def slot(self):
        semaphore, _ = self._primitives()
        async with semaphore:
            await self._wait_for_window()
            yield


async def run_blocking(func: Callable[..., T], *args, timeout: Optional[float] = None) -> T:
    """
    Runs CPU bound work (ONNX inference, cv2 codecs, file writes) in the
    default executor so the event loop keeps serving requests.

    Raises:
        asyncio.TimeoutError: When `timeout` seconds pass first. The worker
                              thread itself cannot be interrupted and finishes
                              in the background.
    """
    loop = asyncio.get_running_loop()
    future = loop.run_in_executor(None, functools.partial(func, *args))
    if timeout is None:
        return await future
    return await asyncio.wait_for(future, timeout=timeout)


async def gather_settled(awaitables: Iterable[Awaitable[T]]) -> List[Any]:
    """
    Runs every awaitable concurrently and waits for all of them.

    One failure never cancels the others. The returned list holds either
    the result or the raised exception, in input order.
    """
    return await asyncio.gather(*awaitables, return_exceptions=True)


def chunked(items: Sequence[T], size: int) -> List[Sequence[T]]:
    """Splits `items` into consecutive chunks of at most `size` elements."""
    if size < 1:
        raise ValueError("chunk size must be >= 1")
    return [items[i:i + size] for i in range(0, len(items), size)]

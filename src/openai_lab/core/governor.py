"""Concurrency governor: permits, cancellation tokens and the exchange registry.

Everything here runs on one asyncio loop.  State is only mutated between
``await`` points, so no locks are used.
"""

from __future__ import annotations

import asyncio
import collections
import contextlib
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Coroutine, Sequence, TypeVar

from openai_lab.errors import ExchangeCancelled

_logger = logging.getLogger(__name__)

T = TypeVar("T")

Job = Callable[[], Awaitable[T]]


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class CancellationToken:
    """Cooperative cancellation switch checked at every suspension point."""

    def __init__(self, request_id: str = "") -> None:
        self.request_id = request_id
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ExchangeCancelled(self.request_id)

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, delay: float) -> None:
        """Sleep for *delay* seconds, waking early and raising if cancelled."""
        self.raise_if_cancelled()
        if delay <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise ExchangeCancelled(self.request_id)


# ---------------------------------------------------------------------------
# Permit pool
# ---------------------------------------------------------------------------

class PermitPool:
    """Counting permit pool with strict FIFO service of waiters.

    ``size <= 0`` means unbounded.
    """

    def __init__(self, size: int) -> None:
        self._size = size
        self._available = size
        self._waiters: collections.deque[asyncio.Future[None]] = collections.deque()

    @property
    def size(self) -> int:
        return self._size

    @property
    def in_use(self) -> int:
        if self._size <= 0:
            return 0
        return self._size - self._available

    @property
    def waiting(self) -> int:
        return len(self._waiters)

    async def acquire(self) -> Callable[[], None]:
        """Wait for a permit and return a release callable.

        The release callable is idempotent.
        """
        if self._size <= 0:
            return lambda: None

        if self._available > 0 and not self._waiters:
            self._available -= 1
        else:
            fut: asyncio.Future[None] = asyncio.get_running_loop().create_future()
            self._waiters.append(fut)
            try:
                await fut
            except asyncio.CancelledError:
                if fut.done() and not fut.cancelled():
                    # Permit was handed over just as we were cancelled
                    self._release()
                else:
                    with contextlib.suppress(ValueError):
                        self._waiters.remove(fut)
                raise

        released = False

        def release() -> None:
            nonlocal released
            if released:
                return
            released = True
            self._release()

        return release

    def _release(self) -> None:
        # Hand the permit straight to the oldest live waiter
        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                fut.set_result(None)
                return
        self._available += 1

    @contextlib.asynccontextmanager
    async def permit(self) -> AsyncIterator[None]:
        release = await self.acquire()
        try:
            yield
        finally:
            release()


async def run_bounded(
    jobs: Sequence[Job[T]],
    limit: int,
) -> list[T | BaseException]:
    """Run *jobs* with at most *limit* in flight.

    Returns results aligned with *jobs*; a failing job's exception is
    stored in its slot and never cancels its siblings.
    """
    pool = PermitPool(limit)
    results: list[Any] = [None] * len(jobs)

    async def _run(index: int, job: Job[T]) -> None:
        async with pool.permit():
            try:
                results[index] = await job()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                _logger.debug("Bounded job %d failed: %s", index, e)
                results[index] = e

    await asyncio.gather(*(_run(i, job) for i, job in enumerate(jobs)))
    return results


# ---------------------------------------------------------------------------
# Exchange registry
# ---------------------------------------------------------------------------

@dataclass
class ExchangeHandle:
    request_id: str
    token: CancellationToken
    task: asyncio.Task[Any] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class ExchangeRegistry:
    """Tracks in-flight exchanges by correlation id.

    A handle lives here from submission until its task finishes or is
    cancelled, and is removed immediately after either.
    """

    def __init__(self, prefix: str = "req") -> None:
        self._prefix = prefix
        self._counter = itertools.count(1)
        self._handles: dict[str, ExchangeHandle] = {}

    def __len__(self) -> int:
        return len(self._handles)

    def __contains__(self, request_id: str) -> bool:
        return request_id in self._handles

    def next_id(self) -> str:
        return f"{self._prefix}_{next(self._counter)}"

    def get(self, request_id: str) -> ExchangeHandle | None:
        return self._handles.get(request_id)

    @property
    def request_ids(self) -> list[str]:
        return list(self._handles)

    async def submit(
        self,
        factory: Callable[[CancellationToken], Coroutine[Any, Any, T]],
        request_id: str | None = None,
        token: CancellationToken | None = None,
    ) -> T:
        """Run ``factory(token)`` as a registered, cancellable exchange.

        Raises :class:`ExchangeCancelled` if the exchange is cancelled
        through the registry or its token.
        """
        request_id = request_id or self.next_id()
        token = token or CancellationToken(request_id)
        if not token.request_id:
            token.request_id = request_id
        handle = ExchangeHandle(request_id=request_id, token=token)
        self._handles[request_id] = handle

        task = asyncio.ensure_future(factory(token))
        handle.task = task
        try:
            return await task
        except asyncio.CancelledError:
            if token.cancelled:
                raise ExchangeCancelled(request_id) from None
            raise
        finally:
            self._handles.pop(request_id, None)

    def cancel(self, request_id: str) -> bool:
        """Cancel one exchange.  Returns ``False`` if it is not in flight."""
        handle = self._handles.pop(request_id, None)
        if handle is None:
            return False
        _logger.info("Cancelling exchange %s", request_id)
        handle.token.cancel()
        if handle.task is not None and not handle.task.done():
            handle.task.cancel()
        return True

    def cancel_all(self) -> int:
        """Cancel every in-flight exchange and return how many there were."""
        ids = list(self._handles)
        for request_id in ids:
            self.cancel(request_id)
        return len(ids)

"""Tests for the concurrency governor."""

from __future__ import annotations

import asyncio

import pytest

from openai_lab.core.governor import (
    CancellationToken,
    ExchangeRegistry,
    PermitPool,
    run_bounded,
)
from openai_lab.errors import ExchangeCancelled


class TestCancellationToken:
    def test_cancel(self):
        token = CancellationToken("req_1")
        assert not token.cancelled
        token.cancel()
        assert token.cancelled
        with pytest.raises(ExchangeCancelled) as exc_info:
            token.raise_if_cancelled()
        assert exc_info.value.request_id == "req_1"

    async def test_sleep_completes(self):
        token = CancellationToken()
        await token.sleep(0.01)
        assert not token.cancelled

    async def test_sleep_wakes_on_cancel(self):
        token = CancellationToken("req_2")
        loop = asyncio.get_running_loop()
        loop.call_later(0.01, token.cancel)
        start = loop.time()
        with pytest.raises(ExchangeCancelled):
            await token.sleep(10)
        assert loop.time() - start < 5

    async def test_sleep_zero(self):
        await CancellationToken().sleep(0)


class TestPermitPool:
    async def test_limits_concurrency(self):
        pool = PermitPool(2)
        r1 = await pool.acquire()
        r2 = await pool.acquire()
        assert pool.in_use == 2

        third = asyncio.ensure_future(pool.acquire())
        await asyncio.sleep(0)
        assert not third.done()
        assert pool.waiting == 1

        r1()
        r3 = await third
        assert pool.in_use == 2
        r2()
        r3()
        assert pool.in_use == 0

    async def test_release_is_idempotent(self):
        pool = PermitPool(1)
        release = await pool.acquire()
        release()
        release()
        assert pool.in_use == 0

    async def test_fifo_order(self):
        pool = PermitPool(1)
        first = await pool.acquire()
        order: list[int] = []

        async def waiter(n: int) -> None:
            release = await pool.acquire()
            order.append(n)
            release()

        tasks = [asyncio.ensure_future(waiter(n)) for n in range(5)]
        await asyncio.sleep(0)
        first()
        await asyncio.gather(*tasks)
        assert order == [0, 1, 2, 3, 4]

    async def test_cancelled_waiter_does_not_leak(self):
        pool = PermitPool(1)
        release = await pool.acquire()
        waiting = asyncio.ensure_future(pool.acquire())
        await asyncio.sleep(0)
        waiting.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiting
        release()
        assert pool.in_use == 0
        assert pool.waiting == 0

    async def test_unbounded(self):
        pool = PermitPool(0)
        releases = [await pool.acquire() for _ in range(100)]
        assert pool.in_use == 0
        for r in releases:
            r()

    async def test_context_manager(self):
        pool = PermitPool(1)
        async with pool.permit():
            assert pool.in_use == 1
        assert pool.in_use == 0


class TestRunBounded:
    async def test_never_exceeds_limit(self):
        active = 0
        peak = 0

        async def job() -> int:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return 1

        results = await run_bounded([job for _ in range(10)], 3)
        assert results == [1] * 10
        assert peak <= 3
        assert peak == 3

    async def test_results_aligned_with_jobs(self):
        async def make(n: int) -> int:
            await asyncio.sleep(0.001 * (5 - n))
            return n * n

        results = await run_bounded([lambda n=n: make(n) for n in range(5)], 2)
        assert results == [0, 1, 4, 9, 16]

    async def test_failure_isolated(self):
        async def ok() -> str:
            await asyncio.sleep(0)
            return "ok"

        async def boom() -> str:
            raise RuntimeError("boom")

        jobs = [ok] * 4 + [boom] + [ok] * 5
        results = await run_bounded(jobs, 3)
        assert isinstance(results[4], RuntimeError)
        assert [r for i, r in enumerate(results) if i != 4] == ["ok"] * 9

    async def test_empty(self):
        assert await run_bounded([], 3) == []


class TestExchangeRegistry:
    async def test_ids_are_sequential(self):
        registry = ExchangeRegistry(prefix="req")
        assert registry.next_id() == "req_1"
        assert registry.next_id() == "req_2"

    async def test_handle_removed_after_completion(self):
        registry = ExchangeRegistry()

        async def work(token: CancellationToken) -> str:
            assert "r1" in registry
            return "done"

        assert await registry.submit(work, request_id="r1") == "done"
        assert "r1" not in registry
        assert len(registry) == 0

    async def test_handle_removed_after_failure(self):
        registry = ExchangeRegistry()

        async def work(token: CancellationToken) -> str:
            raise ValueError("bad")

        with pytest.raises(ValueError):
            await registry.submit(work, request_id="r1")
        assert len(registry) == 0

    async def test_cancel_one_leaves_other_intact(self):
        registry = ExchangeRegistry()
        gate = asyncio.Event()

        async def work(token: CancellationToken) -> str:
            await gate.wait()
            return token.request_id

        a = asyncio.ensure_future(registry.submit(work, request_id="a"))
        b = asyncio.ensure_future(registry.submit(work, request_id="b"))
        await asyncio.sleep(0)
        assert registry.request_ids == ["a", "b"]

        assert registry.cancel("a") is True
        gate.set()
        with pytest.raises(ExchangeCancelled):
            await a
        assert await b == "b"
        assert len(registry) == 0

    async def test_cancel_unknown(self):
        assert ExchangeRegistry().cancel("nope") is False

    async def test_cancel_all(self):
        registry = ExchangeRegistry()

        async def work(token: CancellationToken) -> None:
            await asyncio.sleep(10)

        tasks = [
            asyncio.ensure_future(registry.submit(work, request_id=f"r{i}"))
            for i in range(3)
        ]
        await asyncio.sleep(0)
        assert registry.cancel_all() == 3
        for t in tasks:
            with pytest.raises(ExchangeCancelled):
                await t

    async def test_token_gets_request_id(self):
        registry = ExchangeRegistry()
        token = CancellationToken()

        async def work(tok: CancellationToken) -> str:
            return tok.request_id

        assert await registry.submit(work, request_id="x", token=token) == "x"

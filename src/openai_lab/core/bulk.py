"""Bulk performance testing across models.

Each (iteration, model) pair becomes one non-streaming exchange, run
through :func:`run_bounded` so at most ``concurrent`` are in flight.  A
failing or timed-out exchange is recorded as a failed result and never
retried or allowed to stop its siblings.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import statistics
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Sequence

from openai_lab.core.governor import CancellationToken, run_bounded
from openai_lab.core.pricing import calculate_cost, get_effective_price
from openai_lab.core.store import PriceTable
from openai_lab.errors import ExchangeCancelled, normalize_error
from openai_lab.events.bus import EventBus
from openai_lab.llm.client import AsyncAPIClient
from openai_lab.types import EventType, ExchangeRequest, ModelRecord, TokenUsage

_logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 5
DEFAULT_TIMEOUT = 30.0  # seconds per exchange

ResultCallback = Callable[["BenchResult"], Any]
ProgressCallback = Callable[[float, int], Any]


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class BenchConfiguration:
    name: str
    model_ids: list[str]
    prompt: str
    parameters: dict[str, Any] = field(default_factory=dict)
    concurrent: int = DEFAULT_CONCURRENCY
    iterations: int = 1
    timeout: float = DEFAULT_TIMEOUT
    description: str = ""

    @property
    def total_requests(self) -> int:
        return len(self.model_ids) * self.iterations


@dataclass
class BenchResult:
    test_id: str
    model_id: str
    iteration: int
    success: bool
    response_time: float  # ms
    tokens: TokenUsage | None = None
    cost: float = 0.0
    error: str = ""
    error_kind: str = ""
    id: str = field(default_factory=lambda: f"result_{uuid.uuid4().hex[:12]}")
    timestamp: float = field(default_factory=time.time)


@dataclass
class BenchSummary:
    model_id: str
    total_iterations: int
    successful_iterations: int
    failed_iterations: int
    average_response_time: float
    min_response_time: float
    max_response_time: float
    total_tokens: TokenUsage
    total_cost: float
    tokens_per_second: float
    success_rate: float


@dataclass
class ComparisonResult:
    models: list[str]
    summaries: list[BenchSummary]
    fastest: str | None = None
    most_cost_effective: str | None = None
    most_reliable: str | None = None
    recommendations: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

class BulkTestRunner:
    """Fire model/prompt combinations through one :class:`AsyncAPIClient`."""

    def __init__(
        self,
        client: AsyncAPIClient,
        prices: PriceTable | None = None,
        models: Mapping[str, ModelRecord] | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._client = client
        self._prices = prices
        self._models = dict(models or {})
        self._event_bus = event_bus
        self._token: CancellationToken | None = None

    @property
    def is_running(self) -> bool:
        return self._token is not None

    def stop(self) -> None:
        """Cancel the current run.  Unstarted jobs are recorded as cancelled."""
        if self._token is None:
            return
        _logger.info("Stopping bulk test run")
        self._token.cancel()
        for request_id in self._client.active_request_ids:
            if request_id.startswith("bulk_"):
                self._client.cancel_request(request_id)

    async def run(
        self,
        config: BenchConfiguration,
        on_result: ResultCallback | None = None,
        on_progress: ProgressCallback | None = None,
        test_id: str | None = None,
    ) -> list[BenchResult]:
        """Run every iteration of every model; results are in job order."""
        if self._token is not None:
            raise RuntimeError("A bulk test is already running")

        test_id = test_id or f"test_{uuid.uuid4().hex[:8]}"
        self._token = token = CancellationToken(test_id)
        pairs = [
            (iteration, model_id)
            for iteration in range(1, config.iterations + 1)
            for model_id in config.model_ids
        ]
        total = len(pairs)
        completed = 0
        _logger.info(
            "Bulk test %s: %d request(s), concurrency %d",
            test_id, total, config.concurrent,
        )

        async def _job(iteration: int, model_id: str) -> BenchResult:
            nonlocal completed
            result = await self._execute_one(test_id, config, model_id, iteration, token)
            completed += 1
            progress = completed / total * 100 if total else 100.0
            await self._notify(on_result, result)
            await self._notify(on_progress, progress, completed)
            await self._emit(EventType.BULK_RESULT, test_id=test_id, result=result)
            await self._emit(
                EventType.BULK_PROGRESS,
                test_id=test_id, progress=progress, completed=completed, total=total,
            )
            return result

        try:
            outcomes = await run_bounded(
                [lambda i=i, m=m: _job(i, m) for i, m in pairs],
                config.concurrent,
            )
        finally:
            self._token = None

        results: list[BenchResult] = []
        for (iteration, model_id), outcome in zip(pairs, outcomes):
            if isinstance(outcome, BenchResult):
                results.append(outcome)
                continue
            # Callback or bookkeeping failure outside the exchange itself
            err = normalize_error(outcome)
            results.append(BenchResult(
                test_id=test_id, model_id=model_id, iteration=iteration,
                success=False, response_time=0.0,
                error=err.message, error_kind=err.kind.value,
            ))
        return results

    async def _execute_one(
        self,
        test_id: str,
        config: BenchConfiguration,
        model_id: str,
        iteration: int,
        token: CancellationToken,
    ) -> BenchResult:
        if token.cancelled:
            return BenchResult(
                test_id=test_id, model_id=model_id, iteration=iteration,
                success=False, response_time=0.0,
                error="Test was cancelled", error_kind="cancelled",
            )

        request = ExchangeRequest(
            messages=({"role": "user", "content": config.prompt},),
            model=model_id,
            parameters=dict(config.parameters),
        )
        request_id = f"bulk_{self._client.next_request_id()}"
        start = time.perf_counter()
        try:
            completion = await asyncio.wait_for(
                self._client.complete(request, request_id=request_id),
                timeout=config.timeout,
            )
        except ExchangeCancelled:
            return BenchResult(
                test_id=test_id, model_id=model_id, iteration=iteration,
                success=False, response_time=(time.perf_counter() - start) * 1000,
                error="Test was cancelled", error_kind="cancelled",
            )
        except Exception as e:
            err = normalize_error(e)
            _logger.info("Bulk request %s/%d failed: %s", model_id, iteration, err.message)
            return BenchResult(
                test_id=test_id, model_id=model_id, iteration=iteration,
                success=False, response_time=(time.perf_counter() - start) * 1000,
                error=err.message, error_kind=err.kind.value,
            )

        elapsed = (time.perf_counter() - start) * 1000
        tokens = completion.usage
        return BenchResult(
            test_id=test_id, model_id=model_id, iteration=iteration,
            success=True, response_time=elapsed,
            tokens=tokens, cost=self._cost_for(model_id, tokens),
        )

    def _cost_for(self, model_id: str, tokens: TokenUsage | None) -> float:
        if tokens is None:
            return 0.0
        override = self._prices.get_price_override(model_id) if self._prices else None
        price = get_effective_price(self._models.get(model_id), override)
        if price is None:
            return 0.0
        return calculate_cost(tokens, price.input, price.output, price.currency).total_cost

    @staticmethod
    async def _notify(callback: Callable[..., Any] | None, *args: Any) -> None:
        if callback is None:
            return
        result = callback(*args)
        if inspect.isawaitable(result):
            await result

    async def _emit(self, event_type: EventType, **data: Any) -> None:
        if self._event_bus is not None:
            await self._event_bus.publish(event_type, **data)


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------

def summarize(results: Sequence[BenchResult]) -> list[BenchSummary]:
    """Per-model aggregates, in first-seen model order."""
    by_model: dict[str, list[BenchResult]] = {}
    for r in results:
        by_model.setdefault(r.model_id, []).append(r)

    summaries: list[BenchSummary] = []
    for model_id, rows in by_model.items():
        ok = [r for r in rows if r.success]
        times = [r.response_time for r in ok]
        tokens = TokenUsage()
        for r in ok:
            if r.tokens is not None:
                tokens = tokens + r.tokens
        total_seconds = sum(times) / 1000
        summaries.append(BenchSummary(
            model_id=model_id,
            total_iterations=len(rows),
            successful_iterations=len(ok),
            failed_iterations=len(rows) - len(ok),
            average_response_time=statistics.fmean(times) if times else 0.0,
            min_response_time=min(times) if times else 0.0,
            max_response_time=max(times) if times else 0.0,
            total_tokens=tokens,
            total_cost=sum(r.cost for r in ok),
            tokens_per_second=tokens.output / total_seconds if total_seconds else 0.0,
            success_rate=len(ok) / len(rows) if rows else 0.0,
        ))
    return summaries


def compare(results: Sequence[BenchResult]) -> ComparisonResult:
    """Pick the fastest, cheapest-per-token and most reliable models."""
    summaries = summarize(results)
    comparison = ComparisonResult(
        models=[s.model_id for s in summaries],
        summaries=summaries,
    )
    answered = [s for s in summaries if s.successful_iterations]
    if answered:
        fastest = min(answered, key=lambda s: s.average_response_time)
        comparison.fastest = fastest.model_id
        comparison.recommendations.append(
            f"{fastest.model_id} had the lowest average response time "
            f"({fastest.average_response_time:.0f}ms)"
        )

        priced = [s for s in answered if s.total_cost > 0 and s.total_tokens.total]
        if priced:
            cheapest = min(priced, key=lambda s: s.total_cost / s.total_tokens.total)
            comparison.most_cost_effective = cheapest.model_id
            comparison.recommendations.append(
                f"{cheapest.model_id} was the most cost-effective per token"
            )

    if summaries:
        reliable = max(summaries, key=lambda s: s.success_rate)
        comparison.most_reliable = reliable.model_id
        if reliable.success_rate < 1:
            comparison.recommendations.append(
                f"No model answered every request; best success rate was "
                f"{reliable.success_rate:.0%} ({reliable.model_id})"
            )
    return comparison

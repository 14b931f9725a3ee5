"""Async client for OpenAI-compatible chat APIs.

Uses ``httpx.AsyncClient`` and exposes ``complete()`` for both plain and
streamed chat completions, ``list_models()`` with a per-profile TTL cache,
and ``test_connection()``.  Every exchange is registered under a
correlation id so it can be cancelled individually or all at once.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable

import httpx

from openai_lab.config import DEFAULT_MODEL, EndpointProfile
from openai_lab.core.governor import CancellationToken, ExchangeRegistry
from openai_lab.errors import APIError, ErrorKind, from_response, normalize_error
from openai_lab.types import (
    Completion,
    ConnectionTestResult,
    ExchangeRequest,
    ModelRecord,
    TokenUsage,
)

from .models import DEFAULT_CACHE_TTL, ModelCache, parse_model_list
from .stream import DeltaSink, decode_stream

_logger = logging.getLogger(__name__)

# Truncation for logged request/response bodies
_LOG_BODY_CHARS = 200


def _elapsed_ms(start: float) -> float:
    # Floor keeps a measured exchange strictly positive on coarse clocks
    return max((time.perf_counter() - start) * 1000, 1e-3)


def _sanitize_headers(headers: httpx.Headers) -> dict[str, str]:
    sanitized = dict(headers)
    if "authorization" in sanitized:
        sanitized["authorization"] = "Bearer ***"
    return sanitized


def _truncate(body: Any) -> str:
    if body is None:
        return ""
    text = body if isinstance(body, str) else json.dumps(body, default=str)
    if len(text) > _LOG_BODY_CHARS:
        return text[:_LOG_BODY_CHARS] + "..."
    return text


class AsyncAPIClient:
    """Transport client bound to one :class:`EndpointProfile`.

    Parameters
    ----------
    profile:
        Endpoint, credential and default generation parameters.
    cache_ttl:
        Freshness window for ``list_models`` results, in seconds.
    transport:
        Optional ``httpx`` transport (tests pass ``httpx.MockTransport``).
    clock:
        Clock used by the model cache.
    """

    def __init__(
        self,
        profile: EndpointProfile,
        cache_ttl: float = DEFAULT_CACHE_TTL,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.profile = profile
        self._cache = ModelCache(ttl=cache_ttl, clock=clock)
        self._registry = ExchangeRegistry(prefix="req")

        self._client = httpx.AsyncClient(
            base_url=profile.url,
            headers=self._headers(profile),
            timeout=httpx.Timeout(profile.timeout, connect=30),
            transport=transport,
        )

    @staticmethod
    def _headers(profile: EndpointProfile) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {profile.api_key}",
            "Content-Type": "application/json",
        }

    # ------------------------------------------------------------------
    # Connection probe & model listing
    # ------------------------------------------------------------------

    async def test_connection(self) -> ConnectionTestResult:
        """Probe ``GET /models``.  Never raises."""
        start = time.perf_counter()
        try:
            await self._request("GET", "/models")
        except Exception as e:
            err = normalize_error(e)
            return ConnectionTestResult(
                success=False,
                response_time=_elapsed_ms(start),
                error=err.message or "Connection failed",
                error_kind=err.kind.value,
            )
        return ConnectionTestResult(success=True, response_time=_elapsed_ms(start))

    async def list_models(self, force_refresh: bool = False) -> list[ModelRecord]:
        """Return the model catalog, served from cache while fresh.

        Two overlapping calls that both miss the cache will both fetch;
        the last one to finish owns the cache entry.
        """
        key = self.profile.cache_key
        if not force_refresh:
            cached = self._cache.get(key)
            if cached is not None:
                _logger.debug("Returning %d cached models for %s", len(cached), self.profile.url)
                return cached

        resp, _ = await self._request("GET", "/models")
        try:
            data = resp.json()
        except ValueError as e:
            raise APIError(
                ErrorKind.UNKNOWN,
                "Invalid JSON in model listing",
                status=resp.status_code,
                code="INVALID_JSON",
            ) from e

        models = parse_model_list(data, self.profile.url)
        self._cache.put(key, models)
        _logger.info("Fetched %d models from %s", len(models), self.profile.url)
        return models

    def clear_model_cache(self) -> None:
        self._cache.clear()

    def cache_stats(self) -> dict[str, Any]:
        return self._cache.stats()

    @property
    def model_cache(self) -> ModelCache:
        return self._cache

    # ------------------------------------------------------------------
    # Chat completions
    # ------------------------------------------------------------------

    async def complete(
        self,
        request: ExchangeRequest,
        on_delta: DeltaSink | None = None,
        token: CancellationToken | None = None,
        request_id: str | None = None,
    ) -> Completion:
        """Run one chat completion exchange.

        Streams when *on_delta* is given, calling it once per text
        fragment in arrival order.  Raises :class:`APIError` on failure
        and ``ExchangeCancelled`` if the exchange is cancelled.
        """

        async def _exchange(tok: CancellationToken) -> Completion:
            if on_delta is not None:
                return await self._complete_stream(request, on_delta, tok)
            return await self._complete_plain(request, tok)

        return await self._registry.submit(_exchange, request_id=request_id, token=token)

    def next_request_id(self) -> str:
        return self._registry.next_id()

    def build_payload(self, request: ExchangeRequest, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": request.model or self.profile.model or DEFAULT_MODEL,
            "messages": list(request.messages),
        }
        payload.update(self.profile.parameters.to_payload())
        payload.update(request.parameters)
        payload["stream"] = stream
        return payload

    async def _complete_plain(
        self, request: ExchangeRequest, token: CancellationToken,
    ) -> Completion:
        payload = self.build_payload(request, stream=False)
        token.raise_if_cancelled()
        resp, latency = await self._request("POST", "/chat/completions", payload)
        # Result of an exchange cancelled while in flight is discarded
        token.raise_if_cancelled()

        try:
            data = resp.json()
        except ValueError as e:
            raise APIError(
                ErrorKind.UNKNOWN,
                "Invalid JSON in completion response",
                status=resp.status_code,
                code="INVALID_JSON",
            ) from e

        choices = (data.get("choices") or []) if isinstance(data, dict) else []
        if not choices:
            raise APIError(
                ErrorKind.UNKNOWN,
                "Empty choices in completion response",
                status=resp.status_code,
                details=data,
            )
        choice = choices[0]
        message = choice.get("message") or {}
        return Completion(
            content=message.get("content") or "",
            usage=TokenUsage.from_api(data.get("usage")),
            model=data.get("model", payload["model"]),
            finish_reason=choice.get("finish_reason") or "",
            latency_ms=latency,
            raw=data,
        )

    async def _complete_stream(
        self,
        request: ExchangeRequest,
        on_delta: DeltaSink,
        token: CancellationToken,
    ) -> Completion:
        payload = self.build_payload(request, stream=True)
        path = "/chat/completions"
        start = time.perf_counter()
        token.raise_if_cancelled()
        self._log_request("POST", path, payload)

        try:
            async with self._client.stream("POST", path, json=payload) as resp:
                if resp.status_code >= 400:
                    await resp.aread()
                    raise from_response(resp)
                result = await decode_stream(resp.aiter_text(), on_delta, token)
        except httpx.HTTPError as e:
            err = normalize_error(e)
            self._log_failure("POST", path, start, err)
            raise err from e
        except APIError as e:
            self._log_failure("POST", path, start, e)
            raise

        latency = _elapsed_ms(start)
        if result.malformed_frames:
            _logger.warning(
                "Skipped %d malformed stream frame(s) from %s",
                result.malformed_frames, self.profile.url,
            )
        _logger.debug(
            "POST %s streamed %d chars in %d frame(s) (%.0fms)",
            path, len(result.text), result.frames, latency,
        )
        return Completion(
            content=result.text,
            usage=result.usage,
            model=result.model or payload["model"],
            finish_reason=result.finish_reason,
            latency_ms=latency,
        )

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel_request(self, request_id: str) -> bool:
        """Abort one in-flight exchange.  No-op once it has finished."""
        return self._registry.cancel(request_id)

    def cancel_all(self) -> int:
        """Abort every in-flight exchange issued by this client."""
        return self._registry.cancel_all()

    @property
    def active_request_count(self) -> int:
        return len(self._registry)

    @property
    def active_request_ids(self) -> list[str]:
        return self._registry.request_ids

    def request_stats(self) -> dict[str, int]:
        return {
            "active_requests": len(self._registry),
            "cache_size": len(self._cache),
        }

    # ------------------------------------------------------------------
    # Profile management
    # ------------------------------------------------------------------

    def update_profile(self, profile: EndpointProfile) -> None:
        """Swap the endpoint profile.  Exchanges already in flight keep theirs."""
        self.profile = profile
        self._client.base_url = profile.url
        self._client.headers.update(self._headers(profile))
        self._client.timeout = httpx.Timeout(profile.timeout, connect=30)

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
    ) -> tuple[httpx.Response, float]:
        """Send one request; raise a normalized :class:`APIError` on failure."""
        start = time.perf_counter()
        self._log_request(method, path, payload)
        try:
            resp = await self._client.request(method, path, json=payload)
        except httpx.HTTPError as e:
            err = normalize_error(e)
            self._log_failure(method, path, start, err)
            raise err from e

        latency = _elapsed_ms(start)
        if resp.status_code >= 400:
            err = from_response(resp)
            self._log_failure(method, path, start, err)
            raise err

        _logger.debug(
            "%s %s -> %d (%.0fms) %s",
            method, path, resp.status_code, latency, _truncate(resp.text),
        )
        return resp, latency

    def _log_request(self, method: str, path: str, payload: Any) -> None:
        _logger.debug(
            "%s %s headers=%s body=%s",
            method, path, _sanitize_headers(self._client.headers), _truncate(payload),
        )

    def _log_failure(self, method: str, path: str, start: float, err: APIError) -> None:
        _logger.warning(
            "%s %s failed: %s %s (%.0fms): %s",
            method, path, err.kind.value, err.status or err.code,
            _elapsed_ms(start), err.message,
        )

    async def close(self) -> None:
        """Cancel outstanding exchanges and close the HTTP client."""
        self._registry.cancel_all()
        await self._client.aclose()

    async def __aenter__(self) -> AsyncAPIClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

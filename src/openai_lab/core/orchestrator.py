"""Message orchestrator: one conversation exchange end-to-end.

    store -> wire messages -> client (-> decoder) -> pricing -> store

The orchestrator never raises across its public API.  Transport errors
arrive already normalized from the client; orchestration conditions
(no session, already processing, retry exhausted, ...) are returned as
failed :class:`SendResult` objects.
"""

from __future__ import annotations

import inspect
import logging
import time
import uuid
from typing import Any, Callable, Iterable, Mapping, Sequence

from openai_lab.core.governor import CancellationToken
from openai_lab.core.pricing import calculate_cost, estimate_token_count, get_effective_price
from openai_lab.core.store import ConversationStore, PriceTable
from openai_lab.errors import APIError, Condition, ExchangeCancelled, normalize_error
from openai_lab.events.bus import EventBus
from openai_lab.llm.client import AsyncAPIClient
from openai_lab.types import (
    Attachment,
    ChatMessage,
    Conversation,
    CostCalculation,
    EventType,
    ExchangeRequest,
    ModelRecord,
    SendResult,
    TokenUsage,
)

_logger = logging.getLogger(__name__)

_WIRE_ROLES = ("system", "user", "assistant")

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 1.0  # seconds

DeltaCallback = Callable[[str], Any]


# ---------------------------------------------------------------------------
# Wire message assembly
# ---------------------------------------------------------------------------

def format_with_attachments(content: str, attachments: Iterable[Attachment] | None) -> str:
    """Inline attachment text after the turn content.

    Attachments without extracted text are referenced by name only.
    """
    formatted = content
    for attachment in attachments or ():
        if attachment.content:
            formatted += f"\n\n[File: {attachment.name}]\n{attachment.content}"
        else:
            formatted += f"\n\n[File: {attachment.name}]"
    return formatted


def build_wire_messages(
    history: Sequence[ChatMessage],
    new_text: str,
    attachments: Iterable[Attachment] | None = None,
) -> list[dict[str, str]]:
    """Prior system/user/assistant turns followed by the new user turn."""
    messages: list[dict[str, str]] = []
    for msg in history:
        if msg.role not in _WIRE_ROLES:
            continue
        messages.append({
            "role": msg.role,
            "content": format_with_attachments(msg.content, msg.attachments),
        })
    messages.append({
        "role": "user",
        "content": format_with_attachments(new_text, attachments),
    })
    return messages


def _new_message_id() -> str:
    return f"msg_{uuid.uuid4().hex[:12]}"


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class MessageOrchestrator:
    """Drive conversation exchanges against one :class:`AsyncAPIClient`.

    Parameters
    ----------
    client:
        Transport client for the conversation's endpoint.
    store:
        Conversation store collaborator.
    prices:
        Optional user price overrides.
    event_bus:
        Optional bus for progress, usage and retry events.
    models:
        Known model records by id, used for provider-reported prices.
    max_retries / retry_delay:
        Defaults for :meth:`retry_message`.
    """

    def __init__(
        self,
        client: AsyncAPIClient,
        store: ConversationStore,
        prices: PriceTable | None = None,
        event_bus: EventBus | None = None,
        models: Mapping[str, ModelRecord] | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
    ) -> None:
        self._client = client
        self._store = store
        self._prices = prices
        self._event_bus = event_bus
        self._models: dict[str, ModelRecord] = dict(models or {})
        self.max_retries = max_retries
        self.retry_delay = retry_delay

        self._processing: set[str] = set()
        self._active: dict[str, CancellationToken] = {}
        self._retry_attempts: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Model records
    # ------------------------------------------------------------------

    def set_models(self, models: Iterable[ModelRecord]) -> None:
        self._models = {m.id: m for m in models}

    async def refresh_models(self, force_refresh: bool = False) -> list[ModelRecord]:
        models = await self._client.list_models(force_refresh)
        self.set_models(models)
        return models

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send_message(
        self,
        text: str,
        attachments: Sequence[Attachment] | None = None,
        on_delta: DeltaCallback | None = None,
        request_id: str | None = None,
    ) -> SendResult:
        """Send a new user turn in the active conversation.

        Streams into the assistant placeholder when *on_delta* is given.
        """
        conv = self._store.get_active_conversation()
        if conv is None:
            return self._reject(Condition.NO_SESSION, "No active conversation")
        if conv.id in self._processing:
            return self._reject(
                Condition.ALREADY_PROCESSING,
                "A message is already being processed for this conversation",
            )

        self._processing.add(conv.id)
        try:
            history = list(conv.messages)
            user_id = self._store.append_turn(ChatMessage(
                id=_new_message_id(),
                role="user",
                content=text,
                attachments=list(attachments or []),
            ))
            assistant_id = self._store.append_turn(ChatMessage(
                id=_new_message_id(),
                role="assistant",
                is_streaming=True,
            ))
            messages = build_wire_messages(history, text, attachments)
            request_id = request_id or self._client.next_request_id()
            return await self._exchange(
                conv, messages, user_id, assistant_id, on_delta,
                CancellationToken(request_id),
            )
        finally:
            self._processing.discard(conv.id)

    async def _exchange(
        self,
        conv: Conversation,
        messages: list[dict[str, str]],
        user_id: str,
        assistant_id: str,
        on_delta: DeltaCallback | None,
        token: CancellationToken,
    ) -> SendResult:
        request_id = token.request_id
        self._active[request_id] = token
        model_id = conv.model_id or self._client.profile.model
        request = ExchangeRequest(
            messages=tuple(messages),
            model=model_id,
            stream=on_delta is not None,
        )
        streamed = ""

        async def _sink(chunk: str) -> None:
            nonlocal streamed
            streamed += chunk
            self._store.update_turn(assistant_id, content=streamed)
            await self._emit(
                EventType.EXCHANGE_DELTA,
                request_id=request_id, message_id=assistant_id, delta=chunk,
            )
            if on_delta is not None:
                result = on_delta(chunk)
                if inspect.isawaitable(result):
                    await result

        await self._emit(
            EventType.EXCHANGE_STARTED,
            request_id=request_id, conversation_id=conv.id,
            message_id=assistant_id, model=model_id, stream=request.stream,
        )
        start = time.perf_counter()
        try:
            completion = await self._client.complete(
                request,
                on_delta=_sink if on_delta is not None else None,
                token=token,
                request_id=request_id,
            )
        except ExchangeCancelled:
            _logger.info("Exchange %s cancelled", request_id)
            self._store.update_turn(assistant_id, is_streaming=False)
            await self._emit(
                EventType.EXCHANGE_CANCELLED,
                request_id=request_id, message_id=assistant_id,
            )
            return SendResult(
                success=False,
                message_id=assistant_id,
                request_id=request_id,
                response_time=_elapsed_ms(start),
                error="Request cancelled",
                condition=Condition.CANCELLED.value,
            )
        except Exception as e:
            err = e if isinstance(e, APIError) else normalize_error(e)
            if not isinstance(e, APIError):
                _logger.exception("Unexpected error in exchange %s", request_id)
            return await self._fail(assistant_id, request_id, err, streamed, start)
        finally:
            self._active.pop(request_id, None)

        elapsed = _elapsed_ms(start)
        content = completion.content or streamed
        tokens = completion.usage or self._estimate_usage(messages, content)
        cost = self._cost_for(model_id, tokens)

        self._store.update_turn(
            assistant_id,
            content=content,
            tokens=tokens,
            cost=cost.total_cost,
            response_time=elapsed,
            error=None,
            is_streaming=False,
        )
        self._store.update_turn(user_id, tokens=TokenUsage.of(tokens.input, 0))
        self._store.record_usage(conv.id, tokens, cost.total_cost)

        await self._emit(
            EventType.USAGE_RECORDED,
            conversation_id=conv.id, tokens=tokens, cost=cost.total_cost,
            currency=cost.currency,
        )
        await self._emit(
            EventType.EXCHANGE_COMPLETED,
            request_id=request_id, message_id=assistant_id,
            response_time=elapsed, content_length=len(content),
        )
        return SendResult(
            success=True,
            message_id=assistant_id,
            request_id=request_id,
            tokens=tokens,
            cost=cost.total_cost,
            response_time=elapsed,
        )

    async def _fail(
        self,
        assistant_id: str,
        request_id: str,
        err: APIError,
        partial: str,
        start: float,
    ) -> SendResult:
        _logger.warning("Exchange %s failed (%s): %s", request_id, err.kind.value, err.message)
        self._store.update_turn(
            assistant_id,
            content=partial or "Failed to generate response",
            error=err.message,
            is_streaming=False,
        )
        await self._emit(
            EventType.EXCHANGE_FAILED,
            request_id=request_id, message_id=assistant_id,
            kind=err.kind.value, error=err.message, partial_length=len(partial),
        )
        return SendResult(
            success=False,
            message_id=assistant_id,
            request_id=request_id,
            response_time=_elapsed_ms(start),
            error=err.message,
            condition=err.kind.value,
        )

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------

    async def retry_message(
        self,
        message_id: str,
        max_retries: int | None = None,
        retry_delay: float | None = None,
        on_delta: DeltaCallback | None = None,
        request_id: str | None = None,
    ) -> SendResult:
        """Re-run the exchange that produced assistant message *message_id*.

        The attempt counter is bumped before anything is sent, and the
        wait before resubmitting grows linearly: ``retry_delay * attempts``
        (no wait on the first retry).  A success clears the counter.
        """
        max_retries = self.max_retries if max_retries is None else max_retries
        retry_delay = self.retry_delay if retry_delay is None else retry_delay

        conv = self._store.get_active_conversation()
        if conv is None:
            return self._reject(Condition.NO_SESSION, "No active conversation")

        index = conv.index_of(message_id)
        if index < 0:
            return self._reject(Condition.NOT_FOUND, f"Message not found: {message_id}")
        message = conv.messages[index]
        if message.role != "assistant":
            return self._reject(
                Condition.NOT_AN_ASSISTANT_MESSAGE, "Can only retry assistant messages",
            )
        if index == 0 or conv.messages[index - 1].role != "user":
            return self._reject(
                Condition.NO_PRIOR_USER_TURN, "Cannot find original user message",
            )
        if conv.id in self._processing:
            return self._reject(
                Condition.ALREADY_PROCESSING,
                "A message is already being processed for this conversation",
            )

        attempts = self._retry_attempts.get(message_id, 0)
        if attempts >= max_retries:
            return self._reject(
                Condition.RETRY_EXHAUSTED,
                f"Maximum retry attempts ({max_retries}) exceeded",
                message_id=message_id,
            )
        self._retry_attempts[message_id] = attempts + 1

        request_id = request_id or self._client.next_request_id()
        token = CancellationToken(request_id)
        delay = retry_delay * attempts

        self._processing.add(conv.id)
        self._active[request_id] = token
        try:
            await self._emit(
                EventType.RETRY_SCHEDULED,
                request_id=request_id, message_id=message_id,
                attempt=attempts + 1, max_retries=max_retries, delay=delay,
            )
            if attempts > 0:
                _logger.info(
                    "Retrying %s (attempt %d/%d) in %.1fs",
                    message_id, attempts + 1, max_retries, delay,
                )
                try:
                    await self._backoff(delay, token)
                except ExchangeCancelled:
                    return SendResult(
                        success=False,
                        message_id=message_id,
                        request_id=request_id,
                        error="Request cancelled",
                        condition=Condition.CANCELLED.value,
                    )

            user_turn = conv.messages[index - 1]
            history = conv.messages[:index - 1]
            self._store.update_turn(
                message_id, content="", error=None, tokens=None, cost=None,
                is_streaming=True,
            )
            messages = build_wire_messages(history, user_turn.content, user_turn.attachments)
            result = await self._exchange(
                conv, messages, user_turn.id, message_id, on_delta, token,
            )
        finally:
            self._processing.discard(conv.id)
            self._active.pop(request_id, None)

        if result.success:
            self._retry_attempts.pop(message_id, None)
        return result

    async def _backoff(self, delay: float, token: CancellationToken) -> None:
        await token.sleep(delay)

    def retry_attempts(self, message_id: str) -> int:
        return self._retry_attempts.get(message_id, 0)

    def clear_retry_attempts(self, message_id: str) -> None:
        self._retry_attempts.pop(message_id, None)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self, request_id: str) -> bool:
        """Abort one in-flight exchange, leaving partial state as-is."""
        token = self._active.get(request_id)
        if token is not None:
            token.cancel()
        cancelled = self._client.cancel_request(request_id)
        return cancelled or token is not None

    def cancel_all(self) -> int:
        """Abort every exchange issued through this orchestrator's client."""
        ids = set(self._active) | set(self._client.active_request_ids)
        for token in list(self._active.values()):
            token.cancel()
        self._client.cancel_all()
        return len(ids)

    @property
    def active_request_count(self) -> int:
        return len(self._active)

    def processing_stats(self) -> dict[str, int]:
        return {
            "active_requests": len(self._active),
            "total_retry_attempts": sum(self._retry_attempts.values()),
            "messages_with_retries": len(self._retry_attempts),
        }

    # ------------------------------------------------------------------
    # Accounting
    # ------------------------------------------------------------------

    @staticmethod
    def _estimate_usage(messages: list[dict[str, str]], content: str) -> TokenUsage:
        prompt = sum(estimate_token_count(m["content"]) for m in messages)
        return TokenUsage.of(prompt, estimate_token_count(content))

    def _cost_for(self, model_id: str, tokens: TokenUsage) -> CostCalculation:
        override = self._prices.get_price_override(model_id) if self._prices else None
        price = get_effective_price(self._models.get(model_id), override)
        if price is None:
            return CostCalculation(0.0, 0.0, 0.0, tokens_used=tokens)
        return calculate_cost(tokens, price.input, price.output, price.currency)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _reject(condition: Condition, message: str, message_id: str | None = None) -> SendResult:
        _logger.info("Rejected (%s): %s", condition.value, message)
        return SendResult(
            success=False,
            message_id=message_id,
            error=message,
            condition=condition.value,
        )

    async def _emit(self, event_type: EventType, **data: Any) -> None:
        if self._event_bus is not None:
            await self._event_bus.publish(event_type, **data)

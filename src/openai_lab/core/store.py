"""Collaborator interfaces consumed by the orchestrator.

Persistence is not owned by this package.  A store only has to provide
the four calls of :class:`ConversationStore`.  The in-memory versions
below back the CLI and the tests.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import fields
from typing import Any, Protocol, runtime_checkable

from openai_lab.types import ChatMessage, Conversation, ModelPrice, TokenUsage

_logger = logging.getLogger(__name__)


@runtime_checkable
class ConversationStore(Protocol):
    """Outbound conversation persistence."""

    def get_active_conversation(self) -> Conversation | None:
        ...

    def append_turn(self, message: ChatMessage) -> str:
        """Append *message* to the active conversation and return its id."""
        ...

    def update_turn(self, message_id: str, **patch: Any) -> None:
        ...

    def record_usage(self, conversation_id: str, tokens: TokenUsage, cost: float) -> None:
        """Add an exchange's usage to *conversation_id*'s totals."""
        ...


@runtime_checkable
class PriceTable(Protocol):
    def get_price_override(self, model_id: str) -> ModelPrice | None:
        ...


class StaticPriceTable:
    """Price overrides from a plain mapping (e.g. the ``prices`` config key)."""

    def __init__(self, prices: dict[str, ModelPrice] | None = None) -> None:
        self._prices = dict(prices or {})

    def get_price_override(self, model_id: str) -> ModelPrice | None:
        return self._prices.get(model_id)

    def set_price(self, model_id: str, price: ModelPrice) -> None:
        self._prices[model_id] = price


_MESSAGE_FIELDS = {f.name for f in fields(ChatMessage)}


class InMemoryConversationStore:
    """Conversations kept in a dict, one of them active."""

    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}
        self._active_id: str | None = None
        self._ids = itertools.count(1)

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}_{next(self._ids)}"

    # ----- Conversations -----

    def create_conversation(
        self,
        model_id: str = "",
        system_prompt: str = "",
        activate: bool = True,
    ) -> Conversation:
        conv = Conversation(id=self._next_id("conv"), model_id=model_id)
        if system_prompt:
            conv.messages.append(
                ChatMessage(id=self._next_id("msg"), role="system", content=system_prompt)
            )
        self._conversations[conv.id] = conv
        if activate:
            self._active_id = conv.id
        return conv

    def set_active(self, conversation_id: str | None) -> None:
        if conversation_id is not None and conversation_id not in self._conversations:
            raise KeyError(conversation_id)
        self._active_id = conversation_id

    def get(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    # ----- ConversationStore -----

    def get_active_conversation(self) -> Conversation | None:
        if self._active_id is None:
            return None
        return self._conversations.get(self._active_id)

    def append_turn(self, message: ChatMessage) -> str:
        conv = self.get_active_conversation()
        if conv is None:
            raise LookupError("No active conversation")
        if not message.id:
            message.id = self._next_id("msg")
        conv.messages.append(message)
        return message.id

    def update_turn(self, message_id: str, **patch: Any) -> None:
        unknown = set(patch) - _MESSAGE_FIELDS
        if unknown:
            raise TypeError(f"Unknown message fields: {', '.join(sorted(unknown))}")
        for conv in self._conversations.values():
            msg = conv.find(message_id)
            if msg is not None:
                for key, value in patch.items():
                    setattr(msg, key, value)
                return
        _logger.warning("update_turn: message %s not found", message_id)

    def record_usage(self, conversation_id: str, tokens: TokenUsage, cost: float) -> None:
        conv = self._conversations.get(conversation_id)
        if conv is None:
            _logger.warning("record_usage: conversation %s not found", conversation_id)
            return
        conv.total_tokens += tokens.total
        conv.total_cost += cost

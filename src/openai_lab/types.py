"""Shared data types for OpenAI Lab."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any


# ---------------------------------------------------------------------------
# Accounting types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TokenUsage:
    """Token counts for one exchange."""

    input: int = 0
    output: int = 0
    total: int = 0

    @classmethod
    def of(cls, input: int, output: int) -> TokenUsage:
        """Build a usage record whose total is computed locally."""
        return cls(input=input, output=output, total=input + output)

    @classmethod
    def from_api(cls, usage: dict[str, Any] | None) -> TokenUsage | None:
        """Map an OpenAI ``usage`` object.

        The reported ``total_tokens`` is trusted when present.
        """
        if not usage:
            return None
        prompt = int(usage.get("prompt_tokens") or 0)
        completion = int(usage.get("completion_tokens") or 0)
        total = usage.get("total_tokens")
        if total is None:
            return cls.of(prompt, completion)
        return cls(input=prompt, output=completion, total=int(total))

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input=self.input + other.input,
            output=self.output + other.output,
            total=self.total + other.total,
        )


@dataclass(frozen=True)
class ModelPrice:
    """Price pair per 1000 tokens."""

    input: float
    output: float
    currency: str = "USD"


@dataclass(frozen=True)
class CostCalculation:
    input_cost: float
    output_cost: float
    total_cost: float
    currency: str = "USD"
    tokens_used: TokenUsage | None = None


# ---------------------------------------------------------------------------
# Model catalog types
# ---------------------------------------------------------------------------

@dataclass
class ModelCapability:
    type: str  # text, vision, image, function_calling, audio
    description: str = ""


@dataclass
class ModelRecord:
    """Canonical model description built from a ``/models`` entry."""

    id: str
    name: str = ""
    type: str = "text"  # text | multimodal | embedding
    context_length: int = 4096
    capabilities: list[ModelCapability] = field(default_factory=list)
    description: str = ""
    provider: str = ""
    input_price: float | None = None
    output_price: float | None = None
    max_file_size: int = 10 * 1024 * 1024
    supported_formats: list[str] = field(default_factory=list)

    @property
    def capability_types(self) -> list[str]:
        return [c.type for c in self.capabilities]


# ---------------------------------------------------------------------------
# Exchange types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExchangeRequest:
    """One chat completion call.  Built fresh per call, never mutated."""

    messages: tuple[dict[str, Any], ...]
    model: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)
    stream: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.messages, tuple):
            object.__setattr__(self, "messages", tuple(self.messages))


@dataclass
class Completion:
    """Parsed result of a chat completion, streamed or not."""

    content: str = ""
    usage: TokenUsage | None = None
    model: str = ""
    finish_reason: str = ""
    latency_ms: float = 0
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class ConnectionTestResult:
    success: bool
    response_time: float  # ms
    error: str = ""
    error_kind: str = ""
    timestamp: float = field(default_factory=time.time)


# ---------------------------------------------------------------------------
# Conversation types (collaborator shapes)
# ---------------------------------------------------------------------------

@dataclass
class Attachment:
    """A file attached to a turn.  ``content`` is the already-extracted text."""

    name: str
    content: str | None = None
    mime_type: str = ""


@dataclass
class ChatMessage:
    id: str
    role: str  # system | user | assistant
    content: str = ""
    attachments: list[Attachment] = field(default_factory=list)
    tokens: TokenUsage | None = None
    cost: float | None = None
    response_time: float | None = None
    error: str | None = None
    is_streaming: bool = False
    timestamp: float = field(default_factory=time.time)


@dataclass
class Conversation:
    id: str
    messages: list[ChatMessage] = field(default_factory=list)
    model_id: str = ""
    total_tokens: int = 0
    total_cost: float = 0.0

    def find(self, message_id: str) -> ChatMessage | None:
        for msg in self.messages:
            if msg.id == message_id:
                return msg
        return None

    def index_of(self, message_id: str) -> int:
        for i, msg in enumerate(self.messages):
            if msg.id == message_id:
                return i
        return -1


@dataclass
class SendResult:
    """Outcome of ``send_message`` / ``retry_message``.  Never raised."""

    success: bool
    message_id: str | None = None
    request_id: str | None = None
    tokens: TokenUsage | None = None
    cost: float = 0.0
    response_time: float | None = None
    error: str = ""
    condition: str = ""


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class EventType(enum.Enum):
    """Events published on the EventBus."""

    # Exchange lifecycle
    EXCHANGE_STARTED = "exchange.started"
    EXCHANGE_DELTA = "exchange.delta"
    EXCHANGE_COMPLETED = "exchange.completed"
    EXCHANGE_FAILED = "exchange.failed"
    EXCHANGE_CANCELLED = "exchange.cancelled"

    # Accounting
    USAGE_RECORDED = "usage.recorded"

    # Retry
    RETRY_SCHEDULED = "retry.scheduled"

    # Bulk testing
    BULK_PROGRESS = "bulk.progress"
    BULK_RESULT = "bulk.result"


@dataclass
class LabEvent:
    """Event emitted via the EventBus."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

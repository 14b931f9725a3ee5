"""Core components for OpenAI Lab.

Only the leaf modules are re-exported here.  ``orchestrator`` and ``bulk``
depend on :mod:`openai_lab.llm`, which itself imports the governor, so
import them by full path.
"""

from openai_lab.core.governor import (
    CancellationToken,
    ExchangeRegistry,
    PermitPool,
    run_bounded,
)
from openai_lab.core.pricing import calculate_cost, estimate_token_count, get_effective_price
from openai_lab.core.store import (
    ConversationStore,
    InMemoryConversationStore,
    PriceTable,
    StaticPriceTable,
)

__all__ = [
    "CancellationToken",
    "ConversationStore",
    "ExchangeRegistry",
    "InMemoryConversationStore",
    "PermitPool",
    "PriceTable",
    "StaticPriceTable",
    "calculate_cost",
    "estimate_token_count",
    "get_effective_price",
    "run_bounded",
]

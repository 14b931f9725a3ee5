"""Token estimation and cost calculation.

Everything here is pure.  Prices are always expressed per 1000 tokens.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from openai_lab.types import (
    Attachment,
    CostCalculation,
    ModelPrice,
    ModelRecord,
    TokenUsage,
)

# Fixed per-attachment overhead for file metadata
ATTACHMENT_OVERHEAD_TOKENS = 50

DAYS_PER_MONTH = 30


def estimate_token_count(text: str | None) -> int:
    """Approximate the token count of *text*.

    Takes the larger of a character heuristic (~4 chars per token) and a
    word heuristic (~0.75 words per token) so budgets are over-estimated
    rather than under-estimated.
    """
    if not text:
        return 0
    chars = len(text)
    words = len(text.split())
    return max(math.ceil(chars / 4), math.ceil(words / 0.75))


def estimate_message_tokens(
    content: str,
    attachments: Iterable[Attachment] | None = None,
) -> int:
    """Estimate tokens for a turn including its attachments."""
    count = math.ceil(len(content) / 4) if content else 0
    for attachment in attachments or ():
        if attachment.content:
            count += math.ceil(len(attachment.content) / 4)
        count += ATTACHMENT_OVERHEAD_TOKENS
    return count


def calculate_cost(
    usage: TokenUsage,
    input_price: float,
    output_price: float,
    currency: str = "USD",
) -> CostCalculation:
    """Cost of *usage* given per-1K-token prices.

    Negative inputs are not rejected here; validate upstream.
    """
    input_cost = (input_price / 1000) * usage.input
    output_cost = (output_price / 1000) * usage.output
    return CostCalculation(
        input_cost=input_cost,
        output_cost=output_cost,
        total_cost=input_cost + output_cost,
        currency=currency,
        tokens_used=usage,
    )


def get_effective_price(
    model: ModelRecord | None,
    override: ModelPrice | None = None,
) -> ModelPrice | None:
    """Override wins; else the provider-reported price; else ``None``.

    Callers must treat ``None`` as "not priceable" and leave the model out
    of cost rankings.
    """
    if override is not None:
        return override
    if model is not None and model.input_price is not None and model.output_price is not None:
        return ModelPrice(input=model.input_price, output=model.output_price, currency="USD")
    return None


@dataclass(frozen=True)
class CostPerToken:
    input: float
    output: float
    average: float


def calculate_cost_per_token(
    model: ModelRecord,
    override: ModelPrice | None = None,
) -> CostPerToken | None:
    price = get_effective_price(model, override)
    if price is None:
        return None
    per_input = price.input / 1000
    per_output = price.output / 1000
    return CostPerToken(per_input, per_output, (per_input + per_output) / 2)


def estimate_conversation_cost(
    messages: Iterable[Mapping[str, Any]],
    model: ModelRecord,
    override: ModelPrice | None = None,
    expected_output_length: int | None = None,
) -> CostCalculation | None:
    """Projected cost of sending *messages*.

    Output defaults to half the input token count when no expected length
    (in characters) is given.
    """
    price = get_effective_price(model, override)
    if price is None:
        return None

    input_tokens = sum(estimate_token_count(m.get("content", "")) for m in messages)
    if expected_output_length:
        output_tokens = estimate_token_count(" " * expected_output_length)
    else:
        output_tokens = math.ceil(input_tokens * 0.5)

    usage = TokenUsage.of(input_tokens, output_tokens)
    return calculate_cost(usage, price.input, price.output, price.currency)


@dataclass
class ModelCostComparison:
    model: ModelRecord
    cost: CostCalculation | None
    cost_per_token: float | None


def compare_model_costs(
    models: Iterable[ModelRecord],
    usage: TokenUsage,
    overrides: Mapping[str, ModelPrice] | None = None,
) -> list[ModelCostComparison]:
    """Rank models cheapest first; unpriced models go last."""
    overrides = overrides or {}
    rows: list[ModelCostComparison] = []
    for model in models:
        price = get_effective_price(model, overrides.get(model.id))
        cost = None
        per_token = None
        if price is not None:
            cost = calculate_cost(usage, price.input, price.output, price.currency)
            per_token = cost.total_cost / usage.total if usage.total else 0.0
        rows.append(ModelCostComparison(model, cost, per_token))

    priced = sorted(
        (r for r in rows if r.cost_per_token is not None),
        key=lambda r: r.cost_per_token,
    )
    unpriced = [r for r in rows if r.cost_per_token is None]
    return priced + unpriced


def calculate_monthly_cost(
    daily_usage: TokenUsage,
    model: ModelRecord,
    override: ModelPrice | None = None,
) -> CostCalculation | None:
    price = get_effective_price(model, override)
    if price is None:
        return None
    monthly = TokenUsage(
        input=daily_usage.input * DAYS_PER_MONTH,
        output=daily_usage.output * DAYS_PER_MONTH,
        total=daily_usage.total * DAYS_PER_MONTH,
    )
    return calculate_cost(monthly, price.input, price.output, price.currency)


@dataclass
class PricingTier:
    name: str
    description: str
    monthly_token_limit: int
    estimated_monthly_cost: float
    recommended: bool


_TIERS = [
    ("Light Usage", "Perfect for occasional use and testing", 100_000),
    ("Regular Usage", "Good for regular development and small projects", 1_000_000),
    ("Heavy Usage", "Suitable for production applications", 10_000_000),
    ("Enterprise", "For large-scale applications with high volume", 100_000_000),
]


def get_pricing_recommendations(
    average_daily_tokens: int,
    model: ModelRecord,
    override: ModelPrice | None = None,
) -> list[PricingTier]:
    price = get_effective_price(model, override)
    if price is None:
        return []

    monthly_tokens = average_daily_tokens * DAYS_PER_MONTH
    per_token = (price.input + price.output) / 2000

    tiers: list[PricingTier] = []
    lower = 0
    for i, (name, description, limit) in enumerate(_TIERS):
        last = i == len(_TIERS) - 1
        recommended = monthly_tokens > lower and (last or monthly_tokens <= limit)
        if i == 0:
            recommended = monthly_tokens <= limit
        tiers.append(PricingTier(name, description, limit, limit * per_token, recommended))
        lower = limit
    return tiers


@dataclass
class BudgetAlert:
    type: str  # warning | danger
    message: str
    current_spend: float
    budget_limit: float
    percentage_used: float


def check_budget_alerts(
    current_spend: float,
    budget_limit: float,
    warning_threshold: float = 0.8,
    danger_threshold: float = 0.95,
) -> BudgetAlert | None:
    if budget_limit <= 0:
        return None

    used = current_spend / budget_limit
    if used >= danger_threshold:
        return BudgetAlert(
            "danger",
            f"You've used {used * 100:.1f}% of your budget!",
            current_spend, budget_limit, used,
        )
    if used >= warning_threshold:
        return BudgetAlert(
            "warning",
            f"You've used {used * 100:.1f}% of your budget.",
            current_spend, budget_limit, used,
        )
    return None

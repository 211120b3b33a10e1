"""
Credit pricing per model.

Converts token counts into whole credit units using a static cost table.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_CEILING
from typing import Dict, Mapping, Union

from .token_counter import TokenUsage

DEFAULT_MODEL_KEY = "default"

_THOUSAND = Decimal("1000")


@dataclass(frozen=True)
class ModelPricing:
    """Credit cost per 1K tokens for a specific model."""
    input_cost_per_1k: Decimal
    output_cost_per_1k: Decimal

    def __post_init__(self):
        if self.input_cost_per_1k < 0 or self.output_cost_per_1k < 0:
            raise ValueError("model costs cannot be negative")


@dataclass(frozen=True)
class PricingTable:
    """Cost table keyed by exact model identifier, with a default entry."""
    prices: Mapping[str, ModelPricing]

    def __post_init__(self):
        if DEFAULT_MODEL_KEY not in self.prices:
            raise ValueError(f"pricing table needs a '{DEFAULT_MODEL_KEY}' entry")

    def get_pricing(self, model_id: str) -> ModelPricing:
        """Get pricing for a model, falling back to the default entry.

        Lookup is an exact match; no prefix or alias resolution is done.
        """
        return self.prices.get(model_id, self.prices[DEFAULT_MODEL_KEY])


def build_pricing_table(raw: Mapping[str, Mapping[str, Union[int, float, str]]]) -> PricingTable:
    """Build a PricingTable from ``{model: {"input": x, "output": y}}``.

    Values go through ``str`` so floats such as 0.075 keep their decimal form.
    """
    prices: Dict[str, ModelPricing] = {}
    for model_id, costs in raw.items():
        prices[model_id] = ModelPricing(
            input_cost_per_1k=Decimal(str(costs["input"])),
            output_cost_per_1k=Decimal(str(costs["output"]))
        )
    return PricingTable(prices)


# Credits per 1K tokens
DEFAULT_PRICING_TABLE = build_pricing_table({
    # OpenAI
    "openai/gpt-4o": {"input": "5", "output": "15"},
    "openai/gpt-4o-mini": {"input": "0.15", "output": "0.6"},
    "openai/gpt-4-turbo": {"input": "10", "output": "30"},
    # Anthropic
    "anthropic/claude-3-5-sonnet": {"input": "3", "output": "15"},
    "anthropic/claude-3-5-haiku": {"input": "0.25", "output": "1.25"},
    "anthropic/claude-3-opus": {"input": "15", "output": "75"},
    # Google
    "google/gemini-2.0-flash-exp": {"input": "0.075", "output": "0.3"},
    "google/gemini-1.5-pro": {"input": "3.5", "output": "10.5"},
    "google/gemini-1.5-flash": {"input": "0.075", "output": "0.3"},
    DEFAULT_MODEL_KEY: {"input": "1", "output": "2"},
})


def calculate_usage_cost(
    model_id: str,
    usage: TokenUsage,
    table: PricingTable = DEFAULT_PRICING_TABLE
) -> int:
    """Calculate the credit cost of one generation.

    Every call is rounded up to a whole credit on its own, so many small calls
    cost more in aggregate than one large call with the same total tokens.

    Args:
        model_id: Model identifier, looked up by exact match
        usage: Token counts for the generation
        table: Cost table to price against

    Returns:
        Cost in whole credits; 0 only when no tokens were used
    """
    pricing = table.get_pricing(model_id)

    input_cost = (Decimal(usage.input_tokens) / _THOUSAND) * pricing.input_cost_per_1k
    output_cost = (Decimal(usage.output_tokens) / _THOUSAND) * pricing.output_cost_per_1k

    cost = int((input_cost + output_cost).to_integral_value(rounding=ROUND_CEILING))

    # a zero-priced model still charges for real usage
    if cost == 0 and usage.total_tokens > 0:
        return 1
    return cost

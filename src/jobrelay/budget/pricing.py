"""Token cost estimation for model invocations recorded in the usage ledger."""

from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(slots=True)
class ModelPricing:
    """Per-model input/output pricing in USD per 1M tokens."""

    input_per_1m: float
    output_per_1m: float


DEFAULT_PRICING: dict[tuple[str, str], ModelPricing] = {
    ("anthropic", "claude-sonnet-4-5"): ModelPricing(input_per_1m=3.0, output_per_1m=15.0),
    ("anthropic", "claude-haiku-4-5"): ModelPricing(input_per_1m=1.0, output_per_1m=5.0),
    ("anthropic", "claude-opus-4-1"): ModelPricing(input_per_1m=15.0, output_per_1m=75.0),
    ("anthropic", "*"): ModelPricing(input_per_1m=3.0, output_per_1m=15.0),
}


def estimate_cost_cents(
    *,
    provider: str,
    model: str,
    input_tokens: int,
    output_tokens: int,
) -> float:
    """Estimate invocation cost in cents; unknown models cost 0."""

    pricing = lookup_pricing(provider=provider, model=model)
    if pricing is None:
        return 0.0
    usd = (input_tokens / 1_000_000) * pricing.input_per_1m + (
        output_tokens / 1_000_000
    ) * pricing.output_per_1m
    return usd * 100


def lookup_pricing(*, provider: str, model: str) -> ModelPricing | None:
    """Resolve pricing from `JOBRELAY_LLM_PRICING`, then built-in defaults."""

    mapping = dict(DEFAULT_PRICING)
    mapping.update(_parse_pricing_mapping(os.getenv("JOBRELAY_LLM_PRICING", "")))
    provider_key = provider.strip().lower()

    direct = mapping.get((provider_key, model.strip()))
    if direct is not None:
        return direct

    wildcard_model = mapping.get((provider_key, "*"))
    if wildcard_model is not None:
        return wildcard_model

    return mapping.get(("*", "*"))


def _parse_pricing_mapping(raw: str) -> dict[tuple[str, str], ModelPricing]:
    """Parse `JOBRELAY_LLM_PRICING` mapping.

    Format:
    - `provider:model:input_per_1m:output_per_1m`
    - multiple entries separated by `,`
    - supports wildcards in provider/model (`*`)
    """

    parsed: dict[tuple[str, str], ModelPricing] = {}
    if not raw.strip():
        return parsed

    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        parts = [part.strip() for part in value.split(":")]
        if len(parts) != 4:
            continue
        provider, model, input_price, output_price = parts
        try:
            input_per_1m = float(input_price)
            output_per_1m = float(output_price)
        except ValueError:
            continue
        parsed[(provider.lower(), model)] = ModelPricing(
            input_per_1m=input_per_1m,
            output_per_1m=output_per_1m,
        )
    return parsed
